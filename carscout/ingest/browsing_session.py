"""Browsing session capability backed by Playwright.

The engine only talks to :class:`BrowserTab` and :class:`BrowsingSession`;
everything Playwright-specific (launch args, context options, listeners)
stays in this module.
"""

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional, Protocol

from playwright.async_api import Browser, BrowserContext, Page, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from carscout.config import Settings, settings as default_settings
from carscout.errors import TransientNavigationError

logger = logging.getLogger(__name__)

ResponsePredicate = Callable[[str], bool]

# Launch args that keep the automated browser plausible
STEALTH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-features=IsolateOrigins,site-per-process",
    "--disable-dev-shm-usage",
    "--no-sandbox",
]

WEBDRIVER_MASK_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {
    get: () => false
});
"""


class ResponseChannel:
    """
    Single-subscriber channel that settles on the first matching response.

    Created per detail-page visit. Only the first response whose URL matches
    the predicate is parsed; every later match is ignored so duplicate network
    calls cannot be processed twice. A first match whose body is not JSON
    settles the channel with ``None``.
    """

    def __init__(self, predicate: ResponsePredicate):
        self._predicate = predicate
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._claimed = False
        self._parse_task: Optional[asyncio.Task] = None
        self.matched_url: Optional[str] = None

    def handle(self, response: Any) -> None:
        """Listener callback; accepts any object with ``url`` and async ``json()``."""
        if self._claimed or self._future.done():
            return
        url = getattr(response, "url", "") or ""
        if not self._predicate(url):
            return

        self._claimed = True
        self.matched_url = url
        logger.info(f"Intercepted structured response: {url}")
        self._parse_task = asyncio.ensure_future(self._settle(response))

    async def _settle(self, response: Any) -> None:
        try:
            payload = await response.json()
        except Exception as e:
            logger.warning(f"Failed to parse structured response: {e}")
            payload = None
        if not self._future.done():
            self._future.set_result(payload)

    async def first(self) -> Any:
        """Wait for the winning payload (``None`` if it could not be parsed)."""
        return await asyncio.shield(self._future)

    @property
    def settled(self) -> bool:
        return self._future.done()

    def close(self) -> None:
        """Stop accepting responses and drop any in-flight parse."""
        self._claimed = True
        if self._parse_task and not self._parse_task.done():
            self._parse_task.cancel()
        if not self._future.done():
            self._future.cancel()


class BrowserTab(Protocol):
    """Operations the engine needs from one open page."""

    @property
    def url(self) -> str: ...

    async def navigate(self, url: str, wait_until: str = "domcontentloaded", timeout_ms: int = 60000) -> None: ...

    def observe_responses(self, predicate: ResponsePredicate): ...

    async def interact(
        self,
        selector: str,
        action: str = "click",
        timeout_ms: int = 2000,
        value: Optional[str] = None,
    ) -> None: ...

    async def evaluate(self, script: str, arg: Any = None) -> Any: ...

    async def scroll(self, offset: int) -> None: ...

    async def move_mouse(self, x: int, y: int) -> None: ...

    async def wait(self, ms: int) -> None: ...

    async def title(self) -> str: ...

    async def screenshot(self) -> bytes: ...

    async def close(self) -> None: ...


class BrowsingSession(Protocol):
    """A running browser the engine borrows tabs from."""

    def new_tab(self): ...


class PlaywrightTab:
    """BrowserTab implementation over a Playwright page."""

    def __init__(self, page: Page):
        self._page = page

    @property
    def url(self) -> str:
        return self._page.url

    async def navigate(self, url: str, wait_until: str = "domcontentloaded", timeout_ms: int = 60000) -> None:
        try:
            await self._page.goto(url, wait_until=wait_until, timeout=timeout_ms)
        except PlaywrightTimeoutError as e:
            raise TransientNavigationError(url, f"timeout after {timeout_ms}ms") from e
        except PlaywrightError as e:
            raise TransientNavigationError(url, str(e)) from e

    @asynccontextmanager
    async def observe_responses(self, predicate: ResponsePredicate) -> AsyncIterator[ResponseChannel]:
        channel = ResponseChannel(predicate)
        self._page.on("response", channel.handle)
        try:
            yield channel
        finally:
            self._page.remove_listener("response", channel.handle)
            channel.close()

    async def interact(
        self,
        selector: str,
        action: str = "click",
        timeout_ms: int = 2000,
        value: Optional[str] = None,
    ) -> None:
        locator = self._page.locator(selector).first
        if action == "click":
            await locator.click(timeout=timeout_ms)
        elif action == "fill":
            await locator.fill(value or "", timeout=timeout_ms)
        elif action == "press":
            await locator.press(value or "Enter", timeout=timeout_ms)
        elif action == "select":
            await locator.select_option(value, timeout=timeout_ms)
        else:
            raise ValueError(f"Unknown interaction: {action}")

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if arg is None:
            return await self._page.evaluate(script)
        return await self._page.evaluate(script, arg)

    async def scroll(self, offset: int) -> None:
        await self._page.evaluate(
            "(offset) => window.scrollTo({ top: offset, behavior: 'smooth' })",
            offset,
        )

    async def move_mouse(self, x: int, y: int) -> None:
        await self._page.mouse.move(x, y)

    async def wait(self, ms: int) -> None:
        await self._page.wait_for_timeout(ms)

    async def title(self) -> str:
        return await self._page.title()

    async def screenshot(self) -> bytes:
        return await self._page.screenshot(full_page=False)

    async def close(self) -> None:
        if not self._page.is_closed():
            await self._page.close()


class PlaywrightSession:
    """
    Owns one Chromium browser and one context for the whole run.

    Use as an async context manager. The browser is launched lazily by the
    first :meth:`new_tab`, so a run that never opens a tab never starts one.
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None

    async def __aenter__(self) -> "PlaywrightSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def get_context_options(self) -> dict[str, Any]:
        """Playwright context options for a desktop browser in the configured locale."""
        cfg = self.config
        return {
            "viewport": {"width": cfg.viewport_width, "height": cfg.viewport_height},
            "user_agent": cfg.browser_user_agent,
            "locale": cfg.browser_locale,
            "timezone_id": cfg.browser_timezone,
            "geolocation": {"latitude": cfg.browser_latitude, "longitude": cfg.browser_longitude},
            "permissions": ["geolocation"],
        }

    async def start(self) -> None:
        if self._context is not None:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.config.headless,
            args=STEALTH_ARGS,
        )
        self._context = await self._browser.new_context(**self.get_context_options())
        await self._context.add_init_script(WEBDRIVER_MASK_SCRIPT)
        logger.info("Browser session started")

    async def close(self) -> None:
        if self._playwright is None:
            return
        try:
            if self._context:
                await self._context.close()
            if self._browser:
                await self._browser.close()
        finally:
            if self._playwright:
                await self._playwright.stop()
            self._context = None
            self._browser = None
            self._playwright = None
            logger.info("Browser session closed")

    @asynccontextmanager
    async def new_tab(self) -> AsyncIterator[PlaywrightTab]:
        await self.start()
        page = await self._context.new_page()
        tab = PlaywrightTab(page)
        try:
            yield tab
        finally:
            try:
                await tab.close()
            except PlaywrightError as e:
                logger.debug(f"Error closing tab: {e}")


async def simulate_human_behavior(tab: BrowserTab) -> None:
    """Move the mouse around a little, with short pauses."""
    try:
        await tab.move_mouse(random.randint(80, 320), random.randint(150, 450))
        await tab.wait(500)
        await tab.move_mouse(random.randint(250, 600), random.randint(300, 600))
        await tab.wait(1000)
    except PlaywrightError as e:
        logger.debug(f"Error simulating human behavior: {e}")
