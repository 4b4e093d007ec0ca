"""Shared fixtures: an in-memory browser, cursor store and dataset."""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pytest

from carscout.config import Settings
from carscout.errors import TransientNavigationError
from carscout.ingest.browsing_session import ResponseChannel
from carscout.ingest.extraction_race import DETAIL_SNAPSHOT_SCRIPT
from carscout.ingest.page_visitor import LINK_COLLECTION_SCRIPT

BASE_URL = "https://cars.test/search"
ENDPOINT = "https://cars.test/api/detailListingJson.action"


class FakeResponse:
    def __init__(self, url: str, payload: Any = None, parse_error: Optional[Exception] = None):
        self.url = url
        self.payload = payload
        self.parse_error = parse_error

    async def json(self) -> Any:
        if self.parse_error:
            raise self.parse_error
        return self.payload


@dataclass
class DetailPage:
    responses: List[tuple] = field(default_factory=list)  # (delay_seconds, FakeResponse)
    snapshot: Optional[Dict[str, Any]] = None
    snapshot_error: Optional[Exception] = None


class FakeSite:
    """Scripted catalog shared by every tab of a FakeSession."""

    def __init__(self):
        self.listings: Dict[str, List[List[str]]] = {}
        self.details: Dict[str, DetailPage] = {}
        self.navigation_errors: Dict[str, str] = {}
        self.missing_selectors: set = set()
        self.navigations: List[str] = []
        self.interactions: List[tuple] = []
        self.scrolls: List[int] = []

    def add_listing(self, url: str, *renders: List[str]) -> None:
        """Links returned by successive collections on ``url``; the last render repeats."""
        self.listings[url] = [list(r) for r in renders]

    def add_detail(
        self,
        url: str,
        payload: Any = None,
        delay: float = 0.0,
        snapshot: Optional[Dict[str, Any]] = None,
        parse_error: Optional[Exception] = None,
        extra_responses: Optional[List[tuple]] = None,
        snapshot_error: Optional[Exception] = None,
    ) -> DetailPage:
        page = DetailPage(snapshot=snapshot, snapshot_error=snapshot_error)
        if payload is not None or parse_error is not None:
            page.responses.append((delay, FakeResponse(ENDPOINT, payload, parse_error)))
        page.responses.extend(extra_responses or [])
        self.details[url] = page
        return page

    def fail_navigation(self, url: str, reason: str = "net::ERR_CONNECTION_RESET") -> None:
        self.navigation_errors[url] = reason

    def links_for(self, url: str) -> List[str]:
        renders = self.listings.get(url)
        if not renders:
            return []
        if len(renders) > 1:
            return renders.pop(0)
        return list(renders[0])


class FakeTab:
    """BrowserTab over a FakeSite."""

    def __init__(self, site: FakeSite, url: str = "about:blank"):
        self.site = site
        self._url = url
        self._channels: List[ResponseChannel] = []
        self._timers: List[asyncio.TimerHandle] = []
        self.closed = False

    @property
    def url(self) -> str:
        return self._url

    async def navigate(self, url: str, wait_until: str = "domcontentloaded", timeout_ms: int = 60000) -> None:
        self.site.navigations.append(url)
        if url in self.site.navigation_errors:
            raise TransientNavigationError(url, self.site.navigation_errors[url])
        self._url = url

        page = self.site.details.get(url)
        if page is None:
            return
        loop = asyncio.get_running_loop()
        for delay, response in page.responses:
            if delay <= 0:
                self._dispatch(response)
            else:
                self._timers.append(loop.call_later(delay, self._dispatch, response))

    def _dispatch(self, response: FakeResponse) -> None:
        for channel in list(self._channels):
            channel.handle(response)

    @asynccontextmanager
    async def observe_responses(self, predicate):
        channel = ResponseChannel(predicate)
        self._channels.append(channel)
        try:
            yield channel
        finally:
            self._channels.remove(channel)
            channel.close()

    async def interact(self, selector: str, action: str = "click", timeout_ms: int = 2000, value=None) -> None:
        if selector in self.site.missing_selectors:
            raise TimeoutError(f"Timeout {timeout_ms}ms waiting for {selector}")
        self.site.interactions.append((selector, action, value))

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if script == LINK_COLLECTION_SCRIPT:
            return self.site.links_for(self._url)
        if script == DETAIL_SNAPSHOT_SCRIPT:
            page = self.site.details.get(self._url)
            if page and page.snapshot_error:
                raise page.snapshot_error
            if page and page.snapshot is not None:
                return page.snapshot
            return {"heading": "", "preflight": {}, "url": self._url}
        return None

    async def scroll(self, offset: int) -> None:
        self.site.scrolls.append(offset)

    async def move_mouse(self, x: int, y: int) -> None:
        return None

    async def wait(self, ms: int) -> None:
        await asyncio.sleep(0)

    async def title(self) -> str:
        return "Fake page"

    async def screenshot(self) -> bytes:
        return b"\x89PNG"

    async def close(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self.closed = True


class FakeSession:
    """BrowsingSession that hands out FakeTabs and tracks how many are open."""

    def __init__(self, site: FakeSite):
        self.site = site
        self.tabs_opened = 0
        self.open_tabs = 0
        self.peak_open_tabs = 0

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    @asynccontextmanager
    async def new_tab(self):
        tab = FakeTab(self.site)
        self.tabs_opened += 1
        self.open_tabs += 1
        self.peak_open_tabs = max(self.peak_open_tabs, self.open_tabs)
        try:
            yield tab
        finally:
            self.open_tabs -= 1
            await tab.close()


class InMemoryKeyValueStore:
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self.data: Dict[str, Any] = dict(initial or {})
        self.writes = 0

    async def get(self, key: str) -> Optional[Any]:
        return self.data.get(key)

    async def put(self, key: str, value: Any) -> None:
        self.writes += 1
        self.data[key] = value


class InMemoryDataset:
    def __init__(self):
        self.items: List[Dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None
        self.closed = False

    async def append(self, item: Dict[str, Any]) -> None:
        if self.fail_with:
            raise self.fail_with
        self.items.append(item)

    async def close(self) -> None:
        self.closed = True


def structured_payload(vin: str = "1FMSK8DH5MGA00001", **overrides) -> Dict[str, Any]:
    listing = {
        "vin": vin,
        "modelYear": 2021,
        "makeName": "Ford",
        "modelName": "Explorer",
        "trimName": "XLT",
        "expectedPrice": 45990,
        "expectedPriceString": "$45,990",
        "mileage": 52000,
        "mileageString": "52,000 km",
        "sellerName": "Laval Ford",
        "sellerCity": "Laval, QC",
        "dealBadgeText": "Good Deal",
        "bodyType": "SUV / Crossover",
    }
    listing.update(overrides)
    return {"listing": listing}


def rendered_snapshot(vin: str = "2T3W1RFV5LC000002", heading: str = "2020 Toyota RAV4 LE") -> Dict[str, Any]:
    return {
        "heading": heading,
        "preflight": {
            "listingPriceValue": 31000,
            "listingPriceString": "$31,000",
            "listing": {
                "specs": [
                    {"label": "Transmission", "value": "Automatic"},
                    {"label": "VIN", "value": vin},
                ],
                "year": 2020,
                "make": "Toyota",
                "model": "RAV4",
                "trim": "LE",
                "mileage": "40,000 km",
                "dealerName": "Toronto Toyota",
                "dealerCity": "Toronto, ON",
                "dealRating": "Fair Deal",
                "bodyType": "SUV / Crossover",
            },
        },
        "url": "https://cars.test/vdp.action?id=2",
    }


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        base_search_url=BASE_URL,
        structured_payload_deadline_seconds=0.2,
        detail_settle_ms=0,
        listing_settle_ms=0,
        page_settle_ms=0,
        filter_settle_ms=0,
        scroll_pause_ms=0,
        min_visit_delay_seconds=2.0,
        max_visit_delay_seconds=5.0,
        debug_artifacts_path="",
        forward_webhook_url="",
        metrics_textfile="",
        run_lock_enabled=False,
    )


@pytest.fixture
def site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def session(site) -> FakeSession:
    return FakeSession(site)


@pytest.fixture
def kv_store() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def dataset() -> InMemoryDataset:
    return InMemoryDataset()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return _sleep


@pytest.fixture
def payload_factory():
    return structured_payload


@pytest.fixture
def snapshot_factory():
    return rendered_snapshot


@pytest.fixture
def response_factory():
    return FakeResponse
