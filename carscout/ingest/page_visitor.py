"""Per-listing-page workflow: collect detail links, visit each, deliver records."""

import asyncio
import logging
import random
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from carscout import metrics
from carscout.config import Settings, settings as default_settings
from carscout.errors import EmptyPageAnomaly, ItemLevelFailure, PersistenceFailure
from carscout.ingest.browsing_session import BrowserTab, BrowsingSession
from carscout.ingest.extraction_race import ExtractionRace
from carscout.ingest.models import ExtractionOutcome, OutcomeStatus, PageVisitResult
from carscout.notify.delivery import DeliveryPipeline

logger = logging.getLogger(__name__)

LINK_COLLECTION_SCRIPT = """
(pattern) => {
    const links = Array.from(document.querySelectorAll(`a[href*="${pattern}"]`));
    return links.map(a => a.href);
}
"""

Sleeper = Callable[[float], Awaitable[None]]


def dedupe_links(links: List[str]) -> List[str]:
    """Drop exact duplicate URLs, keeping first-seen (render) order."""
    seen = set()
    unique = []
    for link in links:
        if not isinstance(link, str) or not link or link in seen:
            continue
        seen.add(link)
        unique.append(link)
    return unique


async def scroll_to_render(tab: BrowserTab, config: Settings) -> None:
    """Scroll down in steps so lazily rendered results get attached."""
    for i in range(config.scroll_rounds):
        await tab.scroll((i + 1) * config.scroll_step_px)
        await tab.wait(config.scroll_pause_ms)


class PageVisitController:
    """
    Visits the detail pages linked from one listing page.

    Visits are strictly sequential: one detail tab is opened, processed and
    closed before the next link is touched, and a randomized delay follows
    every visit whatever its outcome.
    """

    def __init__(
        self,
        session: BrowsingSession,
        race: ExtractionRace,
        delivery: DeliveryPipeline,
        config: Optional[Settings] = None,
        sleep: Optional[Sleeper] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.race = race
        self.delivery = delivery
        self.config = config or default_settings
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    async def collect_links(self, tab: BrowserTab) -> List[str]:
        raw = await tab.evaluate(LINK_COLLECTION_SCRIPT, self.config.detail_link_pattern)
        return dedupe_links(list(raw or []))

    async def collect_with_retry(self, tab: BrowserTab, page_number: int) -> List[str]:
        """Collect links; if none, re-scroll once and collect again."""
        links = await self.collect_links(tab)
        if links:
            return links

        logger.warning(f"No detail links on page {page_number}, re-rendering once")
        await scroll_to_render(tab, self.config)
        links = await self.collect_links(tab)
        if not links:
            anomaly = EmptyPageAnomaly(page_number, tab.url)
            logger.warning(f"{anomaly}; accepting as zero results")
            await self._save_debug_screenshot(tab, page_number)
        return links

    async def visit_page(self, tab: BrowserTab, page_number: int, max_results: int) -> PageVisitResult:
        """
        Process one rendered listing page.

        Args:
            tab: Tab showing the rendered listing page
            page_number: Page number (recorded on every record)
            max_results: Maximum detail pages to visit

        Returns:
            PageVisitResult with one outcome per visited link, in visit order
        """
        links = await self.collect_with_retry(tab, page_number)
        result = PageVisitResult(page_number=page_number, links_found=len(links))
        logger.info(f"Found {len(links)} detail links on page {page_number}")

        to_visit = links[:max_results]
        logger.info(f"Will visit {len(to_visit)} detail pages")

        for url in to_visit:
            outcome = await self.visit_link(url, page_number)
            result.outcomes.append(outcome)
            metrics.record_detail_visit(
                outcome.status.value,
                outcome.origin.value if outcome.origin else None,
            )
            await self._pause()

        metrics.record_listing_page("empty" if not links else "ok", len(links))
        logger.info(
            "Page %d done: %d saved, %d skipped, %d failed",
            page_number,
            result.success_count,
            result.skipped_count,
            result.failed_count,
        )
        return result

    async def visit_link(self, url: str, page_number: int) -> ExtractionOutcome:
        """Resolve and deliver one link; every error becomes a FAILED outcome."""
        logger.info(f"Visiting detail page: {url}")
        try:
            async with self.session.new_tab() as detail_tab:
                outcome = await self.race.run(detail_tab, url, page_number)

            if outcome.status == OutcomeStatus.SUCCESS:
                await self.delivery.deliver(outcome.record)
            else:
                logger.warning(f"Skipped {url}: {outcome.reason}")
            return outcome

        except PersistenceFailure as e:
            logger.error(f"Persistence failed for {url}: {e}")
            return ExtractionOutcome.failed(url, e)
        except Exception as e:
            failure = ItemLevelFailure(url, e)
            logger.error(str(failure))
            return ExtractionOutcome.failed(url, failure)

    async def _pause(self) -> None:
        delay = self._rng.uniform(
            self.config.min_visit_delay_seconds,
            self.config.max_visit_delay_seconds,
        )
        await self._sleep(delay)

    async def _save_debug_screenshot(self, tab: BrowserTab, page_number: int) -> None:
        if not self.config.debug_artifacts_path:
            return
        try:
            logger.info(f"Current URL: {tab.url}")
            logger.info(f"Page title: {await tab.title()}")
            image = await tab.screenshot()
            stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
            path = Path(self.config.debug_artifacts_path) / f"empty_page_{page_number}_{stamp}.png"
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(image)
            logger.info(f"Saved debug screenshot to {path}")
        except Exception as e:
            logger.debug(f"Could not save debug screenshot: {e}")
