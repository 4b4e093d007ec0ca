"""Incremental extraction engine: one run over one batch of results pages."""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from carscout.config import RunConfig, Settings, settings as default_settings
from carscout.ingest.browsing_session import BrowserTab, BrowsingSession
from carscout.ingest.extraction_race import ExtractionRace
from carscout.ingest.models import PageVisitResult
from carscout.ingest.page_visitor import PageVisitController, scroll_to_render
from carscout.ingest.pagination import (
    Cursor,
    CursorStore,
    PaginationState,
    PaginationStateMachine,
)
from carscout.ingest.record_resolver import RecordSourceResolver
from carscout.ingest.search_filters import SearchFilterApplier, results_page_url
from carscout.notify.delivery import DeliveryPipeline

logger = logging.getLogger(__name__)


@dataclass
class RunSummary:
    """What one engine run did."""

    state: PaginationState
    batch: List[int] = field(default_factory=list)
    completed_pages: List[int] = field(default_factory=list)
    page_results: List[PageVisitResult] = field(default_factory=list)
    cursor: Optional[Cursor] = None
    search_context: Optional[str] = None
    error: Optional[str] = None

    @property
    def exhausted(self) -> bool:
        return self.state == PaginationState.EXHAUSTED

    @property
    def records_saved(self) -> int:
        return sum(r.success_count for r in self.page_results)

    @property
    def items_failed(self) -> int:
        return sum(r.failed_count for r in self.page_results)

    @property
    def partial(self) -> bool:
        return self.error is not None


class IncrementalEngine:
    """
    Drives pagination, page visits, extraction and delivery for one run.

    Cursor, configuration and session are passed in explicitly; the engine
    holds no state between runs.
    """

    def __init__(
        self,
        session: BrowsingSession,
        cursor_store: CursorStore,
        delivery: DeliveryPipeline,
        config: Optional[Settings] = None,
        filter_applier: Optional[SearchFilterApplier] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.cursor_store = cursor_store
        self.delivery = delivery
        self.config = config or default_settings
        self.filter_applier = filter_applier or SearchFilterApplier(self.config)
        self._sleep = sleep or asyncio.sleep
        self._rng = rng

    async def run(self, run_config: RunConfig) -> RunSummary:
        """
        Process this run's batch.

        Raises whatever aborted the run if no page of the batch completed;
        the stored cursor is unchanged in that case.
        """
        machine = PaginationStateMachine(
            self.cursor_store,
            batch_size=run_config.batch_size,
            max_pages=run_config.max_pages,
            override_page=run_config.page,
        )
        batch = await machine.begin()
        summary = RunSummary(state=machine.state, batch=batch)
        if machine.state == PaginationState.EXHAUSTED:
            return summary

        machine.start()
        resolver = RecordSourceResolver(search_location=run_config.location)
        visitor = PageVisitController(
            self.session,
            ExtractionRace(resolver, self.config),
            self.delivery,
            config=self.config,
            sleep=self._sleep,
            rng=self._rng,
        )

        logger.info(f"Location: {run_config.location} ({run_config.search_radius} km radius)")
        logger.info(f"Max results per page: {run_config.max_results}")

        async with self.session.new_tab() as listing_tab:
            search_context = await self.filter_applier.bootstrap(listing_tab, run_config)
            summary.search_context = search_context

            for page_number in batch:
                try:
                    await self._open_results_page(listing_tab, search_context, page_number)
                    result = await visitor.visit_page(listing_tab, page_number, run_config.max_results)
                except Exception as e:
                    if not machine.completed_pages:
                        logger.error(f"Error processing page {page_number}: {e}")
                        raise
                    summary.error = f"page {page_number}: {e}"
                    logger.error(
                        f"Error processing page {page_number}: {e}; "
                        f"keeping progress through page {machine.completed_pages[-1]}"
                    )
                    break
                machine.mark_completed(page_number)
                summary.page_results.append(result)

        summary.cursor = await machine.commit(search_context, location=run_config.location)
        summary.state = machine.state
        summary.completed_pages = list(machine.completed_pages)
        return summary

    async def _open_results_page(self, tab: BrowserTab, search_context: str, page_number: int) -> None:
        if page_number > 1:
            url = results_page_url(search_context, page_number, self.config.results_page_fragment)
            logger.info(f"Navigating to page {page_number}...")
            await tab.navigate(
                url,
                wait_until="domcontentloaded",
                timeout_ms=self.config.listing_navigation_timeout_ms,
            )
            await tab.wait(self.config.page_settle_ms)

        logger.info("Scrolling to load content...")
        await scroll_to_render(tab, self.config)
        await tab.wait(self.config.page_settle_ms)
