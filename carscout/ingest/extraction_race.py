"""Resolve one detail page by racing the structured payload against a deadline."""

import asyncio
import logging
from typing import Any, Dict, Optional

from carscout import metrics
from carscout.config import Settings, settings as default_settings
from carscout.ingest.browsing_session import BrowserTab, ResponseChannel
from carscout.ingest.models import ExtractionOutcome
from carscout.ingest.record_resolver import (
    RecordSourceResolver,
    fields_from_structured,
    needs_backfill,
)

logger = logging.getLogger(__name__)

# Snapshot of the rendered detail page; mapped to record fields in Python
DETAIL_SNAPSHOT_SCRIPT = """
() => {
    const heading = document.querySelector('h1');
    let preflight = {};
    try {
        preflight = JSON.parse(JSON.stringify(window.__PREFLIGHT__ || {}));
    } catch (e) {
        preflight = {};
    }
    return {
        heading: heading ? heading.textContent.trim() : '',
        preflight: preflight,
        url: window.location.href,
    };
}
"""


async def race_payload(channel: ResponseChannel, timeout: float) -> tuple[Optional[Any], bool]:
    """
    Race the channel's first payload against a deadline.

    Returns ``(payload, won)``. ``won`` is False when the deadline settled
    first. If both are already settled the payload wins.
    """
    if channel.settled:
        return await channel.first(), True

    payload_task = asyncio.ensure_future(channel.first())
    deadline_task = asyncio.ensure_future(asyncio.sleep(max(0.0, timeout)))
    try:
        done, _ = await asyncio.wait(
            {payload_task, deadline_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        for task in (payload_task, deadline_task):
            if not task.done():
                task.cancel()

    if payload_task in done and not payload_task.cancelled():
        return payload_task.result(), True
    return None, False


def race_winner(payload: Optional[Any], won: bool) -> str:
    """Metric label for a settled race: structured, unparseable or deadline."""
    if not won:
        return "deadline"
    return "structured" if payload is not None else "unparseable"


class ExtractionRace:
    """
    Turns one detail page visit into exactly one ExtractionOutcome.

    The deadline starts when the response subscription opens, before
    navigation, so a slow navigation eats into the payload budget.
    """

    def __init__(
        self,
        resolver: RecordSourceResolver,
        config: Optional[Settings] = None,
        deadline_seconds: Optional[float] = None,
    ):
        self.resolver = resolver
        self.config = config or default_settings
        self.deadline_seconds = (
            deadline_seconds
            if deadline_seconds is not None
            else self.config.structured_payload_deadline_seconds
        )
        self.endpoint_pattern = self.config.structured_endpoint_pattern

    def matches_endpoint(self, url: str) -> bool:
        return self.endpoint_pattern in url

    async def run(self, tab: BrowserTab, url: str, page_number: int) -> ExtractionOutcome:
        """
        Visit ``url`` in ``tab`` and resolve it.

        Navigation errors propagate; the caller turns them into a FAILED outcome.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()

        async with tab.observe_responses(self.matches_endpoint) as channel:
            await tab.navigate(
                url,
                wait_until="domcontentloaded",
                timeout_ms=self.config.detail_navigation_timeout_ms,
            )
            remaining = self.deadline_seconds - (loop.time() - started)
            logger.debug(f"Waiting up to {max(remaining, 0):.1f}s for structured payload")
            payload, won = await race_payload(channel, remaining)

        elapsed = loop.time() - started
        metrics.record_race(race_winner(payload, won), elapsed)
        if not won:
            logger.info(f"No structured payload within {self.deadline_seconds:.0f}s, using rendered document")
        elif payload is None:
            logger.info(f"Structured payload for {url} could not be parsed, using rendered document")

        if self.config.detail_settle_ms:
            await tab.wait(self.config.detail_settle_ms)

        snapshot = await self._snapshot_if_needed(tab, url, payload)
        record = self.resolver.resolve(url, page_number, payload=payload, snapshot=snapshot)

        logger.info(
            "Resolved %s: identifier=%s title=%s price=%s origin=%s",
            url,
            record.identifier or "NOT FOUND",
            record.title or "NOT FOUND",
            record.price_display or record.price_numeric or "NOT FOUND",
            record.extraction_origin.value,
        )

        if not record.is_valid:
            return ExtractionOutcome.skipped(url, "no identifier or title resolved")
        return ExtractionOutcome.success(record)

    async def _snapshot_if_needed(
        self,
        tab: BrowserTab,
        url: str,
        payload: Optional[Dict[str, Any]],
    ) -> Optional[Dict[str, Any]]:
        structured = fields_from_structured(payload)
        if not needs_backfill(structured):
            return None

        try:
            snapshot = await tab.evaluate(DETAIL_SNAPSHOT_SCRIPT)
        except Exception as e:
            if not structured:
                raise
            # Payload alone is still a usable record
            logger.warning(f"Rendered backfill failed for {url}: {e}")
            return None
        return snapshot if isinstance(snapshot, dict) else None
