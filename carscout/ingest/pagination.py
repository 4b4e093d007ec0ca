"""Resumable pagination: the durable cursor and the per-run batch state machine.

The cursor is read once when a run begins and written once when it ends.
Nothing in between touches the store, so a run that dies halfway leaves the
previous cursor in place and the next run repeats the same batch.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from carscout.config import settings
from carscout.db.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


class PaginationState(str, Enum):
    """Lifecycle of one run's batch."""

    IDLE = "idle"
    BATCH_COMPUTED = "batch_computed"
    BATCH_RUNNING = "batch_running"
    ADVANCED = "advanced"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class Cursor:
    """Durable pointer to the next unprocessed page."""

    next_page: int = 1
    last_page: int = 0
    last_run_at: Optional[datetime] = None
    search_context: str = ""
    location: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "next_page": self.next_page,
            "last_page": self.last_page,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "search_context": self.search_context,
            "location": self.location,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Cursor":
        """
        Build a cursor from stored state.

        Also understands the camelCase state written by older deployments
        (``nextPage``, ``lastPage``, ``lastScraped``, ``baseUrl``).
        """
        if not data:
            return cls()

        next_page = data.get("next_page", data.get("nextPage", 1))
        last_page = data.get("last_page", data.get("lastPage"))
        last_run_at = data.get("last_run_at", data.get("lastScraped"))
        search_context = data.get("search_context", data.get("baseUrl")) or ""

        try:
            next_page = max(1, int(next_page))
        except (TypeError, ValueError):
            logger.warning(f"Invalid next_page in stored cursor: {next_page!r}, restarting at 1")
            next_page = 1

        if last_page is None:
            last_page = next_page - 1
        try:
            last_page = int(last_page)
        except (TypeError, ValueError):
            logger.warning(f"Invalid last_page in stored cursor: {last_page!r}, using {next_page - 1}")
            last_page = next_page - 1

        if isinstance(last_run_at, str):
            try:
                last_run_at = datetime.fromisoformat(last_run_at.replace("Z", "+00:00"))
            except ValueError:
                last_run_at = None

        return cls(
            next_page=next_page,
            last_page=last_page,
            last_run_at=last_run_at if isinstance(last_run_at, datetime) else None,
            search_context=search_context,
            location=data.get("location"),
        )


def compute_batch(cursor: Cursor, batch_size: int, max_pages: int) -> List[int]:
    """
    Pages to process this run: ``[next_page, next_page + batch_size - 1]`` clipped to ``max_pages``.

    Pure; an empty list means the catalog is exhausted.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    first = cursor.next_page
    last = min(first + batch_size - 1, max_pages)
    return list(range(first, last + 1))


def advance_cursor(
    cursor: Cursor,
    last_page_attempted: int,
    search_context: Optional[str] = None,
    location: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Cursor:
    """Cursor after pages up to ``last_page_attempted`` were visited."""
    return replace(
        cursor,
        next_page=last_page_attempted + 1,
        last_page=last_page_attempted,
        last_run_at=now or datetime.now(timezone.utc),
        search_context=search_context if search_context is not None else cursor.search_context,
        location=location if location is not None else cursor.location,
    )


class CursorStore:
    """Reads and writes the cursor under a single key."""

    def __init__(self, kv_store: KeyValueStore, key: Optional[str] = None):
        self.kv_store = kv_store
        self.key = key or settings.state_key

    async def load(self) -> Cursor:
        return Cursor.from_dict(await self.kv_store.get(self.key))

    async def save(self, cursor: Cursor) -> None:
        await self.kv_store.put(self.key, cursor.to_dict())


class PaginationStateMachine:
    """
    Owns the cursor for one run.

    Usage::

        pages = await machine.begin()
        machine.start()
        for page in pages:
            ...
            machine.mark_completed(page)
        await machine.commit(search_context)
    """

    def __init__(
        self,
        store: CursorStore,
        batch_size: int,
        max_pages: int,
        override_page: Optional[int] = None,
    ):
        self.store = store
        self.batch_size = batch_size
        self.max_pages = max_pages
        self.override_page = override_page
        self.state = PaginationState.IDLE
        self.cursor: Optional[Cursor] = None
        self.batch: List[int] = []
        self.completed_pages: List[int] = []

    @property
    def is_override(self) -> bool:
        return self.override_page is not None

    async def begin(self) -> List[int]:
        """Read the cursor and compute this run's batch."""
        if self.state != PaginationState.IDLE:
            raise RuntimeError(f"begin() called in state {self.state.value}")

        self.cursor = await self.store.load()
        start = self.cursor
        if self.is_override:
            logger.info(f"Explicit page override: starting at page {self.override_page}")
            start = replace(self.cursor, next_page=self.override_page)

        self.batch = compute_batch(start, self.batch_size, self.max_pages)
        if not self.batch:
            self.state = PaginationState.EXHAUSTED
            logger.info(f"All pages scraped (next page {start.next_page} > max pages {self.max_pages})")
        else:
            self.state = PaginationState.BATCH_COMPUTED
            logger.info(f"Batch computed: pages {self.batch[0]}-{self.batch[-1]} of {self.max_pages}")
        return list(self.batch)

    def start(self) -> None:
        if self.state != PaginationState.BATCH_COMPUTED:
            raise RuntimeError(f"start() called in state {self.state.value}")
        self.state = PaginationState.BATCH_RUNNING

    def mark_completed(self, page: int) -> None:
        if self.state != PaginationState.BATCH_RUNNING:
            raise RuntimeError(f"mark_completed() called in state {self.state.value}")
        if page not in self.batch:
            raise ValueError(f"Page {page} is not part of batch {self.batch}")
        self.completed_pages.append(page)

    async def commit(
        self,
        search_context: Optional[str] = None,
        location: Optional[str] = None,
    ) -> Optional[Cursor]:
        """
        Write the cursor once, after the last completed page.

        Returns the persisted cursor, or None when nothing was written (no
        page completed, or the run used an explicit page override).
        """
        if self.state != PaginationState.BATCH_RUNNING:
            raise RuntimeError(f"commit() called in state {self.state.value}")

        if not self.completed_pages:
            logger.warning("No page in the batch completed; cursor left unchanged")
            return None

        self.state = PaginationState.ADVANCED
        last_attempted = max(self.completed_pages)
        if self.is_override:
            logger.info(f"Override run finished at page {last_attempted}; cursor not persisted")
            return None

        new_cursor = advance_cursor(
            self.cursor,
            last_attempted,
            search_context=search_context,
            location=location,
        )
        await self.store.save(new_cursor)
        logger.info(f"State saved: next run will scrape page {new_cursor.next_page}")
        return new_cursor
