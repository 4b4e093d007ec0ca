"""End-to-end engine runs against the in-memory browser."""

import random

import pytest

from carscout.config import RunConfig, SearchFilters
from carscout.errors import RunLockedError, TransientNavigationError
from carscout.ingest.engine import IncrementalEngine
from carscout.ingest.pagination import CursorStore, PaginationState
from carscout.notify.delivery import DeliveryPipeline, WebhookForwarder
from carscout.worker.tasks import TaskRunner

BASE_URL = "https://cars.test/search"
KEY = "SCRAPER_STATE"


def _page_url(page: int) -> str:
    return BASE_URL if page == 1 else f"{BASE_URL}#resultsPage={page}"


def _detail(page: int, n: int) -> str:
    return f"https://cars.test/vdp.action?id={page}-{n}"


def _populate(site, payload_factory, pages, per_page=2):
    for page in pages:
        links = [_detail(page, n) for n in range(per_page)]
        site.add_listing(_page_url(page), links)
        for link in links:
            site.add_detail(link, payload=payload_factory(vin=link.rsplit("=", 1)[1]))


def _run_config(**kwargs) -> RunConfig:
    filters = SearchFilters(makes=[], body_types=[], min_price=None, max_mileage=None, deal_ratings=[])
    return RunConfig(filters=filters, **kwargs)


@pytest.fixture
def engine(test_settings, session, kv_store, dataset, fake_sleep):
    return IncrementalEngine(
        session,
        CursorStore(kv_store, KEY),
        DeliveryPipeline(dataset),
        config=test_settings,
        sleep=fake_sleep,
        rng=random.Random(1),
    )


class TestIncrementalEngine:
    """Tests for IncrementalEngine."""

    @pytest.mark.asyncio
    async def test_processes_batch_and_advances_cursor(
        self, engine, site, kv_store, dataset, payload_factory
    ):
        kv_store.data[KEY] = {"next_page": 5, "last_page": 4}
        _populate(site, payload_factory, [5, 6, 7])

        summary = await engine.run(_run_config(batch_size=3))

        assert summary.state == PaginationState.ADVANCED
        assert summary.completed_pages == [5, 6, 7]
        assert summary.records_saved == 6
        assert summary.cursor.next_page == 8
        assert kv_store.data[KEY]["next_page"] == 8
        assert kv_store.data[KEY]["last_page"] == 7
        assert kv_store.data[KEY]["search_context"] == BASE_URL
        assert [item["page_number"] for item in dataset.items] == [5, 5, 6, 6, 7, 7]

        listing_visits = [url for url in site.navigations if "vdp.action" not in url]
        assert listing_visits == [BASE_URL, _page_url(5), _page_url(6), _page_url(7)]

    @pytest.mark.asyncio
    async def test_first_page_uses_search_context_directly(
        self, engine, site, kv_store, payload_factory
    ):
        _populate(site, payload_factory, [1])

        summary = await engine.run(_run_config())

        assert summary.cursor.next_page == 2
        assert site.navigations.count(BASE_URL) == 1
        assert len(site.scrolls) == 3

    @pytest.mark.asyncio
    async def test_exhausted_run_opens_no_tabs(self, engine, session, kv_store):
        kv_store.data[KEY] = {"next_page": 74, "last_page": 73}

        summary = await engine.run(_run_config(max_pages=73))

        assert summary.exhausted
        assert session.tabs_opened == 0
        assert kv_store.writes == 0

    @pytest.mark.asyncio
    async def test_bootstrap_failure_leaves_cursor_unchanged(self, engine, site, kv_store):
        kv_store.data[KEY] = {"next_page": 5, "last_page": 4}
        site.fail_navigation(BASE_URL)

        with pytest.raises(TransientNavigationError):
            await engine.run(_run_config(batch_size=2))

        assert kv_store.writes == 0
        assert kv_store.data[KEY] == {"next_page": 5, "last_page": 4}

    @pytest.mark.asyncio
    async def test_failure_after_completed_page_keeps_progress(
        self, engine, site, kv_store, payload_factory
    ):
        kv_store.data[KEY] = {"next_page": 5, "last_page": 4}
        _populate(site, payload_factory, [5, 7])
        site.fail_navigation(_page_url(6))

        summary = await engine.run(_run_config(batch_size=3))

        assert summary.partial
        assert summary.completed_pages == [5]
        assert kv_store.data[KEY]["next_page"] == 6
        assert _page_url(7) not in site.navigations

    @pytest.mark.asyncio
    async def test_override_page_does_not_touch_cursor(
        self, engine, site, kv_store, payload_factory
    ):
        kv_store.data[KEY] = {"next_page": 5, "last_page": 4}
        _populate(site, payload_factory, [20])

        summary = await engine.run(_run_config(page=20))

        assert summary.completed_pages == [20]
        assert summary.cursor is None
        assert kv_store.writes == 0
        assert _page_url(20) in site.navigations

    @pytest.mark.asyncio
    async def test_consecutive_runs_walk_the_catalog(
        self, engine, site, kv_store, dataset, payload_factory
    ):
        _populate(site, payload_factory, [1, 2, 3])

        for _ in range(3):
            await engine.run(_run_config(max_pages=3))
        final = await engine.run(_run_config(max_pages=3))

        assert final.exhausted
        assert sorted({item["page_number"] for item in dataset.items}) == [1, 2, 3]
        assert kv_store.data[KEY]["next_page"] == 4


class _HeldLock:
    def __init__(self):
        self.closed = False

    async def acquire(self, run_id):
        return None

    async def get_lock_info(self):
        return {"run_id": "other-run-holding-the-lock"}

    async def close(self):
        self.closed = True


class _UnreachableLock(_HeldLock):
    async def acquire(self, run_id):
        raise ConnectionError("Error 111 connecting to localhost:6379. Connection refused.")


class TestTaskRunner:
    """Tests for the run entrypoint."""

    @pytest.mark.asyncio
    async def test_run_entrypoint(self, test_settings, site, session, kv_store, dataset, payload_factory):
        test_settings.min_visit_delay_seconds = 0
        test_settings.max_visit_delay_seconds = 0
        _populate(site, payload_factory, [1], per_page=1)

        runner = TaskRunner(
            config=test_settings,
            kv_store=kv_store,
            dataset=dataset,
            forwarder=WebhookForwarder(""),
            session_factory=lambda: session,
        )
        summary = await runner.run_entrypoint(_run_config())

        assert summary.records_saved == 1
        assert kv_store.data[KEY]["next_page"] == 2
        assert dataset.closed

    @pytest.mark.asyncio
    async def test_held_lock_skips_run(self, test_settings, session, kv_store, dataset):
        lock = _HeldLock()
        runner = TaskRunner(
            config=test_settings,
            kv_store=kv_store,
            dataset=dataset,
            forwarder=WebhookForwarder(""),
            session_factory=lambda: session,
            lock_manager=lock,
        )

        with pytest.raises(RunLockedError) as exc_info:
            await runner.run_entrypoint(_run_config())

        assert exc_info.value.holder_run_id == "other-run-holding-the-lock"
        assert session.tabs_opened == 0
        assert lock.closed

    @pytest.mark.asyncio
    async def test_unreachable_lock_store_closes_connection(self, test_settings, session, kv_store, dataset):
        lock = _UnreachableLock()
        runner = TaskRunner(
            config=test_settings,
            kv_store=kv_store,
            dataset=dataset,
            forwarder=WebhookForwarder(""),
            session_factory=lambda: session,
            lock_manager=lock,
        )

        with pytest.raises(ConnectionError):
            await runner.run_entrypoint(_run_config())

        assert lock.closed
        assert session.tabs_opened == 0
        assert kv_store.writes == 0
