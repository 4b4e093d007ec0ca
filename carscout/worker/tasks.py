"""Run entrypoint: wires stores, browser and delivery, guarded by the optional run lock."""

from contextlib import suppress
from typing import Callable, Optional
from uuid import uuid4

from carscout import metrics
from carscout.config import RunConfig, Settings, settings as default_settings
from carscout.db.dataset import Dataset, create_dataset
from carscout.db.kv_store import KeyValueStore, create_kv_store
from carscout.errors import RunLockedError
from carscout.ingest.browsing_session import PlaywrightSession
from carscout.ingest.engine import IncrementalEngine, RunSummary
from carscout.ingest.pagination import CursorStore
from carscout.logging_config import get_logger
from carscout.notify.delivery import DeliveryPipeline, WebhookForwarder
from carscout.worker.run_lock import RunLockManager


class TaskRunner:
    """
    Executes one engine run end to end.

    1. Acquires the run lock (when enabled)
    2. Opens the browser session
    3. Runs the engine over this run's batch
    4. Records metrics and releases everything in a finally block
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        kv_store: Optional[KeyValueStore] = None,
        dataset: Optional[Dataset] = None,
        forwarder: Optional[WebhookForwarder] = None,
        session_factory: Optional[Callable[[], PlaywrightSession]] = None,
        lock_manager: Optional[RunLockManager] = None,
    ):
        self.config = config or default_settings
        self.kv_store = kv_store or create_kv_store(self.config.state_backend)
        self.dataset = dataset or create_dataset(self.config.dataset_backend)
        self.forwarder = forwarder or WebhookForwarder(self.config.forward_webhook_url)
        self.session_factory = session_factory or (lambda: PlaywrightSession(self.config))
        self.lock_manager = lock_manager
        if self.lock_manager is None and self.config.run_lock_enabled:
            self.lock_manager = RunLockManager(self.config.redis_url, self.config.run_lock_ttl_seconds)

    async def run_entrypoint(self, run_config: RunConfig) -> RunSummary:
        """
        Run once.

        Raises:
            RunLockedError: If another run holds the lock
        """
        run_id = uuid4().hex
        run_logger = get_logger(__name__, run_id=run_id[:16])
        run_logger.info(f"Starting run (run_id: {run_id[:16]}...)")

        lock_token: Optional[str] = None
        if self.lock_manager is not None:
            lock_token = await self._acquire_lock(run_id)

        delivery = DeliveryPipeline(
            self.dataset,
            forwarder=self.forwarder,
            forward_enabled=run_config.forward_enabled,
        )
        status = "failed"
        next_page: Optional[int] = None
        try:
            async with self.session_factory() as session:
                engine = IncrementalEngine(
                    session,
                    CursorStore(self.kv_store, self.config.state_key),
                    delivery,
                    config=self.config,
                )
                summary = await engine.run(run_config)

            if summary.exhausted:
                status = "exhausted"
            elif summary.partial:
                status = "partial"
            else:
                status = "completed"
            if summary.cursor:
                next_page = summary.cursor.next_page

            run_logger.info(
                "Run %s: pages %s, %d records saved, %d items failed, %d forwards failed",
                status,
                summary.completed_pages or summary.batch,
                summary.records_saved,
                summary.items_failed,
                delivery.forward_failures,
            )
            return summary

        except Exception as e:
            run_logger.error(f"Run aborted, cursor left unchanged: {e}", exc_info=True)
            raise

        finally:
            metrics.record_run(status, next_page)
            metrics.write_metrics(self.config.metrics_textfile)
            with suppress(Exception):
                await delivery.close()
            if self.lock_manager is not None and lock_token:
                released = await self.lock_manager.release(run_id, lock_token)
                metrics.record_run_lock("released" if released else "release_failed")
                await self.lock_manager.close()

    async def _acquire_lock(self, run_id: str) -> str:
        """Take the run lock, closing the lock connection on every failure path."""
        try:
            lock_token = await self.lock_manager.acquire(run_id)
            if not lock_token:
                metrics.record_run_lock("skipped")
                info = await self.lock_manager.get_lock_info()
                raise RunLockedError(info.get("run_id") if info else None)
        except Exception:
            await self.lock_manager.close()
            raise
        metrics.record_run_lock("acquired")
        return lock_token
