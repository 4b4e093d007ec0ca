"""Delivery pipeline: persist every valid record, then forward it best-effort."""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from carscout import metrics
from carscout.config import settings
from carscout.db.dataset import Dataset
from carscout.errors import ForwardingFailure, PersistenceFailure
from carscout.ingest.models import RECORD_TYPE, Record

logger = logging.getLogger(__name__)


def build_item(record: Record, scraped_at: Optional[datetime] = None) -> Dict[str, Any]:
    """Dataset item for a record: type discriminator, record fields, capture time."""
    return {
        "type": RECORD_TYPE,
        **record.to_dict(),
        "scraped_at": (scraped_at or datetime.now(timezone.utc)).isoformat(),
    }


class WebhookForwarder:
    """POSTs items as JSON to a single downstream endpoint."""

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url if url is not None else settings.forward_webhook_url
        self.timeout = timeout or settings.forward_timeout_seconds
        self._http_client = client

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def send(self, item: Dict[str, Any]) -> None:
        """
        Send one item.

        Raises:
            ForwardingFailure: On a non-2xx response or a transport error
        """
        client = await self._get_client()
        try:
            response = await client.post(
                self.url,
                json=item,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise ForwardingFailure(self.url, f"{type(e).__name__}: {e}") from e

        if not 200 <= response.status_code < 300:
            raise ForwardingFailure(
                self.url,
                f"HTTP {response.status_code} - {response.text[:200]}",
                status_code=response.status_code,
            )


class DeliveryPipeline:
    """
    Validates, persists and forwards records.

    Persistence is the primary deliverable and its failure propagates.
    Forwarding never affects the outcome of an item.
    """

    def __init__(
        self,
        dataset: Dataset,
        forwarder: Optional[WebhookForwarder] = None,
        forward_enabled: bool = True,
    ):
        self.dataset = dataset
        self.forwarder = forwarder
        self.forward_enabled = forward_enabled
        self.persisted_count = 0
        self.forwarded_count = 0
        self.forward_failures = 0

    async def deliver(self, record: Record) -> bool:
        """
        Deliver one record.

        Returns:
            True if the record was persisted, False if it failed validation

        Raises:
            PersistenceFailure: If the dataset append failed
        """
        if not record.is_valid:
            logger.warning(f"No data found for {record.source_url} - skipping")
            return False

        item = build_item(record)
        try:
            await self.dataset.append(item)
        except Exception as e:
            raise PersistenceFailure(f"Failed to persist {record.source_url}: {e}") from e

        self.persisted_count += 1
        metrics.record_persisted(record.extraction_origin.value)
        logger.info(f"Saved to dataset: {record.identifier or record.title}")

        await self._forward(item)
        return True

    async def _forward(self, item: Dict[str, Any]) -> None:
        if not self.forward_enabled or self.forwarder is None or not self.forwarder.enabled:
            return

        start_time = time.monotonic()
        try:
            await self.forwarder.send(item)
        except ForwardingFailure as e:
            self.forward_failures += 1
            metrics.record_forward(False, time.monotonic() - start_time)
            logger.warning(f"Webhook forward failed (record kept): {e}")
            return
        except Exception as e:
            self.forward_failures += 1
            metrics.record_forward(False, time.monotonic() - start_time)
            logger.error(f"Unexpected webhook forward error (record kept): {e}")
            return

        self.forwarded_count += 1
        metrics.record_forward(True, time.monotonic() - start_time)
        logger.debug(f"Forwarded {item.get('source_url')} to webhook")

    async def close(self) -> None:
        if self.forwarder:
            await self.forwarder.close()
        await self.dataset.close()
