"""Prometheus metrics for carscout runs."""

import logging
import time
from typing import Optional

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, Info, write_to_textfile

from carscout.config import settings

logger = logging.getLogger(__name__)

# Application info
app_info = Info("carscout", "carscout application info")
app_info.info({"version": "0.1.0", "name": "carscout"})

# Listing page metrics
listing_pages_total = Counter(
    "listing_pages_total",
    "Total number of listing pages processed",
    ["status"],
)

candidate_links_found = Histogram(
    "candidate_links_found",
    "Candidate detail links found per listing page",
    buckets=[0, 1, 5, 10, 15, 20, 24, 30, 50],
)

# Detail visit metrics
detail_visits_total = Counter(
    "detail_visits_total",
    "Total number of detail page visits",
    ["outcome", "origin"],
)

extraction_race_seconds = Histogram(
    "extraction_race_seconds",
    "Time spent waiting for the structured payload",
    ["winner"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 35.0, 60.0],
)

# Delivery metrics
records_persisted_total = Counter(
    "records_persisted_total",
    "Total number of records appended to the dataset",
    ["origin"],
)

forwards_total = Counter(
    "forwards_total",
    "Total number of downstream forward attempts",
    ["status"],
)

forward_latency_seconds = Histogram(
    "forward_latency_seconds",
    "Downstream forward request latency",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

# Run / cursor metrics
runs_total = Counter(
    "runs_total",
    "Total number of engine runs",
    ["status"],
)

cursor_next_page = Gauge(
    "cursor_next_page",
    "Next page recorded in the stored cursor",
)

run_last_timestamp = Gauge(
    "run_last_timestamp",
    "Timestamp of the last finished run",
)

run_lock_events_total = Counter(
    "run_lock_events_total",
    "Run lock acquire/skip/release events",
    ["event"],
)


def record_listing_page(status: str, links_found: int):
    """Record a processed listing page."""
    listing_pages_total.labels(status=status).inc()
    candidate_links_found.observe(links_found)


def record_detail_visit(outcome: str, origin: Optional[str]):
    """Record the outcome of one detail page visit."""
    detail_visits_total.labels(outcome=outcome, origin=origin or "none").inc()


def record_race(winner: str, duration: float):
    """Record how long the extraction race took and which side won."""
    extraction_race_seconds.labels(winner=winner).observe(duration)


def record_persisted(origin: str):
    records_persisted_total.labels(origin=origin).inc()


def record_forward(success: bool, duration: Optional[float] = None):
    """Record a downstream forward attempt."""
    status = "success" if success else "error"
    forwards_total.labels(status=status).inc()
    if duration is not None:
        forward_latency_seconds.observe(duration)


def record_run(status: str, next_page: Optional[int] = None):
    """Record a finished run and the cursor it left behind."""
    runs_total.labels(status=status).inc()
    run_last_timestamp.set(time.time())
    if next_page is not None:
        cursor_next_page.set(next_page)


def record_run_lock(event: str):
    run_lock_events_total.labels(event=event).inc()


def write_metrics(path: Optional[str] = None) -> bool:
    """Write the registry to a node-exporter textfile, if configured."""
    target = path or settings.metrics_textfile
    if not target:
        return False
    try:
        write_to_textfile(target, REGISTRY)
        return True
    except OSError as e:
        logger.warning(f"Failed to write metrics textfile {target}: {e}")
        return False
