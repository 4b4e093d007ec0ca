"""Canonical record and outcome types produced by the extraction engine."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


RECORD_TYPE = "car_listing"


class ExtractionOrigin(str, Enum):
    """Which source a record was primarily built from."""

    STRUCTURED = "structured"  # Intercepted JSON payload
    RENDERED = "rendered"  # Evaluated against the rendered document


class OutcomeStatus(str, Enum):
    """Tagged result of one detail page visit."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Record:
    """A normalized listing, immutable once resolved."""

    identifier: Optional[str]
    title: Optional[str]
    source_url: str
    page_number: int
    extraction_origin: ExtractionOrigin
    price_numeric: Optional[float] = None
    price_display: Optional[str] = None
    year: Optional[int] = None
    make: Optional[str] = None
    model: Optional[str] = None
    trim: Optional[str] = None
    mileage_numeric: Optional[float] = None
    mileage_display: Optional[str] = None
    seller_name: Optional[str] = None
    seller_location: Optional[str] = None
    rating_label: Optional[str] = None
    category: Optional[str] = None
    search_location: Optional[str] = None
    backfilled_fields: Tuple[str, ...] = ()
    extracted_at: datetime = field(default_factory=_utcnow)

    @property
    def is_valid(self) -> bool:
        """A record is deliverable only with an identifier or a title."""
        return bool(self.identifier) or bool(self.title)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-serializable representation."""
        data = asdict(self)
        data["extraction_origin"] = self.extraction_origin.value
        data["backfilled_fields"] = list(self.backfilled_fields)
        data["extracted_at"] = self.extracted_at.isoformat()
        return data


@dataclass(frozen=True)
class ExtractionOutcome:
    """Result of resolving one detail page."""

    status: OutcomeStatus
    url: str
    record: Optional[Record] = None
    reason: Optional[str] = None
    error: Optional[BaseException] = None

    @classmethod
    def success(cls, record: Record) -> "ExtractionOutcome":
        return cls(status=OutcomeStatus.SUCCESS, url=record.source_url, record=record)

    @classmethod
    def skipped(cls, url: str, reason: str) -> "ExtractionOutcome":
        return cls(status=OutcomeStatus.SKIPPED, url=url, reason=reason)

    @classmethod
    def failed(cls, url: str, error: BaseException) -> "ExtractionOutcome":
        return cls(status=OutcomeStatus.FAILED, url=url, error=error, reason=str(error))

    @property
    def origin(self) -> Optional[ExtractionOrigin]:
        return self.record.extraction_origin if self.record else None


@dataclass
class PageVisitResult:
    """Outcomes for every candidate link visited on one listing page."""

    page_number: int
    links_found: int
    outcomes: list[ExtractionOutcome] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.SUCCESS)

    @property
    def skipped_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.SKIPPED)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.status == OutcomeStatus.FAILED)
