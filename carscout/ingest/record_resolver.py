"""Normalize structured payloads and rendered-document snapshots into Records.

Two sources describe the same listing:

- the structured payload intercepted from the detail JSON endpoint
  (``{"listing": {...}}``), and
- a snapshot evaluated against the rendered detail page
  (``{"heading": ..., "preflight": {...}, "url": ...}``).

Each source is mapped into a flat field dict independently. The structured
fields take precedence one by one; the rendered fields only fill gaps.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional

from carscout.ingest.models import ExtractionOrigin, Record

logger = logging.getLogger(__name__)

IDENTIFIER_LABEL = "vin"

# Record fields that either source may provide
SOURCE_FIELDS = (
    "identifier",
    "title",
    "price_numeric",
    "price_display",
    "year",
    "make",
    "model",
    "trim",
    "mileage_numeric",
    "mileage_display",
    "seller_name",
    "seller_location",
    "rating_label",
    "category",
)

# Fields whose absence in a structured payload triggers a rendered-document backfill
BACKFILL_FIELDS = SOURCE_FIELDS

_NUMBER_RE = re.compile(r"-?\d[\d,]*(?:\.\d+)?")


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _first(*values: Any) -> Any:
    """Return the first non-empty value (mirrors a chain of ``a || b``)."""
    for value in values:
        if not _is_empty(value) and value is not False and value != 0:
            return value
    return None


def _clean_text(value: Any) -> Optional[str]:
    if _is_empty(value):
        return None
    return str(value).strip()


def parse_numeric(value: Any) -> Optional[float]:
    """
    Parse a price or mileage into a number.

    Accepts numbers as-is and display strings such as ``"$45,990"`` or
    ``"82,000 km"``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    match = _NUMBER_RE.search(str(value))
    if not match:
        return None
    try:
        return float(match.group(0).replace(",", ""))
    except ValueError:
        return None


def parse_year(value: Any) -> Optional[int]:
    number = parse_numeric(value)
    if number is None:
        return None
    year = int(number)
    return year if 1900 <= year <= 2100 else None


def resolve_identifier(
    primary: Any,
    specifications: Optional[Iterable[Any]],
    label_key: str,
    value_key: str,
    label: str = IDENTIFIER_LABEL,
) -> Optional[str]:
    """
    Resolve the VIN-equivalent identifier.

    Checks the dedicated field first, then scans the specifications list for
    an entry whose label matches case-insensitively and returns its value.
    """
    identifier = _clean_text(primary)
    if identifier:
        return identifier

    for spec in specifications or []:
        if not isinstance(spec, dict):
            continue
        spec_label = spec.get(label_key)
        if isinstance(spec_label, str) and spec_label.strip().lower() == label:
            return _clean_text(spec.get(value_key))
    return None


def _compose_title(*parts: Any) -> Optional[str]:
    words = [str(p).strip() for p in parts if not _is_empty(p)]
    return " ".join(words) or None


def fields_from_structured(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Map the intercepted detail JSON into record fields."""
    if not isinstance(payload, dict):
        return {}
    listing = payload.get("listing")
    if not isinstance(listing, dict):
        return {}

    price = _first(listing.get("expectedPrice"), listing.get("price"))
    mileage = listing.get("mileage")

    return {
        "identifier": resolve_identifier(
            listing.get("vin"),
            listing.get("specifications"),
            label_key="displayName",
            value_key="displayValue",
        ),
        "title": _compose_title(
            listing.get("modelYear"),
            listing.get("makeName"),
            listing.get("modelName"),
            listing.get("trimName"),
        ),
        "price_numeric": parse_numeric(price),
        "price_display": _clean_text(
            _first(listing.get("expectedPriceString"), listing.get("priceString"))
        ),
        "year": parse_year(listing.get("modelYear")),
        "make": _clean_text(listing.get("makeName")),
        "model": _clean_text(listing.get("modelName")),
        "trim": _clean_text(listing.get("trimName")),
        "mileage_numeric": parse_numeric(mileage),
        "mileage_display": _clean_text(listing.get("mileageString")),
        "seller_name": _clean_text(listing.get("sellerName")),
        "seller_location": _clean_text(listing.get("sellerCity")),
        "rating_label": _clean_text(listing.get("dealBadgeText")),
        "category": _clean_text(listing.get("bodyType")),
    }


def fields_from_rendered(snapshot: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Map a rendered-document snapshot into record fields."""
    if not isinstance(snapshot, dict):
        return {}
    preflight = snapshot.get("preflight") or {}
    if not isinstance(preflight, dict):
        preflight = {}
    listing = preflight.get("listing") or {}
    if not isinstance(listing, dict):
        listing = {}

    price = _first(preflight.get("listingPriceValue"), listing.get("price"))
    price_display = _first(preflight.get("listingPriceString"), listing.get("priceString"))
    mileage = _first(listing.get("mileage"), listing.get("odometer"))

    return {
        "identifier": resolve_identifier(
            listing.get("vin"),
            listing.get("specs"),
            label_key="label",
            value_key="value",
        ),
        "title": _clean_text(_first(snapshot.get("heading"), preflight.get("listingTitle"))),
        "price_numeric": parse_numeric(_first(price, price_display)),
        "price_display": _clean_text(price_display),
        "year": parse_year(_first(listing.get("year"), preflight.get("listingYear"))),
        "make": _clean_text(_first(listing.get("make"), preflight.get("listingMake"))),
        "model": _clean_text(_first(listing.get("model"), preflight.get("listingModel"))),
        "trim": _clean_text(listing.get("trim")),
        "mileage_numeric": parse_numeric(mileage),
        "mileage_display": _clean_text(mileage) if isinstance(mileage, str) else None,
        "seller_name": _clean_text(
            _first(listing.get("dealerName"), preflight.get("listingSellerName"))
        ),
        "seller_location": _clean_text(
            _first(listing.get("dealerCity"), preflight.get("listingSellerCity"))
        ),
        "rating_label": _clean_text(_first(listing.get("dealRating"), listing.get("dealBadge"))),
        "category": _clean_text(listing.get("bodyType")),
    }


def missing_fields(values: Dict[str, Any], candidates: Iterable[str] = BACKFILL_FIELDS) -> List[str]:
    """Names of candidate fields absent from a mapped field dict."""
    return [name for name in candidates if _is_empty(values.get(name))]


def needs_backfill(structured: Dict[str, Any]) -> bool:
    """True when the rendered document should be consulted for gaps."""
    return not structured or bool(missing_fields(structured))


class RecordSourceResolver:
    """Builds a Record from whichever sources a detail page produced."""

    def __init__(self, search_location: Optional[str] = None):
        self.search_location = search_location

    def resolve(
        self,
        url: str,
        page_number: int,
        payload: Optional[Dict[str, Any]] = None,
        snapshot: Optional[Dict[str, Any]] = None,
    ) -> Record:
        """
        Merge structured and rendered fields into one Record.

        Args:
            url: Detail page URL the record came from
            page_number: Listing page the link was found on
            payload: Intercepted structured payload, if the race produced one
            snapshot: Rendered-document snapshot, if it was evaluated

        Returns:
            Record whose origin is structured whenever the payload had a listing
        """
        structured = fields_from_structured(payload)
        rendered = fields_from_rendered(snapshot)

        merged: Dict[str, Any] = {}
        backfilled: List[str] = []
        for name in SOURCE_FIELDS:
            value = structured.get(name)
            if _is_empty(value):
                fallback = rendered.get(name)
                if not _is_empty(fallback):
                    value = fallback
                    if structured:
                        backfilled.append(name)
            merged[name] = value

        origin = ExtractionOrigin.STRUCTURED if structured else ExtractionOrigin.RENDERED
        if backfilled:
            logger.debug(f"Backfilled {', '.join(backfilled)} from rendered document for {url}")

        return Record(
            source_url=url,
            page_number=page_number,
            extraction_origin=origin,
            search_location=self.search_location,
            backfilled_fields=tuple(backfilled),
            **merged,
        )

