"""Tests for structured/rendered record resolution."""

import pytest

from carscout.ingest.models import ExtractionOrigin
from carscout.ingest.record_resolver import (
    RecordSourceResolver,
    fields_from_rendered,
    fields_from_structured,
    needs_backfill,
    parse_numeric,
    parse_year,
    resolve_identifier,
)

URL = "https://cars.test/vdp.action?id=1"


class TestParsing:
    """Tests for numeric parsing helpers."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (45990, 45990.0),
            ("$45,990", 45990.0),
            ("82,000 km", 82000.0),
            ("n/a", None),
            (None, None),
            (True, None),
        ],
    )
    def test_parse_numeric(self, value, expected):
        assert parse_numeric(value) == expected

    def test_parse_year_rejects_out_of_range(self):
        assert parse_year("2021") == 2021
        assert parse_year(52000) is None


class TestIdentifier:
    """Tests for VIN-equivalent resolution."""

    def test_dedicated_field_wins(self):
        specs = [{"displayName": "VIN", "displayValue": "FROM_SPECS"}]
        assert resolve_identifier("DIRECT", specs, "displayName", "displayValue") == "DIRECT"

    def test_falls_back_to_specifications_case_insensitive(self):
        specs = [
            {"displayName": "Engine", "displayValue": "2.0L"},
            {"displayName": " vIn ", "displayValue": "FROM_SPECS"},
        ]
        assert resolve_identifier(None, specs, "displayName", "displayValue") == "FROM_SPECS"

    def test_missing_everywhere(self):
        assert resolve_identifier("", [{"label": "Color", "value": "Red"}], "label", "value") is None
        assert resolve_identifier(None, None, "label", "value") is None


class TestFieldMapping:
    """Tests for the per-source field maps."""

    def test_structured_fields(self, payload_factory):
        fields = fields_from_structured(payload_factory())

        assert fields["identifier"] == "1FMSK8DH5MGA00001"
        assert fields["title"] == "2021 Ford Explorer XLT"
        assert fields["price_numeric"] == 45990.0
        assert fields["price_display"] == "$45,990"
        assert fields["year"] == 2021
        assert fields["mileage_numeric"] == 52000.0
        assert fields["seller_location"] == "Laval, QC"
        assert fields["rating_label"] == "Good Deal"
        assert not needs_backfill(fields)

    def test_structured_price_falls_back_to_listed_price(self, payload_factory):
        payload = payload_factory(expectedPrice=None, price=39000, expectedPriceString="", priceString="$39,000")
        fields = fields_from_structured(payload)

        assert fields["price_numeric"] == 39000.0
        assert fields["price_display"] == "$39,000"

    def test_structured_without_listing_is_empty(self):
        assert fields_from_structured({"other": 1}) == {}
        assert fields_from_structured(None) == {}
        assert needs_backfill({})

    def test_rendered_fields(self, snapshot_factory):
        fields = fields_from_rendered(snapshot_factory())

        assert fields["identifier"] == "2T3W1RFV5LC000002"
        assert fields["title"] == "2020 Toyota RAV4 LE"
        assert fields["price_numeric"] == 31000.0
        assert fields["mileage_numeric"] == 40000.0
        assert fields["mileage_display"] == "40,000 km"
        assert fields["seller_name"] == "Toronto Toyota"


class TestRecordSourceResolver:
    """Tests for merging both sources into one Record."""

    def test_structured_only(self, payload_factory):
        record = RecordSourceResolver("H3H").resolve(URL, 3, payload=payload_factory())

        assert record.extraction_origin == ExtractionOrigin.STRUCTURED
        assert record.identifier == "1FMSK8DH5MGA00001"
        assert record.page_number == 3
        assert record.search_location == "H3H"
        assert record.backfilled_fields == ()
        assert record.is_valid

    def test_rendered_only(self, snapshot_factory):
        record = RecordSourceResolver().resolve(URL, 1, snapshot=snapshot_factory())

        assert record.extraction_origin == ExtractionOrigin.RENDERED
        assert record.title == "2020 Toyota RAV4 LE"
        assert record.backfilled_fields == ()

    def test_structured_fields_take_precedence_field_by_field(self, payload_factory, snapshot_factory):
        payload = payload_factory(vin=None, sellerName=None)
        record = RecordSourceResolver().resolve(URL, 1, payload=payload, snapshot=snapshot_factory())

        assert record.extraction_origin == ExtractionOrigin.STRUCTURED
        # Gaps are filled from the rendered document
        assert record.identifier == "2T3W1RFV5LC000002"
        assert record.seller_name == "Toronto Toyota"
        assert set(record.backfilled_fields) == {"identifier", "seller_name"}
        # Present structured values are never overwritten
        assert record.title == "2021 Ford Explorer XLT"
        assert record.price_numeric == 45990.0

    def test_nothing_resolved_is_invalid(self):
        record = RecordSourceResolver().resolve(
            URL, 1, payload=None, snapshot={"heading": "", "preflight": {}}
        )

        assert record.identifier is None
        assert record.title is None
        assert not record.is_valid

    def test_record_to_dict_is_serializable(self, payload_factory):
        data = RecordSourceResolver().resolve(URL, 2, payload=payload_factory()).to_dict()

        assert data["extraction_origin"] == "structured"
        assert data["backfilled_fields"] == []
        assert isinstance(data["extracted_at"], str)
