from datetime import UTC, datetime

import pytest

from podio_migrator.filters import convert_filters, parse_filter_date, validate_filters
from podio_migrator.models import ItemFilters


@pytest.mark.unit
class TestParseFilterDate:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("2025-01-01", datetime(2025, 1, 1, tzinfo=UTC)),
            ("2025-01-01 09:30:00", datetime(2025, 1, 1, 9, 30, tzinfo=UTC)),
            ("2025-01-01T09:30:00", datetime(2025, 1, 1, 9, 30, tzinfo=UTC)),
            ("2025-01-01T09:30:00Z", datetime(2025, 1, 1, 9, 30, tzinfo=UTC)),
            ("2025-01-01T09:30:00+02:00", datetime(2025, 1, 1, 7, 30, tzinfo=UTC)),
        ],
    )
    def test_accepted_forms(self, value: str, expected: datetime) -> None:
        assert parse_filter_date(value) == expected

    @pytest.mark.parametrize(
        "value",
        ["2025-02-30", "2025-13-01", "01/02/2025", "2025-01-01 09:30:00Z", "2025-01-01T25:00:00", "yesterday", ""],
    )
    def test_rejected_forms(self, value: str) -> None:
        assert parse_filter_date(value) is None


@pytest.mark.unit
class TestValidateFilters:
    def test_none_and_empty_are_valid(self) -> None:
        assert validate_filters(None).valid
        assert validate_filters(ItemFilters()).valid

    def test_invalid_format_names_the_field(self) -> None:
        result = validate_filters(ItemFilters(created_from="2025/01/01"))
        assert not result.valid
        assert result.errors[0].startswith('Invalid createdFrom date format: "2025/01/01"')

    def test_reversed_range(self) -> None:
        result = validate_filters(ItemFilters(last_edit_from="2025-02-01", last_edit_to="2025-01-01"))
        assert result.errors == ["Invalid lastEdit date range: lastEditFrom must be before or equal to lastEditTo"]

    def test_equal_bounds_are_valid(self) -> None:
        assert validate_filters(ItemFilters(created_from="2025-01-01", created_to="2025-01-01")).valid

    def test_blank_tags_are_rejected(self) -> None:
        result = validate_filters(ItemFilters(tags=["ok", "  "]))
        assert result.errors == ["Invalid tags found: tags must be non-empty strings"]


@pytest.mark.unit
class TestConvertFilters:
    def test_full_conversion(self) -> None:
        filters = ItemFilters(
            created_from="2025-01-01",
            created_to="2025-01-31",
            last_edit_from="2025-02-01",
            tags=[" vip ", "", "lead"],
        )
        assert convert_filters(filters) == {
            "created_on": {"from": "2025-01-01", "to": "2025-01-31"},
            "last_event_on": {"from": "2025-02-01"},
            "tags": ["vip", "lead"],
        }

    def test_empty(self) -> None:
        assert convert_filters(None) == {}
        assert convert_filters(ItemFilters(created_from="  ")) == {}
