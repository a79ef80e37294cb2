"""Item filter validation and conversion to Podio's filter format."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Final

if TYPE_CHECKING:
    from .models import ItemFilters

logger: logging.Logger = logging.getLogger(__name__)

DATE_FORMAT_HINT: Final[str] = (
    'Expected ISO 8601 format (e.g., "2025-01-01", "2025-01-01 09:30:00", "2025-01-01T09:30:00", '
    '"2025-01-01T09:30:00Z", or "2025-01-01T09:30:00+00:00")'
)

_DATE_RE: Final = re.compile(r"(\d{4})-(\d{2})-(\d{2})")
_DATETIME_RE: Final = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[ T](\d{2}):(\d{2}):(\d{2})(Z|[+-]\d{2}:\d{2})?"
)


@dataclass
class FilterValidationResult:
    errors: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def parse_filter_date(value: str) -> datetime | None:
    """Parse one of the accepted filter date forms into an aware UTC datetime.

    A space separator is only accepted without a zone designator. Naive values
    are taken as UTC. Returns None for anything else, including impossible
    calendar dates such as 2025-02-30.
    """
    text = value.strip()
    if not text:
        return None

    match = _DATE_RE.fullmatch(text)
    if match:
        parts = [int(p) for p in match.groups()]
        try:
            return datetime(parts[0], parts[1], parts[2], tzinfo=UTC)
        except ValueError:
            return None

    match = _DATETIME_RE.fullmatch(text)
    if not match:
        return None
    zone = match.group(7)
    if zone and " " in text:
        return None
    year, month, day, hour, minute, second = (int(p) for p in match.groups()[:6])
    tz: timezone = UTC
    if zone and zone != "Z":
        sign = 1 if zone[0] == "+" else -1
        offset_hours, offset_minutes = int(zone[1:3]), int(zone[4:6])
        if offset_hours > 23 or offset_minutes > 59:
            return None
        tz = timezone(sign * timedelta(hours=offset_hours, minutes=offset_minutes))
    try:
        return datetime(year, month, day, hour, minute, second, tzinfo=tz).astimezone(UTC)
    except ValueError:
        return None


def _provided(value: object) -> bool:
    return value is not None and str(value).strip() != ""


def validate_date_range(name: str, from_value: object, to_value: object) -> list[str]:
    errors: list[str] = []
    parsed: dict[str, datetime] = {}
    for suffix, value in (("From", from_value), ("To", to_value)):
        if not _provided(value):
            continue
        result = parse_filter_date(value) if isinstance(value, str) else None
        if result is None:
            errors.append(f'Invalid {name}{suffix} date format: "{value}". {DATE_FORMAT_HINT}')
        else:
            parsed[suffix] = result
    if "From" in parsed and "To" in parsed and parsed["From"] > parsed["To"]:
        errors.append(f"Invalid {name} date range: {name}From must be before or equal to {name}To")
    return errors


def validate_filters(filters: ItemFilters | None) -> FilterValidationResult:
    """Check date formats, date range order, and tags."""
    result = FilterValidationResult()
    if filters is None:
        return result

    result.errors.extend(validate_date_range("created", filters.created_from, filters.created_to))
    result.errors.extend(validate_date_range("lastEdit", filters.last_edit_from, filters.last_edit_to))

    if filters.tags and any(not isinstance(tag, str) or not tag.strip() for tag in filters.tags):
        result.errors.append("Invalid tags found: tags must be non-empty strings")
    return result


def _date_range(from_value: str | None, to_value: str | None) -> dict[str, str] | None:
    from_value = (from_value or "").strip()
    to_value = (to_value or "").strip()
    if not from_value and not to_value:
        return None
    date_range: dict[str, str] = {}
    if from_value:
        date_range["from"] = from_value
    if to_value:
        date_range["to"] = to_value
    return date_range


def convert_filters(filters: ItemFilters | None) -> dict[str, Any]:
    """Convert user filters to the ``filters`` object of ``POST /item/app/{id}/filter/``.

    ``created_from``/``created_to`` become ``created_on: {from, to}``,
    ``last_edit_from``/``last_edit_to`` become ``last_event_on: {from, to}``.
    Partial ranges are kept partial; blank tags are dropped.
    """
    if filters is None:
        return {}

    podio_filters: dict[str, Any] = {}
    created_on = _date_range(filters.created_from, filters.created_to)
    if created_on:
        podio_filters["created_on"] = created_on
    last_event_on = _date_range(filters.last_edit_from, filters.last_edit_to)
    if last_event_on:
        podio_filters["last_event_on"] = last_event_on
    tags = [tag.strip() for tag in filters.tags if isinstance(tag, str) and tag.strip()]
    if tags:
        podio_filters["tags"] = tags

    if podio_filters:
        logger.debug(f"Converted item filters: {podio_filters}")
    return podio_filters
