"""Typed Podio field values.

Podio returns every item field as ``{"external_id", "type", "values": [...]}``
where the shape of each entry in ``values`` depends on the field type. This
module turns that loose structure into one small frozen dataclass per field
type. Each variant knows two things:

- ``to_payload()``: the shape Podio accepts when the value is written to an
  item (``POST /item/app/{id}/`` or ``PUT /item/{id}``).
- ``match_value()``: the plain Python value used for duplicate detection and
  match resolution (see ``normalize.normalize_value``).

Calculation fields are read-only as write *targets*, but their computed value
is extracted like any other value so it can be written into a compatible
text or number field of the target app.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, ClassVar

DEFAULT_CURRENCY = "USD"
DEFAULT_PHONE_TYPE = "mobile"
DEFAULT_EMAIL_TYPE = "work"


@dataclass(frozen=True)
class TextValue:
    value: str
    kind: ClassVar[str] = "text"

    def to_payload(self) -> Any:
        return self.value

    def match_value(self) -> Any:
        return self.value


@dataclass(frozen=True)
class NumberValue:
    """Podio serializes numbers as strings such as ``"12.5000"``."""

    value: float | int | str
    kind: ClassVar[str] = "number"

    def to_payload(self) -> Any:
        return self.value

    def match_value(self) -> Any:
        return self.value


@dataclass(frozen=True)
class CalculationValue:
    value: Any
    kind: ClassVar[str] = "calculation"

    def to_payload(self) -> Any:
        return self.value

    def match_value(self) -> Any:
        return self.value


@dataclass(frozen=True)
class DateRangeValue:
    start: str | None
    end: str | None = None
    kind: ClassVar[str] = "date"

    def to_payload(self) -> Any:
        payload: dict[str, str] = {}
        if self.start:
            payload["start"] = self.start
        if self.end:
            payload["end"] = self.end
        return payload

    def match_value(self) -> Any:
        return self.start


@dataclass(frozen=True)
class CategoryValue:
    option_ids: tuple[int, ...]
    kind: ClassVar[str] = "category"

    def to_payload(self) -> Any:
        return list(self.option_ids)

    def match_value(self) -> Any:
        return list(self.option_ids)


@dataclass(frozen=True)
class AppReferenceValue:
    item_ids: tuple[int, ...]
    kind: ClassVar[str] = "app"

    def to_payload(self) -> Any:
        return list(self.item_ids)

    def match_value(self) -> Any:
        return list(self.item_ids)


@dataclass(frozen=True)
class ContactReferenceValue:
    profile_ids: tuple[int, ...]
    kind: ClassVar[str] = "contact"

    def to_payload(self) -> Any:
        return list(self.profile_ids)

    def match_value(self) -> Any:
        return list(self.profile_ids)


@dataclass(frozen=True)
class MoneyValue:
    amount: Any
    currency: str = DEFAULT_CURRENCY
    kind: ClassVar[str] = "money"

    def to_payload(self) -> Any:
        return {"value": self.amount, "currency": self.currency}

    def match_value(self) -> Any:
        return self.amount


@dataclass(frozen=True)
class TypedEntry:
    """One phone number or e-mail address with its Podio sub-type."""

    type: str
    value: str


@dataclass(frozen=True)
class PhoneValue:
    entries: tuple[TypedEntry, ...]
    kind: ClassVar[str] = "phone"

    def to_payload(self) -> Any:
        return [{"type": e.type, "value": e.value} for e in self.entries]

    def match_value(self) -> Any:
        return [e.value for e in self.entries]


@dataclass(frozen=True)
class EmailValue:
    entries: tuple[TypedEntry, ...]
    kind: ClassVar[str] = "email"

    def to_payload(self) -> Any:
        return [{"type": e.type, "value": e.value} for e in self.entries]

    def match_value(self) -> Any:
        return [e.value for e in self.entries]


@dataclass(frozen=True)
class RawValue:
    """Any other field type (location, duration, question, link, ...)."""

    field_type: str
    value: Any
    kind: ClassVar[str] = "raw"

    def to_payload(self) -> Any:
        return self.value

    def match_value(self) -> Any:
        return self.value


FieldValue = (
    TextValue
    | NumberValue
    | CalculationValue
    | DateRangeValue
    | CategoryValue
    | AppReferenceValue
    | ContactReferenceValue
    | MoneyValue
    | PhoneValue
    | EmailValue
    | RawValue
)


def _nested(value: Any, key: str) -> Any:
    if isinstance(value, dict):
        return value.get(key)
    return value


def _entries(values: list[dict[str, Any]], default_type: str) -> tuple[TypedEntry, ...]:
    entries = []
    for v in values:
        raw = v.get("value")
        text = raw if isinstance(raw, str) else str(raw or "")
        entries.append(TypedEntry(type=v.get("type") or default_type, value=text))
    return tuple(entries)


def _money(values: list[dict[str, Any]]) -> MoneyValue:
    first = values[0]
    raw = first.get("value")
    amount = raw.get("value") if isinstance(raw, dict) else raw
    currency = first.get("currency") or (raw.get("currency") if isinstance(raw, dict) else None)
    return MoneyValue(amount=amount, currency=currency or DEFAULT_CURRENCY)


def _ids(values: list[dict[str, Any]], *keys: str) -> tuple[int, ...]:
    ids = []
    for v in values:
        ref = v.get("value")
        for key in keys:
            found = _nested(ref, key)
            if found:
                ids.append(found)
                break
    return tuple(ids)


_EXTRACTORS: dict[str, Callable[[list[dict[str, Any]]], FieldValue]] = {
    "text": lambda vs: TextValue(vs[0].get("value")),
    "number": lambda vs: NumberValue(vs[0].get("value")),
    "calculation": lambda vs: CalculationValue(vs[0].get("value")),
    "date": lambda vs: DateRangeValue(start=vs[0].get("start"), end=vs[0].get("end")),
    "category": lambda vs: CategoryValue(_ids(vs, "id")),
    "app": lambda vs: AppReferenceValue(_ids(vs, "item_id")),
    "contact": lambda vs: ContactReferenceValue(_ids(vs, "profile_id", "user_id")),
    "money": _money,
    "phone": lambda vs: PhoneValue(_entries(vs, DEFAULT_PHONE_TYPE)),
    "tel": lambda vs: PhoneValue(_entries(vs, DEFAULT_PHONE_TYPE)),
    "email": lambda vs: EmailValue(_entries(vs, DEFAULT_EMAIL_TYPE)),
}


def extract_field_value(field: dict[str, Any]) -> FieldValue | None:
    """Extract the typed value of one item field.

    Args:
        field: A field entry from a Podio item (``item["fields"][n]``)

    Returns:
        The typed value, or None when the field carries no values.
    """
    values = field.get("values") or []
    if not values:
        return None
    field_type = field.get("type", "")
    extractor = _EXTRACTORS.get(field_type)
    if extractor is None:
        return RawValue(field_type=field_type, value=values[0].get("value"))
    return extractor(values)
