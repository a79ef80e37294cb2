"""Match-value normalization and the target-app prefetch cache.

Two items "match" when their normalized values are equal. Normalization is
what makes ``"  ACME Corp "`` equal ``"acme corp"`` and ``"123.5000"`` (how
Podio serializes numbers) equal ``124``.
"""

from __future__ import annotations

import json
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation, localcontext
from typing import TYPE_CHECKING, Any, Final

from . import items as item_api
from .field_values import extract_field_value

if TYPE_CHECKING:
    from .field_values import FieldValue
    from .http_client import PodioHttpClient
    from .models import PodioItem

logger: logging.Logger = logging.getLogger(__name__)

EMPTY: Final[str] = ""
LIST_DELIMITER: Final[str] = "||"
DEFAULT_CACHE_TTL_SECONDS: Final[float] = 30 * 60
# Numbers this wide keep their canonical text instead of being expanded digit by digit
MAX_INTEGER_DIGITS: Final[int] = 4300


def _round_half_away_from_zero(number: Decimal) -> str:
    if number.adjusted() >= MAX_INTEGER_DIGITS:
        return str(number).lower()
    with localcontext() as ctx:
        # quantize needs room for every integer digit plus the rounding carry
        ctx.prec = max(ctx.prec, number.adjusted() + 2)
        # Decimal's ROUND_HALF_UP rounds ties away from zero for both signs
        rounded = number.quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return EMPTY if rounded == 0 else str(rounded)


def _as_decimal(text: str) -> Decimal | None:
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def normalize_value(value: Any) -> str:
    """Normalize a match value to a comparable string.

    - None, "", 0 and False are empty (``EMPTY``) and never match anything.
    - Numbers and numeric strings round half away from zero to an integer
      string; a value rounding to 0 is empty like 0 itself.
    - Other strings are trimmed and lower-cased.
    - Lists drop empty members, then are sorted and joined with ``||``.
    - Dicts reduce to their ``item_id``/``profile_id``/``user_id``/``value``.
    """
    if value is None or value is False or value == "":
        return EMPTY
    if value is True:
        return "true"
    if isinstance(value, (list, tuple)):
        members = sorted(m for m in (normalize_value(v) for v in value) if m != EMPTY)
        return LIST_DELIMITER.join(members)
    if isinstance(value, dict):
        for key in ("item_id", "profile_id", "user_id"):
            if key in value:
                return str(value[key])
        if "value" in value:
            return normalize_value(value["value"])
        return json.dumps(value, sort_keys=True, default=str)
    if isinstance(value, int):
        return EMPTY if value == 0 else str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return str(value).lower()
        return _round_half_away_from_zero(Decimal(repr(value)))
    if isinstance(value, Decimal):
        return _round_half_away_from_zero(value) if value.is_finite() else str(value).lower()
    if isinstance(value, str):
        trimmed = value.strip()
        number = _as_decimal(trimmed)
        if number is not None:
            return _round_half_away_from_zero(number)
        return trimmed.lower()
    return str(value).strip().lower()


def normalize_field_value(value: FieldValue | None) -> str:
    if value is None:
        return EMPTY
    return normalize_value(value.match_value())


def item_match_key(item: PodioItem, field_external_id: str) -> str:
    """Normalized value of one field of an item (``EMPTY`` if missing)."""
    return normalize_field_value(item.field_value(field_external_id))


@dataclass
class CacheStats:
    total_items: int = 0
    unique_keys: int = 0
    duplicate_keys: int = 0
    hits: int = 0
    misses: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


@dataclass
class _Entry:
    items: list[PodioItem]
    created_at: float


@dataclass
class PrefetchCache:
    """Target items indexed by normalized match value.

    Built once per job by streaming the target app, so every source item can
    be matched without a filter request of its own. Entries expire after
    ``ttl`` seconds; an expired entry counts as a miss.
    """

    ttl: float = DEFAULT_CACHE_TTL_SECONDS
    clock: Callable[[], float] = time.monotonic
    match_field: str = ""
    stats: CacheStats = field(default_factory=CacheStats)
    prefetched_at: float | None = None
    _entries: dict[str, _Entry] = field(default_factory=dict)

    def prefetch(self, client: PodioHttpClient, app_id: int, match_field: str) -> None:
        logger.info(f"Pre-fetching items of app {app_id} keyed on '{match_field}'")
        started = time.monotonic()
        self.match_field = match_field
        self._entries.clear()
        self.stats = CacheStats()
        for item in item_api.stream_items(client, app_id):
            self.stats.total_items += 1
            self.add(item)
        logger.info(
            f"Pre-fetch of app {app_id} complete: {self.stats.total_items} items, "
            f"{self.stats.unique_keys} unique keys, {self.stats.duplicate_keys} duplicated keys "
            f"in {time.monotonic() - started:.1f}s"
        )
        self.prefetched_at = self.clock()

    def add(self, item: PodioItem, key: str | None = None) -> None:
        """Index ``item`` under its match key (or ``key`` if given). Empty keys are not indexed."""
        if key is None:
            raw = item.get_field(self.match_field)
            key = normalize_field_value(extract_field_value(raw)) if raw else EMPTY
        if key == EMPTY:
            return
        entry = self._entries.get(key)
        if entry is None:
            self._entries[key] = _Entry(items=[item], created_at=self.clock())
            self.stats.unique_keys += 1
            return
        if len(entry.items) == 1:
            self.stats.duplicate_keys += 1
        entry.items.append(item)

    def lookup(self, value: Any) -> PodioItem | None:
        """First target item whose match value equals ``value`` after normalization."""
        return self.lookup_key(normalize_value(value))

    def lookup_key(self, key: str) -> PodioItem | None:
        if key == EMPTY:
            self.stats.misses += 1
            return None
        entry = self._entries.get(key)
        if entry is None:
            self.stats.misses += 1
            return None
        if self.clock() - entry.created_at > self.ttl:
            del self._entries[key]
            self.stats.misses += 1
            logger.debug(f"Prefetch cache entry for {key!r} expired")
            return None
        self.stats.hits += 1
        return entry.items[0]

    def is_duplicate(self, value: Any) -> bool:
        return self.lookup(value) is not None

    def is_expired(self) -> bool:
        """Whether the prefetched snapshot is older than the TTL (or was never taken)."""
        return self.prefetched_at is None or self.clock() - self.prefetched_at > self.ttl

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
        self.stats = CacheStats()
