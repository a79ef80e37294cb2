"""Tracks Podio's rate-limit quota from response headers.

Podio reports its quota on every response through ``X-Rate-Limit-Limit``,
``X-Rate-Limit-Remaining`` and ``X-Rate-Limit-Reset``. The tracker is a
passive state holder: the gateway feeds it headers, and the retry policy and
batch processor read it to decide whether to pause. Updates that fail
validation are rejected and the previous state is kept.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Final

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_MAX_WAIT_SECONDS: Final[float] = 3600.0
LOW_QUOTA_WARNING: Final[int] = 20
DEFAULT_PAUSE_THRESHOLD: Final[int] = 10

LIMIT_HEADER: Final[str] = "x-rate-limit-limit"
REMAINING_HEADER: Final[str] = "x-rate-limit-remaining"
RESET_HEADER: Final[str] = "x-rate-limit-reset"


@dataclass(frozen=True)
class RateLimitState:
    limit: int
    remaining: int
    reset_at: datetime
    last_updated: datetime


def _parse_int(value: object) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def parse_reset(value: object) -> datetime | None:
    """Parse a reset header: ISO-8601 timestamp or epoch seconds."""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.isdigit():
        return datetime.fromtimestamp(int(text), UTC)
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class RateLimitTracker:
    """Process-wide view of the remaining request quota.

    Reads are lock-free; concurrent updates only ever make the state slightly
    stale since every response carries a full snapshot.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._state: RateLimitState | None = None
        self._listeners: list[Callable[[RateLimitState], None]] = []
        self._listeners_lock = threading.Lock()
        self._clock = clock
        self._sleep = sleep

    @property
    def state(self) -> RateLimitState | None:
        return self._state

    def update_from_headers(self, headers: Mapping[str, str]) -> bool:
        """Update from a response's headers.

        Responses without any rate-limit headers are ignored silently.

        Returns:
            True if the state was updated.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        if LIMIT_HEADER not in lowered and REMAINING_HEADER not in lowered:
            return False
        return self.update(lowered.get(LIMIT_HEADER), lowered.get(REMAINING_HEADER), lowered.get(RESET_HEADER))

    def update(self, limit: object, remaining: object, reset: object) -> bool:
        limit_value = _parse_int(limit)
        if limit_value is None or limit_value < 0:
            logger.warning(f"Invalid rate limit value received, skipping update: {limit!r}")
            return False
        remaining_value = _parse_int(remaining)
        if remaining_value is None or remaining_value < 0:
            logger.warning(f"Invalid remaining value received, skipping update: {remaining!r}")
            return False
        reset_at = parse_reset(reset)
        if reset_at is None:
            logger.warning(f"Invalid reset timestamp received, skipping update: {reset!r}")
            return False

        previous = self._state
        state = RateLimitState(
            limit=limit_value,
            remaining=remaining_value,
            reset_at=reset_at,
            last_updated=datetime.fromtimestamp(self._clock(), UTC),
        )
        self._state = state

        if previous is None or remaining_value < previous.remaining:
            logger.debug(f"Rate limit quota: {remaining_value}/{limit_value} remaining")
        if 0 < remaining_value < LOW_QUOTA_WARNING:
            logger.warning(f"Approaching rate limit: {remaining_value}/{limit_value} requests remaining")

        self._notify(state)
        return True

    def mark_exhausted(self, wait_seconds: float) -> None:
        """Record a rate-limit rejection: zero remaining until ``wait_seconds`` from now.

        Only applies when a limit is already known.
        """
        if self._state is None:
            return
        reset_at = datetime.fromtimestamp(self._clock() + wait_seconds, UTC)
        self.update(self._state.limit, 0, reset_at.isoformat())

    @property
    def remaining(self) -> int | None:
        return self._state.remaining if self._state else None

    @property
    def limit(self) -> int | None:
        return self._state.limit if self._state else None

    def should_pause(self, threshold: int = DEFAULT_PAUSE_THRESHOLD) -> bool:
        if self._state is None:
            return False
        return self._state.remaining < threshold

    def get_time_until_reset(self) -> float:
        """Seconds until the quota resets, never negative. 0 without state."""
        if self._state is None:
            return 0.0
        return max(0.0, self._state.reset_at.timestamp() - self._clock())

    def wait_for_reset(self, max_wait: float = DEFAULT_MAX_WAIT_SECONDS) -> float:
        """Block until the quota resets, but never longer than ``max_wait`` seconds.

        Returns:
            The number of seconds waited.
        """
        time_until_reset = self.get_time_until_reset()
        if time_until_reset <= 0:
            logger.info("Rate limit already reset, continuing")
            return 0.0
        wait = min(time_until_reset, max_wait)
        logger.info(f"Waiting {wait:.0f}s for rate limit reset ({self.get_status()})")
        self._sleep(wait)
        logger.info("Rate limit wait complete, resuming")
        return wait

    def get_status(self) -> str:
        state = self._state
        if state is None:
            return "No rate limit data"
        percent_used = round((state.limit - state.remaining) / state.limit * 100) if state.limit else 0
        minutes = round(self.get_time_until_reset() / 60)
        return f"{state.remaining}/{state.limit} requests remaining ({percent_used}% used), resets in {minutes}min"

    def subscribe(self, listener: Callable[[RateLimitState], None]) -> Callable[[], None]:
        """Register a state-change listener. Returns an unsubscribe callable."""
        with self._listeners_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._listeners_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def reset(self) -> None:
        self._state = None
        with self._listeners_lock:
            self._listeners.clear()

    def _notify(self, state: RateLimitState) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("Rate limit listener failed")
