"""Categorizes item failures for the job record and retry decisions."""

from __future__ import annotations

from typing import Final, Literal

from .exceptions import PodioApiError

ErrorCategory = Literal["network", "rate_limit", "permission", "validation", "duplicate", "unknown"]

_NETWORK_MARKERS: Final[tuple[str, ...]] = (
    "network",
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "connection",
    "fetch failed",
)
_DUPLICATE_MARKERS: Final[tuple[str, ...]] = ("duplicate", "already exists")

# category -> attempts after which it is no longer retried
_RETRY_LIMITS: Final[dict[str, int]] = {
    "network": 3,
    "rate_limit": 3,
    "unknown": 1,
    "permission": 0,
    "validation": 0,
    "duplicate": 0,
}


def classify_error(error: BaseException | str) -> ErrorCategory:
    """Classify an exception (or a stored error message) into a category."""
    status = error.status_code if isinstance(error, PodioApiError) else None
    message = str(error).lower()
    if isinstance(error, PodioApiError) and error.error_detail:
        message = f"{message} {error.error_detail.lower()}"

    if status in (420, 429):
        return "rate_limit"
    if status in (401, 403):
        return "permission"
    if status in (400, 409) and any(m in message for m in _DUPLICATE_MARKERS):
        return "duplicate"
    if status in (400, 404, 422):
        return "validation"
    if status is not None and status >= 500:
        return "network"
    if status is None and any(m in message for m in _NETWORK_MARKERS):
        return "network"
    if status is None and any(m in message for m in _DUPLICATE_MARKERS):
        return "duplicate"
    return "unknown"


def should_retry(category: ErrorCategory | str, attempts: int) -> bool:
    """Whether an item that failed ``attempts`` times in ``category`` deserves another try."""
    return attempts <= _RETRY_LIMITS.get(category, 0)
