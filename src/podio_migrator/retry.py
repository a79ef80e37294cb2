"""Retry policy for transient Podio failures.

Transient failures are server errors (5xx), rate-limit rejections (Podio
answers 420, some proxies 429) and network failures that never produced a
status code. Everything else is fatal and raised on the first attempt.

Ordinary transient failures back off exponentially with full jitter, unless
the server sent ``Retry-After``. Rate-limit rejections wait for the quota to
reset instead (bounded by one hour), since retrying earlier is guaranteed to
fail again.
"""

from __future__ import annotations

import logging
import random
import re
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Final, TypeVar

import requests

from .exceptions import PodioApiError, PodioAuthError

if TYPE_CHECKING:
    from .rate_limit import RateLimitTracker

logger: logging.Logger = logging.getLogger(__name__)

T = TypeVar("T")

RATE_LIMIT_STATUSES: Final[frozenset[int]] = frozenset({420, 429})
DEFAULT_RATE_LIMIT_WAIT_SECONDS: Final[float] = 3600.0
_WAIT_PATTERN: Final[re.Pattern[str]] = re.compile(r"wait\s+(\d+)\s+seconds", re.IGNORECASE)


@dataclass(frozen=True)
class RetryConfig:
    """Backoff parameters. Delays are in seconds."""

    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    use_jitter: bool = True
    max_rate_limit_wait: float = 3600.0

    def with_overrides(self, **overrides: object) -> RetryConfig:
        return replace(self, **overrides)  # type: ignore[arg-type]


DEFAULT_RETRY_CONFIG: Final[RetryConfig] = RetryConfig()


def is_rate_limited(error: BaseException) -> bool:
    return isinstance(error, PodioApiError) and error.status_code in RATE_LIMIT_STATUSES


def is_transient_error(error: BaseException) -> bool:
    """True for errors worth retrying: 5xx, rate limits, and network failures.

    Auth failures never are, whatever status the token endpoint answered with.
    """
    if isinstance(error, PodioAuthError):
        return False
    if isinstance(error, PodioApiError):
        status = error.status_code
        return status is None or status >= 500 or status in RATE_LIMIT_STATUSES
    return isinstance(error, (requests.ConnectionError, requests.Timeout))


def get_retry_after(error: BaseException) -> float | None:
    if isinstance(error, PodioApiError):
        return error.retry_after
    return None


def get_rate_limit_wait_time(error: BaseException) -> float | None:
    """Seconds to wait after a rate-limit rejection.

    Podio's message reads "Please wait 3600 seconds before trying again".
    Falls back to one hour when the message carries no usable number.
    Returns None for errors that are not rate limits.
    """
    if not is_rate_limited(error):
        return None
    candidates = [str(error)]
    if isinstance(error, PodioApiError) and error.error_detail:
        candidates.append(error.error_detail)
    for text in candidates:
        match = _WAIT_PATTERN.search(text)
        if match and int(match.group(1)) > 0:
            return float(match.group(1))
    return DEFAULT_RATE_LIMIT_WAIT_SECONDS


def calculate_backoff(
    attempt: int,
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    *,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before the retry following ``attempt`` (0-based).

    Full jitter: uniform in ``[0, min(base * 2**attempt, max_delay))``.
    """
    capped = min(config.base_delay * (2**attempt), config.max_delay)
    if config.use_jitter:
        return rng() * capped
    return capped


def _summary(error: BaseException) -> str:
    if isinstance(error, PodioApiError) and error.status_code is not None:
        return f"HTTP {error.status_code}: {error}"
    return f"{type(error).__name__}: {error}"


def with_retry(
    operation: Callable[[], T],
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    *,
    tracker: RateLimitTracker | None = None,
    sleep: Callable[[float], None] = time.sleep,
    context: str = "",
) -> T:
    """Run ``operation``, retrying transient failures.

    Args:
        operation: Zero-argument callable performing one attempt
        config: Attempt ceiling and backoff parameters
        tracker: Quota tracker consulted (and updated) on rate-limit rejections
        sleep: Sleep function, injectable for tests
        context: Short description for log messages (e.g. "POST /item/app/1/filter/")

    Returns:
        The operation's result.

    Raises:
        The last error, unconverted, once attempts are exhausted or a
        non-transient error occurs.
        ValueError: If ``config.max_attempts`` is below 1.
    """
    if config.max_attempts < 1:
        msg = f"max_attempts must be at least 1, got {config.max_attempts}"
        raise ValueError(msg)

    where = f" [{context}]" if context else ""
    attempt = 0
    while True:
        try:
            return operation()
        except Exception as e:
            if attempt == config.max_attempts - 1:
                if is_transient_error(e):
                    logger.error(f"All {config.max_attempts} retry attempts exhausted{where}: {_summary(e)}")
                raise

            if is_rate_limited(e):
                _wait_for_rate_limit(e, attempt, config, tracker, sleep, where)
            elif is_transient_error(e):
                retry_after = get_retry_after(e)
                delay = retry_after if retry_after is not None else calculate_backoff(attempt, config)
                logger.warning(
                    f"Attempt {attempt + 1}/{config.max_attempts} failed{where}: {_summary(e)}. "
                    f"Retrying in {delay:.2f}s"
                )
                sleep(delay)
            else:
                logger.info(f"Non-transient error, not retrying{where}: {_summary(e)}")
                raise
        attempt += 1


def _wait_for_rate_limit(
    error: BaseException,
    attempt: int,
    config: RetryConfig,
    tracker: RateLimitTracker | None,
    sleep: Callable[[float], None],
    where: str,
) -> None:
    wait = tracker.get_time_until_reset() if tracker is not None else 0.0
    if wait <= 0:
        wait = get_rate_limit_wait_time(error) or DEFAULT_RATE_LIMIT_WAIT_SECONDS
        if tracker is not None:
            tracker.mark_exhausted(wait)

    logger.warning(
        f"Rate limit hit on attempt {attempt + 1}/{config.max_attempts}{where}: "
        f"waiting up to {min(wait, config.max_rate_limit_wait):.0f}s for reset"
    )
    if tracker is not None and tracker.state is not None:
        tracker.wait_for_reset(config.max_rate_limit_wait)
    else:
        sleep(min(wait, config.max_rate_limit_wait))
    logger.info(f"Rate limit wait complete, retrying{where}")
