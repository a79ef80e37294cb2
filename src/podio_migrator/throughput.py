"""Rolling throughput and ETA for running jobs."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, Final

ROLLING_WINDOW: Final[int] = 10
RATE_LIMIT_ETA_BUFFER: Final[float] = 1.1


@dataclass(frozen=True)
class BatchSample:
    items: int
    started_at: float
    finished_at: float

    @property
    def duration(self) -> float:
        return max(self.finished_at - self.started_at, 0.0)


@dataclass
class ThroughputMetrics:
    items_per_second: float = 0.0
    batches_per_minute: float = 0.0
    avg_batch_duration_ms: float = 0.0
    estimated_completion_time: str | None = None
    rate_limit_pauses: int = 0
    total_rate_limit_delay_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ThroughputCalculator:
    """Measures the last ``ROLLING_WINDOW`` batches and projects completion."""

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._samples: deque[BatchSample] = deque(maxlen=ROLLING_WINDOW)
        self._started_at = clock()
        self.rate_limit_pauses = 0
        self.total_rate_limit_delay = 0.0  # seconds

    def start_batch(self) -> float:
        return self._clock()

    def complete_batch(self, started_at: float, items: int) -> None:
        self._samples.append(BatchSample(items=items, started_at=started_at, finished_at=self._clock()))

    def record_rate_limit_pause(self, delay_seconds: float) -> None:
        self.rate_limit_pauses += 1
        self.total_rate_limit_delay += delay_seconds

    def items_per_second(self, processed: int = 0) -> float:
        if self._samples:
            items = sum(s.items for s in self._samples)
            seconds = sum(s.duration for s in self._samples)
            return items / seconds if seconds > 0 else 0.0
        elapsed = self._clock() - self._started_at
        return processed / elapsed if elapsed > 0 else 0.0

    def estimate_remaining_seconds(self, remaining: int, processed: int = 0) -> float | None:
        """Seconds until completion, padded by 10% once any rate-limit pause happened."""
        rate = self.items_per_second(processed)
        if remaining <= 0 or rate <= 0:
            return None
        buffer = RATE_LIMIT_ETA_BUFFER if self.rate_limit_pauses > 0 else 1.0
        return remaining / rate * buffer

    def metrics(self, total: int, processed: int) -> ThroughputMetrics:
        rate = self.items_per_second(processed)
        batches_per_minute = 0.0
        avg_batch_ms = 0.0
        if self._samples:
            seconds = sum(s.duration for s in self._samples)
            if seconds > 0:
                batches_per_minute = len(self._samples) / (seconds / 60)
            avg_batch_ms = seconds / len(self._samples) * 1000

        eta = None
        remaining_seconds = self.estimate_remaining_seconds(total - processed, processed)
        if remaining_seconds is not None:
            eta = datetime.fromtimestamp(self._clock() + remaining_seconds, UTC).isoformat()

        return ThroughputMetrics(
            items_per_second=round(rate, 2),
            batches_per_minute=round(batches_per_minute, 2),
            avg_batch_duration_ms=round(avg_batch_ms),
            estimated_completion_time=eta,
            rate_limit_pauses=self.rate_limit_pauses,
            total_rate_limit_delay_ms=round(self.total_rate_limit_delay * 1000),
        )
