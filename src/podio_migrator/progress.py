"""Push channel for job progress events.

The job manager publishes a ``ProgressEvent`` after every batch and on every
status change. Consumers either subscribe here or poll the job store.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger: logging.Logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    job_id: str
    kind: str  # "status", "batch", "warning", "rate_limit"
    status: str
    data: dict[str, Any] = field(default_factory=dict)


Listener = Callable[[ProgressEvent], None]


class ProgressChannel:
    """Fan-out of progress events to subscribed listeners.

    A failing listener is logged and never interrupts the job.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Progress listener failed for job {event.job_id}")
