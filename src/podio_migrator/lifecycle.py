"""
Heartbeats for running jobs and cleanup of jobs whose worker died.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING, Final

from .exceptions import MigrationError
from .models import JobError
from .utils import parse_datetime, utc_now

if TYPE_CHECKING:
    from .protocols import JobStore

logger: logging.Logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_SECONDS: Final[float] = 10.0
STALE_JOB_TIMEOUT_SECONDS: Final[float] = 60.0
STALE_JOB_ERROR_CODE: Final[str] = "STALE_JOB_CLEANUP"
# Statuses in which a live worker must be sending heartbeats
HEARTBEAT_STATUSES: Final[frozenset[str]] = frozenset({"in_progress", "detecting", "deleting"})


class Heartbeat:
    """Calls ``beat`` every ``interval`` seconds on a daemon thread until stopped."""

    def __init__(
        self, beat: Callable[[], None], *, interval: float = HEARTBEAT_INTERVAL_SECONDS, name: str = ""
    ) -> None:
        self._beat = beat
        self._interval = interval
        self._name = name or "heartbeat"
        self._stopped = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stopped.wait(self._interval):
            try:
                self._beat()
            except (MigrationError, OSError, ValueError) as e:
                logger.warning(f"{self._name} failed: {e}")

    def stop(self) -> None:
        self._stopped.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self._interval)

    def __enter__(self) -> Heartbeat:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()


def cleanup_stale_jobs(
    store: JobStore,
    *,
    timeout: float = STALE_JOB_TIMEOUT_SECONDS,
    is_running: Callable[[str], bool] = lambda _job_id: False,
    now: datetime | None = None,
) -> list[str]:
    """Mark jobs that stopped sending heartbeats as failed.

    A job counts as stale when it is in a heartbeat status, is not running in
    this process, and its last heartbeat (or, lacking one, its last update)
    is older than ``timeout`` seconds.

    Returns:
        Ids of the jobs that were marked failed.
    """
    now = now or utc_now()
    cleaned: list[str] = []
    for job in store.list():
        if job.status not in HEARTBEAT_STATUSES or is_running(job.job_id):
            continue
        last_seen = parse_datetime(job.last_heartbeat or job.updated_at)
        if last_seen is not None and (now - last_seen).total_seconds() <= timeout:
            continue

        timestamp = now.isoformat()
        logger.warning(f"Job {job.job_id} ({job.status}) has no heartbeat since {job.last_heartbeat}, marking failed")
        job.errors.append(
            JobError(
                message=f"No heartbeat for more than {timeout:.0f}s (last: {job.last_heartbeat}), worker presumed dead",
                timestamp=timestamp,
                code=STALE_JOB_ERROR_CODE,
            )
        )
        job.status = "failed"
        job.updated_at = timestamp
        job.completed_at = timestamp
        store.save(job)
        cleaned.append(job.job_id)

    if cleaned:
        logger.info(f"Marked {len(cleaned)} stale jobs as failed")
    return cleaned
