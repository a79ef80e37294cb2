"""Job record persistence.

``FileJobStore`` keeps one JSON document per job at ``{jobs_dir}/{job_id}.json``
and writes it atomically (temporary file, then rename), so a crash never
leaves a half-written record behind. ``MemoryJobStore`` keeps copies in a
dict for tests and throwaway runs.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path

from .models import MigrationJob

logger: logging.Logger = logging.getLogger(__name__)


def _matches(job: MigrationJob, job_type: str | None, status: str | None) -> bool:
    return (job_type is None or job.job_type == job_type) and (status is None or job.status == status)


def _newest_first(jobs: list[MigrationJob]) -> list[MigrationJob]:
    return sorted(jobs, key=lambda j: j.created_at, reverse=True)


class MemoryJobStore:
    """In-process job store. Stores and returns copies, like a real backend."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[str, dict] = {}

    def save(self, job: MigrationJob) -> None:
        with self._lock:
            self._jobs[job.job_id] = job.to_dict()

    def get(self, job_id: str) -> MigrationJob | None:
        with self._lock:
            data = self._jobs.get(job_id)
        return MigrationJob.from_dict(data) if data is not None else None

    def list(self, *, job_type: str | None = None, status: str | None = None) -> list[MigrationJob]:
        with self._lock:
            jobs = [MigrationJob.from_dict(d) for d in self._jobs.values()]
        return _newest_first([j for j in jobs if _matches(j, job_type, status)])

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)


class FileJobStore:
    """Durable job store backed by one JSON file per job."""

    directory: Path

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def _path(self, job_id: str) -> Path:
        if not job_id or "/" in job_id or "\\" in job_id or job_id.startswith("."):
            msg = f"Invalid job id: {job_id!r}"
            raise ValueError(msg)
        return self.directory / f"{job_id}.json"

    def save(self, job: MigrationJob) -> None:
        path = self._path(job.job_id)
        payload = json.dumps(job.to_dict(), indent=2, default=str)
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".json.tmp")
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, path)

    def get(self, job_id: str) -> MigrationJob | None:
        path = self._path(job_id)
        if not path.exists():
            return None
        return self._read(path)

    def _read(self, path: Path) -> MigrationJob:
        with self._lock:
            data = json.loads(path.read_text(encoding="utf-8"))
        return MigrationJob.from_dict(data)

    def list(self, *, job_type: str | None = None, status: str | None = None) -> list[MigrationJob]:
        if not self.directory.exists():
            return []
        jobs: list[MigrationJob] = []
        for path in self.directory.glob("*.json"):
            try:
                job = self._read(path)
            except (OSError, ValueError, TypeError, KeyError) as e:
                logger.warning(f"Skipping unreadable job record {path}: {e}")
                continue
            if _matches(job, job_type, status):
                jobs.append(job)
        return _newest_first(jobs)

    def delete(self, job_id: str) -> None:
        with self._lock:
            self._path(job_id).unlink(missing_ok=True)
