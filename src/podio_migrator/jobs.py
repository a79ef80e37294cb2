"""Migration Job State Machine and the job-control surface.

Migration jobs::

    planning -> in_progress -> completed | failed | cancelled
                    |   ^
                    v   |  (resume, from the checkpoint)
                   paused

Cleanup jobs::

    planning -> detecting -> waiting_approval (manual) -> deleting -> completed
                         \\-> deleting (automated) -> completed
                         \\-> completed (dry run, groups only)

Every job runs on its own worker thread. Control actions never interrupt an
in-flight batch: pause and cancel only set a flag which the worker honours
at the next batch boundary, after the batch's results have been recorded
and the checkpoint saved. The checkpoint is the source offset of the next
page, so a resumed job neither re-processes nor skips items.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Final

from .cleanup import CleanupEngine, resolve_approved_groups
from .error_classifier import classify_error
from .exceptions import InvalidJobStateError, JobNotFoundError, MigrationError, PodioApiError
from .filters import validate_filters
from .item_migrator import ItemFailure, ItemMigrator, RecordingWriter, RemoteItemWriter, prepare_migration
from .items import fetch_item_count, fetch_items_by_ids, stream_item_pages
from .lifecycle import HEARTBEAT_INTERVAL_SECONDS, STALE_JOB_TIMEOUT_SECONDS, Heartbeat, cleanup_stale_jobs
from .models import (
    Checkpoint,
    CleanupRequest,
    DryRunPreview,
    FailedItem,
    JobError,
    JobProgress,
    MigrationJob,
    MigrationRequest,
)
from .progress import ProgressChannel, ProgressEvent
from .throughput import ThroughputCalculator
from .utils import new_job_id, utc_now

if TYPE_CHECKING:
    from .bulk import BatchProgress
    from .http_client import PodioHttpClient
    from .item_migrator import BatchOutcome
    from .models import DuplicateGroup, JobStatus, JobType
    from .progress import Listener
    from .protocols import JobStore

logger: logging.Logger = logging.getLogger(__name__)

MAX_FAILED_ITEMS: Final[int] = 1000
RETRY_LOCK_TIMEOUT_SECONDS: Final[float] = 5 * 60
FIELD_MAPPING_HISTORY_LIMIT: Final[int] = 10
RATE_LIMIT_PAUSE_THRESHOLD: Final[int] = 10


def _now() -> str:
    return utc_now().isoformat()


@dataclass
class _JobRun:
    """In-process state of a job that has a live worker thread."""

    job: MigrationJob
    kind: str = "run"  # "run" or "retry"
    lock: threading.Lock = field(default_factory=threading.Lock)
    pause_requested: threading.Event = field(default_factory=threading.Event)
    cancel_requested: threading.Event = field(default_factory=threading.Event)
    throughput: ThroughputCalculator = field(default_factory=ThroughputCalculator)
    thread: threading.Thread | None = None


def record_failure(job: MigrationJob, failure: ItemFailure, timestamp: str) -> None:
    """Add or update a failed-item entry and keep ``error_breakdown`` in step.

    The list is bounded at ``MAX_FAILED_ITEMS``; overflow is only counted.
    """
    breakdown = job.error_breakdown
    existing = next((f for f in job.failed_items if f.source_item_id == failure.source_item_id), None)
    if existing is not None:
        if existing.category != failure.category:
            breakdown[existing.category] = max(breakdown.get(existing.category, 0) - 1, 0)
            breakdown[failure.category] = breakdown.get(failure.category, 0) + 1
        existing.error = failure.error
        existing.category = failure.category
        existing.attempts += failure.attempts
        existing.last_attempt_at = timestamp
        return

    breakdown[failure.category] = breakdown.get(failure.category, 0) + 1
    if len(job.failed_items) >= MAX_FAILED_ITEMS:
        job.failed_items_truncated += 1
        return
    job.failed_items.append(
        FailedItem(
            source_item_id=failure.source_item_id,
            error=failure.error,
            category=failure.category,
            attempts=failure.attempts,
            last_attempt_at=timestamp,
        )
    )


def record_field_mapping(job: MigrationJob, mapping: dict[str, str], timestamp: str) -> None:
    """Append to the mapping history, keeping the original entry and the most recent ones."""
    history = job.field_mapping_history
    history.append({"timestamp": timestamp, "retry_attempt": job.retry_attempts, "field_mapping": dict(mapping)})
    if len(history) > FIELD_MAPPING_HISTORY_LIMIT:
        job.field_mapping_history = [history[0], *history[-(FIELD_MAPPING_HISTORY_LIMIT - 1) :]]


def apply_outcome(job: MigrationJob, outcome: BatchOutcome, timestamp: str) -> None:
    """Fold one batch outcome of a regular run into the job record."""
    progress = job.progress
    progress.processed += outcome.processed
    progress.successful += len(outcome.successful)
    progress.failed += len(outcome.failed)
    progress.skipped += len(outcome.skipped)
    for failure in outcome.failed:
        record_failure(job, failure, timestamp)
    for source_item_id, message in outcome.file_errors:
        job.errors.append(JobError(message, timestamp, code="FILE_TRANSFER_FAILED", item_id=source_item_id))


def apply_retry_outcome(job: MigrationJob, outcome: BatchOutcome, timestamp: str) -> None:
    """Fold the outcome of a retry batch: recovered items leave the failed list."""
    recovered = set(outcome.successful) | {s.source_item_id for s in outcome.skipped}
    remaining = []
    for item in job.failed_items:
        if item.source_item_id in recovered:
            job.error_breakdown[item.category] = max(job.error_breakdown.get(item.category, 0) - 1, 0)
        else:
            remaining.append(item)
    recovered_count = len(job.failed_items) - len(remaining)
    job.failed_items = remaining

    progress = job.progress
    progress.failed = max(progress.failed - recovered_count, 0)
    progress.successful += len(outcome.successful)
    progress.skipped += len(outcome.skipped)
    for failure in outcome.failed:
        record_failure(job, failure, timestamp)
    for source_item_id, message in outcome.file_errors:
        job.errors.append(JobError(message, timestamp, code="FILE_TRANSFER_FAILED", item_id=source_item_id))


class JobManager:
    """Starts, controls and reports on migration and cleanup jobs.

    All control methods return immediately; callers poll ``get_status`` (or
    ``wait``) or subscribe to the progress channel.

    Usage:
        manager = JobManager(client, FileJobStore("data/migrations"))
        job_id = manager.start_migration(MigrationRequest(source_app_id=1, target_app_id=2))
        job = manager.wait(job_id)
    """

    def __init__(
        self,
        client: PodioHttpClient,
        store: JobStore,
        *,
        channel: ProgressChannel | None = None,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client = client
        self._store = store
        self._channel = channel or ProgressChannel()
        self._heartbeat_interval = heartbeat_interval
        self._clock = clock
        self._cleanup = CleanupEngine(client)
        self._lock = threading.Lock()
        self._runs: dict[str, _JobRun] = {}
        self._retry_locks: dict[str, float] = {}
        self._previews: dict[str, DryRunPreview] = {}

    # ------------------------------------------------------------------
    # Job-control surface
    # ------------------------------------------------------------------

    def start_migration(self, request: MigrationRequest) -> str:
        """Start a migration job in the background and return its id.

        A dry-run request runs synchronously instead and returns the id of
        the in-memory preview (see ``get_preview``); nothing is persisted.
        """
        if request.dry_run:
            preview = self.dry_run(request)
            preview_id = new_job_id()
            with self._lock:
                self._previews[preview_id] = preview
            return preview_id

        filter_check = validate_filters(request.filters)
        if not filter_check.valid:
            msg = f"Invalid filters: {'; '.join(filter_check.errors)}"
            raise MigrationError(msg)

        job = self._new_job("migration", request.to_dict(), mode=request.mode)
        self._store.save(job)
        logger.info(f"Created migration job {job.job_id}: app {request.source_app_id} -> {request.target_app_id}")
        self._start(_JobRun(job), self._run_migration)
        return job.job_id

    def get_status(self, job_id: str) -> MigrationJob:
        run = self._active(job_id)
        if run is not None:
            with run.lock:
                return MigrationJob.from_dict(run.job.to_dict())
        return self._load(job_id)

    def get_preview(self, preview_id: str) -> DryRunPreview:
        with self._lock:
            preview = self._previews.get(preview_id)
        if preview is None:
            raise JobNotFoundError(preview_id)
        return preview

    def pause(self, job_id: str) -> None:
        """Request a pause. It takes effect at the next batch boundary."""
        run = self._active(job_id)
        if run is None:
            job = self._load(job_id)
            msg = f"Job {job_id} is not running (status: {job.status})"
            raise InvalidJobStateError(msg)
        if run.job.job_type != "migration" or run.kind != "run":
            msg = f"Job {job_id} cannot be paused; only regular migration runs support pause"
            raise InvalidJobStateError(msg)
        run.pause_requested.set()
        logger.info(f"Pause requested for job {job_id}, will pause after the current batch")

    def resume(self, job_id: str) -> str:
        """Continue a paused job (or a failed one that has a checkpoint) from its checkpoint."""
        if self._active(job_id) is not None:
            msg = f"Job {job_id} is already running"
            raise InvalidJobStateError(msg)
        job = self._load(job_id)
        if job.job_type != "migration":
            msg = f"Job {job_id} is a {job.job_type} job and cannot be resumed"
            raise InvalidJobStateError(msg)
        if not (job.status == "paused" or (job.status == "failed" and job.checkpoint is not None)):
            msg = f"Job {job_id} cannot be resumed from status '{job.status}'"
            raise InvalidJobStateError(msg)

        job.completed_at = None
        offset = job.checkpoint.offset if job.checkpoint else 0
        logger.info(f"Resuming job {job_id} from offset {offset}")
        self._start(_JobRun(job), lambda run: self._run_migration(run, resume=True))
        return job_id

    def cancel(self, job_id: str) -> None:
        run = self._active(job_id)
        if run is not None:
            run.cancel_requested.set()
            logger.info(f"Cancel requested for job {job_id}, will stop after the current batch")
            return

        job = self._load(job_id)
        if job.is_terminal:
            msg = f"Job {job_id} is already {job.status}"
            raise InvalidJobStateError(msg)
        job.status = "cancelled"
        job.updated_at = job.completed_at = _now()
        self._store.save(job)
        logger.info(f"Job {job_id} cancelled")
        self._channel.publish(ProgressEvent(job_id, "status", job.status, {"progress": job.progress.to_dict()}))

    def retry_failed(self, job_id: str) -> str:
        """Re-attempt only the failed items of a finished migration job.

        Raises:
            InvalidJobStateError: For update-mode jobs, running jobs, jobs
                without failed items, or when another retry holds the lock.
        """
        job = self._load(job_id)
        if job.job_type != "migration":
            msg = f"Job {job_id} is a {job.job_type} job; only migration jobs can retry failed items"
            raise InvalidJobStateError(msg)
        if job.mode == "update":
            msg = "Retrying failed items is not available for update-mode jobs"
            raise InvalidJobStateError(msg)
        if self._active(job_id) is not None or not job.is_terminal:
            msg = f"Job {job_id} is still {job.status}; only finished jobs can retry failed items"
            raise InvalidJobStateError(msg)
        if not job.failed_items:
            msg = f"Job {job_id} has no failed items to retry"
            raise InvalidJobStateError(msg)

        self._acquire_retry_lock(job_id)
        try:
            timestamp = _now()
            job.pre_retry_snapshot = {
                "status": job.status,
                "progress": job.progress.to_dict(),
                "failed_items": len(job.failed_items),
                "error_breakdown": dict(job.error_breakdown),
                "timestamp": timestamp,
            }
            job.retry_attempts += 1
            job.last_retry_timestamp = timestamp
            job.completed_at = None
            self._store.save(job)
            logger.info(f"Retrying {len(job.failed_items)} failed items of job {job_id} (attempt {job.retry_attempts})")
            self._start(_JobRun(job, kind="retry"), self._run_retry)
        except Exception:
            self._release_retry_lock(job_id)
            raise
        return job_id

    def dry_run(self, request: MigrationRequest) -> DryRunPreview:
        """Compute what a migration would do without writing anything. Blocks until done."""
        setup = prepare_migration(self._client, request)
        writer = RecordingWriter()
        migrator = ItemMigrator(self._client, request, setup, writer=writer, transfer_files=False)
        migrator.prefetch()

        preview = DryRunPreview(warnings=list(setup.warnings))
        for page in stream_item_pages(
            self._client,
            request.source_app_id,
            page_size=request.batch_size,
            filters=setup.source_filters,
            sort_by="created_on",
            sort_desc=False,
        ):
            items = self._limit(page.items, page.offset, request.max_items)
            if items:
                migrator.preview(items, preview)
            if request.max_items is not None and page.offset + len(items) >= request.max_items:
                break

        logger.info(f"Dry run complete: {preview.summary} ({writer.write_count} writes recorded, none sent)")
        return preview

    def start_cleanup(self, request: CleanupRequest) -> str:
        """Validate a cleanup request and start detection in the background."""
        warnings = self._cleanup.validate(request)
        job = self._new_job("cleanup", request.to_dict(), mode=request.mode)
        job.warnings = list(warnings)
        self._store.save(job)
        logger.info(f"Created cleanup job {job.job_id} for app {request.app_id} on field '{request.match_field}'")
        self._start(_JobRun(job), self._run_cleanup)
        return job.job_id

    def approve_and_execute(self, job_id: str, approved_groups: list[DuplicateGroup | dict[str, Any]]) -> str:
        """Delete the approved groups of a manual cleanup job that is waiting for approval."""
        if self._active(job_id) is not None:
            msg = f"Job {job_id} is still running"
            raise InvalidJobStateError(msg)
        job = self._load(job_id)
        if job.job_type != "cleanup" or job.status != "waiting_approval":
            msg = f"Job {job_id} is not a cleanup job waiting for approval (status: {job.status})"
            raise InvalidJobStateError(msg)

        request = CleanupRequest.from_dict(job.request)
        groups = resolve_approved_groups(job.duplicate_groups, approved_groups)
        job.stats["approved_groups"] = len(groups)
        logger.info(f"Job {job_id}: {len(groups)} of {len(job.duplicate_groups)} groups approved for deletion")
        self._start(_JobRun(job), lambda run: self._delete_groups(run, request, groups))
        return job_id

    def wait(self, job_id: str, timeout: float | None = None) -> MigrationJob:
        """Block until the job's worker stops (or ``timeout`` passes) and return its record."""
        run = self._active(job_id)
        if run is not None and run.thread is not None:
            run.thread.join(timeout)
        return self.get_status(job_id)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self._channel.subscribe(listener)

    def list_jobs(self, *, job_type: JobType | None = None, status: JobStatus | None = None) -> list[MigrationJob]:
        return self._store.list(job_type=job_type, status=status)

    def cleanup_stale_jobs(self, timeout: float = STALE_JOB_TIMEOUT_SECONDS) -> list[str]:
        return cleanup_stale_jobs(
            self._store, timeout=timeout, is_running=lambda job_id: self._active(job_id) is not None
        )

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _run_migration(self, run: _JobRun, *, resume: bool = False) -> None:
        job = run.job
        request = MigrationRequest.from_dict(job.request)
        setup = prepare_migration(self._client, request)
        migrator = ItemMigrator(
            self._client,
            request,
            setup,
            writer=RemoteItemWriter(
                self._client, concurrency=request.concurrency, hook=request.hook, silent=request.silent
            ),
        )
        with run.lock:
            job.warnings.extend(w for w in setup.warnings if w not in job.warnings)
            if not job.field_mapping_history:
                record_field_mapping(job, setup.field_mapping, _now())
            self._save(run)

        migrator.prefetch()
        offset = job.checkpoint.offset if resume and job.checkpoint else 0
        if not resume or job.progress.total == 0:
            total = fetch_item_count(self._client, request.source_app_id, setup.source_filters)
            if request.max_items is not None:
                total = min(total, request.max_items)
            with run.lock:
                job.progress.total = total
        self._set_status(run, "in_progress")

        for page in stream_item_pages(
            self._client,
            request.source_app_id,
            page_size=request.batch_size,
            offset=offset,
            filters=setup.source_filters,
            sort_by="created_on",
            sort_desc=False,
        ):
            items = self._limit(page.items, page.offset, request.max_items)
            if not items:
                break

            started = run.throughput.start_batch()
            outcome = migrator.process(items, stop_on_error=request.stop_on_error)
            run.throughput.complete_batch(started, len(items))

            with run.lock:
                timestamp = _now()
                apply_outcome(job, outcome, timestamp)
                job.checkpoint = Checkpoint(
                    offset=page.offset + len(items),
                    last_processed_item_id=items[-1].item_id,
                    timestamp=timestamp,
                )
                job.throughput = run.throughput.metrics(job.progress.total, job.progress.processed).to_dict()
                job.last_heartbeat = timestamp
                self._save(run)
            self._publish(run, "batch", {"checkpoint_offset": page.offset + len(items)})

            if outcome.stopped_early:
                self._finish(
                    run,
                    "failed",
                    JobError("Stopped after a failed item (stop_on_error)", _now(), code="STOPPED_ON_ERROR"),
                )
                return
            if self._honour_control(run):
                return
            if request.max_items is not None and page.offset + len(items) >= request.max_items:
                break
            self._respect_quota(run)

        self._finish(run, "completed")

    def _run_retry(self, run: _JobRun) -> None:
        job = run.job
        try:
            request = MigrationRequest.from_dict(job.request)
            setup = prepare_migration(self._client, request)
            migrator = ItemMigrator(
                self._client,
                request,
                setup,
                writer=RemoteItemWriter(
                    self._client, concurrency=request.concurrency, hook=request.hook, silent=request.silent
                ),
            )
            with run.lock:
                record_field_mapping(job, setup.field_mapping, _now())
            migrator.prefetch()
            self._set_status(run, "in_progress")

            item_ids = [f.source_item_id for f in job.failed_items]
            fetched = fetch_items_by_ids(self._client, item_ids, concurrency=request.concurrency)
            with run.lock:
                timestamp = _now()
                for item_id, error in fetched.missing.items():
                    record_failure(
                        job,
                        ItemFailure(item_id, f"Could not fetch source item: {error}", classify_error(error)),
                        timestamp,
                    )
                self._save(run)

            for start in range(0, len(fetched.items), request.batch_size):
                chunk = fetched.items[start : start + request.batch_size]
                started = run.throughput.start_batch()
                outcome = migrator.process(chunk)
                run.throughput.complete_batch(started, len(chunk))
                with run.lock:
                    apply_retry_outcome(job, outcome, _now())
                    job.throughput = run.throughput.metrics(len(item_ids), start + len(chunk)).to_dict()
                    self._save(run)
                self._publish(run, "batch", {"retry_attempt": job.retry_attempts})
                if run.cancel_requested.is_set():
                    self._finish(run, "cancelled")
                    return
                self._respect_quota(run)

            self._finish(run, "completed")
        finally:
            self._release_retry_lock(job.job_id)

    def _run_cleanup(self, run: _JobRun) -> None:
        job = run.job
        request = CleanupRequest.from_dict(job.request)
        self._set_status(run, "detecting")

        def on_page(scanned: int) -> None:
            with run.lock:
                job.stats["items_scanned"] = scanned
                job.progress.processed = scanned
                job.last_heartbeat = _now()
                self._save(run)
            self._publish(run, "batch", {"items_scanned": scanned})

        detection = self._cleanup.detect(request, should_stop=run.cancel_requested.is_set, on_page=on_page)
        if detection.stopped:
            self._finish(run, "cancelled")
            return

        with run.lock:
            job.duplicate_groups = detection.groups
            job.stats.update(
                {
                    "items_scanned": detection.items_scanned,
                    "duplicate_groups": len(detection.groups),
                    "items_to_delete": detection.items_to_delete,
                }
            )
            job.progress = JobProgress(total=detection.items_to_delete)
            self._save(run)

        if request.dry_run:
            self._finish(run, "completed")
        elif request.mode == "manual":
            self._set_status(run, "waiting_approval")
        else:
            self._delete_groups(run, request, detection.groups)

    def _delete_groups(self, run: _JobRun, request: CleanupRequest, groups: list[DuplicateGroup]) -> None:
        job = run.job
        with run.lock:
            job.progress = JobProgress(total=sum(len(g.delete_item_ids) for g in groups))
        self._set_status(run, "deleting")

        def on_progress(batch: BatchProgress) -> None:
            with run.lock:
                job.progress.processed = batch.completed
                job.progress.successful = batch.success_count
                job.progress.failed = batch.failure_count
                job.last_heartbeat = _now()
                self._save(run)
            self._publish(run, "batch", {"batch": batch.batch_number, "total_batches": batch.total_batches})

        result = self._cleanup.delete(groups, request, on_progress=on_progress)
        with run.lock:
            timestamp = _now()
            for failure in result.failures:
                category = classify_error(failure.exception or failure.error)
                record_failure(job, ItemFailure(failure.request, failure.error, category), timestamp)
            job.stats["deleted"] = result.success_count
            self._save(run)
        self._finish(run, "completed")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _new_job(self, job_type: JobType, request: dict[str, Any], *, mode: str) -> MigrationJob:
        timestamp = _now()
        return MigrationJob(
            job_id=new_job_id(),
            job_type=job_type,
            status="planning",
            created_at=timestamp,
            updated_at=timestamp,
            request=request,
            mode=mode,
        )

    def _load(self, job_id: str) -> MigrationJob:
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def _active(self, job_id: str) -> _JobRun | None:
        with self._lock:
            return self._runs.get(job_id)

    def _start(self, run: _JobRun, body: Callable[[_JobRun], None]) -> None:
        job_id = run.job.job_id
        run.thread = threading.Thread(target=self._worker, args=(run, body), name=f"job-{job_id[:8]}", daemon=True)
        with self._lock:
            if job_id in self._runs:
                msg = f"Job {job_id} is already running"
                raise InvalidJobStateError(msg)
            self._runs[job_id] = run
        run.thread.start()

    def _worker(self, run: _JobRun, body: Callable[[_JobRun], None]) -> None:
        job_id = run.job.job_id
        heartbeat = Heartbeat(
            lambda: self._beat(run), interval=self._heartbeat_interval, name=f"heartbeat-{job_id[:8]}"
        )
        heartbeat.start()
        try:
            body(run)
        except Exception as e:  # noqa: BLE001
            logger.exception(f"Job {job_id} failed")
            code = e.error_code if isinstance(e, PodioApiError) and e.error_code else type(e).__name__
            self._finish(run, "failed", JobError(str(e), _now(), code=code))
        finally:
            heartbeat.stop()
            with self._lock:
                if self._runs.get(job_id) is run:
                    del self._runs[job_id]

    def _beat(self, run: _JobRun) -> None:
        with run.lock:
            run.job.last_heartbeat = _now()
            self._store.save(run.job)

    def _save(self, run: _JobRun) -> None:
        """Persist the run's job record. Caller holds ``run.lock``."""
        run.job.updated_at = _now()
        self._store.save(run.job)

    def _publish(self, run: _JobRun, kind: str, data: dict[str, Any] | None = None) -> None:
        with run.lock:
            event = ProgressEvent(
                run.job.job_id,
                kind,
                run.job.status,
                {"progress": run.job.progress.to_dict(), **(data or {})},
            )
        self._channel.publish(event)

    def _set_status(self, run: _JobRun, status: JobStatus) -> None:
        with run.lock:
            previous = run.job.status
            run.job.status = status
            if status == "in_progress" and run.job.started_at is None:
                run.job.started_at = _now()
            self._save(run)
        logger.info(f"Job {run.job.job_id}: {previous} -> {status}")
        self._publish(run, "status")

    def _finish(self, run: _JobRun, status: JobStatus, error: JobError | None = None) -> None:
        job = run.job
        with run.lock:
            job.status = status
            job.completed_at = _now()
            if error is not None:
                job.errors.append(error)
            job.throughput = run.throughput.metrics(job.progress.total, job.progress.processed).to_dict()
            self._save(run)
            progress = job.progress
        logger.info(
            f"Job {job.job_id} {status}: {progress.successful} successful, {progress.failed} failed, "
            f"{progress.skipped} skipped of {progress.total}"
        )
        self._publish(run, "status")

    def _honour_control(self, run: _JobRun) -> bool:
        """Apply a pending cancel or pause at a batch boundary. Returns True if the worker must stop."""
        if run.cancel_requested.is_set():
            self._finish(run, "cancelled")
            return True
        if run.pause_requested.is_set():
            self._set_status(run, "paused")
            checkpoint = run.job.checkpoint
            logger.info(f"Job {run.job.job_id} paused at offset {checkpoint.offset if checkpoint else 0}")
            return True
        return False

    def _respect_quota(self, run: _JobRun) -> None:
        tracker = self._client.tracker
        if not tracker.should_pause(RATE_LIMIT_PAUSE_THRESHOLD):
            return
        logger.warning(
            f"Job {run.job.job_id}: only {tracker.remaining} requests left, waiting for the rate limit to reset"
        )
        self._publish(
            run, "rate_limit", {"remaining": tracker.remaining, "wait_seconds": tracker.get_time_until_reset()}
        )
        waited = tracker.wait_for_reset()
        run.throughput.record_rate_limit_pause(waited)

    def _acquire_retry_lock(self, job_id: str) -> None:
        with self._lock:
            acquired_at = self._retry_locks.get(job_id)
            if acquired_at is not None:
                if self._clock() - acquired_at < RETRY_LOCK_TIMEOUT_SECONDS:
                    msg = f"A retry of job {job_id} is already in progress"
                    raise InvalidJobStateError(msg)
                logger.warning(f"Retry lock of job {job_id} expired, taking it over")
            self._retry_locks[job_id] = self._clock()

    def _release_retry_lock(self, job_id: str) -> None:
        with self._lock:
            self._retry_locks.pop(job_id, None)

    @staticmethod
    def _limit(items: list[Any], offset: int, max_items: int | None) -> list[Any]:
        if max_items is None:
            return items
        return items[: max(max_items - offset, 0)]
