"""Per-batch execution of create, update and upsert migrations.

A batch is first planned: every source item is mapped to its target field
payload, matched against the target app, and sorted into creates, updates,
skips and failures. The plan is then executed through an ``ItemWriter``,
updates before creates. Real runs write through ``RemoteItemWriter``. Dry
runs execute the very same plan through ``RecordingWriter``, which never
touches the API, and turn the plan into a ``DryRunPreview``.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Final, TypeVar

from . import bulk
from . import files as file_api
from . import items as item_api
from .bulk import BulkResult, BulkSuccess, CreateRequest, UpdateRequest
from .error_classifier import ErrorCategory, classify_error, should_retry
from .exceptions import FileTransferError, MigrationError, PodioApiError
from .field_mapping import (
    convert_field_ids_to_external_ids,
    get_app_fields,
    is_field_id_mapping,
    map_item_fields,
    suggest_field_mapping,
    validate_field_mapping,
    validate_match_fields,
)
from .filters import convert_filters, validate_filters
from .models import FieldChange, PodioItem, PreviewCreate, PreviewFailure, PreviewSkip, PreviewUpdate
from .normalize import EMPTY, PrefetchCache, item_match_key, normalize_field_value

if TYPE_CHECKING:
    from .http_client import PodioHttpClient
    from .models import DryRunPreview, MigrationRequest
    from .protocols import ItemWriter

logger: logging.Logger = logging.getLogger(__name__)

EXTERNAL_ID_PREFIX: Final[str] = "migrated-"
NO_MATCH_REASON: Final[str] = "No matching target item"
NO_CHANGES_REASON: Final[str] = "No field changes detected"

R = TypeVar("R")


@dataclass
class MigrationSetup:
    """Everything resolved once per job before the first batch."""

    field_mapping: dict[str, str]
    target_field_types: dict[str, str]
    source_filters: dict[str, Any]
    warnings: list[str] = field(default_factory=list)


def prepare_migration(client: PodioHttpClient, request: MigrationRequest) -> MigrationSetup:
    """Validate a migration request against both app schemas.

    Raises:
        MigrationError: For invalid filters, missing match fields, an unknown
            match field, or a mapping that maps nothing.
    """
    filter_check = validate_filters(request.filters)
    if not filter_check.valid:
        msg = f"Invalid filters: {'; '.join(filter_check.errors)}"
        raise MigrationError(msg)
    if request.mode not in ("create", "update", "upsert"):
        msg = f"Unknown migration mode: {request.mode}"
        raise MigrationError(msg)
    if request.mode != "create" and not request.uses_matching:
        msg = f"Mode '{request.mode}' requires both a source and a target match field"
        raise MigrationError(msg)
    if request.duplicate_behavior not in ("skip", "error", "update"):
        msg = f"Unknown duplicate behavior: {request.duplicate_behavior}"
        raise MigrationError(msg)
    if request.batch_size < 1 or request.concurrency < 1:
        msg = f"batch_size and concurrency must be positive (got {request.batch_size}, {request.concurrency})"
        raise MigrationError(msg)

    source_fields = get_app_fields(client, request.source_app_id)
    target_fields = get_app_fields(client, request.target_app_id)

    mapping = dict(request.field_mapping or {})
    if is_field_id_mapping(mapping):
        mapping = convert_field_ids_to_external_ids(mapping, source_fields, target_fields)
        if not mapping:
            msg = (
                "No field id in the mapping is a writable field pair of apps "
                f"{request.source_app_id} -> {request.target_app_id}"
            )
            raise MigrationError(msg)
        logger.info(f"Converted field id mapping to external ids: {mapping}")
    mapping = mapping or suggest_field_mapping(source_fields, target_fields)
    if not mapping:
        msg = f"No fields could be mapped from app {request.source_app_id} to app {request.target_app_id}"
        raise MigrationError(msg)

    warnings = validate_field_mapping(mapping, source_fields, target_fields)
    if request.uses_matching:
        check = validate_match_fields(
            source_fields,
            target_fields,
            request.source_match_field or "",
            request.target_match_field or "",
        )
        if not check.ok:
            msg = "; ".join(check.errors)
            raise MigrationError(msg)
        warnings.extend(check.warnings)

    for warning in warnings:
        logger.warning(warning)
    return MigrationSetup(
        field_mapping=mapping,
        target_field_types={f.external_id: f.type for f in target_fields},
        source_filters=convert_filters(request.filters),
        warnings=warnings,
    )


class RemoteItemWriter:
    """Writes through the bulk executor against the live API."""

    def __init__(
        self, client: PodioHttpClient, *, concurrency: int = 5, hook: bool = False, silent: bool = True
    ) -> None:
        self._client = client
        self._concurrency = concurrency
        self._hook = hook
        self._silent = silent

    def create_items(
        self, app_id: int, requests: Sequence[CreateRequest], *, stop_on_error: bool = False
    ) -> BulkResult[CreateRequest, int]:
        return bulk.bulk_create_items(
            self._client,
            app_id,
            requests,
            concurrency=self._concurrency,
            hook=self._hook,
            silent=self._silent,
            stop_on_error=stop_on_error,
        )

    def update_items(
        self, requests: Sequence[UpdateRequest], *, stop_on_error: bool = False
    ) -> BulkResult[UpdateRequest, int]:
        return bulk.bulk_update_items(
            self._client,
            requests,
            concurrency=self._concurrency,
            hook=self._hook,
            silent=self._silent,
            stop_on_error=stop_on_error,
        )


class RecordingWriter:
    """No-op writer for dry runs.

    Every write is recorded and reported as successful. Created items get
    negative placeholder ids so they can never be confused with real items.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(-1, -1)
        self.created: list[tuple[int, CreateRequest]] = []
        self.updated: list[UpdateRequest] = []

    @property
    def write_count(self) -> int:
        return len(self.created) + len(self.updated)

    def create_items(
        self, app_id: int, requests: Sequence[CreateRequest], *, stop_on_error: bool = False
    ) -> BulkResult[CreateRequest, int]:
        result: BulkResult[CreateRequest, int] = BulkResult()
        with self._lock:
            for index, request in enumerate(requests):
                self.created.append((app_id, request))
                result.successes.append(BulkSuccess(index, request, next(self._ids)))
        return result

    def update_items(
        self, requests: Sequence[UpdateRequest], *, stop_on_error: bool = False
    ) -> BulkResult[UpdateRequest, int]:
        result: BulkResult[UpdateRequest, int] = BulkResult()
        with self._lock:
            for index, request in enumerate(requests):
                self.updated.append(request)
                result.successes.append(BulkSuccess(index, request, request.item_id))
        return result


@dataclass
class PlannedCreate:
    source_item: PodioItem
    fields: dict[str, Any]
    match_key: str = EMPTY


@dataclass
class PlannedUpdate:
    source_item: PodioItem
    target_item_id: int
    fields: dict[str, Any]
    match_value: Any
    changes: list[FieldChange]


@dataclass
class PlannedSkip:
    source_item_id: int
    reason: str
    target_item_id: int | None = None


@dataclass
class PlannedFailure:
    source_item_id: int
    reason: str
    category: ErrorCategory
    match_value: Any = None


@dataclass
class BatchPlan:
    creates: list[PlannedCreate] = field(default_factory=list)
    updates: list[PlannedUpdate] = field(default_factory=list)
    skips: list[PlannedSkip] = field(default_factory=list)
    failures: list[PlannedFailure] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.creates) + len(self.updates) + len(self.skips) + len(self.failures)


@dataclass
class ItemFailure:
    source_item_id: int
    error: str
    category: ErrorCategory
    attempts: int = 1


@dataclass
class BatchOutcome:
    """What happened to every source item of one batch."""

    successful: list[int] = field(default_factory=list)  # source item ids
    failed: list[ItemFailure] = field(default_factory=list)
    skipped: list[PlannedSkip] = field(default_factory=list)
    created: dict[int, int] = field(default_factory=dict)  # source id -> new target id
    updated: dict[int, int] = field(default_factory=dict)  # source id -> target id
    file_errors: list[tuple[int, str]] = field(default_factory=list)
    stopped_early: bool = False

    @property
    def processed(self) -> int:
        return len(self.successful) + len(self.failed) + len(self.skipped)


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _same_value(current: Any, new: Any) -> bool:
    if current == new or (_is_blank(current) and _is_blank(new)):
        return True
    # Podio returns numbers as "12.5000"
    try:
        return Decimal(str(current)) == Decimal(str(new))
    except (InvalidOperation, ValueError):
        return False


def diff_fields(target: PodioItem, fields: dict[str, Any]) -> list[FieldChange]:
    """Compare a write payload with the target item's current values."""
    changes = []
    for target_field, new_value in fields.items():
        current = target.field_value(target_field)
        current_value = current.to_payload() if current is not None else None
        changes.append(
            FieldChange(
                field_external_id=target_field,
                current_value=current_value,
                new_value=new_value,
                will_change=not _same_value(current_value, new_value),
            )
        )
    return changes


class ItemMigrator:
    """Plans and executes migration batches for one job.

    Usage:
        setup = prepare_migration(client, request)
        migrator = ItemMigrator(client, request, setup, writer=RemoteItemWriter(client))
        migrator.prefetch()
        outcome = migrator.process(page.items)
    """

    def __init__(
        self,
        client: PodioHttpClient,
        request: MigrationRequest,
        setup: MigrationSetup,
        *,
        writer: ItemWriter,
        cache: PrefetchCache | None = None,
        transfer_files: bool | None = None,
    ) -> None:
        self._client = client
        self._request = request
        self._setup = setup
        self._writer = writer
        self._cache = cache
        self._transfer_files = request.transfer_files if transfer_files is None else transfer_files

    @property
    def cache(self) -> PrefetchCache | None:
        return self._cache

    def prefetch(self) -> None:
        """Build the target match index, if this migration matches and uses the cache."""
        request = self._request
        if not (request.uses_matching and request.use_prefetch_cache):
            return
        if self._cache is None:
            self._cache = PrefetchCache()
        self._cache.prefetch(self._client, request.target_app_id, request.target_match_field or "")

    def _find_target(self, source: PodioItem) -> tuple[Any, str, PodioItem | None]:
        """Match value, normalized key and matching target item (if any) of a source item."""
        value = source.field_value(self._request.source_match_field or "")
        key = normalize_field_value(value)
        if value is None or key == EMPTY:
            return None, EMPTY, None
        raw = value.match_value()

        if self._cache is not None:
            return raw, key, self._cache.lookup_key(key)

        target_field = self._request.target_match_field or ""
        target = item_api.find_item_by_field_value(
            self._client, self._request.target_app_id, target_field, raw if isinstance(raw, (str, int, float)) else key
        )
        # The filter endpoint does substring matching on text fields
        if target is not None and item_match_key(target, target_field) != key:
            return raw, key, None
        return raw, key, target

    def plan_batch(self, items: Sequence[PodioItem]) -> BatchPlan:
        request = self._request
        if self._cache is not None and self._cache.is_expired():
            logger.info("Prefetch cache is older than its TTL, refreshing")
            self.prefetch()

        plan = BatchPlan()
        for item in items:
            fields = map_item_fields(item, self._setup.field_mapping, self._setup.target_field_types)
            if not request.uses_matching:
                plan.creates.append(PlannedCreate(item, fields))
                continue

            match_value, key, target = self._find_target(item)
            if target is None:
                if request.mode == "update":
                    plan.failures.append(PlannedFailure(item.item_id, NO_MATCH_REASON, "validation", match_value))
                else:
                    plan.creates.append(PlannedCreate(item, fields, key))
                continue

            if request.mode == "create" and request.duplicate_behavior == "skip":
                reason = f"Duplicate of target item {target.item_id}"
                plan.skips.append(PlannedSkip(item.item_id, reason, target.item_id))
            elif request.mode == "create" and request.duplicate_behavior == "error":
                plan.failures.append(
                    PlannedFailure(
                        item.item_id, f"Duplicate found in target app (item {target.item_id})", "duplicate", match_value
                    )
                )
            else:
                self._plan_update(plan, item, target, fields, match_value)
        return plan

    def _plan_update(
        self, plan: BatchPlan, item: PodioItem, target: PodioItem, fields: dict[str, Any], match_value: Any
    ) -> None:
        changes = diff_fields(target, fields)
        changed = {c.field_external_id: c.new_value for c in changes if c.will_change}
        if not changed:
            plan.skips.append(PlannedSkip(item.item_id, NO_CHANGES_REASON, target.item_id))
            return
        plan.updates.append(PlannedUpdate(item, target.item_id, changed, match_value, changes))

    def execute(self, plan: BatchPlan, *, stop_on_error: bool = False) -> BatchOutcome:
        outcome = BatchOutcome(skipped=list(plan.skips))
        outcome.failed.extend(ItemFailure(f.source_item_id, f.reason, f.category) for f in plan.failures)
        if stop_on_error and outcome.failed:
            outcome.stopped_early = True
            return outcome

        if plan.updates:
            update_requests = [UpdateRequest(u.target_item_id, u.fields, u.source_item.item_id) for u in plan.updates]

            def record_update(request: UpdateRequest, target_id: int) -> None:
                outcome.successful.append(request.source_item_id or 0)
                outcome.updated[request.source_item_id or 0] = target_id

            self._write(
                update_requests,
                lambda reqs: self._writer.update_items(reqs, stop_on_error=stop_on_error),
                record_update,
                outcome,
                stop_on_error=stop_on_error,
            )
            if outcome.stopped_early:
                return outcome

        if plan.creates:
            planned = {c.source_item.item_id: c for c in plan.creates}
            create_requests = [
                CreateRequest(c.fields, f"{EXTERNAL_ID_PREFIX}{c.source_item.item_id}", c.source_item.item_id)
                for c in plan.creates
            ]

            def record_create(request: CreateRequest, new_id: int) -> None:
                source_id = request.source_item_id or 0
                outcome.successful.append(source_id)
                outcome.created[source_id] = new_id
                if self._cache is not None:
                    self._cache.add(PodioItem(item_id=new_id), key=planned[source_id].match_key)

            self._write(
                create_requests,
                lambda reqs: self._writer.create_items(self._request.target_app_id, reqs, stop_on_error=stop_on_error),
                record_create,
                outcome,
                stop_on_error=stop_on_error,
            )
            if self._transfer_files:
                for source_id, new_id in outcome.created.items():
                    self._copy_files(planned[source_id].source_item, new_id, outcome)
        return outcome

    def _write(
        self,
        requests: list[R],
        write: Callable[[list[R]], BulkResult[R, int]],
        on_success: Callable[[R, int], None],
        outcome: BatchOutcome,
        *,
        stop_on_error: bool,
    ) -> None:
        """Run one write pass, then re-run once the failures worth retrying."""
        result = write(requests)
        for success in result.successes:
            on_success(success.request, success.result)

        retry: list[R] = []
        for failure in result.failures:
            category = classify_error(failure.exception or failure.error)
            if not stop_on_error and should_retry(category, 1):
                retry.append(failure.request)
            else:
                outcome.failed.append(ItemFailure(_source_id(failure.request), failure.error, category))
        if result.stopped_early or (stop_on_error and result.failures):
            outcome.stopped_early = True
            return
        if not retry:
            return

        logger.info(f"Retrying {len(retry)} failed writes of this batch")
        second = write(retry)
        for success in second.successes:
            on_success(success.request, success.result)
        for failure in second.failures:
            category = classify_error(failure.exception or failure.error)
            outcome.failed.append(ItemFailure(_source_id(failure.request), failure.error, category, attempts=2))

    def _copy_files(self, source: PodioItem, target_item_id: int, outcome: BatchOutcome) -> None:
        try:
            file_api.transfer_item_files(
                self._client, source.item_id, target_item_id, source_files=source.files or None
            )
        except (FileTransferError, PodioApiError) as e:
            logger.warning(f"File transfer for item {source.item_id} -> {target_item_id} failed: {e}")
            outcome.file_errors.append((source.item_id, str(e)))

    def process(self, items: Sequence[PodioItem], *, stop_on_error: bool = False) -> BatchOutcome:
        """Plan and execute one batch of source items."""
        plan = self.plan_batch(items)
        outcome = self.execute(plan, stop_on_error=stop_on_error)
        logger.info(
            f"Batch of {len(items)} items: {len(outcome.successful)} written "
            f"({len(outcome.created)} created, {len(outcome.updated)} updated), "
            f"{len(outcome.skipped)} skipped, {len(outcome.failed)} failed"
        )
        return outcome

    def preview(self, items: Sequence[PodioItem], preview: DryRunPreview) -> BatchOutcome:
        """Plan one batch, run it through the writer, and add the plan to ``preview``."""
        plan = self.plan_batch(items)
        outcome = self.execute(plan)
        preview.would_create.extend(PreviewCreate(c.source_item.item_id, c.fields) for c in plan.creates)
        preview.would_update.extend(
            PreviewUpdate(u.source_item.item_id, u.target_item_id, u.match_value, u.changes) for u in plan.updates
        )
        preview.would_fail.extend(PreviewFailure(f.source_item_id, f.reason, f.match_value) for f in plan.failures)
        preview.would_skip.extend(PreviewSkip(s.source_item_id, s.reason, s.target_item_id) for s in plan.skips)
        return outcome


def _source_id(request: Any) -> int:
    return getattr(request, "source_item_id", None) or 0
