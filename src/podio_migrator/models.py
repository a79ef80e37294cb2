"""Data models shared by the migration engine.

These models represent Podio items and app schemas in the shape the engine
needs, the job record that is persisted between runs, and the ephemeral
results (duplicate groups, dry-run previews) handed back to callers.
Job-related models serialize to plain JSON-compatible dicts for the job store.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from .field_values import FieldValue, extract_field_value

MigrationMode = Literal["create", "update", "upsert"]
DuplicateBehavior = Literal["skip", "error", "update"]
JobType = Literal["migration", "cleanup"]
JobStatus = Literal[
    "planning",
    "detecting",
    "waiting_approval",
    "deleting",
    "in_progress",
    "paused",
    "completed",
    "failed",
    "cancelled",
]
CleanupMode = Literal["manual", "automated"]
KeepStrategy = Literal["oldest", "newest"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})
ACTIVE_STATUSES: frozenset[str] = frozenset({"planning", "detecting", "deleting", "in_progress"})


@dataclass
class AppField:
    """A field definition from an app schema (``GET /app/{app_id}``)."""

    field_id: int
    external_id: str
    label: str
    type: str
    status: str = "active"

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> AppField:
        config = data.get("config") or {}
        return cls(
            field_id=int(data["field_id"]),
            external_id=data.get("external_id") or "",
            label=data.get("label") or config.get("label") or "",
            type=data.get("type", ""),
            status=data.get("status", "active"),
        )


@dataclass
class PodioItem:
    """An item as returned by the filter and get endpoints."""

    item_id: int
    fields: list[dict[str, Any]] = field(default_factory=list)
    title: str = ""
    created_on: str | None = None
    last_event_on: str | None = None
    external_id: str | None = None
    files: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> PodioItem:
        return cls(
            item_id=int(data["item_id"]),
            fields=list(data.get("fields") or []),
            title=data.get("title") or "",
            created_on=data.get("created_on"),
            last_event_on=data.get("last_event_on"),
            external_id=data.get("external_id"),
            files=list(data.get("files") or []),
        )

    def get_field(self, external_id: str) -> dict[str, Any] | None:
        for f in self.fields:
            if f.get("external_id") == external_id:
                return f
        return None

    def field_value(self, external_id: str) -> FieldValue | None:
        raw = self.get_field(external_id)
        if raw is None:
            return None
        return extract_field_value(raw)


@dataclass
class ItemFilters:
    """User-facing item filters, converted to Podio's format by ``filters.convert_filters``."""

    created_from: str | None = None
    created_to: str | None = None
    last_edit_from: str | None = None
    last_edit_to: str | None = None
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ItemFilters | None:
        if data is None:
            return None
        return cls(
            created_from=data.get("created_from"),
            created_to=data.get("created_to"),
            last_edit_from=data.get("last_edit_from"),
            last_edit_to=data.get("last_edit_to"),
            tags=list(data.get("tags") or []),
        )


@dataclass
class MigrationRequest:
    """Parameters of an item migration between two apps."""

    source_app_id: int
    target_app_id: int
    mode: MigrationMode = "create"
    source_match_field: str | None = None
    target_match_field: str | None = None
    field_mapping: dict[str, str] | None = None  # source external_id -> target external_id
    batch_size: int = 500
    concurrency: int = 5
    filters: ItemFilters | None = None
    dry_run: bool = False
    duplicate_behavior: DuplicateBehavior = "skip"
    hook: bool = False
    silent: bool = True
    transfer_files: bool = False
    stop_on_error: bool = False
    max_items: int | None = None
    use_prefetch_cache: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationRequest:
        values = dict(data)
        values["filters"] = ItemFilters.from_dict(values.get("filters"))
        return cls(**values)

    @property
    def uses_matching(self) -> bool:
        return bool(self.source_match_field and self.target_match_field)


@dataclass
class CleanupRequest:
    """Parameters of a duplicate cleanup run on a single app."""

    app_id: int
    match_field: str
    mode: CleanupMode = "manual"
    keep_strategy: KeepStrategy = "oldest"
    dry_run: bool = False
    batch_size: int = 100
    concurrency: int = 5
    max_groups: int | None = None
    allow_unsupported_match_type: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CleanupRequest:
        return cls(**data)


@dataclass
class DuplicateItem:
    item_id: int
    title: str
    created_on: str | None
    match_value: str


@dataclass
class DuplicateGroup:
    """Items sharing one normalized match value.

    ``items`` is ordered by creation time ascending (unparseable timestamps
    last, ties broken by item id). Groups are recomputed wholesale on every
    detection run.
    """

    match_value: str
    items: list[DuplicateItem]
    keep_item_id: int | None = None
    delete_item_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DuplicateGroup:
        return cls(
            match_value=data["match_value"],
            items=[DuplicateItem(**i) for i in data.get("items", [])],
            keep_item_id=data.get("keep_item_id"),
            delete_item_ids=list(data.get("delete_item_ids") or []),
        )


@dataclass
class FieldChange:
    field_external_id: str
    current_value: Any
    new_value: Any
    will_change: bool


@dataclass
class PreviewCreate:
    source_item_id: int
    fields: dict[str, Any]


@dataclass
class PreviewUpdate:
    source_item_id: int
    target_item_id: int
    match_value: Any
    changes: list[FieldChange]


@dataclass
class PreviewFailure:
    source_item_id: int
    reason: str
    match_value: Any = None


@dataclass
class PreviewSkip:
    source_item_id: int
    reason: str
    target_item_id: int | None = None


@dataclass
class DryRunPreview:
    """What a real run would do. Never persisted."""

    would_create: list[PreviewCreate] = field(default_factory=list)
    would_update: list[PreviewUpdate] = field(default_factory=list)
    would_fail: list[PreviewFailure] = field(default_factory=list)
    would_skip: list[PreviewSkip] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def summary(self) -> dict[str, int]:
        return {
            "total_items": len(self.would_create)
            + len(self.would_update)
            + len(self.would_fail)
            + len(self.would_skip),
            "would_create": len(self.would_create),
            "would_update": len(self.would_update),
            "would_fail": len(self.would_fail),
            "would_skip": len(self.would_skip),
        }

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["summary"] = self.summary
        return data


@dataclass
class JobProgress:
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def percent(self) -> float:
        if self.total <= 0:
            return 0.0
        return round(min(self.processed / self.total, 1.0) * 100, 1)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["percent"] = self.percent
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> JobProgress:
        data = dict(data or {})
        data.pop("percent", None)
        return cls(**data)


@dataclass
class Checkpoint:
    """Where a paused job resumes: the next source offset to fetch."""

    offset: int
    last_processed_item_id: int | None
    timestamp: str


@dataclass
class FailedItem:
    source_item_id: int
    error: str
    category: str = "unknown"
    attempts: int = 1
    last_attempt_at: str | None = None


@dataclass
class JobError:
    message: str
    timestamp: str
    code: str | None = None
    item_id: int | None = None


@dataclass
class MigrationJob:
    """The persisted record of one migration or cleanup run."""

    job_id: str
    job_type: JobType
    status: JobStatus
    created_at: str
    updated_at: str
    request: dict[str, Any]
    mode: str = "create"
    progress: JobProgress = field(default_factory=JobProgress)
    throughput: dict[str, Any] = field(default_factory=dict)
    failed_items: list[FailedItem] = field(default_factory=list)
    failed_items_truncated: int = 0
    error_breakdown: dict[str, int] = field(default_factory=dict)
    errors: list[JobError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    checkpoint: Checkpoint | None = None
    started_at: str | None = None
    completed_at: str | None = None
    last_heartbeat: str | None = None
    retry_attempts: int = 0
    last_retry_timestamp: str | None = None
    pre_retry_snapshot: dict[str, Any] | None = None
    field_mapping_history: list[dict[str, Any]] = field(default_factory=list)
    duplicate_groups: list[DuplicateGroup] = field(default_factory=list)
    stats: dict[str, int] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["progress"] = self.progress.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MigrationJob:
        values = dict(data)
        values["progress"] = JobProgress.from_dict(values.get("progress"))
        values["failed_items"] = [FailedItem(**f) for f in values.get("failed_items") or []]
        values["errors"] = [JobError(**e) for e in values.get("errors") or []]
        checkpoint = values.get("checkpoint")
        values["checkpoint"] = Checkpoint(**checkpoint) if checkpoint else None
        values["duplicate_groups"] = [DuplicateGroup.from_dict(g) for g in values.get("duplicate_groups") or []]
        return cls(**values)
