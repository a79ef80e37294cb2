"""Protocols for the pluggable backends of the migration engine.

The engine persists two kinds of state:

1. TokenStore: the OAuth2 token record owned by the AuthManager
2. JobStore: one MigrationJob record per migration or cleanup run

A third protocol, ItemWriter, is the seam between migration planning and
the mutating API calls, so a dry run can swap in a recorder.

Both stores ship with a file-backed implementation for real runs and an in-memory
implementation for tests and one-off scripts. Anything that satisfies the
protocol can be injected through ``context.AppContext``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .auth import TokenRecord
    from .bulk import BulkResult, CreateRequest, UpdateRequest
    from .models import MigrationJob


class TokenStore(Protocol):
    """Protocol for persisting the cached OAuth2 token.

    A stored record is never dropped just because it expired. The refresh
    token inside it is still needed; only a failed refresh clears it.
    """

    def load(self) -> TokenRecord | None:
        """Return the stored token record, or None if nothing usable is stored."""
        ...

    def save(self, record: TokenRecord) -> None:
        """Persist the token record, replacing any previous one."""
        ...

    def clear(self) -> None:
        """Remove the stored token record."""
        ...


class JobStore(Protocol):
    """Protocol for persisting job records.

    Implementations must survive process restarts when used for real runs,
    since a paused job is resumed from the stored checkpoint, possibly by a
    different process.
    """

    def save(self, job: MigrationJob) -> None:
        """Insert or replace the job record."""
        ...

    def get(self, job_id: str) -> MigrationJob | None:
        """Return the job record, or None if unknown."""
        ...

    def list(self, *, job_type: str | None = None, status: str | None = None) -> list[MigrationJob]:
        """Return all job records, optionally filtered, newest first."""
        ...

    def delete(self, job_id: str) -> None:
        """Remove a job record. Unknown ids are ignored."""
        ...


class ItemWriter(Protocol):
    """Protocol for the write side of a migration batch."""

    def create_items(
        self, app_id: int, requests: Sequence[CreateRequest], *, stop_on_error: bool = False
    ) -> BulkResult[CreateRequest, int]:
        """Create items in ``app_id``. Successes carry the new item id."""
        ...

    def update_items(
        self, requests: Sequence[UpdateRequest], *, stop_on_error: bool = False
    ) -> BulkResult[UpdateRequest, int]:
        """Update existing items. Successes carry the updated item id."""
        ...
