"""
Podio Migration Tool

Migrates items between Podio apps (create, update or upsert, matched on a
field) and removes duplicate items within an app. Long migrations run as
jobs that can be paused, resumed and retried, on top of a rate-limit aware
API gateway.
"""

from __future__ import annotations

from .cli import main
from .config import PodioConfig
from .context import AppContext
from .exceptions import (
    CleanupValidationError,
    FileTransferError,
    InvalidJobStateError,
    JobNotFoundError,
    MigrationError,
    PodioApiError,
    PodioAuthError,
    PodioConfigError,
)
from .jobs import JobManager
from .models import CleanupRequest, DryRunPreview, ItemFilters, MigrationJob, MigrationRequest
from .normalize import normalize_value
from .utils import setup_logging

# Package version
__version__ = "0.1.0"

__all__ = [
    "AppContext",
    "CleanupRequest",
    "CleanupValidationError",
    "DryRunPreview",
    "FileTransferError",
    "InvalidJobStateError",
    "ItemFilters",
    "JobManager",
    "JobNotFoundError",
    "MigrationError",
    "MigrationJob",
    "MigrationRequest",
    "PodioApiError",
    "PodioAuthError",
    "PodioConfig",
    "PodioConfigError",
    "main",
    "normalize_value",
    "setup_logging",
]
