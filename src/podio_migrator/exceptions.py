"""
Custom exception classes for the Podio migration tool.
"""

from __future__ import annotations

from typing import Any


class MigrationError(Exception):
    """Base exception for migration errors."""


class PodioApiError(MigrationError):
    """Raised when a Podio API call fails.

    ``status_code`` is None when the request never produced a response
    (connection refused, DNS failure, timeout).
    """

    status_code: int | None
    error_code: str | None
    error_detail: str | None
    response_body: Any
    retry_after: float | None

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        error_code: str | None = None,
        error_detail: str | None = None,
        response_body: Any = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.error_detail = error_detail
        self.response_body = response_body
        self.retry_after = retry_after


class PodioAuthError(PodioApiError):
    """Raised when credentials are missing or a token grant/refresh fails."""


class PodioConfigError(MigrationError):
    """Raised when required configuration is missing or invalid."""


class CleanupValidationError(MigrationError):
    """Raised when a cleanup request is invalid."""


class JobNotFoundError(MigrationError):
    """Raised when a job id is unknown to the job store."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidJobStateError(MigrationError):
    """Raised when a control action is not allowed in the job's current state."""


class FileTransferError(MigrationError):
    """Raised when every file of an item file transfer failed."""
