"""
Error types for the backup server.

Every failure a caller can act on is a BackupError subclass:
- AlreadyRunningError: a job of the same kind is in flight
- NotFoundError: artifact (or table set) resolves to nothing
- InvalidArgumentError: malformed request, e.g. unknown table names
- CorruptArtifactError: artifact cannot be parsed or fails verification
- StorageUnavailableError: artifact store I/O failure
- BackupTimeoutError: a phase exceeded its deadline
- UnknownError: anything else, with the underlying message preserved

Invariants:
    - code and http_status are class-level and never change for a class
    - details is always a JSON-serializable dict
    - Error messages never contain credentials

How to change safely:
    - Add new error classes rather than changing existing codes
    - Clients match on code, so treat codes as public API
"""

from __future__ import annotations

from typing import Any


class BackupError(Exception):
    """Base exception for all backup server errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        http_status: Status code the HTTP layer answers with
        details: Additional error context
    """

    code = "UNKNOWN"
    http_status = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses and job records."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class AlreadyRunningError(BackupError):
    """A job of the same kind already holds the claim."""

    code = "ALREADY_RUNNING"
    http_status = 409

    def __init__(self, kind: str, job_id: str | None = None) -> None:
        super().__init__(
            f"A {kind} job is already running",
            details={"kind": kind, "job_id": job_id},
        )
        self.kind = kind
        self.job_id = job_id


class NotFoundError(BackupError):
    """Artifact does not exist in the store."""

    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, message: str, artifact_id: str | None = None) -> None:
        super().__init__(message, details={"artifact_id": artifact_id})
        self.artifact_id = artifact_id


class InvalidArgumentError(BackupError):
    """Request is malformed.

    Raised when:
    - Requested table names are not in the artifact
    - A restore targets an incremental export
    - A timestamp cannot be parsed
    """

    code = "INVALID_ARGUMENT"
    http_status = 400


class CorruptArtifactError(BackupError):
    """Artifact cannot be parsed or its checksum does not match."""

    code = "CORRUPT"
    http_status = 422

    def __init__(self, message: str, artifact_id: str | None = None) -> None:
        super().__init__(message, details={"artifact_id": artifact_id})
        self.artifact_id = artifact_id


class StorageUnavailableError(BackupError):
    """Artifact store I/O failed."""

    code = "STORAGE_UNAVAILABLE"
    http_status = 503


class BackupTimeoutError(BackupError):
    """A phase ran past its deadline."""

    code = "TIMEOUT"
    http_status = 504

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        super().__init__(
            f"{operation} timed out after {timeout_seconds:g}s",
            details={"operation": operation, "timeout_seconds": timeout_seconds},
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class UnknownError(BackupError):
    """Catch-all wrapper that keeps the original message."""

    code = "UNKNOWN"
    http_status = 500

    @classmethod
    def wrap(cls, error: BaseException) -> BackupError:
        """Return error unchanged if it is a BackupError, else wrap it."""
        if isinstance(error, BackupError):
            return error
        return cls(str(error) or type(error).__name__, details={"type": type(error).__name__})
