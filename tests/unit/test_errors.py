"""
Unit tests for error types and deadlines.

Tests cover:
- Codes and HTTP statuses
- Wrapping of foreign exceptions
- Deadline expiry and with_timeout
"""

import asyncio

import pytest

from ops.backup_server.deadline import Deadline, with_timeout
from ops.backup_server.errors import (
    AlreadyRunningError,
    BackupError,
    BackupTimeoutError,
    CorruptArtifactError,
    InvalidArgumentError,
    NotFoundError,
    StorageUnavailableError,
    UnknownError,
)


class TestErrors:
    """Tests for BackupError subclasses."""

    @pytest.mark.parametrize(
        "error,code,status",
        [
            (AlreadyRunningError("backup", "abc"), "ALREADY_RUNNING", 409),
            (NotFoundError("missing"), "NOT_FOUND", 404),
            (InvalidArgumentError("bad"), "INVALID_ARGUMENT", 400),
            (CorruptArtifactError("broken"), "CORRUPT", 422),
            (StorageUnavailableError("down"), "STORAGE_UNAVAILABLE", 503),
            (BackupTimeoutError("upload", 5), "TIMEOUT", 504),
            (UnknownError("?"), "UNKNOWN", 500),
        ],
    )
    def test_codes(self, error, code, status):
        assert isinstance(error, BackupError)
        assert error.code == code
        assert error.http_status == status

    def test_to_dict(self):
        error = AlreadyRunningError("restore", "job-1")

        assert error.to_dict() == {
            "code": "ALREADY_RUNNING",
            "message": "A restore job is already running",
            "details": {"kind": "restore", "job_id": "job-1"},
        }

    def test_timeout_message(self):
        error = BackupTimeoutError("artifact upload", 2.5)

        assert error.message == "artifact upload timed out after 2.5s"
        assert error.details["timeout_seconds"] == 2.5

    def test_wrap_keeps_backup_errors(self):
        error = NotFoundError("gone")

        assert UnknownError.wrap(error) is error

    def test_wrap_foreign_error(self):
        wrapped = UnknownError.wrap(KeyError("employees"))

        assert isinstance(wrapped, UnknownError)
        assert "employees" in wrapped.message
        assert wrapped.details == {"type": "KeyError"}

    def test_wrap_empty_message_uses_type(self):
        wrapped = UnknownError.wrap(RuntimeError())

        assert wrapped.message == "RuntimeError"


class TestDeadline:
    """Tests for Deadline and with_timeout."""

    def test_fresh_deadline(self):
        deadline = Deadline(60, "dump")

        assert not deadline.expired
        assert 0 < deadline.remaining <= 60
        deadline.check()

    def test_expired_deadline(self):
        deadline = Deadline(0, "dump")

        assert deadline.expired
        assert deadline.remaining == 0.0
        with pytest.raises(BackupTimeoutError) as exc_info:
            deadline.check()
        assert exc_info.value.operation == "dump"

    @pytest.mark.asyncio
    async def test_with_timeout_returns_result(self):
        async def work():
            return 42

        assert await with_timeout(work(), 1, "work") == 42

    @pytest.mark.asyncio
    async def test_with_timeout_raises_backup_timeout(self):
        with pytest.raises(BackupTimeoutError) as exc_info:
            await with_timeout(asyncio.sleep(10), 0.01, "artifact download")

        assert exc_info.value.operation == "artifact download"
        assert exc_info.value.__cause__ is None
