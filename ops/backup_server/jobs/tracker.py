"""
Registry of the in-flight backup job and the in-flight restore job.

Each job kind has one slot. A trigger claims the slot, the engine
advances the job through its phases, and finish() records the terminal
state and frees the slot for the next trigger.

State machine (per kind):
    idle -> running -> completed | failed -> (next claim) running

Invariants:
    - At most one job per kind is running; kinds are independent
    - try_claim() is atomic per kind and does no I/O under the lock
    - progress never decreases within a job and stays within 0..100
    - Exactly one terminal event is published per job
    - Every transition publishes a ProgressEvent holding a copy of the job
    - With an operation log, start and terminal transitions add an entry
      before the job event is published

How to change safely:
    - Job fields are part of the event and HTTP payloads; add, don't rename
    - Keep publish() calls synchronous; the broadcaster never blocks
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from ..errors import AlreadyRunningError, UnknownError
from ..store.base import ArtifactKind, ArtifactOrigin, BackupArtifact
from .broadcaster import ProgressBroadcaster
from .events import ProgressEvent
from .oplog import LogLevel, OperationLog

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 50


class JobKind(str, Enum):
    """Which slot a job occupies."""

    BACKUP = "backup"
    RESTORE = "restore"


class JobStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def _iso(moment: datetime | None) -> str | None:
    return moment.isoformat() if moment is not None else None


@dataclass
class Job:
    """State shared by every job kind.

    Attributes:
        kind: Slot the job occupies
        job_id: Unique job identifier ("" for an idle slot)
        status: Lifecycle state
        current_step: Human-readable phase
        progress: Percent complete (0-100)
        error: Failure message
        error_code: BackupError code of the failure
        error_details: BackupError details of the failure
        started_at: Claim time (UTC)
        finished_at: Terminal time (UTC)
    """

    kind: JobKind
    job_id: str = ""
    status: JobStatus = JobStatus.IDLE
    current_step: str | None = None
    progress: int = 0
    error: str | None = None
    error_code: str | None = None
    error_details: dict[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self.status == JobStatus.RUNNING

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.finished_at is None:
            return None
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "current_step": self.current_step,
            "progress": self.progress,
            "error": self.error,
            "error_code": self.error_code,
            "error_details": dict(self.error_details),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration_ms": self.duration_ms,
        }


@dataclass
class BackupJob(Job):
    """A full backup or an incremental export.

    Attributes:
        backup_type: full or incremental
        origin: manual or scheduled
        artifact: Uploaded artifact, once known
    """

    kind: JobKind = JobKind.BACKUP
    backup_type: ArtifactKind = ArtifactKind.FULL
    origin: ArtifactOrigin = ArtifactOrigin.MANUAL
    artifact: BackupArtifact | None = None

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "backup_type": self.backup_type.value,
                "origin": self.origin.value,
                "artifact": self.artifact.to_dict() if self.artifact else None,
            }
        )
        return data


@dataclass
class RestoreJob(Job):
    """A restore from one artifact, or a point-in-time recovery.

    Attributes:
        artifact_id: Source full snapshot
        tables: Requested tables (empty means all)
        dry_run: Validate and count only
        recovery_until: Upper bound for point-in-time recovery
        completed_tables: Tables fully restored so far
        rows_restored: Rows written (or counted, for dry runs) per table
        changes_applied: Incremental changes replayed during recovery
    """

    kind: JobKind = JobKind.RESTORE
    artifact_id: str | None = None
    tables: list[str] = field(default_factory=list)
    dry_run: bool = False
    recovery_until: datetime | None = None
    completed_tables: list[str] = field(default_factory=list)
    rows_restored: dict[str, int] = field(default_factory=dict)
    changes_applied: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "artifact_id": self.artifact_id,
                "tables": list(self.tables),
                "dry_run": self.dry_run,
                "recovery_until": _iso(self.recovery_until),
                "completed_tables": list(self.completed_tables),
                "rows_restored": dict(self.rows_restored),
                "changes_applied": self.changes_applied,
            }
        )
        return data


JOB_TYPES: dict[JobKind, type[Job]] = {
    JobKind.BACKUP: BackupJob,
    JobKind.RESTORE: RestoreJob,
}


def describe(job: Job) -> str:
    """Short label of a job for operation log messages."""
    if isinstance(job, BackupJob):
        return "Full backup" if job.backup_type == ArtifactKind.FULL else "Incremental export"
    if isinstance(job, RestoreJob):
        if job.recovery_until is not None:
            return "Point-in-time recovery"
        return "Dry-run restore" if job.dry_run else "Restore"
    return job.kind.value.capitalize()


class JobHandle:
    """Write access to one claimed job, held by the engine running it.

    Example:
        >>> handle = tracker.try_claim(JobKind.BACKUP, origin=ArtifactOrigin.MANUAL)
        >>> handle.advance("dumping schema", 5)
        >>> handle.finish()
    """

    def __init__(self, tracker: JobTracker, job: Job) -> None:
        self._tracker = tracker
        self._job = job

    @property
    def job(self) -> Job:
        return self._job

    @property
    def job_id(self) -> str:
        return self._job.job_id

    @property
    def kind(self) -> JobKind:
        return self._job.kind

    def _require_running(self, action: str) -> None:
        if self._job.status != JobStatus.RUNNING:
            raise AssertionError(
                f"{action}() on {self._job.status.value} job {self._job.job_id}"
            )

    def advance(self, step: str, progress: int) -> None:
        """Move to a new phase.

        Raises:
            AssertionError: If progress decreases or leaves 0..100
        """
        self._require_running("advance")
        if not 0 <= progress <= 100:
            raise AssertionError(f"progress {progress} outside 0..100")
        if progress < self._job.progress:
            raise AssertionError(
                f"progress went backwards for job {self._job.job_id}: "
                f"{self._job.progress} -> {progress}"
            )

        self._job.current_step = step
        self._job.progress = progress
        logger.debug(
            "Job advanced",
            extra={"job_id": self._job.job_id, "step": step, "progress": progress},
        )
        self._tracker._publish(self._job)

    def advance_if_running(self, step: str, progress: int) -> None:
        """advance(), ignored once the job has finished.

        For callbacks scheduled from worker threads, which can run after
        the engine has already recorded a failure.
        """
        if self._job.is_running:
            self.advance(step, progress)

    def log(self, level: LogLevel, message: str, **context: Any) -> None:
        """Add an operation log entry tagged with this job."""
        self._tracker._log(level, message, job_id=self._job.job_id, **context)

    def update(self, **fields: Any) -> None:
        """Set job-specific fields (artifact, completed_tables, ...) and publish."""
        self._require_running("update")
        for name, value in fields.items():
            if name in ("status", "progress", "job_id", "kind") or not hasattr(self._job, name):
                raise AssertionError(f"cannot update field {name!r} of a job")
            setattr(self._job, name, value)
        self._tracker._publish(self._job)

    def finish(self, error: BaseException | None = None, step: str | None = None) -> None:
        """Record the terminal state and free the slot.

        Args:
            error: Failure, or None for success
            step: Final step label (defaults to "completed" on success,
                  the failing phase is kept on failure)
        """
        self._require_running("finish")
        job = self._job

        if error is None:
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.current_step = step or "completed"
        else:
            wrapped = UnknownError.wrap(error)
            job.status = JobStatus.FAILED
            job.error = wrapped.message
            job.error_code = wrapped.code
            job.error_details = dict(wrapped.details)
            if step is not None:
                job.current_step = step

        job.finished_at = datetime.now(timezone.utc)
        self._tracker._release(job)


class JobTracker:
    """Owns the two job slots and the finished-job history.

    Attributes:
        broadcaster: Receives an event for every transition
        history_size: Finished jobs retained
        oplog: Operation log receiving start and terminal entries

    Example:
        >>> tracker = JobTracker(ProgressBroadcaster())
        >>> handle = tracker.try_claim(JobKind.RESTORE, artifact_id=artifact.id)
        >>> tracker.is_running(JobKind.RESTORE)
        True
    """

    def __init__(
        self,
        broadcaster: ProgressBroadcaster | None = None,
        history_size: int = DEFAULT_HISTORY_SIZE,
        oplog: OperationLog | None = None,
    ) -> None:
        self.broadcaster = broadcaster
        self.history_size = history_size
        self.oplog = oplog
        self._locks = {kind: threading.Lock() for kind in JobKind}
        self._current: dict[JobKind, Job | None] = {kind: None for kind in JobKind}
        self._history: deque[Job] = deque(maxlen=history_size)

    def try_claim(self, kind: JobKind, **fields: Any) -> JobHandle:
        """Claim the slot for `kind` and create a running job.

        Args:
            kind: Slot to claim
            **fields: Job-specific fields (backup_type, artifact_id, ...)

        Raises:
            AlreadyRunningError: If a job of this kind is running
        """
        with self._locks[kind]:
            current = self._current[kind]
            if current is not None and current.is_running:
                raise AlreadyRunningError(kind.value, current.job_id)

            job = JOB_TYPES[kind](
                job_id=uuid.uuid4().hex,
                status=JobStatus.RUNNING,
                current_step="starting",
                started_at=datetime.now(timezone.utc),
                **fields,
            )
            self._current[kind] = job
            self._log(LogLevel.INFO, f"{describe(job)} started", job_id=job.job_id)
            self._publish(job)

        logger.info("Job started", extra={"job_id": job.job_id, "kind": kind.value})
        return JobHandle(self, job)

    def _release(self, job: Job) -> None:
        if job.status == JobStatus.COMPLETED:
            message = f"{describe(job)} completed in {job.duration_ms}ms"
            if job.current_step != "completed":
                message += f" ({job.current_step})"
            self._log(LogLevel.SUCCESS, message, job_id=job.job_id)
        else:
            self._log(
                LogLevel.ERROR,
                f"{describe(job)} failed: {job.error}",
                job_id=job.job_id,
                error_code=job.error_code,
            )

        with self._locks[job.kind]:
            self._history.appendleft(job)
            self._publish(job)

        log = logger.info if job.status == JobStatus.COMPLETED else logger.warning
        log(
            f"Job {job.status.value}",
            extra={
                "job_id": job.job_id,
                "kind": job.kind.value,
                "duration_ms": job.duration_ms,
                "error_code": job.error_code,
            },
        )

    def _publish(self, job: Job) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(ProgressEvent.for_job(job.kind.value, job.to_dict()))

    def _log(self, level: LogLevel, message: str, **context: Any) -> None:
        if self.oplog is not None:
            self.oplog.add(level, message, **context)

    # --- Reads ---

    def current(self, kind: JobKind) -> Job | None:
        """Most recent job of this kind (running or terminal), None if none ran."""
        return self._current[kind]

    def is_running(self, kind: JobKind) -> bool:
        current = self._current[kind]
        return current is not None and current.is_running

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Current state of both slots; a slot that never ran is an idle job."""
        result = {}
        for kind in JobKind:
            job = self._current[kind] or JOB_TYPES[kind]()
            result[kind.value] = job.to_dict()
        return result

    def history(self, kind: JobKind | None = None, limit: int | None = None) -> list[dict[str, Any]]:
        """Finished jobs, newest first."""
        jobs = [job for job in self._history if kind is None or job.kind == kind]
        if limit is not None:
            jobs = jobs[:limit]
        return [job.to_dict() for job in jobs]
