"""
Backup service: the orchestration core behind the HTTP API, the
scheduler and the operator CLI.

Trigger flow:
    validate (no side effects) -> tracker.try_claim() -> spawn engine task
    -> return the claimed job snapshot

    Validation and claim errors are raised to the caller before any job
    exists. Errors inside the engine are recorded on the job, published,
    logged by the task done-callback and absorbed; the awaiting run_*
    variants re-raise them instead.

Invariants:
    - At most one backup (full or incremental) and one restore run at once
    - A restore whose artifact is missing fails before the claim is taken
    - The service owns every task it spawns; shutdown() drains them
    - No module-level state: everything is constructor-injected

How to change safely:
    - New job types need a tracker kind decision (share or add a slot)
    - Keep trigger_* synchronous up to the claim so 409s stay immediate
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Coroutine

from .config import ServerConfig
from .database import SqliteDatabase
from .deadline import with_timeout
from .errors import AlreadyRunningError, BackupError, InvalidArgumentError
from .inventory import TableDiff, TableInventory
from .jobs import (
    JobHandle,
    JobKind,
    JobTracker,
    OperationLog,
    ProgressBroadcaster,
    ProgressEvent,
    Subscription,
)
from .restore import RecoveryPlan, RestoreEngine, RestoreResult
from .snapshot import Snapshotter
from .store.base import (
    ArtifactKind,
    ArtifactOrigin,
    ArtifactStore,
    BackupArtifact,
    create_artifact_store,
)

logger = logging.getLogger(__name__)

DEFAULT_SHUTDOWN_TIMEOUT = 30.0


def parse_artifact_kind(value: str | ArtifactKind | None) -> ArtifactKind | None:
    if value is None or value == "":
        return None
    try:
        return ArtifactKind(value)
    except ValueError:
        raise InvalidArgumentError(
            f"Unknown artifact kind: {value}",
            details={"allowed": [kind.value for kind in ArtifactKind]},
        )


def parse_job_kind(value: str | JobKind | None) -> JobKind | None:
    if value is None or value == "":
        return None
    try:
        return JobKind(value)
    except ValueError:
        raise InvalidArgumentError(
            f"Unknown job kind: {value}",
            details={"allowed": [kind.value for kind in JobKind]},
        )


class BackupService:
    """Coordinates jobs, engines and the artifact store.

    Attributes:
        store: Artifact store
        database: Database being backed up
        snapshotter: Full backup and export engine
        restore_engine: Restore and recovery engine
        inventory: Artifact header reader
        tracker: Job slots
        broadcaster: Progress event fan-out
        capture_changes: Install change-log triggers on start()

    Example:
        >>> service = BackupService.from_config(ServerConfig.from_env())
        >>> await service.start()
        >>> job = service.trigger_backup()
        >>> await service.wait_idle()
    """

    def __init__(
        self,
        store: ArtifactStore,
        database: SqliteDatabase,
        snapshotter: Snapshotter,
        restore_engine: RestoreEngine,
        inventory: TableInventory,
        tracker: JobTracker,
        broadcaster: ProgressBroadcaster,
        storage_timeout_seconds: float = 300.0,
        capture_changes: bool = True,
    ) -> None:
        self.store = store
        self.database = database
        self.snapshotter = snapshotter
        self.restore_engine = restore_engine
        self.inventory = inventory
        self.tracker = tracker
        self.broadcaster = broadcaster
        self.storage_timeout_seconds = storage_timeout_seconds
        self.capture_changes = capture_changes

        self._tasks: set[asyncio.Task] = set()
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: ServerConfig,
        store: ArtifactStore | None = None,
        broadcaster: ProgressBroadcaster | None = None,
    ) -> BackupService:
        """Build the service and all of its components from configuration."""
        store = store if store is not None else create_artifact_store(config)
        broadcaster = broadcaster if broadcaster is not None else ProgressBroadcaster()
        backup = config.backup

        database = SqliteDatabase(
            config.database.path,
            wal_mode=config.database.wal_mode,
            busy_timeout_ms=config.database.busy_timeout_ms,
        )
        inventory = TableInventory(
            store,
            header_read_bytes=backup.header_read_bytes,
            max_header_bytes=backup.max_header_bytes,
            storage_timeout_seconds=backup.storage_timeout_seconds,
        )

        return cls(
            store=store,
            database=database,
            snapshotter=Snapshotter(
                database,
                store,
                backup.work_dir,
                storage_timeout_seconds=backup.storage_timeout_seconds,
                phase_timeout_seconds=backup.phase_timeout_seconds,
                skip_unchanged=backup.skip_unchanged,
            ),
            restore_engine=RestoreEngine(
                database,
                store,
                inventory,
                backup.work_dir,
                storage_timeout_seconds=backup.storage_timeout_seconds,
                phase_timeout_seconds=backup.phase_timeout_seconds,
            ),
            inventory=inventory,
            tracker=JobTracker(
                broadcaster,
                history_size=backup.history_size,
                oplog=OperationLog(broadcaster, max_entries=backup.log_size),
            ),
            broadcaster=broadcaster,
            storage_timeout_seconds=backup.storage_timeout_seconds,
            capture_changes=config.database.change_log_enabled,
        )

    # --- Lifecycle ---

    async def start(self) -> None:
        """Connect the store, prepare the database and clear stale work files."""
        if self._started:
            return

        await self.store.connect()

        loop = asyncio.get_event_loop()
        await loop.run_in_executor(None, self.database.initialize)
        if self.capture_changes:
            await loop.run_in_executor(None, self.database.install_change_log)

        self.snapshotter.cleanup_orphans()
        self._started = True
        logger.info("Backup service started", extra={"database": str(self.database.path)})

    async def shutdown(self, timeout: float = DEFAULT_SHUTDOWN_TIMEOUT) -> None:
        """End progress streams, drain running jobs and close the store.

        Jobs still running after `timeout` are cancelled; their engines
        record the cancellation as a failure.
        """
        self.broadcaster.close_all()

        tasks = list(self._tasks)
        if tasks:
            logger.info("Waiting for running jobs", extra={"jobs": len(tasks)})
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if self._started:
            await self.store.close()
            self._started = False
        logger.info("Backup service stopped")

    async def wait_idle(self) -> None:
        """Wait until every spawned job task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # --- Task ownership ---

    def _spawn(self, coro: Coroutine[Any, Any, Any], handle: JobHandle) -> asyncio.Task:
        task = asyncio.get_event_loop().create_task(coro, name=f"{handle.kind.value}-{handle.job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Job task cancelled", extra={"task": task.get_name()})
            return

        error = task.exception()
        if error is None:
            return
        if isinstance(error, BackupError):
            logger.warning(
                f"Job task failed: {error.message}",
                extra={"task": task.get_name(), "error_code": error.code},
            )
        else:
            logger.error(
                f"Job task crashed: {error}",
                extra={"task": task.get_name()},
                exc_info=error,
            )

    # --- Backups ---

    def _claim_backup(self, backup_type: ArtifactKind, origin: ArtifactOrigin) -> JobHandle:
        return self.tracker.try_claim(JobKind.BACKUP, backup_type=backup_type, origin=origin)

    def trigger_backup(self, origin: ArtifactOrigin = ArtifactOrigin.MANUAL) -> dict[str, Any]:
        """Start a full backup in the background.

        Returns:
            Snapshot of the claimed job

        Raises:
            AlreadyRunningError: If a backup or export is running
        """
        handle = self._claim_backup(ArtifactKind.FULL, origin)
        job = handle.job.to_dict()
        self._spawn(self.snapshotter.run_full_backup(handle, origin), handle)
        return job

    def trigger_incremental_export(
        self, origin: ArtifactOrigin = ArtifactOrigin.MANUAL
    ) -> dict[str, Any]:
        """Start an incremental export in the background (shares the backup slot)."""
        handle = self._claim_backup(ArtifactKind.INCREMENTAL, origin)
        job = handle.job.to_dict()
        self._spawn(self.snapshotter.run_incremental_export(handle, origin), handle)
        return job

    async def run_backup(
        self, origin: ArtifactOrigin = ArtifactOrigin.MANUAL
    ) -> BackupArtifact | None:
        """Run a full backup to completion, raising its failure."""
        handle = self._claim_backup(ArtifactKind.FULL, origin)
        return await self.snapshotter.run_full_backup(handle, origin)

    async def run_incremental_export(
        self, origin: ArtifactOrigin = ArtifactOrigin.MANUAL
    ) -> BackupArtifact | None:
        """Run an incremental export to completion, raising its failure."""
        handle = self._claim_backup(ArtifactKind.INCREMENTAL, origin)
        return await self.snapshotter.run_incremental_export(handle, origin)

    # --- Restores ---

    def _require_restore_slot(self) -> None:
        current = self.tracker.current(JobKind.RESTORE)
        if current is not None and current.is_running:
            raise AlreadyRunningError(JobKind.RESTORE.value, current.job_id)

    async def _claim_restore(
        self,
        artifact_id: str,
        tables: list[str] | None,
        dry_run: bool,
    ) -> JobHandle:
        self._require_restore_slot()
        await self.restore_engine.validate_restore(artifact_id, tables)
        return self.tracker.try_claim(
            JobKind.RESTORE,
            artifact_id=artifact_id,
            tables=list(tables or []),
            dry_run=dry_run,
        )

    async def _claim_recovery(self, until: datetime | None) -> tuple[JobHandle, RecoveryPlan]:
        self._require_restore_slot()
        plan = await self.restore_engine.plan_recovery(until)
        handle = self.tracker.try_claim(
            JobKind.RESTORE,
            artifact_id=plan.base.id,
            recovery_until=plan.until,
        )
        return handle, plan

    async def trigger_restore(
        self,
        artifact_id: str,
        tables: list[str] | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Validate a restore and start it in the background.

        Raises:
            AlreadyRunningError: If a restore is running
            NotFoundError: If the artifact does not exist
            InvalidArgumentError: If it is not a full backup or a table is unknown
            CorruptArtifactError: If its header cannot be read
        """
        handle = await self._claim_restore(artifact_id, tables, dry_run)
        job = handle.job.to_dict()
        self._spawn(
            self.restore_engine.run_restore(handle, artifact_id, tables, dry_run), handle
        )
        return job

    async def trigger_recovery(self, until: datetime | None = None) -> dict[str, Any]:
        """Start a point-in-time recovery in the background.

        Raises:
            AlreadyRunningError: If a restore is running
            NotFoundError: If no full backup exists at or before `until`
        """
        handle, plan = await self._claim_recovery(until)
        job = handle.job.to_dict()
        self._spawn(self.restore_engine.run_recovery(handle, plan=plan), handle)
        return job

    async def run_restore(
        self,
        artifact_id: str,
        tables: list[str] | None = None,
        dry_run: bool = False,
    ) -> RestoreResult:
        """Run a restore to completion, raising its failure."""
        handle = await self._claim_restore(artifact_id, tables, dry_run)
        return await self.restore_engine.run_restore(handle, artifact_id, tables, dry_run)

    async def run_recovery(self, until: datetime | None = None) -> RestoreResult:
        """Run a point-in-time recovery to completion, raising its failure."""
        handle, plan = await self._claim_recovery(until)
        return await self.restore_engine.run_recovery(handle, plan=plan)

    # --- Reads ---

    async def list_backups(self, kind: str | ArtifactKind | None = None) -> list[BackupArtifact]:
        """Artifacts in the store, newest first."""
        return await with_timeout(
            self.store.list_artifacts(parse_artifact_kind(kind)),
            self.storage_timeout_seconds,
            "list artifacts",
        )

    async def list_tables(self, artifact_id: str) -> list[str]:
        return await self.inventory.list_tables(artifact_id)

    async def diff_backup(self, artifact_id: str) -> list[TableDiff]:
        return await self.inventory.diff(artifact_id, self.database)

    def current_jobs(self) -> dict[str, dict[str, Any]]:
        return self.tracker.snapshot()

    def job_history(
        self,
        kind: str | JobKind | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        return self.tracker.history(parse_job_kind(kind), limit)

    def logs(self, limit: int | None = 100) -> list[dict[str, Any]]:
        """Operation log entries, newest first (empty without an operation log)."""
        if self.tracker.oplog is None:
            return []
        return self.tracker.oplog.entries(limit)

    def clear_logs(self) -> int:
        if self.tracker.oplog is None:
            return 0
        return self.tracker.oplog.clear()

    def subscribe(self) -> Subscription:
        """Open a progress stream whose first event is the current state."""
        return self.broadcaster.subscribe(ProgressEvent.init(self.tracker.snapshot()))

    @property
    def running_tasks(self) -> int:
        return len(self._tasks)
