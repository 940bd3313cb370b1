"""
Restore engine: rewrite tables from a full snapshot, and point-in-time
recovery by replaying incremental exports on top of one.

Restore steps:
    1. Resolve the artifact (NotFoundError) and require kind=full
    2. Download it and verify its sha256 against store metadata
    3. Reject unknown table names before touching anything
    4. For each target table, in artifact order, replace its contents in
       one transaction, verifying row count and checksum before commit
    5. Report progress as completed/total after each table

Recovery steps:
    1. Pick the newest full snapshot at or before `until`
    2. Restore every table from it (progress 0-70)
    3. Replay each later incremental export up to `until`, oldest first
       (progress 70-100)
    4. Run the database integrity check

Invariants:
    - A restore with a table subset mutates only those tables
    - Each table is all-or-nothing; a failure stops the restore and the
      error names completed, failed and remaining tables
    - A dry run never writes
    - Downloaded work files are always removed
    - The engine always finishes the job handle it was given

How to change safely:
    - Pre-claim validation lives in validate_restore()/plan_recovery();
      keep it free of side effects
    - Replay relies on idempotent changes; keep apply_changes() an upsert
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator

from ..codec import TableDigest, encode_row, file_checksum
from ..database import SqliteDatabase
from ..deadline import Deadline, with_timeout
from ..errors import (
    BackupError,
    CorruptArtifactError,
    InvalidArgumentError,
    NotFoundError,
    UnknownError,
)
from ..inventory import TableInventory
from ..jobs.oplog import LogLevel
from ..jobs.tracker import JobHandle
from ..snapshot.format import SnapshotHeader, SnapshotReader, TableManifest, read_changes
from ..store.base import ArtifactKind, ArtifactStore, BackupArtifact

logger = logging.getLogger(__name__)

WORK_SUFFIX = ".tmp"
SNAPSHOT_SHARE = 70  # recovery progress spent on the base snapshot


@dataclass
class RestoreResult:
    """Outcome of a restore or recovery.

    Attributes:
        artifact_id: Full snapshot the tables came from
        tables: Tables restored (or counted)
        rows_restored: Rows per table
        dry_run: Whether anything was written
        replayed_artifacts: Incremental exports applied (recovery only)
        changes_applied: Changes replayed (recovery only)
    """

    artifact_id: str
    tables: list[str] = field(default_factory=list)
    rows_restored: dict[str, int] = field(default_factory=dict)
    dry_run: bool = False
    replayed_artifacts: list[str] = field(default_factory=list)
    changes_applied: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "artifact_id": self.artifact_id,
            "tables": list(self.tables),
            "rows_restored": dict(self.rows_restored),
            "dry_run": self.dry_run,
            "replayed_artifacts": list(self.replayed_artifacts),
            "changes_applied": self.changes_applied,
        }


@dataclass
class RecoveryPlan:
    """Artifacts a point-in-time recovery will use."""

    base: BackupArtifact
    incrementals: list[BackupArtifact]
    until: datetime


def as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def table_failure(
    error: BaseException,
    completed: list[str],
    failed: str,
    remaining: list[str],
) -> BackupError:
    """Attach which tables finished, failed and were never reached."""
    wrapped = UnknownError.wrap(error)
    wrapped.details = {
        **wrapped.details,
        "completed_tables": list(completed),
        "failed_table": failed,
        "remaining_tables": list(remaining),
    }
    wrapped.message = (
        f"Restore failed on table {failed}: {wrapped.message}. "
        f"Completed: {', '.join(completed) or 'none'}. "
        f"Not attempted: {', '.join(remaining) or 'none'}."
    )
    wrapped.args = (wrapped.message,)
    return wrapped


def verified_rows(manifest: TableManifest, rows: Iterable[dict[str, Any]]) -> Iterator[dict[str, Any]]:
    """Pass rows through, raising before exhaustion if they differ from the manifest.

    The check fires inside the consumer's loop, so a table load aborts
    (and rolls back) instead of committing unexpected data.
    """
    digest = TableDigest()
    for row in rows:
        digest.update(encode_row(row))
        yield row

    if digest.row_count != manifest.row_count or (
        manifest.checksum and digest.checksum != manifest.checksum
    ):
        raise CorruptArtifactError(
            f"Table {manifest.name} does not match its manifest: "
            f"expected {manifest.row_count} rows, read {digest.row_count}"
        )


class RestoreEngine:
    """Restores tables from artifacts.

    Attributes:
        database: Target database
        store: Artifact store
        inventory: Header reader used for validation
        work_dir: Directory for downloaded artifacts
        verify_integrity: Run the integrity check after recovery

    Example:
        >>> await engine.validate_restore(artifact_id, ["employees"])
        >>> handle = tracker.try_claim(JobKind.RESTORE, artifact_id=artifact_id)
        >>> result = await engine.run_restore(handle, artifact_id, ["employees"])
    """

    def __init__(
        self,
        database: SqliteDatabase,
        store: ArtifactStore,
        inventory: TableInventory,
        work_dir: str | Path,
        storage_timeout_seconds: float = 300.0,
        phase_timeout_seconds: float = 1800.0,
        verify_integrity: bool = True,
    ) -> None:
        self.database = database
        self.store = store
        self.inventory = inventory
        self.work_dir = Path(work_dir)
        self.storage_timeout_seconds = storage_timeout_seconds
        self.phase_timeout_seconds = phase_timeout_seconds
        self.verify_integrity = verify_integrity

    # --- Validation ---

    async def validate_restore(
        self,
        artifact_id: str,
        tables: list[str] | None = None,
    ) -> tuple[BackupArtifact, SnapshotHeader]:
        """Check a restore request without side effects.

        Raises:
            NotFoundError: If the artifact does not exist
            InvalidArgumentError: If it is not a full snapshot, or a
                requested table is not in it
            CorruptArtifactError: If its header cannot be read
        """
        artifact = await self.inventory.resolve(artifact_id)
        if artifact.kind != ArtifactKind.FULL:
            raise InvalidArgumentError(
                f"Only full backups can be restored: {artifact.name}",
                details={"artifact_id": artifact.id, "kind": artifact.kind.value},
            )

        header = await self.inventory.read_header(artifact.id, artifact)
        self._check_tables(header, tables)
        return artifact, header

    @staticmethod
    def _check_tables(header: SnapshotHeader, tables: list[str] | None) -> None:
        if not tables:
            return
        available = set(header.table_names)
        unknown = [name for name in tables if name not in available]
        if unknown:
            raise InvalidArgumentError(
                f"Tables not in backup: {', '.join(unknown)}",
                details={"unknown_tables": unknown, "available_tables": header.table_names},
            )

    async def plan_recovery(self, until: datetime | None = None) -> RecoveryPlan:
        """Choose the base snapshot and exports for a recovery.

        Raises:
            NotFoundError: If no full backup exists at or before `until`
        """
        until = as_utc(until) if until is not None else datetime.now(timezone.utc)

        fulls = await with_timeout(
            self.store.list_artifacts(ArtifactKind.FULL),
            self.storage_timeout_seconds,
            "list artifacts",
        )
        candidates = [a for a in fulls if a.created_at <= until]
        if not candidates:
            raise NotFoundError(f"No full backup at or before {until.isoformat()}")
        base = max(candidates, key=lambda a: a.created_at)

        exports = await with_timeout(
            self.store.list_artifacts(ArtifactKind.INCREMENTAL),
            self.storage_timeout_seconds,
            "list artifacts",
        )
        incrementals = sorted(
            (a for a in exports if base.created_at < a.created_at <= until),
            key=lambda a: a.created_at,
        )
        return RecoveryPlan(base=base, incrementals=incrementals, until=until)

    # --- Restore ---

    async def run_restore(
        self,
        handle: JobHandle,
        artifact_id: str,
        tables: list[str] | None = None,
        dry_run: bool = False,
    ) -> RestoreResult:
        """Restore tables from a full snapshot.

        Args:
            handle: Claimed restore job; finished by this method
            artifact_id: Source artifact
            tables: Tables to restore (None or empty means all)
            dry_run: Validate and count rows without writing
        """
        try:
            result = await self._restore_snapshot(handle, artifact_id, tables, dry_run, 0, 100)
            logger.info(
                "Restore completed",
                extra={
                    "job_id": handle.job_id,
                    "artifact_id": artifact_id,
                    "tables": result.tables,
                    "dry_run": dry_run,
                },
            )
            handle.finish(step="dry run completed" if dry_run else None)
            return result

        except (Exception, asyncio.CancelledError) as e:
            logger.error(
                f"Restore failed: {e}",
                extra={"job_id": handle.job_id, "artifact_id": artifact_id},
            )
            handle.finish(error=e)
            raise

    async def _restore_snapshot(
        self,
        handle: JobHandle,
        artifact_id: str,
        tables: list[str] | None,
        dry_run: bool,
        start: int,
        end: int,
    ) -> RestoreResult:
        loop = asyncio.get_event_loop()

        handle.advance("resolving artifact", start)
        artifact = await self.inventory.resolve(artifact_id)
        if artifact.kind != ArtifactKind.FULL:
            raise InvalidArgumentError(f"Only full backups can be restored: {artifact.name}")

        path = self._work_path(f"restore_{handle.job_id}")
        try:
            await self._download_verified(handle, artifact, path, start)

            def on_table_start(table: str, progress: int) -> None:
                loop.call_soon_threadsafe(
                    handle.advance_if_running, f"restoring table: {table}", progress
                )

            def on_table_done(table: str, rows: int, progress: int) -> None:
                loop.call_soon_threadsafe(self._table_done, handle, table, rows, progress)

            result = await loop.run_in_executor(
                None,
                self._load_tables,
                str(path),
                artifact,
                tables or None,
                dry_run,
                Deadline(self.phase_timeout_seconds, "restore"),
                start,
                end,
                on_table_start,
                on_table_done,
            )
            return result

        finally:
            self._remove(path)

    async def _download_verified(
        self,
        handle: JobHandle,
        artifact: BackupArtifact,
        path: Path,
        progress: int,
    ) -> None:
        handle.advance(f"downloading {artifact.name}", progress)
        await with_timeout(
            self.store.download(artifact.id, str(path)),
            self.storage_timeout_seconds,
            "download",
        )

        if not artifact.checksum:
            logger.warning(
                "Artifact has no checksum, skipping verification",
                extra={"artifact_id": artifact.id},
            )
            return

        handle.advance("verifying checksum", progress)
        actual = await asyncio.get_event_loop().run_in_executor(None, file_checksum, str(path))
        if actual != artifact.checksum:
            raise CorruptArtifactError(
                f"Checksum mismatch for {artifact.name}: expected {artifact.checksum}, got {actual}",
                artifact_id=artifact.id,
            )

    @staticmethod
    def _table_done(handle: JobHandle, table: str, rows: int, progress: int) -> None:
        job = handle.job
        if not job.is_running:
            return
        handle.update(
            completed_tables=[*job.completed_tables, table],
            rows_restored={**job.rows_restored, table: rows},
        )
        verb = "Counted" if job.dry_run else "Restored"
        handle.log(LogLevel.INFO, f"{verb} table {table}: {rows} rows", table=table)
        handle.advance(f"restored table: {table}", progress)

    def _load_tables(
        self,
        path: str,
        artifact: BackupArtifact,
        tables: list[str] | None,
        dry_run: bool,
        deadline: Deadline,
        start: int,
        end: int,
        on_table_start: Callable[[str, int], None],
        on_table_done: Callable[[str, int, int], None],
    ) -> RestoreResult:
        """Load every target table from a downloaded snapshot (executor thread)."""
        with SnapshotReader(path) as reader:
            self._check_tables(reader.header, tables)
            targets = [
                name for name in reader.header.table_names if tables is None or name in tables
            ]
            result = RestoreResult(artifact_id=artifact.id, tables=targets, dry_run=dry_run)
            completed: list[str] = []

            for manifest, rows in reader.sections():
                if manifest.name not in targets:
                    continue

                done = len(completed)
                on_table_start(manifest.name, start + (end - start) * done // len(targets))
                try:
                    deadline.check()
                    checked = verified_rows(manifest, rows)
                    if dry_run:
                        count = sum(1 for _ in checked)
                    else:
                        count = self.database.replace_table(manifest.table_info, checked, deadline)
                except Exception as e:
                    failure = table_failure(e, completed, manifest.name, targets[done + 1 :])
                    if failure is e:
                        raise
                    raise failure from e

                completed.append(manifest.name)
                result.rows_restored[manifest.name] = count
                on_table_done(
                    manifest.name,
                    count,
                    start + (end - start) * len(completed) // len(targets),
                )

        return result

    # --- Recovery ---

    async def run_recovery(
        self,
        handle: JobHandle,
        until: datetime | None = None,
        plan: RecoveryPlan | None = None,
    ) -> RestoreResult:
        """Restore the newest full backup before `until` and replay exports after it.

        Args:
            handle: Claimed restore job; finished by this method
            until: Point in time to recover to (default: now)
            plan: Precomputed plan from plan_recovery()
        """
        loop = asyncio.get_event_loop()
        try:
            if plan is None:
                plan = await self.plan_recovery(until)
            handle.update(artifact_id=plan.base.id, recovery_until=plan.until)

            result = await self._restore_snapshot(
                handle, plan.base.id, None, False, 0, SNAPSHOT_SHARE
            )

            total = len(plan.incrementals)
            for index, artifact in enumerate(plan.incrementals):
                progress = SNAPSHOT_SHARE + (99 - SNAPSHOT_SHARE) * index // total
                handle.advance(f"replaying export: {artifact.name}", progress)
                applied = await self._replay(handle, artifact, progress)
                result.replayed_artifacts.append(artifact.id)
                result.changes_applied += applied
                handle.update(changes_applied=result.changes_applied)

            if self.verify_integrity:
                handle.advance("checking integrity", 99)
                problems = await loop.run_in_executor(None, self.database.integrity_check)
                if problems:
                    raise UnknownError(
                        "Database integrity check failed after recovery",
                        details={"problems": problems[:20]},
                    )

            logger.info(
                "Recovery completed",
                extra={
                    "job_id": handle.job_id,
                    "base": plan.base.id,
                    "exports": len(result.replayed_artifacts),
                    "changes": result.changes_applied,
                },
            )
            handle.finish()
            return result

        except (Exception, asyncio.CancelledError) as e:
            logger.error(f"Recovery failed: {e}", extra={"job_id": handle.job_id})
            handle.finish(error=e)
            raise

    async def _replay(self, handle: JobHandle, artifact: BackupArtifact, progress: int) -> int:
        loop = asyncio.get_event_loop()
        path = self._work_path(f"replay_{handle.job_id}")
        try:
            await self._download_verified(handle, artifact, path, progress)
            _, changes = await loop.run_in_executor(None, read_changes, str(path))
            applied = await loop.run_in_executor(
                None,
                self.database.apply_changes,
                changes,
                Deadline(self.phase_timeout_seconds, "replay"),
            )
        finally:
            self._remove(path)

        logger.info(
            "Replayed incremental export",
            extra={"job_id": handle.job_id, "artifact_id": artifact.id, "changes": applied},
        )
        handle.log(
            LogLevel.INFO,
            f"Replayed {artifact.name}: {applied} changes",
            artifact_id=artifact.id,
        )
        return applied

    # --- Helpers ---

    def _work_path(self, name: str) -> Path:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        return self.work_dir / f"{name}{WORK_SUFFIX}"

    @staticmethod
    def _remove(path: Path) -> None:
        if path.exists():
            path.unlink()
