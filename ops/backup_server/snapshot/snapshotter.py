"""
Snapshot engine: full backups and incremental audit exports.

A full backup dumps every user table inside one read transaction,
compresses the dump into a single artifact and uploads it. An
incremental export packages the change-log rows recorded since the
previous export.

Artifact layout:
    <store>/full/backup_<ts>.json.gz
    <store>/incremental/audit_<ts>_<n>changes.jsonl.gz

Full backup phases (progress):
    dumping schema 5, dumping data: <table> 10..60, compressing 70,
    computing checksum 80, uploading 90, completed 100

Incremental export phases (progress):
    collecting changes 10, writing export 40, uploading 70,
    marking exported 90, completed 100

Invariants:
    - Snapshots are consistent (one read transaction for all tables)
    - Upload is the last fallible step of a backup, so a failure before
      it never leaves an artifact behind
    - Change rows are marked exported only after their export is stored
    - Temporary work files are always removed
    - The engine always finishes the job handle it was given

How to change safely:
    - Add new header fields, don't remove existing ones
    - Test restore with old artifacts before format changes
    - Progress values per phase are visible to clients; keep them increasing
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path

from ..codec import content_checksum, file_checksum
from ..database import SqliteDatabase
from ..deadline import Deadline, with_timeout
from ..jobs.oplog import LogLevel
from ..jobs.tracker import JobHandle
from ..store.base import (
    ArtifactKind,
    ArtifactOrigin,
    ArtifactStore,
    BackupArtifact,
    full_backup_name,
    incremental_export_name,
)
from .format import SnapshotHeader, compress_snapshot, dump_tables, write_changes

logger = logging.getLogger(__name__)

WORK_SUFFIX = ".tmp"


class Snapshotter:
    """Creates full backups and incremental exports.

    Attributes:
        database: Database being backed up
        store: Artifact store receiving the results
        work_dir: Directory for temporary files
        storage_timeout_seconds: Bound on each store call
        phase_timeout_seconds: Bound on each dump/compress phase
        skip_unchanged: Skip the upload when content matches the latest backup

    Example:
        >>> snapshotter = Snapshotter(database, store, "/var/tmp/backups")
        >>> handle = tracker.try_claim(JobKind.BACKUP)
        >>> artifact = await snapshotter.run_full_backup(handle)
    """

    def __init__(
        self,
        database: SqliteDatabase,
        store: ArtifactStore,
        work_dir: str | Path,
        storage_timeout_seconds: float = 300.0,
        phase_timeout_seconds: float = 1800.0,
        skip_unchanged: bool = False,
    ) -> None:
        self.database = database
        self.store = store
        self.work_dir = Path(work_dir)
        self.storage_timeout_seconds = storage_timeout_seconds
        self.phase_timeout_seconds = phase_timeout_seconds
        self.skip_unchanged = skip_unchanged

        self._backup_count = 0
        self._export_count = 0

    def _work_path(self, name: str) -> Path:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        return self.work_dir / f"{name}{WORK_SUFFIX}"

    def cleanup_orphans(self) -> int:
        """Delete work files left behind by a previous process.

        Returns:
            Number of files removed
        """
        if not self.work_dir.exists():
            return 0

        removed = 0
        for path in self.work_dir.glob(f"*{WORK_SUFFIX}"):
            try:
                path.unlink()
                removed += 1
            except FileNotFoundError:
                continue

        if removed:
            logger.warning(
                "Removed orphaned work files",
                extra={"work_dir": str(self.work_dir), "count": removed},
            )
        return removed

    async def latest_full_backup(self) -> BackupArtifact | None:
        artifacts = await with_timeout(
            self.store.list_artifacts(ArtifactKind.FULL),
            self.storage_timeout_seconds,
            "list artifacts",
        )
        return artifacts[0] if artifacts else None

    # --- Full backups ---

    async def run_full_backup(
        self,
        handle: JobHandle,
        origin: ArtifactOrigin = ArtifactOrigin.MANUAL,
    ) -> BackupArtifact | None:
        """Dump, compress and upload a full snapshot.

        Args:
            handle: Claimed backup job; finished by this method
            origin: Recorded on the artifact

        Returns:
            The uploaded artifact, or None if the upload was skipped
            because nothing changed since the latest backup

        Raises:
            BackupError: After recording the failure on the job
        """
        loop = asyncio.get_event_loop()
        created_at = datetime.now(timezone.utc)
        name = full_backup_name(created_at)
        data_path = self._work_path(f"{name}.rows")
        artifact_path = self._work_path(name)

        def on_table(table: str, index: int, total: int) -> None:
            progress = 10 + (50 * index) // max(total, 1)
            loop.call_soon_threadsafe(
                handle.advance_if_running, f"dumping data: {table}", progress
            )

        try:
            handle.advance("dumping schema", 5)
            manifests = await loop.run_in_executor(
                None,
                dump_tables,
                self.database,
                str(data_path),
                Deadline(self.phase_timeout_seconds, "dump"),
                on_table,
            )
            handle.advance("dumping data", 60)
            handle.log(
                LogLevel.INFO,
                f"Dumped {len(manifests)} tables, {sum(m.row_count for m in manifests)} rows",
            )

            header = SnapshotHeader(
                kind=ArtifactKind.FULL,
                created_at=created_at.isoformat(),
                tables=manifests,
            )
            content = content_checksum({m.name: m.checksum for m in manifests})

            if self.skip_unchanged:
                latest = await self.latest_full_backup()
                if latest is not None and latest.content_checksum == content:
                    logger.info(
                        "Skipping backup, content unchanged",
                        extra={"job_id": handle.job_id, "latest": latest.id},
                    )
                    handle.finish(step="no changes since last backup")
                    return None

            handle.advance("compressing", 70)
            await loop.run_in_executor(
                None,
                compress_snapshot,
                header,
                str(data_path),
                str(artifact_path),
                Deadline(self.phase_timeout_seconds, "compress"),
            )

            handle.advance("computing checksum", 80)
            checksum = await loop.run_in_executor(None, file_checksum, str(artifact_path))

            handle.advance("uploading", 90)
            artifact = await with_timeout(
                self.store.upload(
                    str(artifact_path),
                    name,
                    ArtifactKind.FULL,
                    origin,
                    checksum,
                    content_checksum=content,
                ),
                self.storage_timeout_seconds,
                "upload",
            )
            handle.log(
                LogLevel.INFO,
                f"Uploaded {artifact.name}",
                artifact_id=artifact.id,
                size_bytes=artifact.size_bytes,
            )

            self._backup_count += 1
            logger.info(
                "Created backup",
                extra={
                    "job_id": handle.job_id,
                    "artifact_id": artifact.id,
                    "tables": len(manifests),
                    "rows": sum(m.row_count for m in manifests),
                    "size_bytes": artifact.size_bytes,
                },
            )
            handle.update(artifact=artifact)
            handle.finish()
            return artifact

        except (Exception, asyncio.CancelledError) as e:
            logger.error(
                f"Backup failed: {e}",
                extra={"job_id": handle.job_id},
                exc_info=not isinstance(e, asyncio.CancelledError),
            )
            handle.finish(error=e)
            raise

        finally:
            self._remove(data_path, artifact_path)

    # --- Incremental exports ---

    async def run_incremental_export(
        self,
        handle: JobHandle,
        origin: ArtifactOrigin = ArtifactOrigin.MANUAL,
    ) -> BackupArtifact | None:
        """Export pending change-log rows as one artifact.

        Returns:
            The uploaded artifact, or None if nothing was pending
        """
        loop = asyncio.get_event_loop()
        export_path: Path | None = None

        try:
            handle.advance("collecting changes", 10)
            changes = await loop.run_in_executor(None, self.database.pending_changes)
            if not changes:
                handle.finish(step="no pending changes")
                return None

            created_at = datetime.now(timezone.utc)
            name = incremental_export_name(created_at, len(changes))
            export_path = self._work_path(name)

            handle.advance("writing export", 40)
            await loop.run_in_executor(None, write_changes, changes, str(export_path), created_at)
            checksum = await loop.run_in_executor(None, file_checksum, str(export_path))

            handle.advance("uploading", 70)
            artifact = await with_timeout(
                self.store.upload(
                    str(export_path),
                    name,
                    ArtifactKind.INCREMENTAL,
                    origin,
                    checksum,
                ),
                self.storage_timeout_seconds,
                "upload",
            )
            handle.update(artifact=artifact)
            handle.log(
                LogLevel.INFO,
                f"Uploaded {artifact.name} with {len(changes)} changes",
                artifact_id=artifact.id,
            )

            handle.advance("marking exported", 90)
            marked = await loop.run_in_executor(
                None,
                self.database.mark_exported,
                [change.id for change in changes],
                created_at.isoformat(),
            )

            self._export_count += 1
            logger.info(
                "Created incremental export",
                extra={
                    "job_id": handle.job_id,
                    "artifact_id": artifact.id,
                    "changes": len(changes),
                    "marked": marked,
                },
            )
            handle.finish()
            return artifact

        except (Exception, asyncio.CancelledError) as e:
            logger.error(
                f"Incremental export failed: {e}",
                extra={"job_id": handle.job_id},
                exc_info=not isinstance(e, asyncio.CancelledError),
            )
            handle.finish(error=e)
            raise

        finally:
            if export_path is not None:
                self._remove(export_path)

    @staticmethod
    def _remove(*paths: Path) -> None:
        for path in paths:
            if path.exists():
                path.unlink()

    @property
    def stats(self) -> dict[str, int]:
        return {"backups": self._backup_count, "exports": self._export_count}
