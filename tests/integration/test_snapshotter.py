"""
Integration tests for the snapshotter.

Tests cover:
- Full backup progress and the uploaded artifact
- Failures before and during upload leave no artifact and no work files
- Operation log entries
- Skipping unchanged backups
- Incremental exports and change-log marking
- Orphaned work file cleanup
"""

import os

import pytest

from ops.backup_server.errors import StorageUnavailableError
from ops.backup_server.jobs import EventType, JobKind, JobStatus, ProgressEvent
from ops.backup_server.snapshot import Snapshotter, read_changes
from ops.backup_server.store.base import ArtifactKind, ArtifactOrigin

from tests.helpers import FailingUploadStore, run_sql


async def drain(subscription):
    events = []
    while subscription.pending:
        event = await subscription.next_event()
        if event is not None:
            events.append(event)
    return events


@pytest.fixture
def subscription(broadcaster, tracker):
    subscription = broadcaster.subscribe(ProgressEvent.init(tracker.snapshot()))
    yield subscription
    subscription.close()


def claim_backup(tracker, backup_type=ArtifactKind.FULL):
    return tracker.try_claim(JobKind.BACKUP, backup_type=backup_type)


class TestFullBackup:
    """Tests for Snapshotter.run_full_backup."""

    @pytest.mark.asyncio
    async def test_creates_artifact(self, snapshotter, tracker, store):
        handle = claim_backup(tracker)

        artifact = await snapshotter.run_full_backup(handle, ArtifactOrigin.SCHEDULED)

        assert artifact.kind == ArtifactKind.FULL
        assert artifact.origin == ArtifactOrigin.SCHEDULED
        assert artifact.name.startswith("backup_") and artifact.name.endswith(".json.gz")
        assert artifact.checksum.startswith("sha256:")
        assert artifact.content_checksum.startswith("sha256:")
        assert [a.id for a in await store.list_artifacts()] == [artifact.id]

        job = handle.job
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.artifact == artifact

    @pytest.mark.asyncio
    async def test_progress_is_monotonic(self, snapshotter, tracker, subscription):
        handle = claim_backup(tracker)
        await snapshotter.run_full_backup(handle)

        events = [e for e in await drain(subscription) if e.type == EventType.BACKUP]
        progress = [e.job["progress"] for e in events]
        steps = [e.job["current_step"] for e in events]

        assert progress == sorted(progress)
        assert progress[-1] == 100
        assert "dumping data: employees" in steps
        assert "uploading" in steps
        assert [e.job["status"] for e in events].count("completed") == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("store_factory", [FailingUploadStore])
    async def test_failed_upload(self, snapshotter, tracker, store, work_dir):
        """A failed upload fails the job, stores nothing and cleans up."""
        handle = claim_backup(tracker)

        with pytest.raises(StorageUnavailableError):
            await snapshotter.run_full_backup(handle)

        job = handle.job
        assert job.status == JobStatus.FAILED
        assert job.error_code == "STORAGE_UNAVAILABLE"
        assert job.current_step == "uploading"
        assert await store.list_artifacts() == []
        assert os.listdir(work_dir) == []
        assert not tracker.is_running(JobKind.BACKUP)

    @pytest.mark.asyncio
    async def test_failure_before_upload(
        self, snapshotter, tracker, store, oplog, work_dir, monkeypatch
    ):
        """A compression failure fails the job before anything is uploaded."""

        def compress_fails(*args, **kwargs):
            raise OSError("No space left on device")

        monkeypatch.setattr(
            "ops.backup_server.snapshot.snapshotter.compress_snapshot", compress_fails
        )
        handle = claim_backup(tracker)

        with pytest.raises(OSError):
            await snapshotter.run_full_backup(handle)

        job = handle.job
        assert job.status == JobStatus.FAILED
        assert job.current_step == "compressing"
        assert job.progress < 90
        assert job.artifact is None
        assert await store.list_artifacts() == []
        assert os.listdir(work_dir) == []
        latest = oplog.entries(limit=1)[0]
        assert latest["level"] == "error"
        assert latest["message"] == "Full backup failed: No space left on device"

    @pytest.mark.asyncio
    async def test_operation_log(self, snapshotter, tracker, oplog):
        handle = claim_backup(tracker)
        artifact = await snapshotter.run_full_backup(handle)

        messages = [e["message"] for e in reversed(oplog.entries())]
        assert messages[0] == "Full backup started"
        assert messages[1] == "Dumped 2 tables, 8 rows"
        assert messages[2] == f"Uploaded {artifact.name}"
        assert messages[3].startswith("Full backup completed in ")
        assert oplog.entries()[1]["context"]["artifact_id"] == artifact.id

    @pytest.mark.asyncio
    async def test_skip_unchanged(self, database, store, work_dir, tracker, db_path):
        snapshotter = Snapshotter(database, store, work_dir, skip_unchanged=True)

        first = await snapshotter.run_full_backup(claim_backup(tracker))
        handle = claim_backup(tracker)
        second = await snapshotter.run_full_backup(handle)

        assert first is not None
        assert second is None
        assert handle.job.status == JobStatus.COMPLETED
        assert handle.job.current_step == "no changes since last backup"
        assert len(await store.list_artifacts()) == 1

        run_sql(db_path, "UPDATE employees SET salary = 1 WHERE id = 1")
        third = await snapshotter.run_full_backup(claim_backup(tracker))
        assert third is not None
        assert third.content_checksum != first.content_checksum

    @pytest.mark.asyncio
    async def test_identical_backups_kept_by_default(self, snapshotter, tracker, store):
        first = await snapshotter.run_full_backup(claim_backup(tracker))
        second = await snapshotter.run_full_backup(claim_backup(tracker))

        assert first.content_checksum == second.content_checksum
        assert len(await store.list_artifacts()) == 2


class TestIncrementalExport:
    """Tests for Snapshotter.run_incremental_export."""

    @pytest.fixture
    def tracked(self, database, db_path):
        database.install_change_log()
        run_sql(db_path, "INSERT INTO employees VALUES (4, 'New', 1.5, NULL)")
        run_sql(db_path, "DELETE FROM transactions WHERE id = 1")
        return database

    @pytest.mark.asyncio
    async def test_exports_and_marks(self, snapshotter, tracker, store, tracked, work_dir):
        handle = claim_backup(tracker, ArtifactKind.INCREMENTAL)

        artifact = await snapshotter.run_incremental_export(handle)

        assert artifact.kind == ArtifactKind.INCREMENTAL
        assert artifact.name.endswith("_2changes.jsonl.gz")
        assert tracked.pending_changes() == []
        assert handle.job.backup_type == ArtifactKind.INCREMENTAL

        path = os.path.join(work_dir, "check.jsonl.gz")
        await store.download(artifact.id, path)
        header, changes = read_changes(path)
        assert header.change_count == 2
        assert [c.op for c in changes] == ["INSERT", "DELETE"]

    @pytest.mark.asyncio
    async def test_nothing_pending(self, snapshotter, tracker, store, database):
        database.install_change_log()
        handle = claim_backup(tracker, ArtifactKind.INCREMENTAL)

        assert await snapshotter.run_incremental_export(handle) is None
        assert handle.job.status == JobStatus.COMPLETED
        assert handle.job.current_step == "no pending changes"
        assert await store.list_artifacts() == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("store_factory", [FailingUploadStore])
    async def test_failed_upload_keeps_changes_pending(
        self, snapshotter, tracker, tracked, work_dir
    ):
        handle = claim_backup(tracker, ArtifactKind.INCREMENTAL)

        with pytest.raises(StorageUnavailableError):
            await snapshotter.run_incremental_export(handle)

        assert len(tracked.pending_changes()) == 2
        assert handle.job.status == JobStatus.FAILED
        assert os.listdir(work_dir) == []


class TestOrphanCleanup:
    """Tests for Snapshotter.cleanup_orphans."""

    def test_removes_only_work_files(self, snapshotter, work_dir):
        os.makedirs(work_dir)
        for name in ("backup_x.json.gz.tmp", "restore_abc.tmp", "keep.txt"):
            with open(os.path.join(work_dir, name), "w") as f:
                f.write("x")

        assert snapshotter.cleanup_orphans() == 2
        assert os.listdir(work_dir) == ["keep.txt"]

    def test_missing_work_dir(self, snapshotter):
        assert snapshotter.cleanup_orphans() == 0
