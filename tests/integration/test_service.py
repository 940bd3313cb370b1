"""
Integration tests for the backup service.

Tests cover:
- Background triggers and their returned job snapshots
- Claim conflicts and validation before the claim
- Independence of the backup and restore slots
- Late subscribers and the init snapshot
- Job history and shutdown
"""

import asyncio

import pytest

from ops.backup_server.config import BackupConfig, DatabaseConfig, ServerConfig, StorageBackend
from ops.backup_server.errors import (
    AlreadyRunningError,
    InvalidArgumentError,
    NotFoundError,
    StorageUnavailableError,
)
from ops.backup_server.jobs import EventType, JobKind
from ops.backup_server.service import BackupService, parse_artifact_kind, parse_job_kind
from ops.backup_server.store.base import ArtifactKind, ArtifactOrigin

from tests.helpers import FailingUploadStore, GatedUploadStore, fetch_all, run_sql


async def wait_for_upload(store):
    await asyncio.wait_for(store.upload_started.wait(), timeout=5)


class TestTriggers:
    """Tests for trigger_* and run_* on BackupService."""

    @pytest.mark.asyncio
    async def test_trigger_backup_returns_running_job(self, service, store):
        job = service.trigger_backup()

        assert job["status"] == "running"
        assert job["kind"] == "backup"
        assert job["backup_type"] == "full"
        assert job["origin"] == "manual"

        await service.wait_idle()
        current = service.current_jobs()["backup"]
        assert current["job_id"] == job["job_id"]
        assert current["status"] == "completed"
        assert current["artifact"]["id"] == (await store.list_artifacts())[0].id

    @pytest.mark.asyncio
    @pytest.mark.parametrize("store_factory", [GatedUploadStore])
    async def test_second_backup_conflicts(self, service, store):
        first = service.trigger_backup()
        await wait_for_upload(store)

        with pytest.raises(AlreadyRunningError) as exc_info:
            service.trigger_backup()
        with pytest.raises(AlreadyRunningError):
            service.trigger_incremental_export()

        assert exc_info.value.job_id == first["job_id"]
        store.gate.set()
        await service.wait_idle()
        assert service.current_jobs()["backup"]["status"] == "completed"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("store_factory", [GatedUploadStore])
    async def test_restore_runs_while_backup_runs(self, service, store, db_path):
        store.gate.set()
        artifact = await service.run_backup()
        store.gate.clear()
        store.upload_started.clear()

        service.trigger_backup()
        await wait_for_upload(store)
        run_sql(db_path, "DELETE FROM employees")

        result = await service.run_restore(artifact.id, ["employees"])

        assert result.rows_restored == {"employees": 3}
        assert service.current_jobs()["backup"]["status"] == "running"
        store.gate.set()
        await service.wait_idle()

    @pytest.mark.asyncio
    async def test_restore_missing_artifact_never_claims(self, service):
        with pytest.raises(NotFoundError):
            await service.trigger_restore("memory://full/nope")

        assert service.current_jobs()["restore"]["status"] == "idle"
        assert service.running_tasks == 0

    @pytest.mark.asyncio
    async def test_restore_unknown_table_never_claims(self, service):
        artifact = await service.run_backup()

        with pytest.raises(InvalidArgumentError):
            await service.trigger_restore(artifact.id, ["payroll"])

        assert service.current_jobs()["restore"]["status"] == "idle"

    @pytest.mark.asyncio
    async def test_trigger_restore(self, service, db_path):
        artifact = await service.run_backup()
        run_sql(db_path, "DELETE FROM transactions")

        job = await service.trigger_restore(artifact.id, ["transactions"])
        await service.wait_idle()

        assert job["tables"] == ["transactions"]
        assert job["artifact_id"] == artifact.id
        assert len(fetch_all(db_path, "SELECT * FROM transactions")) == 5
        assert service.current_jobs()["restore"]["completed_tables"] == ["transactions"]

    @pytest.mark.asyncio
    async def test_trigger_recovery(self, service, db_path):
        await service.run_backup()
        run_sql(db_path, "INSERT INTO employees VALUES (4, 'Four', 4.0, NULL)")
        await service.run_incremental_export()
        run_sql(db_path, "DELETE FROM employees")

        job = await service.trigger_recovery()
        await service.wait_idle()

        assert job["recovery_until"] is not None
        assert len(fetch_all(db_path, "SELECT * FROM employees")) == 4
        assert service.current_jobs()["restore"]["changes_applied"] == 1

    @pytest.mark.asyncio
    async def test_recovery_without_backups(self, service):
        with pytest.raises(NotFoundError):
            await service.trigger_recovery()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("store_factory", [FailingUploadStore])
    async def test_background_failure_is_recorded(self, service):
        service.trigger_backup()
        await service.wait_idle()

        current = service.current_jobs()["backup"]
        assert current["status"] == "failed"
        assert current["error_code"] == "STORAGE_UNAVAILABLE"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("store_factory", [FailingUploadStore])
    async def test_run_backup_raises(self, service):
        with pytest.raises(StorageUnavailableError):
            await service.run_backup(ArtifactOrigin.SCHEDULED)

        assert service.current_jobs()["backup"]["origin"] == "scheduled"


class TestProgressStream:
    """Tests for BackupService.subscribe."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("store_factory", [GatedUploadStore])
    async def test_late_subscriber_sees_running_job(self, service, store):
        """A subscriber joining mid-backup gets the job in its init event."""
        job = service.trigger_backup()
        await wait_for_upload(store)

        subscription = service.subscribe()
        init = await subscription.next_event()

        assert init.type == EventType.INIT
        assert init.data["backup"]["job_id"] == job["job_id"]
        assert init.data["backup"]["status"] == "running"
        assert init.data["backup"]["progress"] >= 50
        assert init.data["restore"]["status"] == "idle"

        store.gate.set()
        await service.wait_idle()

        events = []
        while subscription.pending:
            events.append(await subscription.next_event())
        assert events[-1].job["status"] == "completed"
        subscription.close()

    @pytest.mark.asyncio
    async def test_shutdown_ends_streams(self, service):
        subscription = service.subscribe()
        await subscription.next_event()

        await service.shutdown()

        assert await asyncio.wait_for(subscription.next_event(), timeout=1) is None


class TestReads:
    """Tests for listing, history and kind parsing."""

    @pytest.mark.asyncio
    async def test_list_backups_by_kind(self, service, db_path):
        await service.run_backup()
        run_sql(db_path, "DELETE FROM transactions WHERE id = 1")
        await service.run_incremental_export()

        assert len(await service.list_backups()) == 2
        assert len(await service.list_backups("full")) == 1
        assert [a.kind for a in await service.list_backups("incremental")] == [
            ArtifactKind.INCREMENTAL
        ]

    @pytest.mark.asyncio
    async def test_list_tables_and_diff(self, service, db_path):
        artifact = await service.run_backup()
        run_sql(db_path, "DELETE FROM employees WHERE id = 1")

        assert await service.list_tables(artifact.id) == ["employees", "transactions"]
        diffs = {d.name: d.status.value for d in await service.diff_backup(artifact.id)}
        assert diffs == {"employees": "changed", "transactions": "unchanged"}

    @pytest.mark.asyncio
    async def test_job_history(self, service):
        await service.run_backup()
        await service.run_incremental_export()

        history = service.job_history()
        assert [job["backup_type"] for job in history] == ["incremental", "full"]
        assert service.job_history("restore") == []
        assert len(service.job_history(limit=1)) == 1

    def test_parse_kinds(self):
        assert parse_artifact_kind(None) is None
        assert parse_artifact_kind("full") == ArtifactKind.FULL
        assert parse_job_kind("restore") == JobKind.RESTORE

        with pytest.raises(InvalidArgumentError):
            parse_artifact_kind("weekly")
        with pytest.raises(InvalidArgumentError):
            parse_job_kind("export")


class TestFromConfig:
    """Tests for BackupService.from_config."""

    @pytest.mark.asyncio
    async def test_memory_backend(self, db_path, work_dir):
        config = ServerConfig(
            storage_backend=StorageBackend.MEMORY,
            database=DatabaseConfig(path=db_path, wal_mode=False),
            backup=BackupConfig(work_dir=work_dir, history_size=5),
        )
        service = BackupService.from_config(config)
        await service.start()
        try:
            artifact = await service.run_backup()
            assert artifact.id.startswith("memory://full/")
            assert service.tracker.history_size == 5
        finally:
            await service.shutdown()
