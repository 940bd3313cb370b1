"""
Unit tests for the backup scheduler.

Tests cover:
- First runs one interval after start
- Deferral while the backup slot is busy
- Failures wait a full interval
- Status counters
"""

import asyncio

import pytest

from ops.backup_server.errors import AlreadyRunningError, StorageUnavailableError
from ops.backup_server.scheduler import BackupScheduler
from ops.backup_server.store.base import ArtifactOrigin

HOUR = 3600
WEEK = 7 * 24 * HOUR


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeService:
    """Records scheduled calls; outcomes can be scripted per job."""

    def __init__(self):
        self.calls = []
        self.outcomes = {"full": [], "incremental": []}

    async def _call(self, name, origin):
        self.calls.append((name, origin))
        if self.outcomes[name]:
            outcome = self.outcomes[name].pop(0)
            if outcome is not None:
                raise outcome

    async def run_backup(self, origin):
        await self._call("full", origin)

    async def run_incremental_export(self, origin):
        await self._call("incremental", origin)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service():
    return FakeService()


@pytest.fixture
def scheduler(service, clock):
    return BackupScheduler(service, WEEK, HOUR, tick_seconds=0.01, clock=clock)


class TestBackupScheduler:
    """Tests for BackupScheduler."""

    @pytest.mark.asyncio
    async def test_nothing_due_at_start(self, scheduler, service, clock):
        assert await scheduler.run_pending(clock.now) == []
        assert service.calls == []

    @pytest.mark.asyncio
    async def test_incremental_due_after_interval(self, scheduler, service, clock):
        ran = await scheduler.run_pending(clock.now + HOUR)

        assert ran == ["incremental"]
        assert service.calls == [("incremental", ArtifactOrigin.SCHEDULED)]

    @pytest.mark.asyncio
    async def test_both_due_after_a_week(self, scheduler, service, clock):
        ran = await scheduler.run_pending(clock.now + WEEK)

        assert ran == ["full", "incremental"]

    @pytest.mark.asyncio
    async def test_reschedules_from_run_time(self, scheduler, service, clock):
        await scheduler.run_pending(clock.now + HOUR)

        assert await scheduler.run_pending(clock.now + HOUR + 10) == []
        assert await scheduler.run_pending(clock.now + 2 * HOUR) == ["incremental"]

    @pytest.mark.asyncio
    async def test_busy_slot_defers(self, scheduler, service, clock):
        """A busy slot keeps the job due for the next tick."""
        service.outcomes["incremental"] = [AlreadyRunningError("backup", "job-1")]

        assert await scheduler.run_pending(clock.now + HOUR) == []
        assert await scheduler.run_pending(clock.now + HOUR + 30) == ["incremental"]
        assert scheduler.status()["runs"]["deferred"] == 1
        assert scheduler.status()["runs"]["incremental"] == 1

    @pytest.mark.asyncio
    async def test_failure_waits_full_interval(self, scheduler, service, clock):
        service.outcomes["incremental"] = [StorageUnavailableError("down")]

        assert await scheduler.run_pending(clock.now + HOUR) == ["incremental"]
        assert await scheduler.run_pending(clock.now + HOUR + 30) == []
        assert scheduler.status()["runs"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_escape(self, scheduler, service, clock):
        service.outcomes["full"] = [RuntimeError("boom")]

        ran = await scheduler.run_pending(clock.now + WEEK)

        assert ran == ["full", "incremental"]
        assert scheduler.status()["runs"] == {
            "full": 0,
            "incremental": 1,
            "failed": 1,
            "deferred": 0,
        }

    def test_status(self, scheduler, clock):
        clock.now += 600
        status = scheduler.status()

        assert status["enabled"] is False
        assert status["next_incremental_in_seconds"] == HOUR - 600
        assert status["next_full_in_seconds"] == WEEK - 600

    @pytest.mark.asyncio
    async def test_loop_runs_and_stops(self, scheduler, service, clock):
        clock.now += HOUR
        task = asyncio.create_task(scheduler.start())
        for _ in range(100):
            if service.calls:
                break
            await asyncio.sleep(0.01)

        assert scheduler.status()["enabled"] is True
        await scheduler.stop()
        await asyncio.wait_for(task, timeout=1)

        assert service.calls[0] == ("incremental", ArtifactOrigin.SCHEDULED)
        assert scheduler.status()["enabled"] is False
