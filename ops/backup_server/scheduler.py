"""
Interval scheduler for full backups and incremental exports.

Strategy:
    - Full backup every full_interval_seconds (weekly by default)
    - Incremental export every incremental_interval_seconds (hourly by default)

Both run through the service's awaiting run_* methods with
origin=scheduled, so they take the same backup slot as manual triggers.

Invariants:
    - A job that finds the slot busy stays due and is retried next tick
    - Any other failure is logged and the job waits a full interval
    - One failing run never stops the loop

How to change safely:
    - run_pending() takes the clock value as an argument; keep it that way
      so tests can drive time
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from .errors import AlreadyRunningError, BackupError
from .store.base import ArtifactOrigin

if TYPE_CHECKING:
    from .service import BackupService

logger = logging.getLogger(__name__)


class BackupScheduler:
    """Runs scheduled backups and exports.

    Attributes:
        service: BackupService the jobs run through
        full_interval_seconds: Seconds between full backups
        incremental_interval_seconds: Seconds between incremental exports
        tick_seconds: How often due jobs are checked

    Example:
        >>> scheduler = BackupScheduler(service, 7 * 24 * 3600, 3600)
        >>> task = asyncio.create_task(scheduler.start())
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        service: BackupService,
        full_interval_seconds: float,
        incremental_interval_seconds: float,
        tick_seconds: float = 30,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.service = service
        self.full_interval_seconds = full_interval_seconds
        self.incremental_interval_seconds = incremental_interval_seconds
        self.tick_seconds = tick_seconds
        self._clock = clock

        now = clock()
        self._next_full = now + full_interval_seconds
        self._next_incremental = now + incremental_interval_seconds
        self._running = False
        self._runs = {"full": 0, "incremental": 0, "failed": 0, "deferred": 0}

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._running = True
        logger.info(
            "Starting backup scheduler",
            extra={
                "full_interval_seconds": self.full_interval_seconds,
                "incremental_interval_seconds": self.incremental_interval_seconds,
            },
        )

        try:
            while self._running:
                await self.run_pending(self._clock())
                await asyncio.sleep(self.tick_seconds)

        except asyncio.CancelledError:
            logger.info("Scheduler cancelled")
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop the scheduler loop after the current tick."""
        self._running = False
        logger.info("Stopping backup scheduler")

    async def run_pending(self, now: float) -> list[str]:
        """Run every job that is due at `now`.

        Returns:
            Names of the jobs that ran (successfully or not)
        """
        ran = []

        if now >= self._next_full:
            outcome = await self._run("full", self.service.run_backup)
            if outcome != "deferred":
                self._next_full = now + self.full_interval_seconds
                ran.append("full")

        if now >= self._next_incremental:
            outcome = await self._run("incremental", self.service.run_incremental_export)
            if outcome != "deferred":
                self._next_incremental = now + self.incremental_interval_seconds
                ran.append("incremental")

        return ran

    async def _run(self, name: str, job: Callable[..., Awaitable[Any]]) -> str:
        logger.info("Scheduled job triggered", extra={"job": name})
        try:
            await job(origin=ArtifactOrigin.SCHEDULED)
        except AlreadyRunningError as e:
            self._runs["deferred"] += 1
            logger.info(
                "Scheduled job deferred, slot busy",
                extra={"job": name, "running_job_id": e.job_id},
            )
            return "deferred"
        except BackupError as e:
            self._runs["failed"] += 1
            logger.warning(f"Scheduled {name} failed: {e.message}", extra={"error_code": e.code})
            return "failed"
        except Exception as e:
            self._runs["failed"] += 1
            logger.error(f"Scheduled {name} crashed: {e}", exc_info=True)
            return "failed"

        self._runs[name] += 1
        return "completed"

    def status(self) -> dict[str, Any]:
        """Schedule and run counters, for the health endpoint."""
        now = self._clock()
        return {
            "enabled": self._running,
            "full_interval_seconds": self.full_interval_seconds,
            "incremental_interval_seconds": self.incremental_interval_seconds,
            "next_full_in_seconds": max(0.0, self._next_full - now),
            "next_incremental_in_seconds": max(0.0, self._next_incremental - now),
            "runs": dict(self._runs),
        }
