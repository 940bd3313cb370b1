"""
Phase deadlines for blocking and async work.

Storage calls are awaited under asyncio.wait_for. Work that runs on an
executor thread cannot be cancelled from the loop, so it carries a
Deadline and checks it cooperatively (SQLite checks it through a
progress handler).

Invariants:
    - An expired deadline always surfaces as BackupTimeoutError
    - Deadlines use the monotonic clock
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, TypeVar

from .errors import BackupTimeoutError

T = TypeVar("T")


class Deadline:
    """Point in monotonic time after which a phase must give up.

    Example:
        >>> deadline = Deadline(600, "restore")
        >>> for batch in batches:
        ...     deadline.check()
        ...     load(batch)
    """

    def __init__(self, timeout_seconds: float, operation: str) -> None:
        self.timeout_seconds = timeout_seconds
        self.operation = operation
        self._expires_at = time.monotonic() + timeout_seconds

    @property
    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self._expires_at

    def check(self) -> None:
        """Raise BackupTimeoutError if the deadline has passed."""
        if self.expired:
            raise self.error()

    def error(self) -> BackupTimeoutError:
        return BackupTimeoutError(self.operation, self.timeout_seconds)


async def with_timeout(awaitable: Awaitable[T], timeout_seconds: float, operation: str) -> T:
    """Await with a timeout, translating expiry into BackupTimeoutError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError:
        raise BackupTimeoutError(operation, timeout_seconds) from None
