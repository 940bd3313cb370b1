"""
Operation log: a bounded, in-memory record of what the server did.

Entries are short human-readable lines (backup started, table restored,
backup failed) for the dashboard's activity feed. Each new entry is also
published on the progress stream:

    {"type": "log", "entry": {"id": 7, "timestamp": "...", "level": "success",
                              "message": "...", "context": {...}}}

Invariants:
    - At most max_entries entries are kept; the oldest are dropped first
    - Entry ids increase for the life of the process, clear() included
    - Reads return entries newest first
"""

from __future__ import annotations

import itertools
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .broadcaster import ProgressBroadcaster
from .events import ProgressEvent

DEFAULT_MAX_ENTRIES = 200
DEFAULT_READ_LIMIT = 100


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


@dataclass(frozen=True)
class LogEntry:
    """One line of the operation log.

    Attributes:
        id: Sequence number
        timestamp: When the entry was added (UTC)
        level: info, warn, error or success
        message: Human-readable text
        context: JSON-serializable details (job_id, artifact_id, ...)
    """

    id: int
    timestamp: datetime
    level: LogLevel
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "context": dict(self.context),
        }


class OperationLog:
    """Keeps recent operation log entries and publishes new ones.

    Example:
        >>> oplog = OperationLog(broadcaster)
        >>> oplog.add(LogLevel.INFO, "Full backup started", job_id=job.job_id)
        >>> oplog.entries(limit=20)
    """

    def __init__(
        self,
        broadcaster: ProgressBroadcaster | None = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.broadcaster = broadcaster
        self.max_entries = max_entries
        self._entries: deque[LogEntry] = deque(maxlen=max_entries)
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, level: LogLevel, message: str, **context: Any) -> LogEntry:
        """Record an entry and publish it to progress subscribers."""
        with self._lock:
            entry = LogEntry(
                id=next(self._ids),
                timestamp=datetime.now(timezone.utc),
                level=LogLevel(level),
                message=message,
                context={k: v for k, v in context.items() if v is not None},
            )
            self._entries.appendleft(entry)

        if self.broadcaster is not None:
            self.broadcaster.publish(ProgressEvent.log(entry.to_dict()))
        return entry

    def entries(self, limit: int | None = DEFAULT_READ_LIMIT) -> list[dict[str, Any]]:
        """Recent entries, newest first."""
        with self._lock:
            entries = list(self._entries)
        if limit is not None:
            entries = entries[: max(limit, 0)]
        return [entry.to_dict() for entry in entries]

    def clear(self) -> int:
        """Drop every entry.

        Returns:
            Number of entries removed
        """
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
        return removed
