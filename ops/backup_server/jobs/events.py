"""
Progress events pushed to subscribers.

Wire shape (one JSON object per server-sent event):
    {"type": "init", "backup": {...job...}, "restore": {...job...}}
    {"type": "backup", "job": {...job...}}
    {"type": "restore", "job": {...job...}}
    {"type": "log", "entry": {...log entry...}}

Invariants:
    - Event payloads are copies taken at publish time, never live job objects
    - Every payload is JSON-serializable
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any


class EventType(str, Enum):
    """Discriminator of a ProgressEvent."""

    INIT = "init"
    BACKUP = "backup"
    RESTORE = "restore"
    LOG = "log"


@dataclass(frozen=True)
class ProgressEvent:
    """One message on the progress stream.

    Attributes:
        type: init, backup, restore or log
        data: {"backup", "restore"} for init, {"entry"} for log, {"job"} otherwise
    """

    type: EventType
    data: dict[str, Any]

    @classmethod
    def init(cls, snapshot: dict[str, dict[str, Any]]) -> ProgressEvent:
        return cls(
            type=EventType.INIT,
            data={"backup": snapshot["backup"], "restore": snapshot["restore"]},
        )

    @classmethod
    def for_job(cls, kind: str, job: dict[str, Any]) -> ProgressEvent:
        return cls(type=EventType(kind), data={"job": job})

    @classmethod
    def log(cls, entry: dict[str, Any]) -> ProgressEvent:
        return cls(type=EventType.LOG, data={"entry": entry})

    @property
    def job(self) -> dict[str, Any] | None:
        return self.data.get("job")

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, **self.data}

    def to_sse(self) -> str:
        """Format as a server-sent event frame."""
        return f"event: {self.type.value}\ndata: {json.dumps(self.to_dict())}\n\n"
