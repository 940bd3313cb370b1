"""
Job bookkeeping: the two job slots, the operation log and the progress
event stream.
"""

from .broadcaster import ProgressBroadcaster, Subscription
from .events import EventType, ProgressEvent
from .oplog import LogEntry, LogLevel, OperationLog
from .tracker import (
    BackupJob,
    Job,
    JobHandle,
    JobKind,
    JobStatus,
    JobTracker,
    RestoreJob,
)

__all__ = [
    "BackupJob",
    "EventType",
    "Job",
    "JobHandle",
    "JobKind",
    "JobStatus",
    "JobTracker",
    "LogEntry",
    "LogLevel",
    "OperationLog",
    "ProgressBroadcaster",
    "ProgressEvent",
    "RestoreJob",
    "Subscription",
]
