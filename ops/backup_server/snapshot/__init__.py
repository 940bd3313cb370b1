"""
Snapshot module: artifact format and the snapshot engine.
"""

from .format import (
    SnapshotHeader,
    SnapshotReader,
    TableManifest,
    header_from_prefix,
    read_changes,
    write_changes,
)
from .snapshotter import Snapshotter

__all__ = [
    "SnapshotHeader",
    "SnapshotReader",
    "Snapshotter",
    "TableManifest",
    "header_from_prefix",
    "read_changes",
    "write_changes",
]
