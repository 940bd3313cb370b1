"""
Backup Server - backup and restore orchestration for the intranet database.

This package snapshots the relational database into an object store and
restores it, while streaming live job progress to connected clients:
- Full snapshots (schema + data) as gzip JSON-lines artifacts
- Incremental audit exports of the row-level change log
- Selective or full restores with per-table atomicity
- Point-in-time recovery (snapshot + replay of audit exports)

Architecture:
    ┌─────────────┐     ┌───────────────┐     ┌─────────────┐
    │  UI / CLI   │────▶│ BackupService │────▶│ JobTracker  │
    └──────▲──────┘     └───────┬───────┘     └──────┬──────┘
           │                    │                    │
           │                    ▼                    ▼
           │     ┌──────────────────────────┐  ┌─────────────┐
           │     │ Snapshotter/RestoreEngine│  │ Broadcaster │
           │     └────────────┬─────────────┘  └──────┬──────┘
           │                  │                       │
           │                  ▼                       │
           │     ┌──────────────────────────┐         │
           │     │ SQLite  <->  object store│         │
           │     └──────────────────────────┘         │
           └────────────── SSE events ◀───────────────┘

Invariants:
    - At most one backup job and one restore job run at a time
    - Artifact metadata lives only in the artifact store
    - A failed job never takes the process down

How to change safely:
    - Add artifact header fields additively, bump the format version otherwise
    - Keep restore able to read every published format version
"""

from ._version import __version__

__all__ = ["__version__"]
