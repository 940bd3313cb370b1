"""
Artifact store abstraction for backup artifacts.

This module provides a pluggable store interface supporting:
- S3 and S3-compatible object storage (production)
- In-memory (for testing)

Invariants:
    - The store is the only source of truth for which backups exist
    - Uploads are atomic: an artifact is listed only once complete
"""

from .base import (
    ArtifactKind,
    ArtifactOrigin,
    ArtifactStore,
    BackupArtifact,
    create_artifact_store,
    full_backup_name,
    incremental_export_name,
)
from .memory import InMemoryArtifactStore
from .s3 import S3ArtifactStore

__all__ = [
    "ArtifactKind",
    "ArtifactOrigin",
    "ArtifactStore",
    "BackupArtifact",
    "InMemoryArtifactStore",
    "S3ArtifactStore",
    "create_artifact_store",
    "full_backup_name",
    "incremental_export_name",
]
