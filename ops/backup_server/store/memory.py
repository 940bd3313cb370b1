"""
In-memory artifact store for testing.

This module provides a simple in-memory store backend for:
- Unit tests
- Integration tests
- Local development without an object store

Invariants:
    - All data is lost on process exit
    - Listing order and error behavior match the S3 backend
    - Safe to use from multiple coroutines

How to change safely:
    - Keep interface compatible with ArtifactStore protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from ..errors import NotFoundError, StorageUnavailableError
from .base import ArtifactKind, ArtifactOrigin, BackupArtifact

logger = logging.getLogger(__name__)


@dataclass
class _StoredArtifact:
    artifact: BackupArtifact
    data: bytes
    sequence: int


class InMemoryArtifactStore:
    """In-memory implementation of ArtifactStore for testing.

    Example:
        >>> store = InMemoryArtifactStore()
        >>> await store.connect()
        >>> await store.upload(path, "backup_x.json.gz", ArtifactKind.FULL,
        ...                    ArtifactOrigin.MANUAL, checksum)
    """

    def __init__(self) -> None:
        self._artifacts: dict[str, _StoredArtifact] = {}
        self._sequence = 0
        self._connected = False
        self._lock = asyncio.Lock()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryArtifactStore connected")

    async def close(self) -> None:
        """Close (keeps data so a store can be reconnected in tests)."""
        self._connected = False
        logger.debug("InMemoryArtifactStore closed")

    def _require_connection(self) -> None:
        if not self._connected:
            raise StorageUnavailableError("Artifact store is not connected")

    def _get(self, artifact_id: str) -> _StoredArtifact:
        stored = self._artifacts.get(artifact_id)
        if stored is None:
            raise NotFoundError(f"Artifact not found: {artifact_id}", artifact_id=artifact_id)
        return stored

    async def list_artifacts(self, kind: ArtifactKind | None = None) -> list[BackupArtifact]:
        self._require_connection()
        stored = sorted(
            self._artifacts.values(),
            key=lambda s: (s.artifact.created_at, s.sequence),
            reverse=True,
        )
        return [s.artifact for s in stored if kind is None or s.artifact.kind == kind]

    async def get_artifact(self, artifact_id: str) -> BackupArtifact | None:
        self._require_connection()
        stored = self._artifacts.get(artifact_id)
        return stored.artifact if stored else None

    async def upload(
        self,
        source_path: str,
        name: str,
        kind: ArtifactKind,
        origin: ArtifactOrigin,
        checksum: str,
        content_checksum: str | None = None,
    ) -> BackupArtifact:
        self._require_connection()
        data = Path(source_path).read_bytes()
        return await self.put_bytes(
            name,
            data,
            kind=kind,
            origin=origin,
            checksum=checksum,
            content_checksum=content_checksum,
        )

    async def download(self, artifact_id: str, dest_path: str) -> int:
        self._require_connection()
        stored = self._get(artifact_id)
        Path(dest_path).write_bytes(stored.data)
        return len(stored.data)

    async def read_range(self, artifact_id: str, start: int, length: int) -> bytes:
        self._require_connection()
        stored = self._get(artifact_id)
        return stored.data[start : start + length]

    async def delete(self, artifact_id: str) -> None:
        self._require_connection()
        async with self._lock:
            self._get(artifact_id)
            del self._artifacts[artifact_id]

    # --- Testing helpers ---

    async def put_bytes(
        self,
        name: str,
        data: bytes,
        kind: ArtifactKind = ArtifactKind.FULL,
        origin: ArtifactOrigin = ArtifactOrigin.MANUAL,
        checksum: str | None = None,
        content_checksum: str | None = None,
        created_at: datetime | None = None,
    ) -> BackupArtifact:
        """Store raw bytes as an artifact (e.g. to plant a corrupt one)."""
        artifact_id = f"memory://{kind.value}/{name}"
        artifact = BackupArtifact(
            id=artifact_id,
            name=name,
            kind=kind,
            origin=origin,
            created_at=created_at or datetime.now(timezone.utc),
            size_bytes=len(data),
            web_link=artifact_id,
            checksum=checksum,
            content_checksum=content_checksum,
        )

        async with self._lock:
            self._sequence += 1
            self._artifacts[artifact_id] = _StoredArtifact(artifact, data, self._sequence)

        logger.debug("Stored artifact", extra={"artifact_id": artifact_id, "size": len(data)})
        return artifact

    def clear(self) -> None:
        self._artifacts.clear()

    @property
    def artifact_count(self) -> int:
        return len(self._artifacts)
