"""
Base protocol and types for the artifact store.

The artifact store is the only persistent record of backups. There is no
local index: every listing asks the store, so artifacts removed
out-of-band disappear from listings immediately.

Classification:
    Each artifact carries its kind (full or incremental) and origin
    (manual or scheduled) in store metadata written at upload time.
    File names follow backup_<ts>.json.gz and
    audit_<ts>_<n>changes.jsonl.gz for humans, but nothing parses them.

Invariants:
    - Artifacts are immutable once uploaded
    - upload() makes an artifact visible atomically or not at all
    - list_artifacts() returns newest first
    - Adapters raise NotFoundError for missing artifacts and
      StorageUnavailableError for every other I/O failure

How to change safely:
    - Protocol changes require updating all implementations
    - Add metadata keys additively; readers must tolerate missing ones
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig

META_KIND = "artifact-kind"
META_ORIGIN = "artifact-origin"
META_CHECKSUM = "checksum"
META_CONTENT_CHECKSUM = "content-checksum"

FULL_BACKUP_PREFIX = "backup_"
INCREMENTAL_EXPORT_PREFIX = "audit_"


class ArtifactKind(str, Enum):
    """What an artifact contains."""

    FULL = "full"
    INCREMENTAL = "incremental"


class ArtifactOrigin(str, Enum):
    """What triggered the job that produced an artifact."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"


@dataclass(frozen=True)
class BackupArtifact:
    """A stored backup or incremental export.

    Attributes:
        id: Store key, stable for the artifact's lifetime
        name: File name
        kind: Full snapshot or incremental export
        origin: Manual or scheduled
        created_at: Upload time (UTC)
        size_bytes: Stored (compressed) size
        web_link: Link for operators to fetch the file
        checksum: SHA-256 of the stored bytes
        content_checksum: SHA-256 over table checksums (full snapshots only)
    """

    id: str
    name: str
    kind: ArtifactKind
    origin: ArtifactOrigin
    created_at: datetime
    size_bytes: int
    web_link: str
    checksum: str | None = None
    content_checksum: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "origin": self.origin.value,
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
            "web_link": self.web_link,
            "checksum": self.checksum,
            "content_checksum": self.content_checksum,
        }

    @staticmethod
    def build_metadata(
        kind: ArtifactKind,
        origin: ArtifactOrigin,
        checksum: str | None = None,
        content_checksum: str | None = None,
    ) -> dict[str, str]:
        """Metadata stored alongside the artifact bytes."""
        metadata = {META_KIND: kind.value, META_ORIGIN: origin.value}
        if checksum:
            metadata[META_CHECKSUM] = checksum
        if content_checksum:
            metadata[META_CONTENT_CHECKSUM] = content_checksum
        return metadata

    @classmethod
    def from_metadata(
        cls,
        artifact_id: str,
        name: str,
        created_at: datetime,
        size_bytes: int,
        web_link: str,
        metadata: dict[str, str],
    ) -> BackupArtifact:
        """Rebuild an artifact from store metadata.

        Raises:
            ValueError: If the kind tag is missing or unknown
        """
        metadata = {key.lower(): value for key, value in metadata.items()}
        if META_KIND not in metadata:
            raise ValueError(f"Artifact {artifact_id} has no {META_KIND} metadata")

        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)

        return cls(
            id=artifact_id,
            name=name,
            kind=ArtifactKind(metadata[META_KIND]),
            origin=ArtifactOrigin(metadata.get(META_ORIGIN, ArtifactOrigin.MANUAL.value)),
            created_at=created_at,
            size_bytes=size_bytes,
            web_link=web_link,
            checksum=metadata.get(META_CHECKSUM),
            content_checksum=metadata.get(META_CONTENT_CHECKSUM),
        )


def artifact_timestamp(moment: datetime) -> str:
    """Filesystem-safe UTC timestamp, e.g. 2026-10-18T09-30-00-123456Z."""
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")


def full_backup_name(moment: datetime) -> str:
    return f"{FULL_BACKUP_PREFIX}{artifact_timestamp(moment)}.json.gz"


def incremental_export_name(moment: datetime, change_count: int) -> str:
    return f"{INCREMENTAL_EXPORT_PREFIX}{artifact_timestamp(moment)}_{change_count}changes.jsonl.gz"


@runtime_checkable
class ArtifactStore(Protocol):
    """Protocol for artifact store backends.

    Example:
        >>> store = S3ArtifactStore(config.s3)
        >>> await store.connect()
        >>> artifact = await store.upload(path, name, ArtifactKind.FULL,
        ...                               ArtifactOrigin.MANUAL, checksum)
        >>> [a.name for a in await store.list_artifacts()]
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the backend connection.

        Raises:
            StorageUnavailableError: If the backend cannot be reached
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def list_artifacts(self, kind: ArtifactKind | None = None) -> list[BackupArtifact]:
        """List artifacts, newest first, optionally filtered by kind."""
        ...

    @abstractmethod
    async def get_artifact(self, artifact_id: str) -> BackupArtifact | None:
        """Look up one artifact, None if it does not exist."""
        ...

    @abstractmethod
    async def upload(
        self,
        source_path: str,
        name: str,
        kind: ArtifactKind,
        origin: ArtifactOrigin,
        checksum: str,
        content_checksum: str | None = None,
    ) -> BackupArtifact:
        """Store a finished artifact file.

        The artifact becomes visible to listings only once fully written.
        """
        ...

    @abstractmethod
    async def download(self, artifact_id: str, dest_path: str) -> int:
        """Write the artifact bytes to dest_path.

        Returns:
            Number of bytes written

        Raises:
            NotFoundError: If the artifact does not exist
        """
        ...

    @abstractmethod
    async def read_range(self, artifact_id: str, start: int, length: int) -> bytes:
        """Read up to length bytes starting at offset start.

        Raises:
            NotFoundError: If the artifact does not exist
        """
        ...

    @abstractmethod
    async def delete(self, artifact_id: str) -> None:
        """Delete an artifact.

        Raises:
            NotFoundError: If the artifact does not exist
        """
        ...


def create_artifact_store(config: "ServerConfig") -> ArtifactStore:
    """Factory function to create an artifact store from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import StorageBackend
    from .memory import InMemoryArtifactStore
    from .s3 import S3ArtifactStore

    if config.storage_backend == StorageBackend.S3:
        return S3ArtifactStore(config.s3)
    elif config.storage_backend == StorageBackend.MEMORY:
        return InMemoryArtifactStore()
    else:
        raise ValueError(f"Unsupported storage backend: {config.storage_backend}")
