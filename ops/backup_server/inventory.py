"""
Table inventory: what an artifact contains, without reading its rows.

The header is the first line of every artifact, so listing tables only
needs a byte-range read of the artifact's start. The range starts at
header_read_bytes and doubles until the header's newline is reached or
max_header_bytes is hit.

Invariants:
    - Row data is never downloaded for listing or diffing
    - A missing artifact raises NotFoundError, an unreadable header
      raises CorruptArtifactError; no partial table lists are returned
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .database import SqliteDatabase
from .deadline import with_timeout
from .errors import CorruptArtifactError, InvalidArgumentError, NotFoundError
from .snapshot.format import SnapshotHeader, header_from_prefix
from .store.base import ArtifactKind, ArtifactStore, BackupArtifact

logger = logging.getLogger(__name__)

DEFAULT_HEADER_READ_BYTES = 64 * 1024
DEFAULT_MAX_HEADER_BYTES = 8 * 1024 * 1024


class DiffStatus(str, Enum):
    """How a live table compares with its copy in an artifact."""

    UNCHANGED = "unchanged"
    CHANGED = "changed"
    ADDED = "added"  # live only
    REMOVED = "removed"  # artifact only


@dataclass(frozen=True)
class TableDiff:
    name: str
    status: DiffStatus
    artifact_rows: int | None = None
    current_rows: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "artifact_rows": self.artifact_rows,
            "current_rows": self.current_rows,
        }


class TableInventory:
    """Reads artifact headers from the store.

    Example:
        >>> inventory = TableInventory(store)
        >>> await inventory.list_tables(artifact.id)
        ['employees', 'transactions']
    """

    def __init__(
        self,
        store: ArtifactStore,
        header_read_bytes: int = DEFAULT_HEADER_READ_BYTES,
        max_header_bytes: int = DEFAULT_MAX_HEADER_BYTES,
        storage_timeout_seconds: float = 300.0,
    ) -> None:
        self.store = store
        self.header_read_bytes = header_read_bytes
        self.max_header_bytes = max(max_header_bytes, header_read_bytes)
        self.storage_timeout_seconds = storage_timeout_seconds

    async def resolve(self, artifact_id: str) -> BackupArtifact:
        """Look up an artifact.

        Raises:
            NotFoundError: If no artifact has this id
        """
        artifact = await with_timeout(
            self.store.get_artifact(artifact_id),
            self.storage_timeout_seconds,
            "artifact lookup",
        )
        if artifact is None:
            raise NotFoundError(f"Artifact not found: {artifact_id}", artifact_id=artifact_id)
        return artifact

    async def read_header(
        self,
        artifact_id: str,
        artifact: BackupArtifact | None = None,
    ) -> SnapshotHeader:
        """Read and parse an artifact's header line.

        Raises:
            NotFoundError: If the artifact does not exist
            CorruptArtifactError: If no valid header fits under max_header_bytes
        """
        if artifact is None:
            artifact = await self.resolve(artifact_id)

        length = self.header_read_bytes
        while True:
            prefix = await with_timeout(
                self.store.read_range(artifact.id, 0, length),
                self.storage_timeout_seconds,
                "header read",
            )
            complete = len(prefix) < length or len(prefix) >= artifact.size_bytes

            try:
                header = header_from_prefix(prefix, complete)
            except CorruptArtifactError as e:
                raise CorruptArtifactError(
                    f"Artifact {artifact.name} is corrupt: {e.message}",
                    artifact_id=artifact.id,
                ) from e

            if header is not None:
                return header
            if length >= self.max_header_bytes:
                raise CorruptArtifactError(
                    f"Artifact {artifact.name} has no header within {self.max_header_bytes} bytes",
                    artifact_id=artifact.id,
                )

            length = min(length * 2, self.max_header_bytes)
            logger.debug(
                "Widening header read",
                extra={"artifact_id": artifact.id, "length": length},
            )

    async def list_tables(self, artifact_id: str) -> list[str]:
        """Tables in an artifact, in artifact order.

        For incremental exports these are the tables the changes touch.
        """
        header = await self.read_header(artifact_id)
        return header.table_names

    async def diff(self, artifact_id: str, database: SqliteDatabase) -> list[TableDiff]:
        """Compare a full snapshot with the live database, table by table.

        Raises:
            InvalidArgumentError: If the artifact is an incremental export
        """
        artifact = await self.resolve(artifact_id)
        if artifact.kind != ArtifactKind.FULL:
            raise InvalidArgumentError(
                f"Only full backups can be compared: {artifact.name}",
                details={"artifact_id": artifact.id, "kind": artifact.kind.value},
            )
        header = await self.read_header(artifact.id, artifact)

        loop = asyncio.get_event_loop()
        diffs = []
        for manifest in header.tables:
            digest = await loop.run_in_executor(None, database.table_digest, manifest.name)
            if digest is None:
                status = DiffStatus.REMOVED
                current_rows = None
            elif digest.checksum == manifest.checksum:
                status = DiffStatus.UNCHANGED
                current_rows = digest.row_count
            else:
                status = DiffStatus.CHANGED
                current_rows = digest.row_count
            diffs.append(
                TableDiff(
                    name=manifest.name,
                    status=status,
                    artifact_rows=manifest.row_count,
                    current_rows=current_rows,
                )
            )

        in_artifact = set(header.table_names)
        for name in await loop.run_in_executor(None, database.list_tables):
            if name in in_artifact:
                continue
            current_rows = await loop.run_in_executor(None, database.row_count, name)
            diffs.append(TableDiff(name=name, status=DiffStatus.ADDED, current_rows=current_rows))

        return diffs
