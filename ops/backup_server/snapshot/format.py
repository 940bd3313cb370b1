"""
On-disk format of backup artifacts.

Both artifact kinds are gzip-compressed JSON lines whose first line is a
header describing the contents. Readers that only need the header
(listing tables, diffing) decompress until the first newline and stop.

Full snapshot (backup_<ts>.json.gz):
    {"format": "backup-snapshot", "version": 1, "kind": "full",
     "created_at": "...", "tables": [{"name", "schema", "columns",
     "key_columns", "indexes", "row_count", "checksum"}, ...]}
    {"t": "<table>", "r": {<encoded row>}}
    ...

Incremental export (audit_<ts>_<n>changes.jsonl.gz):
    {"format": "backup-changes", "version": 1, "kind": "incremental",
     "created_at": "...", "tables": [...names...], "change_count": n}
    {"id", "table", "row_id", "op", "old", "new", "ts"}
    ...

Invariants:
    - Row lines are grouped by table, in header order
    - Header row_count and checksum describe exactly the row lines that follow
    - Writers never leave a final file behind on failure

How to change safely:
    - New header fields must be optional for readers
    - Bump FORMAT_VERSION for anything a version-1 reader would misread
"""

from __future__ import annotations

import gzip
import json
import logging
import os
import sqlite3
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import IO, Any, Callable, Iterator

from ..codec import TableDigest, decode_row, encode_row
from ..database import ChangeRecord, SqliteDatabase, TableInfo
from ..deadline import Deadline
from ..errors import CorruptArtifactError
from ..store.base import ArtifactKind

logger = logging.getLogger(__name__)

FORMAT_FULL = "backup-snapshot"
FORMAT_CHANGES = "backup-changes"
FORMAT_VERSION = 1

FORMATS = {
    FORMAT_FULL: ArtifactKind.FULL,
    FORMAT_CHANGES: ArtifactKind.INCREMENTAL,
}


@dataclass
class TableManifest:
    """Header entry for one table in a full snapshot.

    Attributes:
        name: Table name
        schema: CREATE TABLE statement
        columns: Column names in declaration order
        key_columns: Primary key columns (empty means rowid)
        indexes: CREATE INDEX statements
        row_count: Number of row lines for this table
        checksum: TableDigest checksum over the encoded rows
    """

    name: str
    schema: str
    columns: list[str]
    key_columns: list[str] = field(default_factory=list)
    indexes: list[str] = field(default_factory=list)
    row_count: int = 0
    checksum: str = ""

    @property
    def table_info(self) -> TableInfo:
        return TableInfo(
            name=self.name,
            schema=self.schema,
            columns=tuple(self.columns),
            key_columns=tuple(self.key_columns),
            indexes=tuple(self.indexes),
        )

    @classmethod
    def from_table_info(cls, info: TableInfo) -> TableManifest:
        return cls(
            name=info.name,
            schema=info.schema,
            columns=list(info.columns),
            key_columns=list(info.key_columns),
            indexes=list(info.indexes),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "schema": self.schema,
            "columns": self.columns,
            "key_columns": self.key_columns,
            "indexes": self.indexes,
            "row_count": self.row_count,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TableManifest:
        return cls(
            name=data["name"],
            schema=data["schema"],
            columns=list(data["columns"]),
            key_columns=list(data.get("key_columns", [])),
            indexes=list(data.get("indexes", [])),
            row_count=int(data.get("row_count", 0)),
            checksum=data.get("checksum", ""),
        )


@dataclass
class SnapshotHeader:
    """First line of every artifact.

    Full snapshots fill `tables` with TableManifest entries; incremental
    exports fill `touched_tables` and `change_count` instead.
    """

    kind: ArtifactKind
    created_at: str
    tables: list[TableManifest] = field(default_factory=list)
    touched_tables: list[str] = field(default_factory=list)
    change_count: int = 0
    version: int = FORMAT_VERSION

    @property
    def table_names(self) -> list[str]:
        if self.kind == ArtifactKind.FULL:
            return [table.name for table in self.tables]
        return list(self.touched_tables)

    def table(self, name: str) -> TableManifest | None:
        for manifest in self.tables:
            if manifest.name == name:
                return manifest
        return None

    def to_dict(self) -> dict[str, Any]:
        if self.kind == ArtifactKind.FULL:
            return {
                "format": FORMAT_FULL,
                "version": self.version,
                "kind": self.kind.value,
                "created_at": self.created_at,
                "tables": [table.to_dict() for table in self.tables],
            }
        return {
            "format": FORMAT_CHANGES,
            "version": self.version,
            "kind": self.kind.value,
            "created_at": self.created_at,
            "tables": self.touched_tables,
            "change_count": self.change_count,
        }

    @classmethod
    def from_dict(cls, data: Any) -> SnapshotHeader:
        """Parse a header.

        Raises:
            CorruptArtifactError: If the header is not a known format
        """
        if not isinstance(data, dict) or data.get("format") not in FORMATS:
            raise CorruptArtifactError("Artifact header has an unknown format")

        version = data.get("version")
        if not isinstance(version, int) or version > FORMAT_VERSION:
            raise CorruptArtifactError(f"Unsupported artifact format version: {version}")

        kind = FORMATS[data["format"]]
        try:
            if kind == ArtifactKind.FULL:
                return cls(
                    kind=kind,
                    created_at=data["created_at"],
                    tables=[TableManifest.from_dict(t) for t in data["tables"]],
                    version=version,
                )
            return cls(
                kind=kind,
                created_at=data["created_at"],
                touched_tables=[str(name) for name in data["tables"]],
                change_count=int(data.get("change_count", 0)),
                version=version,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CorruptArtifactError(f"Artifact header is malformed: {e}") from e


def parse_header_line(line: bytes) -> SnapshotHeader:
    try:
        data = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CorruptArtifactError(f"Artifact header is not valid JSON: {e}") from e
    return SnapshotHeader.from_dict(data)


def header_from_prefix(prefix: bytes, complete: bool) -> SnapshotHeader | None:
    """Decode the header from the leading bytes of a compressed artifact.

    Args:
        prefix: First bytes of the artifact
        complete: Whether prefix is the whole artifact

    Returns:
        The header, or None if more bytes are needed

    Raises:
        CorruptArtifactError: If the bytes are not gzip or the header is invalid
    """
    decompressor = zlib.decompressobj(wbits=16 + zlib.MAX_WBITS)
    try:
        text = decompressor.decompress(prefix)
    except zlib.error as e:
        raise CorruptArtifactError(f"Artifact is not gzip data: {e}") from e

    newline = text.find(b"\n")
    if newline >= 0:
        return parse_header_line(text[:newline])
    if complete:
        if text:
            return parse_header_line(text)
        raise CorruptArtifactError("Artifact is empty")
    return None


# --- Full snapshots ---


def dump_tables(
    database: SqliteDatabase,
    data_path: str,
    deadline: Deadline,
    on_table: Callable[[str, int, int], None] | None = None,
) -> list[TableManifest]:
    """Write every table's rows as JSON lines inside one read transaction.

    Args:
        database: Source database
        data_path: Uncompressed JSON-lines output
        deadline: Phase deadline
        on_table: Called with (table, index, total) before each table

    Returns:
        Manifests with row counts and checksums filled in
    """
    manifests = []
    try:
        with database.snapshot(deadline) as conn, open(data_path, "w", encoding="utf-8") as out:
            names = database.list_tables(conn)
            infos = [database.describe_table(conn, name) for name in names]

            for index, info in enumerate(infos):
                if on_table is not None:
                    on_table(info.name, index, len(infos))
                deadline.check()

                manifest = TableManifest.from_table_info(info)
                digest = TableDigest()
                for row in database.iter_rows(conn, info):
                    encoded = encode_row(row)
                    digest.update(encoded)
                    out.write(json.dumps({"t": info.name, "r": encoded}, ensure_ascii=False))
                    out.write("\n")

                manifest.row_count = digest.row_count
                manifest.checksum = digest.checksum
                manifests.append(manifest)

    except sqlite3.OperationalError as e:
        if deadline.expired:
            raise deadline.error() from e
        raise

    return manifests


def compress_snapshot(
    header: SnapshotHeader,
    data_path: str,
    dest_path: str,
    deadline: Deadline,
) -> None:
    """Write header + row lines into the final gzip artifact."""
    try:
        with gzip.open(dest_path, "wb") as f_out:
            f_out.write(json.dumps(header.to_dict(), ensure_ascii=False).encode("utf-8"))
            f_out.write(b"\n")
            with open(data_path, "rb") as f_in:
                for chunk in iter(lambda: f_in.read(1024 * 1024), b""):
                    deadline.check()
                    f_out.write(chunk)
    except BaseException:
        if os.path.exists(dest_path):
            os.unlink(dest_path)
        raise


class SnapshotReader:
    """Sequential reader for a downloaded full snapshot.

    Example:
        >>> with SnapshotReader(path) as reader:
        ...     for manifest, rows in reader.sections():
        ...         database.replace_table(manifest.table_info, rows)
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._file: IO[bytes] | None = None
        self._pending: tuple[str, dict[str, Any]] | None = None
        self.header: SnapshotHeader | None = None

    def __enter__(self) -> SnapshotReader:
        self._file = gzip.open(self.path, "rb")
        try:
            first = self._file.readline()
            if not first:
                raise CorruptArtifactError("Artifact is empty")
            self.header = parse_header_line(first.rstrip(b"\n"))
        except (OSError, EOFError, zlib.error) as e:
            self.close()
            raise CorruptArtifactError(f"Artifact is not readable gzip data: {e}") from e
        except CorruptArtifactError:
            self.close()
            raise

        if self.header.kind != ArtifactKind.FULL:
            self.close()
            raise CorruptArtifactError("Artifact is not a full snapshot")
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None

    def _next_line(self) -> tuple[str, dict[str, Any]] | None:
        if self._pending is not None:
            pending, self._pending = self._pending, None
            return pending

        try:
            line = self._file.readline()
        except (OSError, EOFError, zlib.error) as e:
            raise CorruptArtifactError(f"Artifact data is truncated or corrupt: {e}") from e
        if not line:
            return None
        try:
            entry = json.loads(line)
            return entry["t"], entry["r"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            raise CorruptArtifactError(f"Artifact row line is malformed: {e}") from e

    def _rows(self, table: str) -> Iterator[dict[str, Any]]:
        while True:
            entry = self._next_line()
            if entry is None:
                return
            if entry[0] != table:
                self._pending = entry
                return
            yield decode_row(entry[1])

    def sections(self) -> Iterator[tuple[TableManifest, Iterator[dict[str, Any]]]]:
        """Yield (manifest, rows) per table in header order.

        Each rows iterator must be consumed (or abandoned) before advancing;
        rows left unread are skipped.
        """
        for manifest in self.header.tables:
            rows = self._rows(manifest.name)
            yield manifest, rows
            for _ in rows:
                pass


# --- Incremental exports ---


def write_changes(
    changes: list[ChangeRecord],
    dest_path: str,
    created_at: datetime,
) -> SnapshotHeader:
    """Write an incremental export artifact."""
    touched: list[str] = []
    for change in changes:
        if change.table not in touched:
            touched.append(change.table)

    header = SnapshotHeader(
        kind=ArtifactKind.INCREMENTAL,
        created_at=created_at.isoformat(),
        touched_tables=touched,
        change_count=len(changes),
    )

    try:
        with gzip.open(dest_path, "wb") as f_out:
            f_out.write(json.dumps(header.to_dict()).encode("utf-8"))
            f_out.write(b"\n")
            for change in changes:
                f_out.write(json.dumps(change.to_dict(), ensure_ascii=False).encode("utf-8"))
                f_out.write(b"\n")
    except BaseException:
        if os.path.exists(dest_path):
            os.unlink(dest_path)
        raise

    return header


def read_changes(path: str) -> tuple[SnapshotHeader, list[ChangeRecord]]:
    """Read an incremental export artifact.

    Raises:
        CorruptArtifactError: If the file is not a valid export
    """
    try:
        with gzip.open(path, "rb") as f_in:
            header = parse_header_line(f_in.readline().rstrip(b"\n"))
            if header.kind != ArtifactKind.INCREMENTAL:
                raise CorruptArtifactError("Artifact is not an incremental export")
            changes = [
                ChangeRecord.from_dict(json.loads(line)) for line in f_in if line.strip()
            ]
    except (OSError, EOFError, zlib.error) as e:
        raise CorruptArtifactError(f"Artifact is not readable gzip data: {e}") from e
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise CorruptArtifactError(f"Artifact change line is malformed: {e}") from e

    return header, changes


__all__ = [
    "FORMAT_FULL",
    "FORMAT_CHANGES",
    "FORMAT_VERSION",
    "SnapshotHeader",
    "SnapshotReader",
    "TableManifest",
    "compress_snapshot",
    "dump_tables",
    "header_from_prefix",
    "parse_header_line",
    "read_changes",
    "write_changes",
]
