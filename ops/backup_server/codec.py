"""
Row encoding shared by artifacts and the database adapter.

Rows are plain dicts of SQLite values. bytes values do not survive JSON,
so they are wrapped as {"$bytes": "<base64>"}. Change-log triggers run
inside SQLite, which has hex() but no base64, so row images captured by
triggers wrap blobs as {"$hex": "<hex>"}; both forms decode to bytes.

Invariants:
    - decode_row(encode_row(row)) == row for every SQLite value type
    - TableDigest depends only on row content and order, never on
      dict insertion order or JSON whitespace
"""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any

BYTES_KEY = "$bytes"
HEX_KEY = "$hex"


def encode_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {BYTES_KEY: base64.b64encode(bytes(value)).decode("ascii")}
    return value


def decode_value(value: Any) -> Any:
    if isinstance(value, dict) and len(value) == 1:
        if BYTES_KEY in value:
            return base64.b64decode(value[BYTES_KEY])
        if HEX_KEY in value:
            return bytes.fromhex(value[HEX_KEY])
    return value


def encode_row(row: dict[str, Any]) -> dict[str, Any]:
    return {column: encode_value(value) for column, value in row.items()}


def decode_row(row: dict[str, Any]) -> dict[str, Any]:
    return {column: decode_value(value) for column, value in row.items()}


def canonical_json(data: Any) -> str:
    """Serialize with sorted keys and no whitespace."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


class TableDigest:
    """Running row count and SHA-256 over a table's encoded rows.

    Example:
        >>> digest = TableDigest()
        >>> for row in rows:
        ...     digest.update(encode_row(row))
        >>> digest.row_count, digest.checksum
    """

    def __init__(self) -> None:
        self._sha256 = hashlib.sha256()
        self.row_count = 0

    def update(self, encoded_row: dict[str, Any]) -> None:
        self._sha256.update(canonical_json(encoded_row).encode("utf-8"))
        self._sha256.update(b"\n")
        self.row_count += 1

    @property
    def checksum(self) -> str:
        return f"sha256:{self._sha256.hexdigest()}"


def content_checksum(table_checksums: dict[str, str]) -> str:
    """Combine per-table checksums into one value for the whole snapshot."""
    sha256 = hashlib.sha256()
    for name in sorted(table_checksums):
        sha256.update(f"{name}={table_checksums[name]}\n".encode("utf-8"))
    return f"sha256:{sha256.hexdigest()}"


def file_checksum(file_path: str) -> str:
    """Compute SHA-256 checksum of file."""
    sha256 = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)
    return f"sha256:{sha256.hexdigest()}"
