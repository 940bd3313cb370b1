"""
SQLite adapter for the database being backed up and restored.

The orchestration core only needs a handful of operations from the
database engine: enumerate tables, read rows inside one consistent read
transaction, atomically replace one table, and read or replay the
row-level change log. This module implements them for SQLite.

Change log:
    AFTER INSERT/UPDATE/DELETE triggers installed by install_change_log()
    append one row per mutation to _change_log with JSON images of the
    old and new row. Incremental exports read rows where exported_at is
    NULL. Restores and replays set _change_log_control.suspended inside
    their own transaction so their writes are not captured.

    Rows are matched on their full primary key. Tables without one are
    matched on rowid, which snapshots carry and restores put back.

Invariants:
    - replace_table() and apply_changes() are single transactions:
      either every row lands or none do
    - Internal tables (sqlite_*, _change_log*) are never listed,
      snapshotted or restored
    - Rows are always read in key order so checksums are stable
    - Every connection is opened and closed on the calling thread

How to change safely:
    - Trigger bodies are regenerated by install_change_log(); re-run it
      after altering a tracked table
    - Keep the _change_log columns additive, exported artifacts mirror them
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from .codec import TableDigest, decode_row, encode_row
from .deadline import Deadline

logger = logging.getLogger(__name__)

CHANGE_LOG_TABLE = "_change_log"
CHANGE_LOG_CONTROL_TABLE = "_change_log_control"
INSERT_BATCH_SIZE = 1000
PROGRESS_HANDLER_OPS = 10000

CHANGE_OPS = ("INSERT", "UPDATE", "DELETE")

# Row field carrying the rowid of tables without a primary key
ROWID_FIELD = "$rowid"


class TableNotFoundError(Exception):
    """Table does not exist in the database."""

    pass


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _rollback(conn: sqlite3.Connection) -> None:
    # An interrupted statement may already have rolled the transaction back,
    # and the progress handler would interrupt the ROLLBACK itself.
    conn.set_progress_handler(None, 0)
    if conn.in_transaction:
        conn.execute("ROLLBACK")


@dataclass(frozen=True)
class TableInfo:
    """Structure of one user table.

    Attributes:
        name: Table name
        schema: CREATE TABLE statement as stored by SQLite
        columns: Column names in declaration order
        key_columns: Primary key columns in key order (empty means rowid)
        indexes: CREATE INDEX statements for explicit indexes
    """

    name: str
    schema: str
    columns: tuple[str, ...]
    key_columns: tuple[str, ...] = ()
    indexes: tuple[str, ...] = ()

    @property
    def key_column(self) -> str | None:
        """Single-column primary key, or None for composite keys and rowid tables."""
        if len(self.key_columns) == 1:
            return self.key_columns[0]
        return None

    @property
    def keyed_by_rowid(self) -> bool:
        """No primary key: rows are identified by rowid, which snapshots keep."""
        return not self.key_columns and "rowid" not in {c.lower() for c in self.columns}


@dataclass
class ChangeRecord:
    """One captured row mutation.

    Attributes:
        id: Change log sequence number
        table: Table the row belongs to
        row_id: Primary key of the row as text; a JSON array for composite
            keys, the rowid for tables without a primary key
        op: INSERT, UPDATE or DELETE
        old: Row image before the change (UPDATE/DELETE)
        new: Row image after the change (INSERT/UPDATE)
        ts: When the change was recorded (ISO 8601, UTC)
    """

    id: int
    table: str
    row_id: str | None
    op: str
    old: dict[str, Any] | None = None
    new: dict[str, Any] | None = None
    ts: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "table": self.table,
            "row_id": self.row_id,
            "op": self.op,
            "old": self.old,
            "new": self.new,
            "ts": self.ts,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeRecord:
        return cls(
            id=int(data["id"]),
            table=data["table"],
            row_id=data.get("row_id"),
            op=data["op"],
            old=data.get("old"),
            new=data.get("new"),
            ts=data.get("ts", ""),
        )


class SqliteDatabase:
    """Target database for snapshots and restores.

    Attributes:
        path: SQLite database file
        wal_mode: Whether to enable WAL journal mode
        busy_timeout_ms: SQLite busy timeout in milliseconds

    Example:
        >>> db = SqliteDatabase("/var/lib/intranet/app.db")
        >>> db.initialize()
        >>> db.install_change_log()
        >>> with db.snapshot() as conn:
        ...     for name in db.list_tables(conn):
        ...         info = db.describe_table(conn, name)
    """

    def __init__(
        self,
        path: str | Path,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.path = Path(path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms

    @contextmanager
    def _get_connection(
        self,
        deadline: Deadline | None = None,
        foreign_keys: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Open a configured connection.

        Args:
            deadline: If given, statements are interrupted once it expires
            foreign_keys: Whether to enforce foreign keys

        Yields:
            SQLite connection in autocommit mode (explicit transactions)
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute(f"PRAGMA foreign_keys = {'ON' if foreign_keys else 'OFF'}")
            if deadline is not None:
                conn.set_progress_handler(
                    lambda: 1 if deadline.expired else 0, PROGRESS_HANDLER_OPS
                )

            yield conn
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the change log tables if missing."""
        with self._get_connection() as conn:
            conn.executescript(f"""
                CREATE TABLE IF NOT EXISTS {CHANGE_LOG_TABLE} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    table_name TEXT NOT NULL,
                    row_id TEXT,
                    op TEXT NOT NULL,
                    old_data TEXT,
                    new_data TEXT,
                    created_at TEXT NOT NULL
                        DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    exported_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_change_log_pending
                    ON {CHANGE_LOG_TABLE}(exported_at, id);

                CREATE TABLE IF NOT EXISTS {CHANGE_LOG_CONTROL_TABLE} (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    suspended INTEGER NOT NULL DEFAULT 0
                );

                INSERT OR IGNORE INTO {CHANGE_LOG_CONTROL_TABLE} (id, suspended)
                    VALUES (1, 0);
            """)

        logger.debug("Initialized database", extra={"path": str(self.path)})

    # --- Structure ---

    def list_tables(self, conn: sqlite3.Connection | None = None) -> list[str]:
        """List user tables, sorted by name."""
        if conn is None:
            with self._get_connection() as own_conn:
                return self.list_tables(own_conn)

        cursor = conn.execute(
            r"""
            SELECT name FROM sqlite_master
            WHERE type = 'table'
              AND name NOT LIKE 'sqlite\_%' ESCAPE '\'
              AND name NOT LIKE '\_change\_log%' ESCAPE '\'
            ORDER BY name
            """
        )
        return [row["name"] for row in cursor.fetchall()]

    def describe_table(self, conn: sqlite3.Connection, name: str) -> TableInfo:
        """Read the structure of a table.

        Raises:
            TableNotFoundError: If the table does not exist
        """
        row = conn.execute(
            "SELECT sql FROM sqlite_master WHERE type = 'table' AND name = ?",
            (name,),
        ).fetchone()
        if row is None:
            raise TableNotFoundError(f"Table not found: {name}")

        columns_info = conn.execute(f"PRAGMA table_info({quote_identifier(name)})").fetchall()
        columns = tuple(col["name"] for col in columns_info)
        key_columns = tuple(
            col["name"] for col in sorted(columns_info, key=lambda c: c["pk"]) if col["pk"] > 0
        )

        indexes = tuple(
            idx["sql"]
            for idx in conn.execute(
                """
                SELECT sql FROM sqlite_master
                WHERE type = 'index' AND tbl_name = ? AND sql IS NOT NULL
                ORDER BY name
                """,
                (name,),
            ).fetchall()
        )

        return TableInfo(
            name=name,
            schema=row["sql"],
            columns=columns,
            key_columns=key_columns,
            indexes=indexes,
        )

    def table_exists(self, conn: sqlite3.Connection, name: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
            (name,),
        ).fetchone()
        return row is not None

    # --- Reads ---

    @contextmanager
    def snapshot(self, deadline: Deadline | None = None) -> Iterator[sqlite3.Connection]:
        """Hold one read transaction so every table is read at the same point.

        Yields:
            Connection inside an open read transaction
        """
        with self._get_connection(deadline) as conn:
            conn.execute("BEGIN")
            try:
                yield conn
            finally:
                _rollback(conn)

    def iter_rows(self, conn: sqlite3.Connection, info: TableInfo) -> Iterator[dict[str, Any]]:
        """Yield rows as dicts in key order.

        Rows of tables without a primary key also carry their rowid under
        ROWID_FIELD, so a restore keeps the ids captured changes refer to.
        """
        columns = ", ".join(quote_identifier(c) for c in info.columns)
        if info.keyed_by_rowid:
            columns = f"rowid AS {quote_identifier(ROWID_FIELD)}, {columns}"
        if info.key_columns:
            order_by = ", ".join(quote_identifier(c) for c in info.key_columns)
        else:
            order_by = "rowid"

        cursor = conn.execute(
            f"SELECT {columns} FROM {quote_identifier(info.name)} ORDER BY {order_by}"
        )
        for row in cursor:
            yield dict(row)

    def row_count(self, name: str) -> int:
        with self._get_connection() as conn:
            if not self.table_exists(conn, name):
                raise TableNotFoundError(f"Table not found: {name}")
            return conn.execute(f"SELECT COUNT(*) FROM {quote_identifier(name)}").fetchone()[0]

    def table_digest(self, name: str) -> TableDigest | None:
        """Row count and checksum of a live table, None if it does not exist."""
        with self.snapshot() as conn:
            if not self.table_exists(conn, name):
                return None
            info = self.describe_table(conn, name)
            digest = TableDigest()
            for row in self.iter_rows(conn, info):
                digest.update(encode_row(row))
            return digest

    def integrity_check(self) -> list[str]:
        """Run PRAGMA integrity_check, returning problems (empty when healthy)."""
        with self._get_connection() as conn:
            results = [row[0] for row in conn.execute("PRAGMA integrity_check").fetchall()]
        return [] if results == ["ok"] else results

    # --- Writes ---

    def replace_table(
        self,
        info: TableInfo,
        rows: Iterable[dict[str, Any]],
        deadline: Deadline | None = None,
    ) -> int:
        """Atomically replace a table's contents.

        Creates the table (and its indexes) from info.schema if missing,
        deletes every row, then inserts rows in batches. All of it runs in
        one IMMEDIATE transaction, so a failure leaves the table as it was.

        Args:
            info: Structure of the table as recorded in the artifact
            rows: Decoded rows to insert
            deadline: Interrupts the load once expired

        Returns:
            Number of rows inserted

        Raises:
            BackupTimeoutError: If the deadline expired mid-load
        """
        table = quote_identifier(info.name)
        fields = list(info.columns)
        column_sql = [quote_identifier(c) for c in info.columns]
        if info.keyed_by_rowid:
            # A NULL rowid (older artifacts) lets SQLite assign one
            fields.insert(0, ROWID_FIELD)
            column_sql.insert(0, "rowid")
        placeholders = ", ".join("?" for _ in fields)
        insert_sql = f"INSERT INTO {table} ({', '.join(column_sql)}) VALUES ({placeholders})"

        inserted = 0
        with self._get_connection(deadline, foreign_keys=False) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                self._set_capture_suspended(conn, True)

                if not self.table_exists(conn, info.name):
                    conn.execute(info.schema)
                    for index_sql in info.indexes:
                        conn.execute(index_sql)

                conn.execute(f"DELETE FROM {table}")

                batch: list[tuple[Any, ...]] = []
                for row in rows:
                    batch.append(tuple(row.get(f) for f in fields))
                    if len(batch) >= INSERT_BATCH_SIZE:
                        if deadline is not None:
                            deadline.check()
                        conn.executemany(insert_sql, batch)
                        inserted += len(batch)
                        batch = []
                if batch:
                    conn.executemany(insert_sql, batch)
                    inserted += len(batch)

                self._set_capture_suspended(conn, False)
                conn.execute("COMMIT")

            except sqlite3.OperationalError as e:
                _rollback(conn)
                if deadline is not None and deadline.expired:
                    raise deadline.error() from e
                raise
            except Exception:
                _rollback(conn)
                raise

        logger.debug("Replaced table", extra={"table": info.name, "rows": inserted})
        return inserted

    # --- Change log ---

    def _has_change_log(self, conn: sqlite3.Connection) -> bool:
        return self.table_exists(conn, CHANGE_LOG_CONTROL_TABLE)

    def _set_capture_suspended(self, conn: sqlite3.Connection, suspended: bool) -> None:
        if self._has_change_log(conn):
            conn.execute(
                f"UPDATE {CHANGE_LOG_CONTROL_TABLE} SET suspended = ? WHERE id = 1",
                (1 if suspended else 0,),
            )

    def install_change_log(self, tables: Iterable[str] | None = None) -> list[str]:
        """Install (or refresh) change capture triggers.

        Args:
            tables: Tables to track (default: every user table)

        Returns:
            Names of the tracked tables
        """
        self.initialize()

        installed = []
        with self._get_connection() as conn:
            names = list(tables) if tables is not None else self.list_tables(conn)
            conn.execute("BEGIN IMMEDIATE")
            try:
                for name in names:
                    info = self.describe_table(conn, name)
                    for statement in self._trigger_statements(info):
                        conn.execute(statement)
                    installed.append(name)
                conn.execute("COMMIT")
            except Exception:
                _rollback(conn)
                raise

        logger.info("Installed change log triggers", extra={"tables": installed})
        return installed

    def _trigger_statements(self, info: TableInfo) -> list[str]:
        """Build DROP/CREATE statements for the three capture triggers."""
        table = quote_identifier(info.name)
        table_literal = quote_literal(info.name)

        def row_key(alias: str) -> str:
            if info.key_column:
                return f"CAST({alias}.{quote_identifier(info.key_column)} AS TEXT)"
            if info.key_columns:
                # Composite keys (including WITHOUT ROWID tables) as a JSON array
                parts = ", ".join(
                    f"CASE typeof({ref}) WHEN 'blob' THEN hex({ref}) ELSE {ref} END"
                    for ref in (f"{alias}.{quote_identifier(c)}" for c in info.key_columns)
                )
                return f"json_array({parts})"
            return f"CAST({alias}.rowid AS TEXT)"

        # json_object() rejects blobs: they go in as NULL, then each blob
        # column is patched over with its {"$hex": ...} wrapper.
        def image(alias: str) -> str:
            refs = [(column, f"{alias}.{quote_identifier(column)}") for column in info.columns]
            plain = ", ".join(
                f"{quote_literal(column)}, CASE typeof({ref}) WHEN 'blob' THEN NULL ELSE {ref} END"
                for column, ref in refs
            )
            expr = f"json_object({plain})"
            for column, ref in refs:
                wrapped = f"json_object({quote_literal(column)}, json_object('$hex', hex({ref})))"
                expr = (
                    f"json_patch({expr}, CASE typeof({ref}) "
                    f"WHEN 'blob' THEN {wrapped} ELSE '{{}}' END)"
                )
            return expr

        bodies = {
            "INSERT": (row_key("NEW"), "NULL", image("NEW")),
            "UPDATE": (row_key("NEW"), image("OLD"), image("NEW")),
            "DELETE": (row_key("OLD"), image("OLD"), "NULL"),
        }

        statements = []
        for op, (row_id, old_image, new_image) in bodies.items():
            trigger = quote_identifier(f"{CHANGE_LOG_TABLE}_{info.name}_{op.lower()}")
            statements.append(f"DROP TRIGGER IF EXISTS {trigger}")
            statements.append(
                f"""
                CREATE TRIGGER {trigger} AFTER {op} ON {table}
                WHEN (SELECT suspended FROM {CHANGE_LOG_CONTROL_TABLE} WHERE id = 1) = 0
                BEGIN
                    INSERT INTO {CHANGE_LOG_TABLE} (table_name, row_id, op, old_data, new_data)
                    VALUES ({table_literal}, {row_id}, '{op}', {old_image}, {new_image});
                END
                """
            )
        return statements

    def pending_changes(self, limit: int | None = None) -> list[ChangeRecord]:
        """Return changes not yet exported, oldest first."""
        sql = f"""
            SELECT id, table_name, row_id, op, old_data, new_data, created_at
            FROM {CHANGE_LOG_TABLE}
            WHERE exported_at IS NULL
            ORDER BY id
        """
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)

        with self._get_connection() as conn:
            if not self.table_exists(conn, CHANGE_LOG_TABLE):
                return []
            rows = conn.execute(sql, params).fetchall()

        return [
            ChangeRecord(
                id=row["id"],
                table=row["table_name"],
                row_id=row["row_id"],
                op=row["op"],
                old=json.loads(row["old_data"]) if row["old_data"] else None,
                new=json.loads(row["new_data"]) if row["new_data"] else None,
                ts=row["created_at"],
            )
            for row in rows
        ]

    def mark_exported(self, change_ids: list[int], exported_at: str | None = None) -> int:
        """Stamp changes as exported.

        Returns:
            Number of change rows updated
        """
        if not change_ids:
            return 0

        exported_at = exported_at or datetime.now(timezone.utc).isoformat()
        updated = 0
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                for start in range(0, len(change_ids), 500):
                    chunk = change_ids[start : start + 500]
                    placeholders = ", ".join("?" for _ in chunk)
                    cursor = conn.execute(
                        f"UPDATE {CHANGE_LOG_TABLE} SET exported_at = ? "
                        f"WHERE id IN ({placeholders}) AND exported_at IS NULL",
                        (exported_at, *chunk),
                    )
                    updated += cursor.rowcount
                conn.execute("COMMIT")
            except Exception:
                _rollback(conn)
                raise

        return updated

    def apply_changes(
        self,
        changes: Iterable[ChangeRecord],
        deadline: Deadline | None = None,
    ) -> int:
        """Replay captured changes in one transaction.

        INSERT and UPDATE upsert the new row image; DELETE removes the row
        by key. Replaying the same changes twice yields the same state.
        Changes for tables that no longer exist are skipped.

        Returns:
            Number of changes applied
        """
        applied = 0
        tables: dict[str, TableInfo | None] = {}

        with self._get_connection(deadline, foreign_keys=False) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                self._set_capture_suspended(conn, True)

                for change in changes:
                    if change.table not in tables:
                        try:
                            tables[change.table] = self.describe_table(conn, change.table)
                        except TableNotFoundError:
                            logger.warning(
                                "Skipping changes for missing table",
                                extra={"table": change.table},
                            )
                            tables[change.table] = None
                    info = tables[change.table]
                    if info is None:
                        continue

                    self._apply_change(conn, info, change)
                    applied += 1

                self._set_capture_suspended(conn, False)
                conn.execute("COMMIT")

            except sqlite3.OperationalError as e:
                _rollback(conn)
                if deadline is not None and deadline.expired:
                    raise deadline.error() from e
                raise
            except Exception:
                _rollback(conn)
                raise

        return applied

    def _apply_change(
        self,
        conn: sqlite3.Connection,
        info: TableInfo,
        change: ChangeRecord,
    ) -> None:
        """Apply one change, matching rows on the full primary key (or rowid)."""
        table = quote_identifier(info.name)
        key_columns = info.key_columns

        def delete(key: tuple[Any, ...]) -> None:
            if key_columns:
                where = " AND ".join(f"{quote_identifier(c)} = ?" for c in key_columns)
            else:
                where = "rowid = CAST(? AS INTEGER)"
            conn.execute(f"DELETE FROM {table} WHERE {where}", key)

        def image_key(image: dict[str, Any]) -> tuple[Any, ...]:
            row = decode_row(image)
            return tuple(row.get(c) for c in key_columns)

        if change.op == "DELETE":
            if key_columns and change.old is not None:
                delete(image_key(change.old))
            elif change.row_id is not None:
                if len(key_columns) > 1:
                    delete(tuple(json.loads(change.row_id)))
                else:
                    delete((change.row_id,))
            return

        if change.op not in CHANGE_OPS or change.new is None:
            logger.warning(
                "Skipping malformed change",
                extra={"change_id": change.id, "op": change.op},
            )
            return

        if change.op == "UPDATE" and change.old is not None and key_columns:
            old_key = image_key(change.old)
            if old_key != image_key(change.new):
                delete(old_key)

        row = decode_row(change.new)
        columns = [c for c in info.columns if c in row]
        values = [row[c] for c in columns]
        column_sql = [quote_identifier(c) for c in columns]
        if not key_columns:
            column_sql.insert(0, "rowid")
            values.insert(0, int(change.row_id) if change.row_id is not None else None)

        placeholders = ", ".join("?" for _ in values)
        conn.execute(
            f"INSERT OR REPLACE INTO {table} ({', '.join(column_sql)}) VALUES ({placeholders})",
            values,
        )
