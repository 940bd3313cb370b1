"""
Shared test data and store doubles.
"""

import asyncio
import sqlite3
from typing import Any

from ops.backup_server.errors import StorageUnavailableError
from ops.backup_server.store.memory import InMemoryArtifactStore

EMPLOYEES_SCHEMA = (
    "CREATE TABLE employees (id INTEGER PRIMARY KEY, name TEXT NOT NULL, salary REAL, photo BLOB)"
)
TRANSACTIONS_SCHEMA = (
    "CREATE TABLE transactions (id INTEGER PRIMARY KEY, employee_id INTEGER, amount REAL, memo TEXT)"
)


def seed_database(path: str, employees: int = 3, transactions: int = 5) -> None:
    """Create the employees/transactions sample database."""
    conn = sqlite3.connect(path)
    try:
        conn.execute(EMPLOYEES_SCHEMA)
        conn.execute(TRANSACTIONS_SCHEMA)
        conn.execute("CREATE INDEX idx_transactions_employee ON transactions(employee_id)")
        conn.executemany(
            "INSERT INTO employees (id, name, salary, photo) VALUES (?, ?, ?, ?)",
            [(i, f"Employee {i}", 1000.0 * i, bytes([i, 0, 255])) for i in range(1, employees + 1)],
        )
        conn.executemany(
            "INSERT INTO transactions (id, employee_id, amount, memo) VALUES (?, ?, ?, ?)",
            [
                (i, (i % max(employees, 1)) + 1, 10.5 * i, f"memo {i}")
                for i in range(1, transactions + 1)
            ],
        )
        conn.commit()
    finally:
        conn.close()


def run_sql(path: str, sql: str, params: tuple = ()) -> None:
    conn = sqlite3.connect(path)
    try:
        conn.execute(sql, params)
        conn.commit()
    finally:
        conn.close()


def fetch_all(path: str, sql: str, params: tuple = ()) -> list[tuple[Any, ...]]:
    conn = sqlite3.connect(path)
    try:
        return conn.execute(sql, params).fetchall()
    finally:
        conn.close()


class FailingUploadStore(InMemoryArtifactStore):
    """In-memory store whose uploads always fail."""

    async def upload(self, *args: Any, **kwargs: Any):
        raise StorageUnavailableError("upload refused")


class GatedUploadStore(InMemoryArtifactStore):
    """In-memory store whose uploads wait until the gate opens."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.upload_started = asyncio.Event()

    async def upload(self, *args: Any, **kwargs: Any):
        self.upload_started.set()
        await self.gate.wait()
        return await super().upload(*args, **kwargs)
