"""
Shared fixtures: a seeded SQLite database, an in-memory artifact store
and the components wired the way BackupService.from_config wires them.
"""

import os
import tempfile

import pytest

from ops.backup_server.database import SqliteDatabase
from ops.backup_server.inventory import TableInventory
from ops.backup_server.jobs import JobTracker, OperationLog, ProgressBroadcaster
from ops.backup_server.restore import RestoreEngine
from ops.backup_server.service import BackupService
from ops.backup_server.snapshot import Snapshotter
from ops.backup_server.store.memory import InMemoryArtifactStore

from .helpers import seed_database


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def work_dir(data_dir):
    return os.path.join(data_dir, "work")


@pytest.fixture
def db_path(data_dir):
    path = os.path.join(data_dir, "intranet.db")
    seed_database(path)
    return path


@pytest.fixture
def database(db_path):
    db = SqliteDatabase(db_path, wal_mode=False)
    db.initialize()
    return db


@pytest.fixture
def store_factory():
    return InMemoryArtifactStore


@pytest.fixture
async def store(store_factory):
    store = store_factory()
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def broadcaster():
    return ProgressBroadcaster(max_queue_size=1024)


@pytest.fixture
def oplog(broadcaster):
    return OperationLog(broadcaster)


@pytest.fixture
def tracker(broadcaster, oplog):
    return JobTracker(broadcaster, oplog=oplog)


@pytest.fixture
def inventory(store):
    return TableInventory(store)


@pytest.fixture
def snapshotter(database, store, work_dir):
    return Snapshotter(database, store, work_dir)


@pytest.fixture
def restore_engine(database, store, inventory, work_dir):
    return RestoreEngine(database, store, inventory, work_dir)


@pytest.fixture
async def service(store, database, snapshotter, restore_engine, inventory, tracker, broadcaster):
    service = BackupService(
        store=store,
        database=database,
        snapshotter=snapshotter,
        restore_engine=restore_engine,
        inventory=inventory,
        tracker=tracker,
        broadcaster=broadcaster,
    )
    await service.start()
    yield service
    await service.shutdown()
