"""
Shared fixtures for replica tests.

Every test gets its own SQLite file under a temporary directory.
"""

import tempfile
import uuid

import pytest

from replicas.replica_server.inbox.gateway import InboxGateway
from replicas.replica_server.ranks.role_ranks import RoleRanks
from replicas.replica_server.store.entities import EntityStore
from replicas.replica_server.store.replica_store import ReplicaStore


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
async def store(data_dir):
    """Initialized replica store."""
    store = ReplicaStore(f"{data_dir}/replica.db", wal_mode=False)
    await store.initialize()
    return store


@pytest.fixture
def ranks(store):
    return RoleRanks(store)


@pytest.fixture
def entities(store):
    return EntityStore(store)


@pytest.fixture
def inbox(store):
    return InboxGateway(store)


@pytest.fixture
def org_id():
    return str(uuid.uuid4())
