"""Shared pytest fixtures for all tests."""

import itertools

import pytest

from cli.config import Config
from kvserver.broker import Broker
from kvserver.database import Database
from kvserver.kv_store import MemoryKVStore
from syncd.replication.clock import LogicalClock
from syncd.replication.metadata_store import VersionMetadataStore

BUCKET = "config"


class FakeDelivery:
    """Delivery that records whether it was acknowledged or rejected."""

    def __init__(self, data: bytes):
        self.data = data
        self.acked = False
        self.rejected = False

    async def ack(self):
        self.acked = True

    async def reject(self):
        self.rejected = True


@pytest.fixture
def temp_config_dir(tmp_path):
    """
    Create temporary config directory.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Path to temporary .kvsync directory
    """
    config_dir = tmp_path / '.kvsync'
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def temp_config(temp_config_dir, monkeypatch):
    """
    Create temporary config instance.

    Host and port overrides from the environment are cleared.

    Returns:
        Config instance with temp config file
    """
    monkeypatch.delenv('KVSYNC_API_HOST', raising=False)
    monkeypatch.delenv('KVSYNC_API_PORT', raising=False)
    return Config(temp_config_dir / 'config.json')


@pytest.fixture
def time_source():
    """
    Deterministic millisecond clock for KV stores.

    Returns:
        Callable returning 1000, 1001, 1002, ...
    """
    counter = itertools.count(1000)
    return lambda: next(counter)


@pytest.fixture
def local_kv(time_source):
    """In-memory KV bucket for the local site."""
    return MemoryKVStore(BUCKET, time_source=time_source)


@pytest.fixture
def peer_kv(time_source):
    """In-memory KV bucket for the peer site."""
    return MemoryKVStore(BUCKET, time_source=time_source)


@pytest.fixture
def clock():
    """Logical clock starting at 100."""
    return LogicalClock(100)


@pytest.fixture
def metadata_store():
    """Empty version metadata store."""
    return VersionMetadataStore()


@pytest.fixture
def database():
    """
    In-memory transport database.

    Yields:
        Database with the schema initialized
    """
    db = Database()
    yield db
    db.close()


@pytest.fixture
def broker(database):
    """
    Broker with a short ack wait so redelivery tests stay fast.

    Yields:
        Broker instance, closed after the test
    """
    b = Broker(database, ack_wait=0.2, max_messages_per_subject=100)
    yield b
    b.close()


@pytest.fixture
def make_delivery():
    """
    Factory for deliveries that record ack/reject.

    Returns:
        Callable taking the payload bytes
    """
    return FakeDelivery
