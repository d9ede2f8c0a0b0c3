"""Pytest configuration and fixtures."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from events import EventBus
from fakes import FakeActuator
from resources import Cluster, Extension
from store import MemoryStore


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def store(event_bus):
    """In-memory resource store."""
    return MemoryStore(event_bus=event_bus)


@pytest.fixture
def actuator():
    return FakeActuator()


@pytest.fixture
def sample_extension():
    """A dns Extension in the shoot--dev--a namespace."""
    return Extension(
        namespace="shoot--dev--a",
        name="dns",
        type="dns",
        spec={"providerConfig": {"zone": "example.com"}},
    )


@pytest.fixture
def sample_cluster():
    """A healthy Cluster matching sample_extension's namespace."""
    return Cluster(
        name="shoot--dev--a",
        shoot={
            "metadata": {"generation": 3, "annotations": {}},
            "status": {
                "observedGeneration": 3,
                "lastOperation": {"type": "Reconcile", "state": "Succeeded"},
            },
        },
        seed={"metadata": {"name": "seed-eu1"}},
    )


@pytest.fixture
def failed_cluster(sample_cluster):
    """The sample Cluster in a permanently failed state."""
    cluster = sample_cluster.copy()
    cluster.shoot["status"]["lastOperation"]["state"] = "Failed"
    return cluster
