"""Unit tests for db.py - PostgreSQL resource store."""

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from db import NOTIFY_CHANNEL, PostgresStore
from errors import ConflictError, NotFoundError
from events import EventType, ResourceKind
from resources import ExtensionClass, OperationState


def extension_row(**overrides):
    row = {
        "namespace": "shoot--dev--a",
        "name": "dns",
        "type": "dns",
        "extension_class": None,
        "spec": json.dumps({"providerConfig": {"zone": "example.com"}}),
        "annotations": json.dumps({}),
        "finalizers": json.dumps([]),
        "status": json.dumps({}),
        "deletion_timestamp": None,
        "generation": 1,
        "resource_version": 1,
    }
    row.update(overrides)
    return row


def cluster_row(**overrides):
    row = {
        "name": "shoot--dev--a",
        "shoot": json.dumps({"metadata": {"generation": 1}}),
        "seed": json.dumps({}),
        "resource_version": 1,
    }
    row.update(overrides)
    return row


def make_connection():
    """Mock connection whose transaction() works as an async context manager."""
    conn = AsyncMock()
    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


class TestPostgresStore:
    """Tests for PostgresStore construction and row parsing."""

    def test_init(self):
        store = PostgresStore(
            host="localhost",
            port=5432,
            database="testdb",
            user="testuser",
            password="testpass",
            min_pool_size=3,
            max_pool_size=10,
        )
        assert store.host == "localhost"
        assert store.database == "testdb"
        assert store.min_pool_size == 3
        assert store.max_pool_size == 10
        assert store.pool is None

    def test_ensure_connected_raises_when_not_connected(self):
        store = PostgresStore("localhost", 5432, "testdb", "testuser", "testpass")
        with pytest.raises(RuntimeError) as exc_info:
            store._ensure_connected()
        assert "Database not connected" in str(exc_info.value)

    def test_parse_extension_row(self):
        store = PostgresStore("localhost", 5432, "testdb", "testuser", "testpass")
        deleted_at = datetime(2024, 1, 15, tzinfo=timezone.utc)
        extension = store._parse_extension_row(
            extension_row(
                extension_class="seed",
                finalizers=json.dumps(["extensions.operator.io/dns"]),
                status=json.dumps(
                    {
                        "lastOperation": {"type": "Delete", "state": "Error"},
                        "observedGeneration": 1,
                    }
                ),
                deletion_timestamp=deleted_at,
                generation=2,
                resource_version=7,
            )
        )
        assert extension.extension_class == ExtensionClass.SEED
        assert extension.spec == {"providerConfig": {"zone": "example.com"}}
        assert extension.finalizers == ["extensions.operator.io/dns"]
        assert extension.deletion_timestamp == deleted_at
        assert extension.status.last_operation.state == OperationState.ERROR
        assert extension.resource_version == 7

    def test_parse_row_with_decoded_json(self):
        store = PostgresStore("localhost", 5432, "testdb", "testuser", "testpass")
        extension = store._parse_extension_row(
            extension_row(spec={"a": 1}, annotations={"b": "c"})
        )
        assert extension.spec == {"a": 1}
        assert extension.annotations == {"b": "c"}

    def test_parse_cluster_row(self):
        store = PostgresStore("localhost", 5432, "testdb", "testuser", "testpass")
        cluster = store._parse_cluster_row(cluster_row(resource_version=4))
        assert cluster.shoot == {"metadata": {"generation": 1}}
        assert cluster.resource_version == 4


@pytest.mark.asyncio
class TestPostgresStoreAsync:
    """Async tests for PostgresStore against a mocked pool."""

    @pytest.fixture
    def db_store(self, mock_pool, event_bus):
        store = PostgresStore(
            "localhost", 5432, "testdb", "testuser", "testpass", event_bus=event_bus
        )
        store.pool = mock_pool
        return store

    def _use(self, mock_pool, conn):
        @asynccontextmanager
        async def mock_acquire():
            yield conn

        mock_pool.acquire = mock_acquire

    async def test_connect(self):
        store = PostgresStore("localhost", 5432, "testdb", "testuser", "testpass")
        pool = MagicMock()
        with patch("db.asyncpg.create_pool", AsyncMock(return_value=pool)) as create:
            await store.connect()
        assert store.pool is pool
        assert create.call_args.kwargs["min_size"] == 2
        assert create.call_args.kwargs["max_size"] == 10

    async def test_initialize_schema(self, db_store, mock_pool):
        conn = make_connection()
        self._use(mock_pool, conn)
        await db_store.initialize_schema()
        sql = conn.execute.call_args.args[0]
        assert "CREATE TABLE IF NOT EXISTS extensions" in sql
        assert "pg_notify" in sql

    async def test_get_extension(self, db_store, mock_pool):
        conn = make_connection()
        conn.fetchrow = AsyncMock(return_value=extension_row())
        self._use(mock_pool, conn)

        extension = await db_store.get_extension("shoot--dev--a", "dns")
        assert extension.name == "dns"
        assert conn.fetchrow.call_args.args[1:] == ("shoot--dev--a", "dns")

    async def test_get_extension_missing(self, db_store, mock_pool):
        conn = make_connection()
        conn.fetchrow = AsyncMock(return_value=None)
        self._use(mock_pool, conn)
        assert await db_store.get_extension("ns", "missing") is None

    async def test_list_extensions_filters(self, db_store, mock_pool):
        conn = make_connection()
        conn.fetch = AsyncMock(return_value=[extension_row()])
        self._use(mock_pool, conn)

        extensions = await db_store.list_extensions("dns", namespace="shoot--dev--a")

        assert len(extensions) == 1
        query, *params = conn.fetch.call_args.args
        assert "type = $1" in query
        assert "namespace = $2" in query
        assert params == ["dns", "shoot--dev--a"]

    async def test_create_extension_duplicate(
        self, db_store, mock_pool, sample_extension
    ):
        conn = make_connection()
        conn.fetchrow = AsyncMock(side_effect=asyncpg.UniqueViolationError("dup"))
        self._use(mock_pool, conn)

        with pytest.raises(ConflictError):
            await db_store.create_extension(sample_extension)

    async def test_update_extension(self, db_store, mock_pool, sample_extension):
        conn = make_connection()
        conn.fetchrow = AsyncMock(return_value=extension_row(resource_version=2))
        self._use(mock_pool, conn)
        sample_extension.resource_version = 1

        updated = await db_store.update_extension(sample_extension)

        assert updated.resource_version == 2
        assert conn.fetchrow.call_args.args[-1] == 1
        conn.execute.assert_not_called()

    async def test_update_extension_conflict(
        self, db_store, mock_pool, sample_extension
    ):
        conn = make_connection()
        conn.fetchrow = AsyncMock(return_value=None)
        conn.fetchval = AsyncMock(return_value=5)
        self._use(mock_pool, conn)

        with pytest.raises(ConflictError):
            await db_store.update_extension(sample_extension)

    async def test_update_extension_not_found(
        self, db_store, mock_pool, sample_extension
    ):
        conn = make_connection()
        conn.fetchrow = AsyncMock(return_value=None)
        conn.fetchval = AsyncMock(return_value=None)
        self._use(mock_pool, conn)

        with pytest.raises(NotFoundError):
            await db_store.update_extension(sample_extension)

    async def test_update_removes_finished_deletion(
        self, db_store, mock_pool, sample_extension
    ):
        conn = make_connection()
        conn.fetchrow = AsyncMock(
            return_value=extension_row(
                deletion_timestamp=datetime.now(timezone.utc), finalizers="[]"
            )
        )
        self._use(mock_pool, conn)

        assert await db_store.update_extension(sample_extension) is None
        assert "DELETE FROM extensions" in conn.execute.call_args.args[0]

    async def test_update_extension_status(
        self, db_store, mock_pool, sample_extension
    ):
        conn = make_connection()
        conn.fetchrow = AsyncMock(return_value=extension_row(resource_version=3))
        self._use(mock_pool, conn)
        sample_extension.status.observed_generation = 1

        updated = await db_store.update_extension_status(sample_extension)

        assert updated.resource_version == 3
        status = json.loads(conn.fetchrow.call_args.args[3])
        assert status["observedGeneration"] == 1

    async def test_delete_extension_without_finalizers(self, db_store, mock_pool):
        conn = make_connection()
        conn.fetchval = AsyncMock(return_value="dns")
        self._use(mock_pool, conn)

        await db_store.delete_extension("shoot--dev--a", "dns")
        assert conn.fetchval.call_count == 1

    async def test_delete_extension_with_finalizers_marks(self, db_store, mock_pool):
        conn = make_connection()
        conn.fetchval = AsyncMock(side_effect=[None, "dns"])
        self._use(mock_pool, conn)

        await db_store.delete_extension("shoot--dev--a", "dns")
        assert "deletion_timestamp" in conn.fetchval.call_args.args[0]

    async def test_delete_extension_missing(self, db_store, mock_pool):
        conn = make_connection()
        conn.fetchval = AsyncMock(side_effect=[None, None])
        self._use(mock_pool, conn)

        with pytest.raises(NotFoundError):
            await db_store.delete_extension("ns", "missing")

    async def test_put_cluster(self, db_store, mock_pool, sample_cluster):
        conn = make_connection()
        conn.fetchrow = AsyncMock(return_value=cluster_row(resource_version=2))
        self._use(mock_pool, conn)

        cluster = await db_store.put_cluster(sample_cluster)
        assert cluster.resource_version == 2
        assert "ON CONFLICT (name)" in conn.fetchrow.call_args.args[0]

    async def test_delete_cluster_missing(self, db_store, mock_pool):
        conn = make_connection()
        conn.fetchval = AsyncMock(return_value=None)
        self._use(mock_pool, conn)

        with pytest.raises(NotFoundError):
            await db_store.delete_cluster("missing")


@pytest.mark.asyncio
class TestPostgresStoreWatch:
    """Tests for turning notifications into watch events."""

    @pytest.fixture
    def db_store(self, mock_pool, event_bus):
        store = PostgresStore(
            "localhost", 5432, "testdb", "testuser", "testpass", event_bus=event_bus
        )
        store.pool = mock_pool
        return store

    def _payload(self, op, resource_version):
        return {
            "op": op,
            "kind": "Extension",
            "namespace": "shoot--dev--a",
            "name": "dns",
            "resourceVersion": resource_version,
        }

    async def test_watch_primes_existing_objects(self, db_store, sample_extension):
        db_store._start_listener = AsyncMock()
        db_store.list_extensions = AsyncMock(return_value=[sample_extension])

        _, subscription = await db_store.watch(ResourceKind.EXTENSION)

        event = await subscription.__anext__()
        assert event.event_type == EventType.ADDED
        assert event.obj.key == sample_extension.key
        db_store._start_listener.assert_awaited_once()

    async def test_every_watch_gets_existing_objects(
        self, db_store, sample_extension
    ):
        db_store._start_listener = AsyncMock()
        db_store.list_extensions = AsyncMock(return_value=[sample_extension])

        _, first = await db_store.watch(ResourceKind.EXTENSION)
        _, second = await db_store.watch(ResourceKind.EXTENSION)

        for subscription in (first, second):
            event = await asyncio.wait_for(subscription.__anext__(), 1)
            assert event.event_type == EventType.ADDED
            assert event.obj.key == sample_extension.key
        # The first watch's replay is not repeated to it
        assert first._queue.empty()
        assert second._queue.empty()

    async def test_replay_keeps_newer_cached_state(self, db_store, sample_extension):
        newer = sample_extension.copy()
        newer.resource_version = 5
        db_store._cache[("Extension", ("shoot--dev--a", "dns"))] = newer
        db_store._start_listener = AsyncMock()
        db_store.list_extensions = AsyncMock(return_value=[sample_extension])

        await db_store.watch(ResourceKind.EXTENSION)
        cached = db_store._cache[("Extension", ("shoot--dev--a", "dns"))]
        assert cached.resource_version == 5

    async def test_start_listener(self, db_store, mock_pool):
        conn = AsyncMock()
        mock_pool.acquire = AsyncMock(return_value=conn)

        await db_store._start_listener()
        try:
            conn.add_listener.assert_awaited_once_with(
                NOTIFY_CHANNEL, db_store._on_notify
            )
        finally:
            db_store._dispatch_task.cancel()

    async def test_insert_then_update(self, db_store, event_bus, sample_extension):
        _, subscription = await event_bus.subscribe()
        first = sample_extension.copy()
        first.resource_version = 1
        second = sample_extension.copy()
        second.resource_version = 2
        second.annotations["a"] = "1"
        db_store.get_extension = AsyncMock(side_effect=[first, second])

        await db_store._handle_notification(self._payload("INSERT", 1))
        await db_store._handle_notification(self._payload("UPDATE", 2))

        added = await subscription.__anext__()
        modified = await subscription.__anext__()
        assert added.event_type == EventType.ADDED
        assert modified.event_type == EventType.MODIFIED
        assert modified.old.annotations == {}
        assert modified.obj.annotations == {"a": "1"}

    async def test_stale_notification_skipped(
        self, db_store, event_bus, sample_extension
    ):
        current = sample_extension.copy()
        current.resource_version = 3
        db_store._cache[("Extension", ("shoot--dev--a", "dns"))] = current
        db_store.get_extension = AsyncMock(return_value=current)
        _, subscription = await event_bus.subscribe()

        await db_store._handle_notification(self._payload("UPDATE", 3))
        assert subscription._queue.empty()

    async def test_delete_uses_last_known_state(
        self, db_store, event_bus, sample_extension
    ):
        db_store._cache[("Extension", ("shoot--dev--a", "dns"))] = sample_extension
        _, subscription = await event_bus.subscribe()

        await db_store._handle_notification(self._payload("DELETE", 4))

        event = await subscription.__anext__()
        assert event.event_type == EventType.DELETED
        assert event.obj is sample_extension
        assert db_store._cache == {}

    async def test_vanished_object_skipped(self, db_store, event_bus):
        db_store.get_extension = AsyncMock(return_value=None)
        _, subscription = await event_bus.subscribe()

        await db_store._handle_notification(self._payload("UPDATE", 2))
        assert subscription._queue.empty()

    async def test_cluster_notification(self, db_store, event_bus, sample_cluster):
        db_store.get_cluster = AsyncMock(return_value=sample_cluster)
        _, subscription = await event_bus.subscribe()

        await db_store._handle_notification(
            {"op": "INSERT", "kind": "Cluster", "name": "shoot--dev--a"}
        )

        event = await subscription.__anext__()
        assert event.kind == ResourceKind.CLUSTER
        db_store.get_cluster.assert_awaited_once_with("shoot--dev--a")

    async def test_on_notify_queues_payload(self, db_store):
        db_store._on_notify(None, 1, NOTIFY_CHANNEL, '{"op": "INSERT"}')
        assert db_store._notifications.get_nowait() == '{"op": "INSERT"}'

    async def test_close_removes_listener(self, db_store, mock_pool):
        conn = AsyncMock()
        mock_pool.acquire = AsyncMock(return_value=conn)
        await db_store._start_listener()

        await db_store.close()

        conn.remove_listener.assert_awaited_once_with(
            NOTIFY_CHANNEL, db_store._on_notify
        )
        mock_pool.release.assert_awaited_once_with(conn)
        mock_pool.close.assert_awaited_once()
