"""
Database Store - PostgreSQL-backed resource store.

Extensions and Clusters live in two tables with a ``resource_version``
column used for optimistic concurrency. Row triggers publish every change
with pg_notify; the store LISTENs on that channel and turns notifications
into watch events.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import asyncpg

from errors import ConflictError, NotFoundError
from events import EventBus, EventSubscription, EventType, ResourceKind, WatchEvent
from resources import Cluster, Extension, ExtensionClass, ExtensionStatus
from store import ResourceStore

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "resource_events"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS extensions (
    namespace VARCHAR(255) NOT NULL,
    name VARCHAR(255) NOT NULL,
    type VARCHAR(255) NOT NULL,
    extension_class VARCHAR(32),
    spec JSONB NOT NULL DEFAULT '{}'::jsonb,
    annotations JSONB NOT NULL DEFAULT '{}'::jsonb,
    finalizers JSONB NOT NULL DEFAULT '[]'::jsonb,
    status JSONB NOT NULL DEFAULT '{}'::jsonb,
    deletion_timestamp TIMESTAMPTZ,
    generation BIGINT NOT NULL DEFAULT 1,
    resource_version BIGINT NOT NULL DEFAULT 1,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    PRIMARY KEY (namespace, name)
);

CREATE INDEX IF NOT EXISTS idx_extensions_type ON extensions (type);

CREATE TABLE IF NOT EXISTS clusters (
    name VARCHAR(255) PRIMARY KEY,
    shoot JSONB NOT NULL DEFAULT '{}'::jsonb,
    seed JSONB NOT NULL DEFAULT '{}'::jsonb,
    resource_version BIGINT NOT NULL DEFAULT 1,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE OR REPLACE FUNCTION notify_resource_change() RETURNS trigger AS $$
DECLARE
    rec RECORD;
    payload JSONB;
BEGIN
    IF TG_OP = 'DELETE' THEN
        rec := OLD;
    ELSE
        rec := NEW;
    END IF;
    IF TG_TABLE_NAME = 'extensions' THEN
        payload := jsonb_build_object('namespace', rec.namespace, 'name', rec.name);
    ELSE
        payload := jsonb_build_object('name', rec.name);
    END IF;
    payload := payload || jsonb_build_object(
        'op', TG_OP,
        'kind', TG_ARGV[0],
        'resourceVersion', rec.resource_version
    );
    PERFORM pg_notify('resource_events', payload::text);
    RETURN NULL;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS extensions_notify ON extensions;
CREATE TRIGGER extensions_notify
    AFTER INSERT OR UPDATE OR DELETE ON extensions
    FOR EACH ROW EXECUTE FUNCTION notify_resource_change('Extension');

DROP TRIGGER IF EXISTS clusters_notify ON clusters;
CREATE TRIGGER clusters_notify
    AFTER INSERT OR UPDATE OR DELETE ON clusters
    FOR EACH ROW EXECUTE FUNCTION notify_resource_change('Cluster');
"""


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    return json.loads(value) if isinstance(value, str) else value


class PostgresStore(ResourceStore):
    """Resource store backed by PostgreSQL through an asyncpg pool."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
        event_bus: Optional[EventBus] = None,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

        self._event_bus = event_bus or EventBus()
        self._listen_conn: Optional[asyncpg.Connection] = None
        self._notifications: asyncio.Queue = asyncio.Queue()
        self._dispatch_task: Optional[asyncio.Task] = None
        # Last published state per object, to provide "old" on updates
        self._cache: Dict[Tuple[str, Any], Any] = {}

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,  # Query timeout
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Stop listening and close the connection pool."""
        if self._dispatch_task is not None:
            self._dispatch_task.cancel()
            await asyncio.gather(self._dispatch_task, return_exceptions=True)
            self._dispatch_task = None
        if self._listen_conn is not None:
            await self._listen_conn.remove_listener(NOTIFY_CHANNEL, self._on_notify)
            await self.pool.release(self._listen_conn)
            self._listen_conn = None
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    async def initialize_schema(self) -> None:
        """Create tables and notification triggers if they do not exist."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Database schema initialized")

    # ==================== Extension Methods ====================

    async def create_extension(self, extension: Extension) -> Extension:
        """Create an Extension. Raises ConflictError if it already exists."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO extensions
                        (namespace, name, type, extension_class, spec,
                         annotations, finalizers, status)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    RETURNING *
                    """,
                    extension.namespace,
                    extension.name,
                    extension.type,
                    self._class_value(extension),
                    json.dumps(extension.spec),
                    json.dumps(extension.annotations),
                    json.dumps(extension.finalizers),
                    json.dumps(extension.status.to_dict()),
                )
            except asyncpg.UniqueViolationError as e:
                raise ConflictError(f"Extension {extension.key} already exists") from e

            logger.info(f"Created extension {extension.key}")
            return self._parse_extension_row(row)

    async def get_extension(self, namespace: str, name: str) -> Optional[Extension]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM extensions WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            return self._parse_extension_row(row)

    async def list_extensions(
        self,
        extension_type: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> List[Extension]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            query = "SELECT * FROM extensions WHERE 1=1"
            params = []
            param_count = 0

            if extension_type:
                param_count += 1
                query += f" AND type = ${param_count}"
                params.append(extension_type)

            if namespace:
                param_count += 1
                query += f" AND namespace = ${param_count}"
                params.append(namespace)

            query += " ORDER BY namespace, name"

            rows = await conn.fetch(query, *params)
            return [self._parse_extension_row(row) for row in rows]

    async def _raise_write_failure(
        self, conn: asyncpg.Connection, extension: Extension
    ) -> None:
        stored = await conn.fetchval(
            "SELECT resource_version FROM extensions "
            "WHERE namespace = $1 AND name = $2",
            extension.namespace,
            extension.name,
        )
        if stored is None:
            raise NotFoundError(f"Extension {extension.key} not found")
        raise ConflictError(
            f"Extension {extension.key} was modified "
            f"(have {extension.resource_version}, stored {stored})"
        )

    async def update_extension(self, extension: Extension) -> Optional[Extension]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                # Right-hand column references see the old row, so the
                # generation only moves when the spec actually changes
                row = await conn.fetchrow(
                    """
                    UPDATE extensions
                    SET annotations = $3,
                        finalizers = $4,
                        extension_class = $5,
                        generation = CASE WHEN spec <> $6::jsonb
                                          THEN generation + 1
                                          ELSE generation END,
                        spec = $6,
                        resource_version = resource_version + 1,
                        updated_at = NOW()
                    WHERE namespace = $1 AND name = $2 AND resource_version = $7
                    RETURNING *
                    """,
                    extension.namespace,
                    extension.name,
                    json.dumps(extension.annotations),
                    json.dumps(extension.finalizers),
                    self._class_value(extension),
                    json.dumps(extension.spec),
                    extension.resource_version,
                )
                if row is None:
                    await self._raise_write_failure(conn, extension)

                updated = self._parse_extension_row(row)
                if updated.is_deleting and not updated.finalizers:
                    await conn.execute(
                        """
                        DELETE FROM extensions
                        WHERE namespace = $1 AND name = $2
                          AND deletion_timestamp IS NOT NULL
                          AND finalizers = '[]'::jsonb
                        """,
                        extension.namespace,
                        extension.name,
                    )
                    logger.info(
                        f"Removed extension {extension.key}: finalizers cleared"
                    )
                    return None
                return updated

    async def update_extension_status(self, extension: Extension) -> Extension:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                UPDATE extensions
                SET status = $3,
                    resource_version = resource_version + 1,
                    updated_at = NOW()
                WHERE namespace = $1 AND name = $2 AND resource_version = $4
                RETURNING *
                """,
                extension.namespace,
                extension.name,
                json.dumps(extension.status.to_dict()),
                extension.resource_version,
            )
            if row is None:
                await self._raise_write_failure(conn, extension)
            return self._parse_extension_row(row)

    async def delete_extension(self, namespace: str, name: str) -> None:
        """
        Request deletion of an Extension.

        Extensions with finalizers only get a deletion timestamp (and a new
        generation); others are removed right away.
        """
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                removed = await conn.fetchval(
                    """
                    DELETE FROM extensions
                    WHERE namespace = $1 AND name = $2
                      AND finalizers = '[]'::jsonb
                    RETURNING name
                    """,
                    namespace,
                    name,
                )
                if removed:
                    logger.info(f"Deleted extension {namespace}/{name}")
                    return

                marked = await conn.fetchval(
                    """
                    UPDATE extensions
                    SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                        generation = CASE WHEN deletion_timestamp IS NULL
                                          THEN generation + 1
                                          ELSE generation END,
                        resource_version = CASE WHEN deletion_timestamp IS NULL
                                                THEN resource_version + 1
                                                ELSE resource_version END,
                        updated_at = NOW()
                    WHERE namespace = $1 AND name = $2
                    RETURNING name
                    """,
                    namespace,
                    name,
                )
                if not marked:
                    raise NotFoundError(f"Extension {namespace}/{name} not found")
                logger.info(f"Marked extension {namespace}/{name} for deletion")

    # ==================== Cluster Methods ====================

    async def get_cluster(self, name: str) -> Optional[Cluster]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM clusters WHERE name = $1", name)
            if not row:
                return None
            return self._parse_cluster_row(row)

    async def list_clusters(self) -> List[Cluster]:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM clusters ORDER BY name")
            return [self._parse_cluster_row(row) for row in rows]

    async def put_cluster(self, cluster: Cluster) -> Cluster:
        """Create or replace a Cluster."""
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO clusters (name, shoot, seed)
                VALUES ($1, $2, $3)
                ON CONFLICT (name) DO UPDATE
                SET shoot = EXCLUDED.shoot,
                    seed = EXCLUDED.seed,
                    resource_version = clusters.resource_version + 1,
                    updated_at = NOW()
                RETURNING *
                """,
                cluster.name,
                json.dumps(cluster.shoot),
                json.dumps(cluster.seed),
            )
            return self._parse_cluster_row(row)

    async def delete_cluster(self, name: str) -> None:
        self._ensure_connected()
        async with self.pool.acquire() as conn:
            removed = await conn.fetchval(
                "DELETE FROM clusters WHERE name = $1 RETURNING name", name
            )
            if not removed:
                raise NotFoundError(f"Cluster {name} not found")

    # ==================== Watch Methods ====================

    async def watch(self, kind: ResourceKind) -> Tuple[str, EventSubscription]:
        """
        Subscribe to changes of one kind.

        Every new watch first receives each existing object as an ADDED
        event, like an informer's initial list. The replay goes to that
        subscription only; other watches of the kind already saw them.
        """
        self._ensure_connected()
        subscription = await self._event_bus.subscribe(
            lambda event: event.kind == kind
        )
        await self._start_listener()
        await self._prime(kind, subscription[0])
        return subscription

    async def unwatch(self, subscription_id: str) -> None:
        await self._event_bus.unsubscribe(subscription_id)

    async def _start_listener(self) -> None:
        if self._listen_conn is not None:
            return
        self._listen_conn = await self.pool.acquire()
        await self._listen_conn.add_listener(NOTIFY_CHANNEL, self._on_notify)
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        logger.info(f"Listening for resource changes on channel {NOTIFY_CHANNEL}")

    async def _prime(self, kind: ResourceKind, subscriber_id: str) -> None:
        if kind == ResourceKind.EXTENSION:
            objects = await self.list_extensions()
        else:
            objects = await self.list_clusters()
        for obj in objects:
            # Newer versions reach the cache through their notification
            self._cache.setdefault(self._cache_key(kind, obj), obj)
            await self._event_bus.publish_to(
                subscriber_id, WatchEvent(EventType.ADDED, kind, obj.copy())
            )

    def _on_notify(self, connection, pid, channel, payload) -> None:
        # asyncpg listener callbacks are synchronous; hand off in order
        self._notifications.put_nowait(payload)

    async def _dispatch_loop(self) -> None:
        while True:
            payload = await self._notifications.get()
            try:
                await self._handle_notification(json.loads(payload))
            except Exception as e:
                logger.error(
                    f"Error handling notification {payload}: {e}", exc_info=True
                )

    @staticmethod
    def _cache_key(kind: ResourceKind, obj: Any) -> Tuple[str, Any]:
        if kind == ResourceKind.EXTENSION:
            return (kind.value, (obj.namespace, obj.name))
        return (kind.value, obj.name)

    async def _handle_notification(self, data: Dict[str, Any]) -> None:
        kind = ResourceKind(data["kind"])
        if kind == ResourceKind.EXTENSION:
            key = (kind.value, (data["namespace"], data["name"]))
        else:
            key = (kind.value, data["name"])

        if data["op"] == "DELETE":
            old = self._cache.pop(key, None)
            if old is not None:
                await self._event_bus.publish(WatchEvent(EventType.DELETED, kind, old))
            return

        if kind == ResourceKind.EXTENSION:
            obj = await self.get_extension(data["namespace"], data["name"])
        else:
            obj = await self.get_cluster(data["name"])
        if obj is None:
            # Gone already; its DELETE notification follows
            return

        old = self._cache.get(key)
        if old is not None and old.resource_version >= obj.resource_version:
            return
        self._cache[key] = obj

        if old is None:
            event = WatchEvent(EventType.ADDED, kind, obj.copy())
        else:
            event = WatchEvent(EventType.MODIFIED, kind, obj.copy(), old=old.copy())
        await self._event_bus.publish(event)

    # ==================== Row Parsing ====================

    @staticmethod
    def _class_value(extension: Extension) -> Optional[str]:
        return extension.extension_class.value if extension.extension_class else None

    def _parse_extension_row(self, row: asyncpg.Record) -> Extension:
        """Parse a database row into an Extension."""
        extension_class = row.get("extension_class")
        return Extension(
            namespace=row["namespace"],
            name=row["name"],
            type=row["type"],
            extension_class=(
                ExtensionClass(extension_class) if extension_class else None
            ),
            spec=_load_json(row.get("spec"), {}),
            annotations=_load_json(row.get("annotations"), {}),
            finalizers=_load_json(row.get("finalizers"), []),
            deletion_timestamp=row.get("deletion_timestamp"),
            generation=row.get("generation", 1),
            resource_version=row.get("resource_version", 1),
            status=ExtensionStatus.from_dict(_load_json(row.get("status"), {})),
        )

    def _parse_cluster_row(self, row: asyncpg.Record) -> Cluster:
        """Parse a database row into a Cluster."""
        return Cluster(
            name=row["name"],
            shoot=_load_json(row.get("shoot"), {}),
            seed=_load_json(row.get("seed"), {}),
            resource_version=row.get("resource_version", 1),
        )
