"""
Resource Store - Interface to the external resource store.

Controllers read Extensions and Clusters, watch them for changes and write
back Extension metadata and status with optimistic concurrency. The
MemoryStore implementation keeps everything in process and is used for local
runs and tests; db.PostgresStore persists to PostgreSQL.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Tuple

from errors import ConflictError, NotFoundError
from events import EventBus, EventSubscription, EventType, ResourceKind, WatchEvent
from resources import Cluster, Extension, utcnow

logger = logging.getLogger(__name__)

DEFAULT_CONFLICT_RETRIES = 5

Mutation = Callable[[Extension], bool]


class ResourceStore(ABC):
    """
    Abstract resource store.

    Writes are conditional: the written object's ``resource_version`` must
    match the stored one, otherwise ``ConflictError`` is raised.
    """

    @abstractmethod
    async def get_extension(self, namespace: str, name: str) -> Optional[Extension]:
        """Get an Extension by key, or None if it does not exist."""
        pass

    @abstractmethod
    async def list_extensions(
        self,
        extension_type: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> List[Extension]:
        """List Extensions, optionally filtered by type and namespace."""
        pass

    @abstractmethod
    async def get_cluster(self, name: str) -> Optional[Cluster]:
        """Get a Cluster by name (the managed cluster's namespace)."""
        pass

    @abstractmethod
    async def list_clusters(self) -> List[Cluster]:
        pass

    @abstractmethod
    async def update_extension(self, extension: Extension) -> Optional[Extension]:
        """
        Write an Extension's annotations, finalizers and spec.

        Status is ignored. When the write leaves a terminating Extension
        without finalizers the store removes it and None is returned.

        Raises:
            ConflictError: If ``extension.resource_version`` is stale.
            NotFoundError: If the Extension no longer exists.
        """
        pass

    @abstractmethod
    async def update_extension_status(self, extension: Extension) -> Extension:
        """
        Write an Extension's status block only.

        Raises:
            ConflictError: If ``extension.resource_version`` is stale.
            NotFoundError: If the Extension no longer exists.
        """
        pass

    @abstractmethod
    async def watch(self, kind: ResourceKind) -> Tuple[str, EventSubscription]:
        """Subscribe to change events of one resource kind."""
        pass

    @abstractmethod
    async def unwatch(self, subscription_id: str) -> None:
        pass


async def retry_on_conflict(
    store: ResourceStore,
    extension: Extension,
    mutate: Mutation,
    status: bool = False,
    attempts: int = DEFAULT_CONFLICT_RETRIES,
) -> Optional[Extension]:
    """
    Apply ``mutate`` to an Extension and write it, re-reading on conflict.

    ``mutate`` changes the object in place and returns False when there is
    nothing to write, in which case no write happens. On ConflictError the
    latest object is fetched and the mutation is re-applied to it, so
    concurrent edits to other fields are never overwritten.

    Args:
        store: The resource store.
        extension: Last observed Extension snapshot (not modified).
        mutate: In-place mutation, returns whether a write is needed.
        status: Write the status block instead of metadata/spec.
        attempts: Maximum number of write attempts.

    Returns:
        The written Extension, the unchanged snapshot if no write was needed,
        or None if the store removed the Extension as a result of the write.

    Raises:
        ConflictError: If every attempt conflicted.
        NotFoundError: If the Extension disappeared.
    """
    current = extension.copy()
    for attempt in range(1, attempts + 1):
        if not mutate(current):
            return current
        try:
            if status:
                return await store.update_extension_status(current)
            return await store.update_extension(current)
        except ConflictError:
            if attempt == attempts:
                raise
            logger.debug(
                f"Conflict writing {current.key} (attempt {attempt}), re-reading"
            )
            latest = await store.get_extension(current.namespace, current.name)
            if latest is None:
                raise NotFoundError(f"Extension {current.key} not found")
            current = latest
    return current


class MemoryStore(ResourceStore):
    """In-process resource store with Kubernetes-like write semantics."""

    def __init__(self, event_bus: Optional[EventBus] = None):
        self._extensions: Dict[Tuple[str, str], Extension] = {}
        self._clusters: Dict[str, Cluster] = {}
        self._lock = asyncio.Lock()
        self._event_bus = event_bus or EventBus()

    async def _publish(
        self,
        event_type: EventType,
        kind: ResourceKind,
        obj,
        old=None,
    ) -> None:
        await self._event_bus.publish(
            WatchEvent(
                event_type=event_type,
                kind=kind,
                obj=obj.copy(),
                old=old.copy() if old is not None else None,
            )
        )

    # ==================== Extension Methods ====================

    async def create_extension(self, extension: Extension) -> Extension:
        """Create an Extension. Raises ConflictError if it already exists."""
        async with self._lock:
            key = (extension.namespace, extension.name)
            if key in self._extensions:
                raise ConflictError(f"Extension {extension.key} already exists")

            stored = extension.copy()
            stored.generation = 1
            stored.resource_version = 1
            stored.deletion_timestamp = None
            self._extensions[key] = stored
            await self._publish(EventType.ADDED, ResourceKind.EXTENSION, stored)
            return stored.copy()

    async def get_extension(self, namespace: str, name: str) -> Optional[Extension]:
        stored = self._extensions.get((namespace, name))
        return stored.copy() if stored else None

    async def list_extensions(
        self,
        extension_type: Optional[str] = None,
        namespace: Optional[str] = None,
    ) -> List[Extension]:
        return [
            ext.copy()
            for ext in sorted(self._extensions.values(), key=lambda e: e.key)
            if (extension_type is None or ext.type == extension_type)
            and (namespace is None or ext.namespace == namespace)
        ]

    def _current(self, extension: Extension) -> Extension:
        current = self._extensions.get((extension.namespace, extension.name))
        if current is None:
            raise NotFoundError(f"Extension {extension.key} not found")
        if current.resource_version != extension.resource_version:
            raise ConflictError(
                f"Extension {extension.key} was modified "
                f"(have {extension.resource_version}, "
                f"stored {current.resource_version})"
            )
        return current

    async def update_extension(self, extension: Extension) -> Optional[Extension]:
        async with self._lock:
            current = self._current(extension)
            updated = current.copy()
            updated.annotations = dict(extension.annotations)
            updated.finalizers = list(extension.finalizers)
            updated.extension_class = extension.extension_class
            if extension.spec != current.spec:
                updated.spec = dict(extension.spec)
                updated.generation += 1
            updated.resource_version += 1

            key = (extension.namespace, extension.name)
            if updated.is_deleting and not updated.finalizers:
                del self._extensions[key]
                logger.info(f"Removed extension {extension.key}: finalizers cleared")
                await self._publish(EventType.DELETED, ResourceKind.EXTENSION, updated)
                return None

            self._extensions[key] = updated
            await self._publish(
                EventType.MODIFIED, ResourceKind.EXTENSION, updated, old=current
            )
            return updated.copy()

    async def update_extension_status(self, extension: Extension) -> Extension:
        async with self._lock:
            current = self._current(extension)
            updated = current.copy()
            updated.status = extension.copy().status
            updated.resource_version += 1
            self._extensions[(extension.namespace, extension.name)] = updated
            await self._publish(
                EventType.MODIFIED, ResourceKind.EXTENSION, updated, old=current
            )
            return updated.copy()

    async def delete_extension(self, namespace: str, name: str) -> None:
        """
        Request deletion of an Extension.

        With finalizers present only the deletion timestamp is set; the
        object disappears once the last finalizer is removed.
        """
        async with self._lock:
            current = self._extensions.get((namespace, name))
            if current is None:
                raise NotFoundError(f"Extension {namespace}/{name} not found")

            if not current.finalizers:
                del self._extensions[(namespace, name)]
                await self._publish(EventType.DELETED, ResourceKind.EXTENSION, current)
                return

            if current.is_deleting:
                return

            updated = current.copy()
            updated.deletion_timestamp = utcnow()
            updated.generation += 1
            updated.resource_version += 1
            self._extensions[(namespace, name)] = updated
            await self._publish(
                EventType.MODIFIED, ResourceKind.EXTENSION, updated, old=current
            )

    # ==================== Cluster Methods ====================

    async def get_cluster(self, name: str) -> Optional[Cluster]:
        stored = self._clusters.get(name)
        return stored.copy() if stored else None

    async def list_clusters(self) -> List[Cluster]:
        return [self._clusters[name].copy() for name in sorted(self._clusters)]

    async def put_cluster(self, cluster: Cluster) -> Cluster:
        """Create or replace a Cluster."""
        async with self._lock:
            current = self._clusters.get(cluster.name)
            stored = cluster.copy()
            stored.resource_version = (current.resource_version if current else 0) + 1
            self._clusters[cluster.name] = stored
            if current is None:
                await self._publish(EventType.ADDED, ResourceKind.CLUSTER, stored)
            else:
                await self._publish(
                    EventType.MODIFIED, ResourceKind.CLUSTER, stored, old=current
                )
            return stored.copy()

    async def delete_cluster(self, name: str) -> None:
        async with self._lock:
            current = self._clusters.pop(name, None)
            if current is None:
                raise NotFoundError(f"Cluster {name} not found")
            await self._publish(EventType.DELETED, ResourceKind.CLUSTER, current)

    # ==================== Watch Methods ====================

    async def watch(self, kind: ResourceKind) -> Tuple[str, EventSubscription]:
        return await self._event_bus.subscribe(lambda event: event.kind == kind)

    async def unwatch(self, subscription_id: str) -> None:
        await self._event_bus.unsubscribe(subscription_id)
