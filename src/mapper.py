"""
Cluster-to-Extension mapping.

When a controller ignores the operation annotation, a change to the managed
cluster is only visible on its Cluster resource. The mapper translates such a
change into the Extension requests that have to be reconciled again.
"""

import logging
from enum import Enum
from typing import List

from events import EventType, WatchEvent
from predicates import Predicate, all_of
from resources import Cluster, Request
from store import ResourceStore

logger = logging.getLogger(__name__)


class UpdateBehavior(Enum):
    """Which side of a Cluster update event gets mapped."""

    OLD = "old"
    NEW = "new"
    BOTH = "both"


class ClusterToExtensionMapper:
    """
    Maps a Cluster to the Extension of the controller's type in the
    Cluster's namespace.

    Extensions are named after their type, so each Cluster has exactly one
    candidate per controller. The candidate is only emitted if it exists and
    passes the controller's predicate chain.
    """

    def __init__(
        self,
        store: ResourceStore,
        extension_type: str,
        predicates: List[Predicate],
    ):
        self.store = store
        self.extension_type = extension_type
        self.predicate = all_of(*predicates)

    async def map(self, cluster: Cluster) -> List[Request]:
        extension = await self.store.get_extension(cluster.name, self.extension_type)
        if extension is None:
            return []
        if not await self.predicate.generic(extension):
            logger.debug(
                f"Cluster {cluster.name} change not mapped: "
                f"extension {extension.key} rejected by predicates"
            )
            return []
        return [extension.key]


class ClusterEventHandler:
    """Turns Cluster watch events into Extension requests."""

    def __init__(
        self,
        mapper: ClusterToExtensionMapper,
        update_behavior: UpdateBehavior = UpdateBehavior.NEW,
    ):
        self.mapper = mapper
        self.update_behavior = update_behavior

    async def requests_for(self, event: WatchEvent) -> List[Request]:
        if event.event_type != EventType.MODIFIED:
            return await self.mapper.map(event.obj)

        clusters = []
        if self.update_behavior in (UpdateBehavior.OLD, UpdateBehavior.BOTH):
            clusters.append(event.old)
        if self.update_behavior in (UpdateBehavior.NEW, UpdateBehavior.BOTH):
            clusters.append(event.obj)

        requests: List[Request] = []
        for cluster in clusters:
            for request in await self.mapper.map(cluster):
                if request not in requests:
                    requests.append(request)
        return requests
