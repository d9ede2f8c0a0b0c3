"""
Predicates - Event filters deciding whether an Extension is reconciled.

Every watch event (and every Extension produced by the cluster mapper) is
run through a controller's predicate chain; it is enqueued only if all
predicates accept it.
"""

import logging
from typing import Iterable, List, Optional

from events import EventType, WatchEvent
from resources import Extension, ExtensionClass
from store import ResourceStore

logger = logging.getLogger(__name__)


class Predicate:
    """
    Base predicate. Accepts every event unless a hook is overridden.

    ``generic`` is used for events that do not originate from the object's
    own watch, e.g. an Extension mapped from a Cluster change.
    """

    async def create(self, obj: Extension) -> bool:
        return True

    async def update(self, old: Extension, new: Extension) -> bool:
        return True

    async def delete(self, obj: Extension) -> bool:
        return True

    async def generic(self, obj: Extension) -> bool:
        return True

    async def accepts(self, event: WatchEvent) -> bool:
        """Dispatch a watch event to the matching hook."""
        if event.event_type == EventType.ADDED:
            return await self.create(event.obj)
        if event.event_type == EventType.MODIFIED:
            return await self.update(event.old, event.obj)
        if event.event_type == EventType.DELETED:
            return await self.delete(event.obj)
        return await self.generic(event.obj)


class _And(Predicate):
    def __init__(self, predicates: Iterable[Predicate]):
        self.predicates = list(predicates)

    async def create(self, obj):
        for p in self.predicates:
            if not await p.create(obj):
                return False
        return True

    async def update(self, old, new):
        for p in self.predicates:
            if not await p.update(old, new):
                return False
        return True

    async def delete(self, obj):
        for p in self.predicates:
            if not await p.delete(obj):
                return False
        return True

    async def generic(self, obj):
        for p in self.predicates:
            if not await p.generic(obj):
                return False
        return True


class _Or(Predicate):
    def __init__(self, predicates: Iterable[Predicate]):
        self.predicates = list(predicates)

    async def create(self, obj):
        for p in self.predicates:
            if await p.create(obj):
                return True
        return False

    async def update(self, old, new):
        for p in self.predicates:
            if await p.update(old, new):
                return True
        return False

    async def delete(self, obj):
        for p in self.predicates:
            if await p.delete(obj):
                return True
        return False

    async def generic(self, obj):
        for p in self.predicates:
            if await p.generic(obj):
                return True
        return False


def all_of(*predicates: Predicate) -> Predicate:
    """Logical AND; short-circuits on the first rejection."""
    return _And(predicates)


def any_of(*predicates: Predicate) -> Predicate:
    """Logical OR; short-circuits on the first acceptance."""
    return _Or(predicates)


class TypePredicate(Predicate):
    """Accepts only Extensions of the given type."""

    def __init__(self, extension_type: str):
        self.extension_type = extension_type

    def _matches(self, obj: Extension) -> bool:
        return obj.type == self.extension_type

    async def create(self, obj):
        return self._matches(obj)

    async def update(self, old, new):
        return self._matches(new)

    async def delete(self, obj):
        return self._matches(obj)

    async def generic(self, obj):
        return self._matches(obj)


class ClassPredicate(Predicate):
    """
    Accepts only Extensions of the given class.

    A controller without a configured class accepts every class. Extensions
    without a class belong to the managed cluster (shoot) tier.
    """

    def __init__(self, extension_class: Optional[ExtensionClass]):
        self.extension_class = extension_class

    def _matches(self, obj: Extension) -> bool:
        if self.extension_class is None:
            return True
        return (obj.extension_class or ExtensionClass.SHOOT) == self.extension_class

    async def create(self, obj):
        return self._matches(obj)

    async def update(self, old, new):
        return self._matches(new)

    async def delete(self, obj):
        return self._matches(obj)

    async def generic(self, obj):
        return self._matches(obj)


def only_status_changed(old: Extension, new: Extension) -> bool:
    """Whether an update touched nothing but the status block."""
    return (
        old.spec == new.spec
        and old.annotations == new.annotations
        and old.finalizers == new.finalizers
        and old.generation == new.generation
        and old.deletion_timestamp == new.deletion_timestamp
    )


class OperationAnnotationPredicate(Predicate):
    """
    Accepts only events that explicitly ask for an operation.

    Deletions always pass, except for status-only writes to a terminating
    Extension; those come from the reconciler itself and retrying them is
    left to the backoff. Removing the annotation (which the reconciler does
    after a successful operation) is not a request and is rejected.
    """

    async def create(self, obj):
        return bool(obj.operation_annotation) or obj.is_deleting

    async def update(self, old, new):
        if new.is_deleting:
            return not only_status_changed(old, new)
        annotation = new.operation_annotation
        return bool(annotation) and annotation != old.operation_annotation

    async def delete(self, obj):
        return False

    async def generic(self, obj):
        return bool(obj.operation_annotation) or obj.is_deleting


class GenerationChangedPredicate(Predicate):
    """Skips updates that did not change the spec (e.g. status writes)."""

    async def update(self, old, new):
        if new.is_deleting and not old.is_deleting:
            return True
        return new.generation != old.generation


class ClusterNotFailedPredicate(Predicate):
    """
    Rejects Extensions whose owning Cluster is permanently failed.

    The Cluster is looked up by the Extension's namespace. A missing Cluster
    does not block reconciliation.
    """

    def __init__(self, store: ResourceStore):
        self.store = store

    async def _cluster_ok(self, obj: Extension) -> bool:
        cluster = await self.store.get_cluster(obj.namespace)
        if cluster is not None and cluster.is_failed():
            logger.info(
                f"Ignoring extension {obj.key}: cluster {cluster.name} is failed"
            )
            return False
        return True

    async def create(self, obj):
        return await self._cluster_ok(obj)

    async def update(self, old, new):
        return await self._cluster_ok(new)

    async def delete(self, obj):
        return await self._cluster_ok(obj)

    async def generic(self, obj):
        return await self._cluster_ok(obj)


def default_predicates(
    ignore_operation_annotation: bool, store: ResourceStore
) -> List[Predicate]:
    """
    Default predicates for an extension controller.

    With annotation-gating (``ignore_operation_annotation=False``) only
    explicitly requested operations and deletions pass; in level-triggered
    mode every spec change passes.
    """
    if ignore_operation_annotation:
        gate: Predicate = GenerationChangedPredicate()
    else:
        gate = OperationAnnotationPredicate()
    return [ClusterNotFailedPredicate(store), gate]


def add_type_and_class_predicates(
    predicates: List[Predicate],
    extension_class: Optional[ExtensionClass],
    extension_type: str,
) -> List[Predicate]:
    """Prepend the type and class predicates to a predicate list."""
    return [
        TypePredicate(extension_type),
        ClassPredicate(extension_class),
        *predicates,
    ]
