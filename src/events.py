"""
Watch Events - In-memory pub/sub for resource change events.

Stores publish a WatchEvent for every create, update and delete of an
Extension or Cluster; controllers subscribe to the kinds they watch.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class EventType(Enum):
    """Types of watch events."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


class ResourceKind(Enum):
    """Kinds of resources served by a store."""

    EXTENSION = "Extension"
    CLUSTER = "Cluster"


@dataclass
class WatchEvent:
    """
    A change to a single object.

    ``obj`` is the object after the change (the last known state for
    DELETED). ``old`` is the object before the change and is only set for
    MODIFIED events.
    """

    event_type: EventType
    kind: ResourceKind
    obj: Any
    old: Optional[Any] = None

    def __str__(self) -> str:
        namespace = getattr(self.obj, "namespace", None)
        name = f"{namespace}/{self.obj.name}" if namespace else self.obj.name
        return f"{self.event_type.value} {self.kind.value} {name}"


class EventSubscription:
    """
    Async iterator for consuming events from a subscription.

    Reads events from a queue, applying an optional filter function.
    A ``None`` sentinel value stops iteration.
    """

    def __init__(
        self,
        queue: asyncio.Queue,
        filter_fn: Optional[Callable[[WatchEvent], bool]] = None,
    ):
        self._queue = queue
        self._filter_fn = filter_fn

    def __aiter__(self) -> AsyncIterator[WatchEvent]:
        return self

    async def __anext__(self) -> WatchEvent:
        while True:
            event = await self._queue.get()

            if event is None:
                raise StopAsyncIteration

            if self._filter_fn is None or self._filter_fn(event):
                return event


class EventBus:
    """
    In-memory pub/sub event bus for watch events.

    Maintains an ``asyncio.Queue`` per subscriber and publishes events
    non-blocking. Full queues cause events to be dropped to prevent
    back-pressure on the store; the controllers' periodic resync repairs
    anything lost that way.
    """

    def __init__(self, queue_size: int = 1024):
        self._queue_size = queue_size
        self._subscribers: Dict[str, asyncio.Queue] = {}
        self._lock = asyncio.Lock()

    async def publish(self, event: WatchEvent) -> None:
        """
        Publish an event to all subscribers (non-blocking).

        Args:
            event: The event to publish.
        """
        async with self._lock:
            subscribers = list(self._subscribers.items())

        for subscriber_id, queue in subscribers:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    f"Dropped event {event} for subscriber {subscriber_id}: queue full"
                )

    async def publish_to(self, subscriber_id: str, event: WatchEvent) -> None:
        """
        Publish an event to a single subscriber (non-blocking).

        Used to replay existing objects to a new watch without repeating
        them to everyone else.
        """
        async with self._lock:
            queue = self._subscribers.get(subscriber_id)

        if queue is None:
            return
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(
                f"Dropped event {event} for subscriber {subscriber_id}: queue full"
            )

    async def subscribe(
        self,
        filter_fn: Optional[Callable[[WatchEvent], bool]] = None,
    ) -> Tuple[str, EventSubscription]:
        """
        Subscribe to events.

        Args:
            filter_fn: Optional predicate applied to each event.
                Only events for which it returns ``True`` are yielded.

        Returns:
            A tuple of ``(subscriber_id, EventSubscription)``.
        """
        subscriber_id = str(uuid.uuid4())
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)

        async with self._lock:
            self._subscribers[subscriber_id] = queue

        logger.debug(f"New event subscriber: {subscriber_id}")
        return subscriber_id, EventSubscription(queue, filter_fn)

    async def unsubscribe(self, subscriber_id: str) -> None:
        """
        Remove a subscriber and clean up its queue.

        Sends a ``None`` sentinel so that the subscription's async
        iterator terminates gracefully.

        Args:
            subscriber_id: The ID returned by :meth:`subscribe`.
        """
        async with self._lock:
            queue = self._subscribers.pop(subscriber_id, None)

        if queue is not None:
            try:
                queue.put_nowait(None)
            except asyncio.QueueFull:
                # Drain one slot so the sentinel always gets through
                queue.get_nowait()
                queue.put_nowait(None)
            logger.debug(f"Unsubscribed: {subscriber_id}")

    def subscriber_count(self) -> int:
        """Return the current number of subscribers."""
        return len(self._subscribers)
