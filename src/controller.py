"""
Extension Controller - Watches, work queue and worker pool for one
Extension type.

Similar to Kubernetes controllers: watch events are filtered by the
predicate chain and turned into queue keys, a bounded pool of workers pulls
keys and runs the reconciler, and a periodic resync re-enqueues every
Extension of the type to correct drift no watch event reported.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional

from actuators.base import Actuator
from errors import (
    ConflictError,
    NotFoundError,
    RegistrationError,
    RetriableError,
    TerminalError,
)
from events import EventSubscription, ResourceKind
from finalizers import finalizer_name
from mapper import ClusterEventHandler, ClusterToExtensionMapper, UpdateBehavior
from predicates import (
    ClassPredicate,
    Predicate,
    TypePredicate,
    add_type_and_class_predicates,
    all_of,
    default_predicates,
)
from reconciler import ExtensionReconciler
from resources import FINALIZER_PREFIX, ExtensionClass, Request
from store import ResourceStore
from workqueue import ExponentialBackoff, WorkQueue

logger = logging.getLogger(__name__)


@dataclass
class ControllerArgs:
    """
    Configuration bundle for registering an extension controller.

    ``ignore_operation_annotation`` switches between annotation-gated mode
    (only explicitly requested operations run) and level-triggered mode
    (every spec change and every Cluster change runs a reconcile).
    ``predicates`` are appended to the default chain.
    """

    name: str
    actuator: Actuator
    extension_type: str
    finalizer_suffix: Optional[str] = None
    extension_class: Optional[ExtensionClass] = None
    ignore_operation_annotation: bool = False
    predicates: List[Predicate] = field(default_factory=list)
    resync_interval: float = 60
    max_concurrent_reconciles: int = 5
    reconcile_timeout: Optional[float] = 300
    shutdown_timeout: float = 30

    # Exponential backoff configuration
    backoff_base_delay: float = 5  # base delay in seconds
    backoff_max_delay: float = 1000  # max delay in seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter

    cluster_update_behavior: UpdateBehavior = UpdateBehavior.NEW

    def __post_init__(self):
        if not self.name:
            raise ValueError("Controller name must not be empty")
        if not self.extension_type:
            raise ValueError("Controller extension_type must not be empty")
        if self.max_concurrent_reconciles < 1:
            raise ValueError("max_concurrent_reconciles must be at least 1")


class ExtensionController:
    """
    Controller for one Extension type.

    Owns its queue, watch subscriptions and workers; nothing is shared with
    other controllers except the store.
    """

    def __init__(self, store: ResourceStore, args: ControllerArgs):
        self.store = store
        self.args = args
        self.name = args.name
        self.finalizer = finalizer_name(
            FINALIZER_PREFIX, args.finalizer_suffix or args.actuator.finalizer_suffix
        )

        self.predicates = add_type_and_class_predicates(
            default_predicates(args.ignore_operation_annotation, store)
            + list(args.predicates),
            args.extension_class,
            args.extension_type,
        )
        self.predicate = all_of(*self.predicates)
        self._resync_predicate = all_of(
            TypePredicate(args.extension_type), ClassPredicate(args.extension_class)
        )

        self.queue = WorkQueue(
            ExponentialBackoff(
                base_delay=args.backoff_base_delay,
                max_delay=args.backoff_max_delay,
                jitter_factor=args.backoff_jitter_factor,
            )
        )
        self.reconciler = ExtensionReconciler(
            store=store,
            actuator=args.actuator,
            finalizer=self.finalizer,
            ignore_operation_annotation=args.ignore_operation_annotation,
            timeout=args.reconcile_timeout,
        )

        # Cluster changes are only watched in level-triggered mode
        self.cluster_handler: Optional[ClusterEventHandler] = None
        if args.ignore_operation_annotation:
            self.cluster_handler = ClusterEventHandler(
                ClusterToExtensionMapper(store, args.extension_type, self.predicates),
                args.cluster_update_behavior,
            )

        self.running = False
        self._subscriptions: List[str] = []
        self._tasks: List[asyncio.Task] = []
        self._workers: List[asyncio.Task] = []

    async def start(self) -> None:
        """
        Register the watches and start workers and the resync timer.

        Raises:
            RegistrationError: If a watch cannot be registered.
        """
        if self.running:
            return

        await self._register_watches()
        self.running = True

        for worker_id in range(self.args.max_concurrent_reconciles):
            self._workers.append(asyncio.create_task(self._worker(worker_id)))

        if self.args.resync_interval > 0:
            self._tasks.append(asyncio.create_task(self._resync_loop()))

        extension_class = self.args.extension_class
        logger.info(
            f"Started controller {self.name} (type={self.args.extension_type}, "
            f"class={extension_class.value if extension_class else 'any'}, "
            f"workers={self.args.max_concurrent_reconciles}, "
            f"ignore_operation_annotation={self.args.ignore_operation_annotation})"
        )

    async def stop(self) -> None:
        """
        Stop watching and let in-flight reconciles finish.

        Workers still busy after ``shutdown_timeout`` are cancelled; every
        store write is atomic, so an abandoned attempt leaves no partial
        status behind.
        """
        if not self.running:
            return
        logger.info(f"Stopping controller {self.name}")
        self.running = False

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self._unregister_watches()

        self.queue.shutdown()
        if self._workers:
            _, pending = await asyncio.wait(
                self._workers, timeout=self.args.shutdown_timeout
            )
            for task in pending:
                logger.warning(
                    f"Abandoning in-flight reconcile in controller {self.name}"
                )
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
        self._workers.clear()
        logger.info(f"Stopped controller {self.name}")

    # ==================== Watch Wiring ====================

    async def _register_watches(self) -> None:
        try:
            sub_id, subscription = await self.store.watch(ResourceKind.EXTENSION)
            self._subscriptions.append(sub_id)
            self._tasks.append(
                asyncio.create_task(self._watch_extensions(subscription))
            )

            if self.cluster_handler is not None:
                sub_id, subscription = await self.store.watch(ResourceKind.CLUSTER)
                self._subscriptions.append(sub_id)
                self._tasks.append(
                    asyncio.create_task(self._watch_clusters(subscription))
                )
        except Exception as e:
            for task in self._tasks:
                task.cancel()
            self._tasks.clear()
            await self._unregister_watches()
            raise RegistrationError(
                f"Controller {self.name} could not register watches: {e}"
            ) from e

    async def _unregister_watches(self) -> None:
        for sub_id in self._subscriptions:
            try:
                await self.store.unwatch(sub_id)
            except Exception as e:
                logger.error(f"Error removing watch {sub_id} of {self.name}: {e}")
        self._subscriptions.clear()

    async def _watch_extensions(self, subscription: EventSubscription) -> None:
        async for event in subscription:
            try:
                if await self.predicate.accepts(event):
                    logger.debug(f"[{self.name}] Enqueue {event.obj.key} for {event}")
                    self.queue.add(event.obj.key)
            except Exception as e:
                logger.error(
                    f"[{self.name}] Error handling {event}: {e}", exc_info=True
                )

    async def _watch_clusters(self, subscription: EventSubscription) -> None:
        async for event in subscription:
            try:
                for request in await self.cluster_handler.requests_for(event):
                    logger.debug(f"[{self.name}] Enqueue {request} for {event}")
                    self.queue.add(request)
            except Exception as e:
                logger.error(
                    f"[{self.name}] Error handling {event}: {e}", exc_info=True
                )

    async def _resync_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.args.resync_interval)
            try:
                await self.resync()
            except Exception as e:
                logger.error(f"[{self.name}] Resync failed: {e}", exc_info=True)

    async def resync(self) -> int:
        """
        Enqueue every Extension of the controller's type and class.

        The operation annotation is not consulted; resync exists to correct
        drift that no event reported.

        Returns:
            Number of Extensions enqueued.
        """
        count = 0
        for extension in await self.store.list_extensions(self.args.extension_type):
            if await self._resync_predicate.generic(extension):
                self.queue.add(extension.key)
                count += 1
        logger.debug(f"[{self.name}] Resync enqueued {count} extension(s)")
        return count

    # ==================== Workers ====================

    async def _worker(self, worker_id: int) -> None:
        while True:
            key = await self.queue.get()
            if key is None:
                logger.debug(f"[{self.name}] Worker {worker_id} exiting")
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, request: Request) -> Optional[float]:
        """
        Run one reconcile attempt and schedule the follow-up.

        Returns:
            The delay after which the request was requeued, 0 for an
            immediate requeue, or None if it was not requeued.
        """
        try:
            result = await self.reconciler.reconcile(request)
        except ConflictError as e:
            logger.info(f"[{self.name}] Conflict on {request}, retrying: {e}")
            self.queue.add(request)
            return 0
        except NotFoundError:
            logger.debug(f"[{self.name}] Extension {request} disappeared")
            self.queue.forget(request)
            return None
        except TerminalError as e:
            logger.error(
                f"[{self.name}] Terminal error on {request}, not retrying: {e}"
            )
            self.queue.forget(request)
            return None
        except RetriableError as e:
            delay = self.queue.add_rate_limited(request)
            logger.warning(
                f"[{self.name}] Error reconciling {request}, "
                f"retrying in {delay:.1f}s: {e}"
            )
            return delay
        except Exception as e:
            delay = self.queue.add_rate_limited(request)
            logger.error(
                f"[{self.name}] Unexpected error reconciling {request}, "
                f"retrying in {delay:.1f}s: {e}",
                exc_info=True,
            )
            return delay

        self.queue.forget(request)
        if result.requeue_after:
            self.queue.add_after(request, result.requeue_after)
            return result.requeue_after
        return None
