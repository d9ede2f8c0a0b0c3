"""
Extension Reconciler - The reconciliation state machine.

For every request the operation is derived from the current Extension
snapshot alone (deletion timestamp and operation annotation), never from the
event that triggered it:

    deletion timestamp set      -> Delete (always wins)
    annotation 'migrate'        -> Migrate
    annotation 'restore'        -> Restore
    anything else               -> Reconcile

The finalizer is added before any Actuator call except Delete, and removed
only after a successful Delete.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from actuators.base import Actuator, OperationResult
from errors import ConflictError, ExtensionError, RetriableError, TerminalError
from finalizers import ensure_finalizer, remove_finalizer
from resources import (
    FORCE_DELETE_ANNOTATION,
    OPERATION_ANNOTATION,
    OPERATION_MIGRATE,
    OPERATION_RESTORE,
    Cluster,
    Extension,
    LastError,
    LastOperation,
    OperationState,
    OperationType,
    Request,
    utcnow,
)
from store import ResourceStore, retry_on_conflict

logger = logging.getLogger(__name__)

ActuatorOperation = Callable[[Extension, Optional[Cluster]], Awaitable[OperationResult]]


@dataclass
class ReconcileResult:
    """Result of one reconcile attempt."""

    requeue_after: Optional[float] = None
    message: str = ""


def determine_operation(extension: Extension) -> OperationType:
    """Derive the operation to run from an Extension snapshot."""
    if extension.is_deleting:
        return OperationType.DELETE
    annotation = extension.operation_annotation
    if annotation == OPERATION_MIGRATE:
        return OperationType.MIGRATE
    if annotation == OPERATION_RESTORE:
        return OperationType.RESTORE
    return OperationType.RECONCILE


def needs_force_delete(extension: Extension, cluster: Optional[Cluster]) -> bool:
    """Whether deletion was confirmed as forced on the Extension or Cluster."""
    if extension.annotations.get(FORCE_DELETE_ANNOTATION, "").lower() == "true":
        return True
    return cluster is not None and cluster.needs_force_deletion()


class ExtensionReconciler:
    """
    Runs one reconcile attempt for an Extension.

    Errors are recorded in the Extension status and then raised so the
    caller can decide on the requeue: RetriableError (or any unexpected
    exception) is retried with backoff, TerminalError is not retried,
    ConflictError is retried immediately.
    """

    def __init__(
        self,
        store: ResourceStore,
        actuator: Actuator,
        finalizer: str,
        ignore_operation_annotation: bool = False,
        timeout: Optional[float] = None,
    ):
        self.store = store
        self.actuator = actuator
        self.finalizer = finalizer
        self.ignore_operation_annotation = ignore_operation_annotation
        self.timeout = timeout

    async def reconcile(self, request: Request) -> ReconcileResult:
        extension = await self.store.get_extension(request.namespace, request.name)
        if extension is None:
            logger.debug(f"Extension {request} not found, nothing to do")
            return ReconcileResult()

        cluster = await self.store.get_cluster(extension.namespace)
        if cluster is not None and cluster.is_failed():
            logger.info(
                f"Skipping extension {request}: cluster {cluster.name} is failed"
            )
            return ReconcileResult()

        operation = determine_operation(extension)
        if operation == OperationType.DELETE:
            return await self._delete(extension, cluster)

        if operation == OperationType.RECONCILE and extension.is_migrated():
            logger.info(
                f"Skipping reconcile of extension {request}: it was migrated "
                f"and waits for a restore"
            )
            return ReconcileResult()

        actions = {
            OperationType.RECONCILE: self.actuator.reconcile,
            OperationType.MIGRATE: self.actuator.migrate,
            OperationType.RESTORE: self.actuator.restore,
        }
        return await self._run(operation, actions[operation], extension, cluster)

    async def _run(
        self,
        operation: OperationType,
        action: ActuatorOperation,
        extension: Extension,
        cluster: Optional[Cluster],
    ) -> ReconcileResult:
        requested = extension.operation_annotation

        extension = await ensure_finalizer(self.store, extension, self.finalizer)
        extension = await self._set_processing(extension, operation)
        if extension.is_deleting:
            raise ConflictError(
                f"Extension {extension.key} started deleting before "
                f"{operation.value}, requeueing"
            )

        logger.info(f"Starting {operation.value} of extension {extension.key}")
        try:
            result = await self._invoke(action, extension, cluster)
        except Exception as e:
            await self._set_error(extension, operation, e)
            raise

        extension = await self._set_succeeded(extension, operation, result)
        logger.info(f"{operation.value} of extension {extension.key} succeeded")

        if operation != OperationType.RECONCILE or not self.ignore_operation_annotation:
            await self._remove_operation_annotation(extension, requested)

        return ReconcileResult(
            requeue_after=result.requeue_after, message=result.message
        )

    async def _delete(
        self, extension: Extension, cluster: Optional[Cluster]
    ) -> ReconcileResult:
        if not extension.has_finalizer(self.finalizer):
            logger.debug(
                f"Extension {extension.key} is deleting without finalizer "
                f"{self.finalizer}, nothing to do"
            )
            return ReconcileResult()

        force = needs_force_delete(extension, cluster)
        action = self.actuator.force_delete if force else self.actuator.delete

        extension = await self._set_processing(extension, OperationType.DELETE)
        kind = "forced deletion" if force else "deletion"
        logger.info(f"Starting {kind} of extension {extension.key}")
        try:
            result = await self._invoke(action, extension, cluster)
        except Exception as e:
            await self._set_error(extension, OperationType.DELETE, e)
            raise

        if result.requeue_after:
            logger.info(
                f"Deletion of extension {extension.key} still in progress, "
                f"checking again in {result.requeue_after}s"
            )
            return ReconcileResult(
                requeue_after=result.requeue_after, message=result.message
            )

        extension = await self._set_succeeded(extension, OperationType.DELETE, result)
        await remove_finalizer(self.store, extension, self.finalizer)
        logger.info(f"Deletion of extension {extension.key} succeeded")
        return ReconcileResult(message=result.message)

    async def _invoke(
        self,
        action: ActuatorOperation,
        extension: Extension,
        cluster: Optional[Cluster],
    ) -> OperationResult:
        call = action(extension.copy(), cluster)
        if self.timeout:
            try:
                result = await asyncio.wait_for(call, self.timeout)
            except asyncio.TimeoutError as e:
                raise RetriableError(
                    f"Operation on extension {extension.key} timed out "
                    f"after {self.timeout}s"
                ) from e
        else:
            result = await call
        return result or OperationResult()

    # ==================== Status Helpers ====================

    async def _set_processing(
        self, extension: Extension, operation: OperationType
    ) -> Extension:
        def mutate(ext: Extension) -> bool:
            ext.status.last_operation = LastOperation(
                type=operation,
                state=OperationState.PROCESSING,
                description=f"Processing {operation.value} of the extension",
                last_update_time=utcnow(),
            )
            return True

        return await retry_on_conflict(self.store, extension, mutate, status=True)

    async def _set_succeeded(
        self,
        extension: Extension,
        operation: OperationType,
        result: OperationResult,
    ) -> Extension:
        generation = extension.generation

        def mutate(ext: Extension) -> bool:
            ext.status.last_operation = LastOperation(
                type=operation,
                state=OperationState.SUCCEEDED,
                description=result.message or f"{operation.value} succeeded",
                last_update_time=utcnow(),
            )
            ext.status.last_error = None
            ext.status.observed_generation = generation
            return True

        return await retry_on_conflict(self.store, extension, mutate, status=True)

    async def _set_error(
        self, extension: Extension, operation: OperationType, error: Exception
    ) -> None:
        terminal = isinstance(error, TerminalError)
        description = getattr(error, "message", None) or str(error) or repr(error)
        codes = error.codes if terminal else []

        def mutate(ext: Extension) -> bool:
            now = utcnow()
            ext.status.last_operation = LastOperation(
                type=operation,
                state=OperationState.FAILED if terminal else OperationState.ERROR,
                description=f"{operation.value} failed: {description}",
                last_update_time=now,
            )
            ext.status.last_error = LastError(
                description=description, codes=codes, last_update_time=now
            )
            return True

        logger.error(
            f"{operation.value} of extension {extension.key} failed: {description}"
        )
        try:
            await retry_on_conflict(self.store, extension, mutate, status=True)
        except ExtensionError as e:
            # The operation error is what gets raised; the status write is lost
            logger.error(f"Could not record error on extension {extension.key}: {e}")

    async def _remove_operation_annotation(
        self, extension: Extension, requested: str
    ) -> None:
        if not requested:
            return

        def mutate(ext: Extension) -> bool:
            # A different operation requested meanwhile must survive
            if ext.annotations.get(OPERATION_ANNOTATION) != requested:
                return False
            del ext.annotations[OPERATION_ANNOTATION]
            return True

        await retry_on_conflict(self.store, extension, mutate)
        logger.debug(f"Removed operation annotation from extension {extension.key}")
