"""
Finalizers - Guard Extensions against removal until cleanup has run.

Each controller owns one finalizer, named after its prefix and a
controller-specific suffix, so controllers for different Extension types
never block each other's deletion.
"""

import logging
from typing import Optional

from errors import ConflictError
from resources import Extension
from store import ResourceStore, retry_on_conflict

logger = logging.getLogger(__name__)


def finalizer_name(prefix: str, suffix: str) -> str:
    """
    Build a finalizer name.

    Args:
        prefix: Finalizer prefix, usually FINALIZER_PREFIX.
        suffix: Controller-specific suffix, usually the extension type.

    Returns:
        ``"<prefix>/<suffix>"``

    Raises:
        ValueError: If prefix or suffix is empty.
    """
    if not prefix or not suffix:
        raise ValueError("Finalizer prefix and suffix must not be empty")
    return f"{prefix}/{suffix}"


async def ensure_finalizer(
    store: ResourceStore, extension: Extension, finalizer: str
) -> Extension:
    """
    Add a finalizer to an Extension unless it is already present.

    A terminating Extension never gets a new finalizer; the change that set
    its deletion timestamp is reported as a conflict so that the caller
    re-reads it and runs the deletion instead.

    Returns:
        The current Extension (written only if the finalizer was missing).

    Raises:
        ConflictError: If the Extension is being deleted.
    """

    def add(ext: Extension) -> bool:
        if ext.has_finalizer(finalizer):
            return False
        if ext.is_deleting:
            raise ConflictError(
                f"Extension {ext.key} is being deleted, not adding {finalizer}"
            )
        ext.finalizers.append(finalizer)
        return True

    updated = await retry_on_conflict(store, extension, add)
    if not extension.has_finalizer(finalizer):
        logger.info(f"Added finalizer {finalizer} to extension {extension.key}")
    return updated


async def remove_finalizer(
    store: ResourceStore, extension: Extension, finalizer: str
) -> Optional[Extension]:
    """
    Remove a finalizer from an Extension if present.

    Returns:
        The updated Extension, or None if the store removed it because it was
        terminating and no finalizers remain.
    """

    def remove(ext: Extension) -> bool:
        if not ext.has_finalizer(finalizer):
            return False
        ext.finalizers.remove(finalizer)
        return True

    updated = await retry_on_conflict(store, extension, remove)
    if extension.has_finalizer(finalizer):
        logger.info(f"Removed finalizer {finalizer} from extension {extension.key}")
    return updated
