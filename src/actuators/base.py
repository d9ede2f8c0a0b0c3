"""
Actuator Base - Abstract interface for provider-specific extension logic.

An Actuator implements the provisioning operations for exactly one Extension
type. The controllers decide when and which operation to run; the Actuator
does the work.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from resources import Cluster, Extension

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """
    Successful outcome of an Actuator operation.

    Failures are raised instead: errors.RetriableError for transient
    problems, errors.TerminalError when the operation cannot succeed without
    an external change. Any other exception is treated as retriable.

    Attributes:
        requeue_after: Ask for another run after this many seconds. For
            delete operations this means cleanup is still in progress and
            the finalizer must stay.
        message: Optional description recorded in the last operation.
    """

    requeue_after: Optional[float] = None
    message: str = ""


class Actuator(ABC):
    """
    Abstract base class for actuators.

    Each operation receives the current Extension snapshot and the Cluster it
    belongs to (None if the Cluster does not exist).
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this actuator (e.g., 'dns-service')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Actuator version string."""
        pass

    @property
    @abstractmethod
    def extension_type(self) -> str:
        """The Extension type this actuator is responsible for."""
        pass

    @property
    def finalizer_suffix(self) -> str:
        """Suffix of the finalizer written by this actuator's controller."""
        return self.extension_type

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """Load actuator configuration from environment variables."""
        return {}

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the actuator with configuration.

        Called once when the actuator is loaded.

        Args:
            config: Actuator-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def reconcile(
        self, extension: Extension, cluster: Optional[Cluster]
    ) -> OperationResult:
        """Create or update the infrastructure described by the Extension."""
        pass

    @abstractmethod
    async def delete(
        self, extension: Extension, cluster: Optional[Cluster]
    ) -> OperationResult:
        """Tear down the infrastructure described by the Extension."""
        pass

    async def force_delete(
        self, extension: Extension, cluster: Optional[Cluster]
    ) -> OperationResult:
        """
        Delete without waiting for a graceful cleanup.

        Defaults to a regular delete.
        """
        return await self.delete(extension, cluster)

    @abstractmethod
    async def migrate(
        self, extension: Extension, cluster: Optional[Cluster]
    ) -> OperationResult:
        """Prepare the Extension for relocation to another hosting cluster."""
        pass

    @abstractmethod
    async def restore(
        self, extension: Extension, cluster: Optional[Cluster]
    ) -> OperationResult:
        """Re-create the Extension's state after a migration."""
        pass

    async def close(self) -> None:
        """Release any resources held by the actuator."""
        pass
