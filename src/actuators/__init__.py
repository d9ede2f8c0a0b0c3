"""
Actuators for the extension controllers.

An actuator implements the provider-specific operations (reconcile, delete,
force delete, migrate, restore) for one Extension type.
"""

from actuators.base import Actuator, OperationResult
from actuators.registry import ActuatorRegistry, get_registry

__all__ = [
    "Actuator",
    "OperationResult",
    "ActuatorRegistry",
    "get_registry",
]
