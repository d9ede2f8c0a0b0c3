"""
Actuator Registry - Discovery and registration of actuators.

Built-in actuators are registered explicitly; third-party actuators are
discovered via the 'extension_operator.actuators' entry point group.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, List, Optional, Type

from actuators.base import Actuator

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "extension_operator.actuators"


class ActuatorRegistry:
    """
    Central registry for actuators.

    Handles registration, instantiation and initialization. Each Extension
    type may be claimed by at most one initialized actuator.
    """

    def __init__(self):
        # Registered actuator classes (not instantiated)
        self._actuators: Dict[str, Type[Actuator]] = {}

        # Cached actuator metadata (name, version)
        self._actuator_info: Dict[str, Dict[str, str]] = {}

        # Instantiated and initialized actuators
        self._instances: Dict[str, Actuator] = {}

        # Actuator configurations loaded from environment
        self._actuator_configs: Dict[str, Dict[str, Any]] = {}

        # Mapping from extension type to actuator name
        self._extension_type_to_actuator: Dict[str, str] = {}

    def register_actuator(self, actuator_class: Type[Actuator]) -> None:
        """
        Register an actuator class.

        Args:
            actuator_class: The Actuator subclass to register
        """
        # Temporary instance to read name/version (only once at registration)
        temp_instance = actuator_class()
        name = temp_instance.name
        version = temp_instance.version

        if name in self._actuators:
            logger.warning(f"Overwriting existing actuator: {name}")

        self._actuators[name] = actuator_class
        self._actuator_info[name] = {"name": name, "version": version}
        self._actuator_configs[name] = actuator_class.load_config_from_env()
        logger.info(f"Registered actuator: {name} v{version}")

    async def get_actuator(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> Actuator:
        """
        Get an initialized actuator instance.

        Args:
            name: The actuator name to retrieve
            config: Optional configuration to pass to initialize()

        Returns:
            An initialized Actuator instance

        Raises:
            ValueError: If the name is not registered, or the actuator's
                extension type is already claimed by another actuator
        """
        if name not in self._actuators:
            available = ", ".join(self._actuators.keys()) or "none"
            raise ValueError(
                f"Unknown actuator: {name}. Available actuators: {available}"
            )

        if name not in self._instances:
            actuator = self._actuators[name]()
            await actuator.initialize(config or {})

            extension_type = actuator.extension_type
            existing = self._extension_type_to_actuator.get(extension_type)
            if existing and existing != name:
                await actuator.close()
                raise ValueError(
                    f"Extension type '{extension_type}' is already claimed by "
                    f"actuator '{existing}'. Cannot initialize '{name}'."
                )

            self._instances[name] = actuator
            self._extension_type_to_actuator[extension_type] = name
            logger.info(
                f"Initialized actuator: {name} (extension type: {extension_type})"
            )

        return self._instances[name]

    def list_actuators(self) -> List[str]:
        """List all registered actuator names."""
        return list(self._actuators.keys())

    def has_actuator(self, name: str) -> bool:
        return name in self._actuators

    def get_actuator_info(self, name: str) -> Optional[Dict[str, str]]:
        """
        Get information about a registered actuator.

        Returns:
            Dictionary with 'name' and 'version', or None if not found
        """
        return self._actuator_info.get(name)

    def get_actuator_config(self, name: str) -> Dict[str, Any]:
        """Get the environment-loaded configuration of an actuator."""
        return dict(self._actuator_configs.get(name, {}))

    def get_actuator_for_extension_type(
        self, extension_type: str
    ) -> Optional[Actuator]:
        """Get the initialized actuator handling an extension type, if any."""
        name = self._extension_type_to_actuator.get(extension_type)
        if name is None:
            return None
        return self._instances.get(name)

    async def close_all(self) -> None:
        """Close all initialized actuators."""
        for name, actuator in list(self._instances.items()):
            try:
                await actuator.close()
            except Exception as e:
                logger.error(f"Error closing actuator '{name}': {e}")
        self._instances.clear()
        self._extension_type_to_actuator.clear()


# Global registry instance
_registry: Optional[ActuatorRegistry] = None


def get_registry() -> ActuatorRegistry:
    """Get the global actuator registry singleton."""
    global _registry
    if _registry is None:
        _registry = ActuatorRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_actuators(registry: Optional[ActuatorRegistry] = None) -> None:
    """
    Register the built-in actuators and discover installed ones via entry
    points.

    The HTTP actuator is only registered when HTTP_ACTUATOR_BASE_URL is set.
    """
    registry = registry or get_registry()

    from actuators.http import HTTPActuator

    if HTTPActuator.load_config_from_env().get("base_url"):
        registry.register_actuator(HTTPActuator)
    else:
        logger.info("HTTP actuator not configured (HTTP_ACTUATOR_BASE_URL unset)")

    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            actuator_class = ep.load()
            registry.register_actuator(actuator_class)
        except Exception as e:
            logger.warning(f"Could not load actuator {ep.name}: {e}")
