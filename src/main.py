"""
Main entry point for the Extension Operator.

This module wires the resource store, the actuator registry and one extension
controller per enabled actuator, and runs them until a shutdown signal.
"""

import asyncio
import logging
import signal
from typing import Optional

from actuators.registry import (
    ActuatorRegistry,
    get_registry,
    register_builtin_actuators,
)
from config import Config, get_config
from controller import ControllerArgs
from db import PostgresStore
from events import EventBus
from manager import Manager
from mapper import UpdateBehavior
from resources import ExtensionClass
from store import MemoryStore, ResourceStore

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the store, actuators and controllers."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.store: Optional[ResourceStore] = None
        self.event_bus: Optional[EventBus] = None
        self.registry: Optional[ActuatorRegistry] = None
        self.manager: Optional[Manager] = None
        self.running = False
        self._stopped = False
        self._shutdown_task: Optional[asyncio.Task] = None

    async def _create_store(self) -> ResourceStore:
        self.event_bus = EventBus()
        if self.config.store.backend == "memory":
            logger.warning("Using in-memory store; state is lost on restart")
            return MemoryStore(event_bus=self.event_bus)

        db_config = self.config.database
        store = PostgresStore(
            host=db_config.host,
            port=db_config.port,
            database=db_config.database,
            user=db_config.user,
            password=db_config.password,
            min_pool_size=db_config.min_pool_size,
            max_pool_size=db_config.max_pool_size,
            event_bus=self.event_bus,
        )
        await store.connect()
        await store.initialize_schema()
        logger.info("Database initialized")
        return store

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing Extension Operator")

        # Register built-in actuators and installed ones
        self.registry = get_registry()
        register_builtin_actuators(self.registry)

        self.store = await self._create_store()
        self.manager = Manager(self.store)

        # Determine which actuators to load
        enabled = self.config.actuators.enabled_actuators
        if not enabled:
            # If not specified, use all registered actuators
            enabled = self.registry.list_actuators()

        for actuator_name in enabled:
            if not self.registry.has_actuator(actuator_name):
                logger.warning(f"Actuator '{actuator_name}' not found, skipping")
                continue

            # Env-loaded actuator config with ACTUATOR_CONFIGS overrides
            actuator_config = self.registry.get_actuator_config(actuator_name)
            actuator_config.update(
                self.config.actuators.get_actuator_config(actuator_name)
            )
            actuator = await self.registry.get_actuator(actuator_name, actuator_config)

            # Controller settings may be overridden per actuator as well
            ctrl_config = self.config.controller.with_overrides(actuator_config)
            args = ControllerArgs(
                name=actuator_name,
                actuator=actuator,
                extension_type=actuator.extension_type,
                extension_class=(
                    ExtensionClass(ctrl_config.extension_class)
                    if ctrl_config.extension_class
                    else None
                ),
                ignore_operation_annotation=ctrl_config.ignore_operation_annotation,
                cluster_update_behavior=UpdateBehavior(
                    ctrl_config.cluster_update_behavior
                ),
                resync_interval=ctrl_config.resync_interval,
                max_concurrent_reconciles=ctrl_config.max_concurrent_reconciles,
                reconcile_timeout=ctrl_config.reconcile_timeout,
                shutdown_timeout=ctrl_config.shutdown_timeout,
                backoff_base_delay=ctrl_config.backoff_base_delay,
                backoff_max_delay=ctrl_config.backoff_max_delay,
                backoff_jitter_factor=ctrl_config.backoff_jitter_factor,
            )
            await self.manager.add_controller(args)

        if not self.manager.list_controllers():
            logger.warning("No actuators enabled; no extension will be reconciled")

        logger.info("All components initialized")

    async def start(self):
        """Start the application and block until it is stopped."""
        if not self.manager:
            await self.initialize()

        self.running = True
        logger.info("Starting Extension Operator")

        try:
            await self.manager.run()
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    def request_shutdown(self) -> Optional[asyncio.Task]:
        """
        Ask a running application to stop, from synchronous code such as a
        signal handler.

        Only the manager is stopped here, which ends start(); the rest of the
        cleanup runs in stop(). The task is kept until it finishes.
        """
        if self.manager is None:
            return None
        if self._shutdown_task is None or self._shutdown_task.done():
            self._shutdown_task = asyncio.create_task(self.manager.stop())
        return self._shutdown_task

    async def stop(self):
        """Stop the application gracefully."""
        if self._stopped:
            return
        self._stopped = True
        self.running = False
        logger.info("Stopping Extension Operator")

        if self._shutdown_task is not None:
            await self._shutdown_task
        if self.manager:
            await self.manager.stop()

        if self.registry:
            await self.registry.close_all()

        if isinstance(self.store, PostgresStore):
            await self.store.close()

        logger.info("Extension Operator stopped")


async def main():
    """Main entry point."""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format=LOG_FORMAT,
    )
    app = Application(config)

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        app.request_shutdown()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
