"""
Controller Manager - Hosts the extension controllers of one process.

Each controller is registered with its own ControllerArgs and runs
independently; the manager only shares the resource store between them.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from controller import ControllerArgs, ExtensionController
from errors import RegistrationError
from store import ResourceStore

logger = logging.getLogger(__name__)


class Manager:
    """Starts, runs and stops a set of extension controllers."""

    def __init__(self, store: ResourceStore):
        self.store = store
        self.running = False
        self._controllers: Dict[str, ExtensionController] = {}
        self._stopped = asyncio.Event()

    async def add_controller(self, args: ControllerArgs) -> ExtensionController:
        """
        Register an extension controller.

        If the manager is already running the controller is started right
        away, otherwise on start().

        Raises:
            RegistrationError: If the name is taken or the watches cannot be
                registered.
        """
        if args.name in self._controllers:
            raise RegistrationError(f"Controller '{args.name}' is already registered")

        controller = ExtensionController(self.store, args)
        if self.running:
            await controller.start()
        self._controllers[args.name] = controller
        logger.info(f"Registered controller {args.name} for type {args.extension_type}")
        return controller

    def get_controller(self, name: str) -> Optional[ExtensionController]:
        return self._controllers.get(name)

    def list_controllers(self) -> List[str]:
        return list(self._controllers.keys())

    async def start(self) -> None:
        """
        Start all registered controllers.

        A registration failure stops the controllers started so far and is
        raised; it is fatal to process startup.
        """
        if self.running:
            return
        self._stopped.clear()
        started: List[ExtensionController] = []
        try:
            for controller in self._controllers.values():
                await controller.start()
                started.append(controller)
        except RegistrationError:
            await asyncio.gather(*(c.stop() for c in started))
            raise
        self.running = True
        logger.info(f"Manager started {len(started)} controller(s)")

    async def run(self) -> None:
        """Start all controllers and block until stop() is called."""
        await self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        """Stop all controllers, letting in-flight reconciles finish."""
        if self.running:
            self.running = False
            await asyncio.gather(*(c.stop() for c in self._controllers.values()))
            logger.info("Manager stopped")
        self._stopped.set()
