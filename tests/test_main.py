"""Unit tests for main.py - Application wiring."""

import asyncio
import os
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from actuators.registry import reset_registry
from config import ActuatorConfig, Config, ControllerConfig, DatabaseConfig, StoreConfig
from fakes import FakeActuator
from main import Application
from mapper import UpdateBehavior
from resources import ExtensionClass
from store import MemoryStore


def memory_config(**actuator_kwargs):
    return Config(
        database=DatabaseConfig(),
        store=StoreConfig(backend="memory"),
        controller=ControllerConfig(resync_interval=0, shutdown_timeout=1),
        actuators=ActuatorConfig(**actuator_kwargs),
    )


def fake_entry_point():
    entry_point = MagicMock()
    entry_point.name = "fake"
    entry_point.load.return_value = FakeActuator
    return entry_point


@pytest.mark.asyncio
class TestApplication:
    """Tests for Application."""

    def setup_method(self):
        reset_registry()

    def teardown_method(self):
        reset_registry()

    @pytest.fixture(autouse=True)
    def discovered_actuators(self):
        with patch.dict(os.environ, {}, clear=True), patch(
            "actuators.registry.entry_points", return_value=[fake_entry_point()]
        ):
            yield

    async def test_initialize_registers_controller(self):
        app = Application(memory_config())
        await app.initialize()

        assert isinstance(app.store, MemoryStore)
        assert app.manager.list_controllers() == ["fake"]
        controller = app.manager.get_controller("fake")
        assert controller.args.extension_type == "dns"
        assert controller.args.resync_interval == 0

    async def test_per_actuator_overrides(self):
        app = Application(
            memory_config(
                actuator_configs={
                    "fake": {"max_concurrent_reconciles": 2, "extension_class": "seed"}
                }
            )
        )
        await app.initialize()

        args = app.manager.get_controller("fake").args
        assert args.max_concurrent_reconciles == 2
        assert args.extension_class == ExtensionClass.SEED
        actuator = app.registry.get_actuator_for_extension_type("dns")
        assert actuator.config["max_concurrent_reconciles"] == 2

    async def test_cluster_update_behavior_override(self):
        app = Application(
            memory_config(
                actuator_configs={
                    "fake": {
                        "ignore_operation_annotation": True,
                        "cluster_update_behavior": "both",
                    }
                }
            )
        )
        await app.initialize()

        controller = app.manager.get_controller("fake")
        assert controller.args.cluster_update_behavior == UpdateBehavior.BOTH
        assert controller.cluster_handler.update_behavior == UpdateBehavior.BOTH

    async def test_unknown_enabled_actuator_skipped(self):
        app = Application(memory_config(enabled_actuators=["missing"]))
        await app.initialize()
        assert app.manager.list_controllers() == []

    async def test_start_and_stop(self):
        app = Application(memory_config())
        runner = asyncio.create_task(app.start())
        await asyncio.sleep(0.05)
        assert app.running
        assert app.manager.get_controller("fake").running

        await app.stop()
        await asyncio.wait_for(runner, 1)
        assert not app.running
        assert app.registry.get_actuator_for_extension_type("dns") is None

    async def test_stop_is_idempotent(self):
        app = Application(memory_config())
        await app.initialize()
        app.manager.stop = AsyncMock()

        await app.stop()
        await app.stop()
        app.manager.stop.assert_awaited_once()

    async def test_request_shutdown_keeps_task(self):
        app = Application(memory_config())
        runner = asyncio.create_task(app.start())
        await asyncio.sleep(0.05)

        task = app.request_shutdown()
        assert task is app._shutdown_task
        assert app.request_shutdown() is task

        await asyncio.wait_for(runner, 1)
        assert task.done()
        assert not app.manager.get_controller("fake").running
        await app.stop()

    async def test_request_shutdown_before_initialize(self):
        app = Application(memory_config())
        assert app.request_shutdown() is None
