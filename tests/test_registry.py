"""Unit tests for the actuator registry."""

import os
from unittest.mock import MagicMock, patch

import pytest

from actuators.registry import (
    ENTRY_POINT_GROUP,
    ActuatorRegistry,
    get_registry,
    register_builtin_actuators,
    reset_registry,
)
from fakes import FakeActuator


class NetworkActuator(FakeActuator):
    def __init__(self):
        super().__init__(extension_type="network")

    @property
    def name(self):
        return "network"


class OtherDNSActuator(FakeActuator):
    @property
    def name(self):
        return "other-dns"


class TestActuatorRegistry:
    """Tests for ActuatorRegistry registration."""

    def test_register_actuator(self):
        registry = ActuatorRegistry()
        registry.register_actuator(FakeActuator)

        assert registry.has_actuator("fake")
        assert registry.list_actuators() == ["fake"]
        assert registry.get_actuator_info("fake") == {
            "name": "fake",
            "version": "0.1.0",
        }
        assert registry.get_actuator_config("fake") == {}

    def test_unknown_actuator_info(self):
        assert ActuatorRegistry().get_actuator_info("missing") is None


@pytest.mark.asyncio
class TestActuatorRegistryAsync:
    """Tests for actuator instantiation."""

    @pytest.fixture
    def registry(self):
        registry = ActuatorRegistry()
        registry.register_actuator(FakeActuator)
        registry.register_actuator(NetworkActuator)
        return registry

    async def test_get_actuator_initializes_once(self, registry):
        first = await registry.get_actuator("fake", {"zone": "example.com"})
        second = await registry.get_actuator("fake")

        assert first is second
        assert first.config == {"zone": "example.com"}
        assert registry.get_actuator_for_extension_type("dns") is first

    async def test_unknown_actuator(self, registry):
        with pytest.raises(ValueError) as exc_info:
            await registry.get_actuator("missing")
        assert "Available actuators: fake, network" in str(exc_info.value)

    async def test_extension_type_claimed_once(self, registry):
        registry.register_actuator(OtherDNSActuator)
        await registry.get_actuator("fake")

        with pytest.raises(ValueError) as exc_info:
            await registry.get_actuator("other-dns")
        assert "already claimed" in str(exc_info.value)

    async def test_distinct_types_coexist(self, registry):
        dns = await registry.get_actuator("fake")
        network = await registry.get_actuator("network")
        assert registry.get_actuator_for_extension_type("dns") is dns
        assert registry.get_actuator_for_extension_type("network") is network

    async def test_close_all(self, registry):
        actuator = await registry.get_actuator("fake")
        await registry.close_all()

        assert actuator.closed
        assert registry.get_actuator_for_extension_type("dns") is None


class TestGlobalRegistry:
    def setup_method(self):
        reset_registry()

    def teardown_method(self):
        reset_registry()

    def test_singleton(self):
        assert get_registry() is get_registry()

    def test_reset(self):
        first = get_registry()
        reset_registry()
        assert get_registry() is not first


class TestRegisterBuiltinActuators:
    """Tests for built-in registration and entry point discovery."""

    def test_http_actuator_skipped_without_base_url(self):
        registry = ActuatorRegistry()
        with patch.dict(os.environ, {}, clear=True), patch(
            "actuators.registry.entry_points", return_value=[]
        ):
            register_builtin_actuators(registry)
        assert registry.list_actuators() == []

    def test_http_actuator_registered_when_configured(self):
        registry = ActuatorRegistry()
        env_vars = {
            "HTTP_ACTUATOR_BASE_URL": "http://provisioner",
            "HTTP_ACTUATOR_EXTENSION_TYPE": "dns",
        }
        with patch.dict(os.environ, env_vars, clear=True), patch(
            "actuators.registry.entry_points", return_value=[]
        ):
            register_builtin_actuators(registry)

        assert registry.has_actuator("http")
        assert registry.get_actuator_config("http")["base_url"] == (
            "http://provisioner"
        )

    def test_entry_points_discovered(self):
        registry = ActuatorRegistry()
        good = MagicMock()
        good.load.return_value = NetworkActuator
        broken = MagicMock()
        broken.name = "broken"
        broken.load.side_effect = ImportError("missing dependency")

        with patch.dict(os.environ, {}, clear=True), patch(
            "actuators.registry.entry_points", return_value=[good, broken]
        ) as discover:
            register_builtin_actuators(registry)

        discover.assert_called_once_with(group=ENTRY_POINT_GROUP)
        assert registry.list_actuators() == ["network"]
