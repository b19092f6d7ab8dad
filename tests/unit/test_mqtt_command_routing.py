"""Unit tests for MQTT command routing."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from powerview_bridge.mqtt.client import MQTTClient


@pytest.fixture
def mqtt(registry):
    bridge = MagicMock()
    bridge.rediscover = AsyncMock()
    client = MQTTClient(bridge, registry)
    client.topic = "powerview"
    client.ha_topic = "homeassistant"
    client._connected = True
    client.client = MagicMock()
    client.client.publish = AsyncMock()
    return client


@pytest.fixture
def shade_ref(registry):
    return registry.create_device("Shade 168", "PowerView")


class TestDeviceCommands:
    """Tests for <topic>/set/<ref> messages"""

    @pytest.mark.asyncio
    async def test_position(self, mqtt, shade_ref):
        await mqtt.command_router.handle_message(f"powerview/set/{shade_ref}/position", b"45")

        mqtt.bridge.dispatch_command.assert_called_once_with(shade_ref, 45.0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("payload", "value"), [(b"OPEN", 100), (b"close", 0), (b"ON", 100)])
    async def test_named_payloads(self, mqtt, shade_ref, payload, value):
        await mqtt.command_router.handle_message(f"powerview/set/{shade_ref}", payload)

        mqtt.bridge.dispatch_command.assert_called_once_with(shade_ref, value)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [b"STOP", b"sideways"])
    async def test_ignored_payloads(self, mqtt, shade_ref, payload):
        await mqtt.command_router.handle_message(f"powerview/set/{shade_ref}", payload)

        mqtt.bridge.dispatch_command.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [b"101", b"-1", b"half"])
    async def test_bad_position(self, mqtt, shade_ref, payload):
        await mqtt.command_router.handle_message(f"powerview/set/{shade_ref}/position", payload)

        mqtt.bridge.dispatch_command.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_device(self, mqtt):
        await mqtt.command_router.handle_message("powerview/set/999", b"OPEN")

        mqtt.bridge.dispatch_command.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_numeric_ref(self, mqtt):
        await mqtt.command_router.handle_message("powerview/set/kitchen", b"OPEN")

        mqtt.bridge.dispatch_command.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_payload(self, mqtt, shade_ref):
        await mqtt.command_router.handle_message(f"powerview/set/{shade_ref}", None)

        mqtt.bridge.dispatch_command.assert_not_called()


class TestBridgeAndHassMessages:
    """Tests for the rediscover button and HA status messages"""

    @pytest.mark.asyncio
    async def test_rediscover_button(self, mqtt):
        await mqtt.command_router.handle_message("powerview/set/bridge/rediscover", b"PRESS")
        await asyncio.gather(*mqtt.command_router.tasks)

        mqtt.bridge.rediscover.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_bridge_command(self, mqtt):
        await mqtt.command_router.handle_message("powerview/set/bridge/reboot", b"PRESS")

        assert mqtt.command_router.tasks == set()

    @pytest.mark.asyncio
    async def test_hass_birth_reannounces(self, mqtt):
        mqtt.discovery.homeassistant_discovery = AsyncMock(return_value=True)

        with patch("powerview_bridge.mqtt.command_routing.random.randint", return_value=0):
            await mqtt.command_router.handle_message("homeassistant/status", b"online")
            await asyncio.gather(*mqtt.command_router.tasks)

        mqtt.discovery.homeassistant_discovery.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_hass_will_only_logged(self, mqtt):
        mqtt.discovery.homeassistant_discovery = AsyncMock(return_value=True)

        await mqtt.command_router.handle_message("homeassistant/status", b"offline")

        assert mqtt.command_router.tasks == set()
        mqtt.discovery.homeassistant_discovery.assert_not_awaited()


class TestReceiver:
    """Tests for the aiomqtt message loop"""

    @pytest.mark.asyncio
    async def test_messages_routed(self, mqtt, shade_ref):
        message = MagicMock()
        message.topic.value = f"powerview/set/{shade_ref}"
        message.payload = b"CLOSE"

        async def messages():
            yield message

        mqtt.client.messages = messages()

        await mqtt.command_router.start_receiver_task()

        mqtt.bridge.dispatch_command.assert_called_once_with(shade_ref, 0)
