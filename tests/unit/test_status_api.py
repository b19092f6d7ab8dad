"""
Unit tests for status_api module.

Endpoint functions are called directly against a bridge backed by the
in-memory hub.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import PRIMARY, FakeHubClient, make_shade
from fastapi import HTTPException
from pydantic import ValidationError

from powerview_bridge.bridge import PowerViewBridge
from powerview_bridge.status_api import (
    CommandRequest,
    StatusAPIServer,
    command_device,
    health_check,
    list_devices,
    list_hubs,
    rediscover,
)
from powerview_bridge.structs import BridgeConfig, DeviceKind, HubRole


@pytest.fixture(autouse=True)
def reset_api_server_singleton():
    """Reset StatusAPIServer singleton between tests"""
    StatusAPIServer._instance = None
    yield
    StatusAPIServer._instance = None


@pytest.fixture
def bridge(registry, identity):
    return PowerViewBridge(
        BridgeConfig(),
        registry,
        identity,
        client_factory=FakeHubClient,
        poll_interval=3600,
        hub_addresses=[(PRIMARY, HubRole.PRIMARY)],
    )


@pytest.fixture
def mock_g(bridge):
    with patch("powerview_bridge.status_api.g") as mock_g:
        mock_g.bridge = bridge
        mock_g.mqtt_client = None
        yield mock_g


class TestEndpoints:
    """Tests for the JSON endpoints"""

    @pytest.mark.asyncio
    async def test_healthcheck(self, mock_g):
        result = await health_check()

        assert result["status"] == "ok"
        assert result["degraded"] is False
        assert result["mqtt_connected"] is False

    @pytest.mark.asyncio
    async def test_bridge_not_initialized(self, mock_g):
        mock_g.bridge = None

        with pytest.raises(HTTPException) as exc_info:
            await list_hubs()
        assert exc_info.value.status_code == 503

    @pytest.mark.asyncio
    async def test_hubs(self, mock_g):
        hubs = await list_hubs()

        assert hubs == [
            {
                "address": PRIMARY,
                "role": "primary",
                "can_list_scenes": True,
                "can_set_position": True,
                "polled": True,
                "polling": False,
                "discovery_in_progress": False,
                "covered_gateways": [],
            }
        ]

    @pytest.mark.asyncio
    async def test_devices(self, mock_g, bridge, identity):
        bridge.hubs[PRIMARY].client.add_shade(make_shade(168, 0.72))
        await bridge.discover_hub(bridge.hubs[PRIMARY])

        devices = await list_devices()

        root = identity.lookup(PRIMARY, 168, DeviceKind.SHADE_CONTROL)
        assert len(devices) == 4
        assert devices[0]["ref"] == root
        assert devices[0]["kind"] == "shade-control"
        assert devices[0]["value"] == 72

    @pytest.mark.asyncio
    async def test_rediscover(self, mock_g, bridge):
        bridge.hubs[PRIMARY].client.add_shade(make_shade(168, 0.72))

        result = await rediscover()

        assert result["success"] is True
        assert result["hubs"][0]["created"] == 4

    @pytest.mark.asyncio
    async def test_rediscover_failure_masked(self, mock_g, bridge):
        bridge.rediscover = AsyncMock(side_effect=RuntimeError("boom"))

        with pytest.raises(HTTPException) as exc_info:
            await rediscover()
        assert exc_info.value.status_code == 500
        assert "boom" not in str(exc_info.value.detail)

    @pytest.mark.asyncio
    async def test_command(self, mock_g, bridge, identity):
        hub = bridge.hubs[PRIMARY]
        hub.client.add_shade(make_shade(168, 0.72))
        await bridge.discover_hub(hub)
        ref = identity.lookup(PRIMARY, 168, DeviceKind.SHADE_CONTROL)

        result = await command_device(ref, CommandRequest(value=30))

        assert result["success"] is True
        hub.client.set_position.assert_awaited_once_with(168, 0.3)

    @pytest.mark.asyncio
    async def test_command_unknown_device(self, mock_g):
        with pytest.raises(HTTPException) as exc_info:
            await command_device(999, CommandRequest(value=30))
        assert exc_info.value.status_code == 404

    def test_command_value_range(self):
        with pytest.raises(ValidationError):
            CommandRequest(value=120)


class TestStatusAPIServer:
    """Tests for the uvicorn server wrapper"""

    def test_singleton(self):
        with patch("powerview_bridge.status_api.uvicorn.Server"), patch("powerview_bridge.status_api.uvicorn.Config"):
            assert StatusAPIServer() is StatusAPIServer()

    @pytest.mark.asyncio
    async def test_start_runs_server(self):
        with patch("powerview_bridge.status_api.uvicorn.Server") as mock_server_class, patch(
            "powerview_bridge.status_api.uvicorn.Config"
        ):
            mock_server_class.return_value = MagicMock(serve=AsyncMock())
            server = StatusAPIServer(host="127.0.0.1", port=9000)

            await server.start()

            server.uvi_server.serve.assert_awaited_once()
            assert server.running is False

    @pytest.mark.asyncio
    async def test_stop_signals_exit(self):
        with patch("powerview_bridge.status_api.uvicorn.Server"), patch("powerview_bridge.status_api.uvicorn.Config"):
            server = StatusAPIServer()

            await server.stop()

            assert server.uvi_server.should_exit is True
