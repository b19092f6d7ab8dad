"""
Shared fixtures for unit tests.

``FakeHubClient`` is an in-memory PowerView hub: tests set its shades and
scenes and assert on the AsyncMock call records of its methods.
"""

from unittest.mock import AsyncMock

import pytest

from powerview_bridge.cloud_api import PowerViewCloudAPI
from powerview_bridge.exceptions import NotPrimaryGatewayError, PositionControlUnsupportedError, ShadeNotFoundError
from powerview_bridge.identity_store import IdentityStore
from powerview_bridge.mqtt.client import MQTTClient
from powerview_bridge.projection import LocalDeviceRegistry
from powerview_bridge.reconciler import Reconciler
from powerview_bridge.structs import GatewayInfo, Hub, HubRole, Scene, Shade

PRIMARY = "192.168.1.10"
SECONDARY = "192.168.1.11"


def make_shade(shade_id, position=None, hub=PRIMARY, name=None, battery=None, signal=None):
    return Shade(
        id=shade_id,
        name=name if name is not None else f"Shade {shade_id}",
        hub=hub,
        position=position,
        battery=battery,
        signal=signal,
    )


def make_scene(scene_id, name, shade_ids, hub=PRIMARY, network_number=None):
    return Scene(id=scene_id, name=name, hub=hub, shade_ids=list(shade_ids), network_number=network_number)


class FakeHubClient:
    """In-memory hub with the same surface as PowerViewHubClient."""

    def __init__(self, address):
        self.address = address
        self.shades = {}
        self.scenes = []
        self.not_primary = False
        self.scenes_not_primary = False
        self.list_error = None
        self.position_supported = True
        self.list_shades = AsyncMock(side_effect=self._list_shades)
        self.get_shade_detail = AsyncMock(side_effect=self._get_shade_detail)
        self.set_position = AsyncMock(side_effect=self._set_position)
        self.list_scenes = AsyncMock(side_effect=self._list_scenes)
        self.activate_scene = AsyncMock()
        self.fetch_gateway_info = AsyncMock(return_value=GatewayInfo(name="Hub", serial="SN1", firmware="2.1.1"))
        self.close = AsyncMock()

    def add_shade(self, shade):
        self.shades[shade.id] = shade
        return shade

    async def _list_shades(self):
        if self.not_primary:
            raise NotPrimaryGatewayError("Multi-Gateway environment - not primary", hub=self.address, status=400)
        if self.list_error is not None:
            raise self.list_error
        return list(self.shades.values())

    async def _get_shade_detail(self, shade_id, gateway=None):
        if shade_id not in self.shades:
            raise ShadeNotFoundError(shade_id, hub=self.address)
        return self.shades[shade_id]

    async def _set_position(self, shade_id, position):
        if not self.position_supported:
            raise PositionControlUnsupportedError("direct position control is not supported", hub=self.address)

    async def _list_scenes(self):
        if self.not_primary or self.scenes_not_primary:
            raise NotPrimaryGatewayError("Multi-Gateway environment - not primary", hub=self.address, status=400)
        return list(self.scenes)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset module singletons between tests"""
    PowerViewCloudAPI._instance = None
    PowerViewCloudAPI.token_cache = None
    MQTTClient._instance = None
    yield
    PowerViewCloudAPI._instance = None
    PowerViewCloudAPI.token_cache = None
    MQTTClient._instance = None


@pytest.fixture
def registry():
    """In-memory device store"""
    return LocalDeviceRegistry()


@pytest.fixture
def identity(registry):
    """In-memory identity mapping bound to the registry"""
    return IdentityStore(None, ref_exists=registry.exists)


@pytest.fixture
def reconciler(registry, identity):
    return Reconciler(registry, identity)


@pytest.fixture
def hub_client():
    return FakeHubClient(PRIMARY)


@pytest.fixture
def primary_hub(hub_client):
    return Hub(address=PRIMARY, role=HubRole.PRIMARY, client=hub_client)


@pytest.fixture
def secondary_client():
    return FakeHubClient(SECONDARY)


@pytest.fixture
def secondary_hub(secondary_client):
    return Hub(address=SECONDARY, role=HubRole.SECONDARY, client=secondary_client)
