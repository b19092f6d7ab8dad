"""Unit tests for command routing (scene bands, direct positioning, name resolution)."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from conftest import PRIMARY, make_scene, make_shade

from powerview_bridge.command_router import CommandRouter, choose_scene, scene_role_for
from powerview_bridge.exceptions import ControlResolutionError, HubUnreachableError
from powerview_bridge.hub_client import PowerViewHubClient
from powerview_bridge.structs import BridgeConfig, DeviceKind, DeviceLink, SceneLinks, SceneRole

LINKS = SceneLinks(open=172, close=173, privacy=171, hub=PRIMARY)


@pytest.fixture
def router(registry, identity, reconciler, primary_hub):
    hubs = {PRIMARY: primary_hub}
    config = BridgeConfig(scene_aliases={"Movie Night": f"{PRIMARY}:190"})
    return CommandRouter(registry, identity, reconciler, hubs.get, lambda: primary_hub, config)


async def _discovered_shade(reconciler, identity, primary_hub, shade_id=168, scenes=()):
    primary_hub.client.add_shade(make_shade(shade_id, 0.5))
    primary_hub.client.scenes = list(scenes)
    await reconciler.discover(primary_hub)
    return identity.lookup(PRIMARY, shade_id, DeviceKind.SHADE_CONTROL)


class TestSceneBands:
    """Tests for choosing a scene from a target value"""

    @pytest.mark.parametrize(
        ("value", "role"),
        [(100, SceneRole.OPEN), (95, SceneRole.OPEN), (90, SceneRole.OPEN), (89, SceneRole.PRIVACY),
         (60, SceneRole.PRIVACY), (40, SceneRole.PRIVACY), (39, SceneRole.CLOSE), (10, SceneRole.CLOSE),
         (0, SceneRole.CLOSE)],
    )
    def test_band_boundaries(self, value, role):
        assert scene_role_for(value) is role

    def test_bands_pick_linked_scene(self):
        assert choose_scene(LINKS, 95) == (SceneRole.OPEN, 172)
        assert choose_scene(LINKS, 60) == (SceneRole.PRIVACY, 171)
        assert choose_scene(LINKS, 10) == (SceneRole.CLOSE, 173)

    def test_privacy_falls_back_to_open(self):
        links = SceneLinks(open=172, close=173)

        assert choose_scene(links, 60) == (SceneRole.OPEN, 172)

    def test_missing_close_scene(self):
        assert choose_scene(SceneLinks(open=172), 10) is None


class TestShadeCommands:
    """Tests for CommandRouter.handle on shade devices"""

    @pytest.mark.asyncio
    async def test_scene_controlled_shade(self, router, reconciler, registry, identity, primary_hub):
        scenes = [
            make_scene(171, "Bedroom Privacy", [168]),
            make_scene(172, "Bedroom Open", [168]),
            make_scene(173, "Bedroom Close", [168]),
        ]
        ref = await _discovered_shade(reconciler, identity, primary_hub, scenes=scenes)

        await router.handle(ref, 45)

        primary_hub.client.activate_scene.assert_awaited_once_with(171)
        primary_hub.client.set_position.assert_not_awaited()
        assert registry.get_value(ref) == 45
        assert registry.get_value(identity.lookup(PRIMARY, 168, DeviceKind.SHADE_POSITION)) == 45

    @pytest.mark.asyncio
    async def test_direct_position(self, router, reconciler, registry, identity, primary_hub):
        ref = await _discovered_shade(reconciler, identity, primary_hub)

        await router.handle(ref, 33.4)

        primary_hub.client.set_position.assert_awaited_once_with(168, 0.33)
        assert registry.get_value(ref) == 33
        assert registry.get(ref).display == "33%"

    @pytest.mark.asyncio
    async def test_value_clamped(self, router, reconciler, identity, primary_hub):
        ref = await _discovered_shade(reconciler, identity, primary_hub)

        await router.handle(ref, 140)

        primary_hub.client.set_position.assert_awaited_once_with(168, 1.0)

    @pytest.mark.asyncio
    async def test_unsupported_position_links_scenes_on_demand(
        self, router, reconciler, registry, identity, primary_hub
    ):
        ref = await _discovered_shade(reconciler, identity, primary_hub)
        primary_hub.client.position_supported = False
        primary_hub.client.scenes = [make_scene(173, "Bedroom Close", [168])]

        await router.handle(ref, 5)

        primary_hub.client.activate_scene.assert_awaited_once_with(173)
        assert primary_hub.can_set_position is False
        link = DeviceLink.from_metadata(registry.get_metadata(ref))
        assert link.scenes.close == 173
        assert identity.get_record(PRIMARY, 168, DeviceKind.SHADE_CONTROL).extra["close"] == 173

    @pytest.mark.asyncio
    async def test_unsupported_position_without_scenes(self, router, reconciler, registry, identity, primary_hub):
        ref = await _discovered_shade(reconciler, identity, primary_hub)
        primary_hub.client.position_supported = False

        with pytest.raises(ControlResolutionError):
            await router.handle(ref, 50)
        assert registry.get_value(ref) == 50  # value from discovery, untouched by the failed command

    @pytest.mark.asyncio
    async def test_missing_band_scene_leaves_value(self, router, reconciler, registry, identity, primary_hub):
        ref = await _discovered_shade(reconciler, identity, primary_hub, scenes=[make_scene(172, "Bedroom Open", [168])])

        with pytest.raises(ControlResolutionError):
            await router.handle(ref, 10)
        assert registry.get_value(ref) == 50
        primary_hub.client.activate_scene.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_hub_failure_leaves_value(self, router, reconciler, registry, identity, primary_hub):
        ref = await _discovered_shade(reconciler, identity, primary_hub)
        primary_hub.client.set_position = AsyncMock(side_effect=HubUnreachableError("timeout", hub=PRIMARY))

        with pytest.raises(HubUnreachableError):
            await router.handle(ref, 80)
        assert registry.get_value(ref) == 50

    @pytest.mark.asyncio
    async def test_transient_cloud_failure_keeps_direct_positioning(
        self, router, reconciler, registry, identity, primary_hub
    ):
        ref = await _discovered_shade(reconciler, identity, primary_hub)
        cloud = MagicMock()
        cloud.set_shade_position = AsyncMock(side_effect=[HubUnreachableError("cloud timeout"), True])
        client = PowerViewHubClient(PRIMARY, cloud=cloud)
        client.local_position_supported = False
        primary_hub.client = client

        with pytest.raises(HubUnreachableError):
            await router.handle(ref, 30)
        assert primary_hub.can_set_position is True
        assert registry.get_value(ref) == 50

        await router.handle(ref, 30)

        assert cloud.set_shade_position.await_count == 2
        cloud.set_shade_position.assert_awaited_with(168, 0.3)
        assert registry.get_value(ref) == 30

    @pytest.mark.asyncio
    async def test_status_feature_is_read_only(self, router, reconciler, identity, primary_hub):
        await _discovered_shade(reconciler, identity, primary_hub)
        battery = identity.lookup(PRIMARY, 168, DeviceKind.SHADE_BATTERY)

        with pytest.raises(ControlResolutionError):
            await router.handle(battery, 50)

    @pytest.mark.asyncio
    async def test_concurrent_commands_touch_only_their_shade(
        self, router, reconciler, registry, identity, primary_hub
    ):
        primary_hub.client.add_shade(make_shade(170, 0.5))
        first = await _discovered_shade(reconciler, identity, primary_hub)
        second = identity.lookup(PRIMARY, 170, DeviceKind.SHADE_CONTROL)

        await asyncio.gather(router.handle(first, 20), router.handle(second, 80))

        assert registry.get_value(first) == 20
        assert registry.get_value(second) == 80
        assert primary_hub.client.set_position.await_count == 2


class TestResolution:
    """Tests for link resolution and repair"""

    @pytest.mark.asyncio
    async def test_unknown_ref(self, router):
        with pytest.raises(ControlResolutionError):
            await router.handle(999, 50)

    @pytest.mark.asyncio
    async def test_metadata_repaired_from_identity(self, router, reconciler, registry, identity, primary_hub):
        ref = await _discovered_shade(reconciler, identity, primary_hub, scenes=[make_scene(171, "Bedroom Privacy", [168])])
        registry.set_metadata(ref, {})

        await router.handle(ref, 60)

        primary_hub.client.activate_scene.assert_awaited_once_with(171)
        link = DeviceLink.from_metadata(registry.get_metadata(ref))
        assert link.kind is DeviceKind.SHADE_CONTROL
        assert link.scenes.privacy == 171

    @pytest.mark.asyncio
    async def test_scene_activator(self, router, reconciler, registry, identity, primary_hub):
        await _discovered_shade(reconciler, identity, primary_hub, scenes=[make_scene(171, "Bedroom Privacy", [168])])
        scene_ref = identity.lookup(PRIMARY, 171, DeviceKind.SCENE_ACTIVATOR)

        await router.handle(scene_ref, 100)

        primary_hub.client.activate_scene.assert_awaited_once_with(171)
        assert registry.get_value(scene_ref) == 100

    @pytest.mark.asyncio
    async def test_scene_resolved_by_alias(self, router, registry, identity, primary_hub):
        ref = registry.create_device("Scene Movie Night", "PowerView Scenes")

        await router.handle(ref, 100)

        primary_hub.client.activate_scene.assert_awaited_once_with(190)
        assert identity.lookup(PRIMARY, 190, DeviceKind.SCENE_ACTIVATOR) == ref
        assert DeviceLink.from_metadata(registry.get_metadata(ref)).scene_name == "Movie Night"

    @pytest.mark.asyncio
    async def test_scene_resolved_by_hub_name(self, router, registry, identity, primary_hub):
        primary_hub.client.scenes = [make_scene(175, "Kitchen Open", [])]
        ref = registry.create_device("Scene kitchen open", "Kitchen")

        await router.handle(ref, 100)

        primary_hub.client.activate_scene.assert_awaited_once_with(175)

    @pytest.mark.asyncio
    async def test_scene_name_unknown(self, router, registry, primary_hub):
        ref = registry.create_device("Scene Nowhere", "PowerView Scenes")

        with pytest.raises(ControlResolutionError):
            await router.handle(ref, 100)
        primary_hub.client.activate_scene.assert_not_awaited()
