"""Unit tests for the bridge coordinator."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from conftest import PRIMARY, SECONDARY, FakeHubClient, make_scene, make_shade

from powerview_bridge.bridge import PowerViewBridge
from powerview_bridge.structs import BridgeConfig, DeviceKind, HubRole


@pytest.fixture
def clients():
    return {}


@pytest.fixture
def bridge(registry, identity, clients):
    def factory(address):
        clients[address] = FakeHubClient(address)
        return clients[address]

    return PowerViewBridge(
        BridgeConfig(),
        registry,
        identity,
        client_factory=factory,
        poll_interval=3600,
        hub_addresses=[(PRIMARY, HubRole.PRIMARY)],
    )


class TestBridgeLifecycle:
    """Tests for start, stop and degraded mode"""

    @pytest.mark.asyncio
    async def test_degraded_without_hubs(self, registry, identity):
        bridge = PowerViewBridge(BridgeConfig(), registry, identity, client_factory=FakeHubClient, hub_addresses=[])

        await bridge.start()

        assert bridge.degraded is True
        assert await bridge.rediscover() == []
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_start_discovers_and_polls(self, bridge, clients, registry):
        clients[PRIMARY].add_shade(make_shade(168, 0.72))

        await bridge.start()
        try:
            assert len(registry) == 4
            assert bridge.hubs[PRIMARY].poller.active
            clients[PRIMARY].fetch_gateway_info.assert_awaited_once()
        finally:
            await bridge.stop()

        assert not bridge.hubs[PRIMARY].poller.active
        clients[PRIMARY].close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_gateway_registered_without_poller(self, bridge, clients):
        clients[PRIMARY].add_shade(make_shade(200, 0.5, hub=SECONDARY))

        await bridge.discover_hub(bridge.hubs[PRIMARY])

        hub = bridge.hubs[SECONDARY]
        assert hub.role is HubRole.SECONDARY
        assert hub.poller is None
        assert bridge.ordered_hubs() == [bridge.hubs[PRIMARY]]

    @pytest.mark.asyncio
    async def test_configured_hubs_ordered_primary_first(self, registry, identity):
        bridge = PowerViewBridge(
            BridgeConfig(),
            registry,
            identity,
            client_factory=FakeHubClient,
            hub_addresses=[(SECONDARY, HubRole.SECONDARY), (PRIMARY, HubRole.PRIMARY)],
        )

        assert [h.address for h in bridge.ordered_hubs()] == [PRIMARY, SECONDARY]


class TestRediscover:
    """Tests for the operator rediscover action"""

    @pytest.mark.asyncio
    async def test_rebuilds_devices(self, bridge, clients, registry, identity):
        clients[PRIMARY].add_shade(make_shade(168, 0.72))
        await bridge.start()
        try:
            before = identity.lookup(PRIMARY, 168, DeviceKind.SHADE_CONTROL)

            results = await bridge.rediscover()

            after = identity.lookup(PRIMARY, 168, DeviceKind.SHADE_CONTROL)
            assert results[0].created == 4
            assert len(registry) == 4
            assert after > before
            assert not registry.exists(before)
            assert bridge.hubs[PRIMARY].poller.active
            assert bridge.hubs[PRIMARY].discovery_in_progress is False
        finally:
            await bridge.stop()

    @pytest.mark.asyncio
    async def test_waits_for_running_discovery(self, bridge, clients, registry):
        """A rediscover issued mid-run starts deleting only after that run has finished"""
        fake = clients[PRIMARY]
        hub = bridge.hubs[PRIMARY]
        fake.add_shade(make_shade(168, 0.72))
        await bridge.discover_hub(hub)

        events = []
        busy_while_deleting = []
        listing = asyncio.Event()
        release = asyncio.Event()
        real_list = fake.list_shades.side_effect
        real_discover = bridge.reconciler.discover
        real_delete = registry.delete

        async def slow_list():
            listing.set()
            await release.wait()
            return await real_list()

        async def tracked_discover(h):
            events.append("discover-start")
            try:
                return await real_discover(h)
            finally:
                events.append("discover-end")

        def tracked_delete(ref):
            events.append("delete")
            busy_while_deleting.append(hub.discovery_in_progress)
            real_delete(ref)

        fake.list_shades.side_effect = slow_list
        bridge.reconciler.discover = tracked_discover
        registry.delete = tracked_delete

        first = asyncio.create_task(bridge.discover_hub(hub))
        await listing.wait()
        second = asyncio.create_task(bridge.rediscover())
        for _ in range(5):
            await asyncio.sleep(0)
        assert "delete" not in events
        assert hub.discovery_in_progress is True

        release.set()
        await first
        results = await second

        assert events.index("delete") > events.index("discover-end")
        assert all(busy_while_deleting)
        assert events.count("discover-start") == 2
        assert results[0].created == 4
        assert len(registry) == 4
        assert hub.discovery_in_progress is False

    @pytest.mark.asyncio
    async def test_pollers_restarted_when_discovery_fails(self, bridge):
        await bridge.start()
        try:
            bridge.reconciler.discover = AsyncMock(side_effect=RuntimeError("boom"))

            with pytest.raises(RuntimeError):
                await bridge.rediscover()

            hub = bridge.hubs[PRIMARY]
            assert hub.poller.active
            assert hub.discovery_in_progress is False
            assert not hub.lock.locked()
        finally:
            await bridge.stop()


class TestCommands:
    """Tests for command dispatch"""

    @pytest.mark.asyncio
    async def test_failed_command_reports_false(self, bridge):
        task = bridge.dispatch_command(999, 50)

        assert await task is False
        await asyncio.sleep(0)
        assert bridge.command_tasks == set()

    @pytest.mark.asyncio
    async def test_unexpected_error_reports_false(self, bridge):
        bridge.router.handle = AsyncMock(side_effect=KeyError(42))

        with patch("powerview_bridge.bridge.logger") as mock_logger:
            assert await bridge.dispatch_command(42, 50) is False

        mock_logger.exception.assert_called_once()
        await asyncio.sleep(0)
        assert bridge.command_tasks == set()

    @pytest.mark.asyncio
    async def test_discover_command_poll(self, bridge, clients, registry, identity):
        """Shade 168 found at 0.72, moved to 45 through privacy scene 171, then polled at 0.40"""
        fake = clients[PRIMARY]
        fake.add_shade(make_shade(168, 0.72))
        fake.scenes = [make_scene(171, "Bedroom Privacy", [168])]
        await bridge.start()
        try:
            ref = identity.lookup(PRIMARY, 168, DeviceKind.SHADE_CONTROL)
            assert registry.get_value(ref) == 72

            assert await bridge.dispatch_command(ref, 45) is True
            fake.activate_scene.assert_awaited_once_with(171)
            assert registry.get_value(ref) == 45

            fake.add_shade(make_shade(168, 0.40))
            await bridge.hubs[PRIMARY].poller.poll_once()
            assert registry.get_value(ref) == 40
        finally:
            await bridge.stop()
