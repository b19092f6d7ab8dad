"""Coordinator: owns the hub registry, the pollers and the command tasks."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from typing import TYPE_CHECKING

from powerview_bridge.command_router import CommandRouter
from powerview_bridge.correlation import correlation_context
from powerview_bridge.exceptions import ControlResolutionError, HubError
from powerview_bridge.hub_client import PowerViewHubClient
from powerview_bridge.logging_abstraction import get_logger
from powerview_bridge.poller import HubPoller
from powerview_bridge.reconciler import DiscoveryResult, Reconciler
from powerview_bridge.structs import BridgeConfig, Hub, HubClientProtocol, HubRole

if TYPE_CHECKING:
    from powerview_bridge.cloud_api import PowerViewCloudAPI
    from powerview_bridge.identity_store import IdentityStore
    from powerview_bridge.projection import DeviceProjection

logger = get_logger(__name__)

type ClientFactory = Callable[[str], HubClientProtocol]


class PowerViewBridge:
    """Ties hubs, reconciler, router and pollers together.

    Args:
        config: hub list and scene aliases
        projection: local device store
        identity: identity mapping
        client_factory: builds the client for a hub address (defaults to ``PowerViewHubClient``)
        cloud: cloud client handed to the default hub clients
        poll_interval: seconds between poll ticks

    """

    lp: str = "bridge:"

    def __init__(
        self,
        config: BridgeConfig,
        projection: DeviceProjection,
        identity: IdentityStore,
        client_factory: ClientFactory | None = None,
        cloud: PowerViewCloudAPI | None = None,
        poll_interval: float | None = None,
        hub_addresses: list[tuple[str, HubRole]] | None = None,
    ) -> None:
        self.config: BridgeConfig = config
        self.projection: DeviceProjection = projection
        self.identity: IdentityStore = identity
        self.cloud: PowerViewCloudAPI | None = cloud
        self.poll_interval: float | None = poll_interval
        self.client_factory: ClientFactory = client_factory or self._default_client
        self.hubs: dict[str, Hub] = {}
        self.command_tasks: set[asyncio.Task[bool]] = set()
        self.running: bool = False
        self._rediscover_lock = asyncio.Lock()
        self.reconciler = Reconciler(projection, identity, gateway_seen=self.get_or_create_hub)
        self.router = CommandRouter(
            projection,
            identity,
            self.reconciler,
            hub_for=self.get_or_create_hub,
            primary_hub=self.primary_hub,
            config=config,
        )
        for address, role in hub_addresses if hub_addresses is not None else config.hub_addresses():
            _ = self.add_hub(address, role, poll=True)

    def _default_client(self, address: str) -> HubClientProtocol:
        return PowerViewHubClient(address, cloud=self.cloud if self.cloud and self.cloud.configured else None)

    @property
    def degraded(self) -> bool:
        """No hub configured: the bridge runs but does nothing."""
        return not self.hubs

    def add_hub(self, address: str, role: HubRole, poll: bool = False) -> Hub:
        hub = Hub(address=address, role=role, client=self.client_factory(address))
        if poll:
            hub.poller = HubPoller(hub, self.reconciler, self.projection, self.primary_hub, self.poll_interval)
        self.hubs[address] = hub
        logger.info("%s Registered %s hub %s", self.lp, role, address, extra={"polled": poll})
        return hub

    def get_or_create_hub(self, address: str) -> Hub:
        """Hub for ``address``; an unknown gateway is registered as a secondary hub without a poller."""
        hub = self.hubs.get(address)
        if hub is None:
            logger.info("%s Gateway %s seen for the first time, adding a client for it", self.lp, address)
            hub = self.add_hub(address, HubRole.SECONDARY)
        return hub

    def primary_hub(self) -> Hub | None:
        return next((h for h in self.hubs.values() if h.is_primary), None)

    def ordered_hubs(self) -> list[Hub]:
        """Polled hubs, primary first."""
        return sorted((h for h in self.hubs.values() if h.poller is not None), key=lambda h: not h.is_primary)

    async def start(self) -> None:
        lp = f"{self.lp}start:"
        self.running = True
        if self.degraded:
            logger.error(
                "%s No PowerView hub configured (set POWERVIEW_HUB_IPS or hubs: in the config file), "
                "running without hubs",
                lp,
            )
            return

        for hub in self.ordered_hubs():
            try:
                info = await hub.client.fetch_gateway_info()
            except HubError as e:
                logger.warning("%s Hub %s did not answer the connection test: %s", lp, hub.address, e)
            else:
                logger.info(
                    "%s Connected to hub %s",
                    lp,
                    hub.address,
                    extra={"name": info.name, "serial": info.serial, "firmware": info.firmware},
                )

        for hub in self.ordered_hubs():
            _ = await self.discover_hub(hub)
        self.start_pollers()

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        self.running = False
        await self.stop_pollers()
        for task in list(self.command_tasks):
            if not task.done():
                _ = task.cancel()
        if self.command_tasks:
            _ = await asyncio.gather(*self.command_tasks, return_exceptions=True)
        for hub in self.hubs.values():
            try:
                await hub.client.close()
            except Exception as e:
                logger.warning("%s Closing client for %s failed: %s", lp, hub.address, e)
        if self.cloud is not None:
            await self.cloud.close()
        logger.info("%s Bridge stopped", lp)

    def start_pollers(self) -> None:
        for hub in self.ordered_hubs():
            if hub.poller is not None:
                hub.poller.start()

    async def stop_pollers(self) -> None:
        for hub in self.hubs.values():
            if hub.poller is not None:
                await hub.poller.stop()

    async def discover_hub(self, hub: Hub) -> DiscoveryResult:
        """One discovery run. Runs for the same hub never overlap."""
        async with hub.lock:
            hub.discovery_in_progress = True
            try:
                return await self.reconciler.discover(hub)
            finally:
                hub.discovery_in_progress = False

    async def rediscover(self) -> list[DiscoveryResult]:
        """Operator action: delete every device, clear the mapping and discover from scratch.

        Pollers are stopped first and restarted afterwards, also when discovery fails.
        """
        lp = f"{self.lp}rediscover:"
        if self.degraded:
            logger.warning("%s No hubs configured, nothing to rediscover", lp)
            return []

        results: list[DiscoveryResult] = []
        async with self._rediscover_lock:
            hubs = self.ordered_hubs()
            with correlation_context(prefix="rediscover"):
                logger.info("%s Rediscovering devices on %s hub(s)", lp, len(hubs))
                try:
                    await self.stop_pollers()
                    async with contextlib.AsyncExitStack() as stack:
                        for hub in sorted(hubs, key=lambda h: h.address):
                            await stack.enter_async_context(hub.lock)
                        # set only once held, a run we waited on clears the flag as it exits
                        for hub in hubs:
                            hub.discovery_in_progress = True
                        with self.projection.batch(), self.identity.batch():
                            refs = self.projection.refs()
                            for ref in refs:
                                self.projection.delete(ref)
                            self.identity.clear()
                        logger.info("%s Deleted %s devices", lp, len(refs))
                        for hub in hubs:
                            hub.not_primary_logged = False
                            results.append(await self.reconciler.discover(hub))
                finally:
                    for hub in hubs:
                        hub.discovery_in_progress = False
                    if self.running:
                        self.start_pollers()
        return results

    def dispatch_command(self, ref: int, value: float) -> asyncio.Task[bool]:
        """Run a command in its own task so a slow hub never blocks other commands."""
        task = asyncio.create_task(self.execute_command(ref, value), name=f"command-{ref}")
        self.command_tasks.add(task)
        task.add_done_callback(self.command_tasks.discard)
        return task

    async def execute_command(self, ref: int, value: float) -> bool:
        """Route one command. Failures are logged and reported as False; the device value is left as it was."""
        lp = f"{self.lp}command:"
        with correlation_context(prefix="cmd"):
            try:
                await self.router.handle(ref, value)
            except ControlResolutionError as e:
                logger.warning("%s Command dropped: %s", lp, e, extra={"ref": ref, "value": value})
                return False
            except HubError as e:
                logger.error(
                    "%s Hub call failed for device %s: %s",
                    lp,
                    ref,
                    e,
                    extra={"hub": e.hub, "status": e.status},
                )
                return False
            except Exception:
                logger.exception("%s Unexpected error routing command for device %s", lp, ref, extra={"value": value})
                return False
        return True
