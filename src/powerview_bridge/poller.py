from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from typing import TYPE_CHECKING

from powerview_bridge.const import POWERVIEW_POLL_INTERVAL
from powerview_bridge.correlation import correlation_context
from powerview_bridge.exceptions import HubError, NotPrimaryGatewayError
from powerview_bridge.logging_abstraction import get_logger
from powerview_bridge.reconciler import dedupe_by_id

if TYPE_CHECKING:
    from powerview_bridge.projection import DeviceProjection
    from powerview_bridge.reconciler import Reconciler
    from powerview_bridge.structs import Hub

logger = get_logger(__name__)


class HubPoller:
    """Periodic state refresh for one hub.

    Every ``interval`` seconds the hub's shades are listed and their position,
    battery and signal pushed through ``Reconciler.apply_shade_state``. Polling
    never creates or deletes devices.
    """

    def __init__(
        self,
        hub: Hub,
        reconciler: Reconciler,
        projection: DeviceProjection,
        primary_hub: Callable[[], Hub | None],
        interval: float | None = None,
    ) -> None:
        self.hub: Hub = hub
        self.reconciler: Reconciler = reconciler
        self.projection: DeviceProjection = projection
        self.primary_hub = primary_hub
        self.interval: float = interval if interval is not None else POWERVIEW_POLL_INTERVAL
        self.lp: str = f"poller[{hub.address}]:"
        self.task: asyncio.Task[None] | None = None
        self.running: bool = False

    @property
    def active(self) -> bool:
        return self.task is not None and not self.task.done()

    def start(self) -> None:
        if self.active:
            return
        self.running = True
        self.task = asyncio.create_task(self.run(), name=f"poller-{self.hub.address}")
        logger.info("%s Polling every %ss", self.lp, self.interval)

    async def stop(self) -> None:
        self.running = False
        task, self.task = self.task, None
        if task is None or task.done():
            return
        _ = task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("%s stopped", self.lp)

    async def run(self) -> None:
        while self.running:
            try:
                await asyncio.sleep(self.interval)
                if not self.running:
                    break
                await self.poll_once()
            except asyncio.CancelledError:
                logger.debug("%s task cancelled", self.lp)
                raise
            except Exception as e:
                logger.exception("%s Error in poll tick", self.lp, extra={"error": str(e)})

    def _covered_by_primary(self) -> bool:
        if self.hub.is_primary:
            return False
        primary = self.primary_hub()
        return primary is not None and self.hub.address in primary.covered_gateways

    async def poll_once(self) -> int:
        """One tick. Returns the number of shades whose state was applied."""
        lp = f"{self.lp}poll_once:"
        hub = self.hub
        if hub.discovery_in_progress:
            logger.debug("%s Discovery in progress, skipping tick", lp)
            return 0
        if self._covered_by_primary():
            logger.debug("%s Shades are polled through the primary hub, skipping tick", lp)
            return 0

        with correlation_context(prefix="poll"):
            try:
                shades = await hub.client.list_shades()
            except NotPrimaryGatewayError:
                if not hub.not_primary_logged:
                    logger.info("%s Hub is not the primary gateway, nothing to poll", lp)
                    hub.not_primary_logged = True
                else:
                    logger.debug("%s Hub still not primary", lp)
                return 0
            except HubError as e:
                logger.warning("%s Listing shades failed, retrying next tick: %s", lp, e)
                return 0

            # discovery may have started while the listing was in flight
            if hub.discovery_in_progress:
                logger.debug("%s Discovery started during the tick, dropping results", lp)
                return 0

            applied = 0
            with self.projection.batch():
                for shade in dedupe_by_id(shades, "shade", lp):
                    try:
                        if self.reconciler.apply_shade_state(shade):
                            applied += 1
                    except Exception:
                        logger.exception("%s Failed to apply state of shade %s", lp, shade.id)
            logger.debug("%s Applied state for %s/%s shades", lp, applied, len(shades))
            return applied
