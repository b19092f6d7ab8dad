"""Turns ``(local ref, value 0-100)`` into a hub call.

Shades that have scene links are driven by scene bands, everything else by a
direct position write. Scene activators activate their scene. On success the
local device value is updated right away; the next poll corrects it if the
shade ends up somewhere else.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from powerview_bridge.const import SCENE_OPEN_THRESHOLD, SCENE_PRIVACY_THRESHOLD
from powerview_bridge.exceptions import ControlResolutionError, HubError, PositionControlUnsupportedError
from powerview_bridge.logging_abstraction import get_logger
from powerview_bridge.structs import (
    BridgeConfig,
    DeviceKind,
    DeviceLink,
    Hub,
    SceneLinks,
    SceneRole,
)

if TYPE_CHECKING:
    from powerview_bridge.identity_store import IdentityStore
    from powerview_bridge.projection import DeviceProjection
    from powerview_bridge.reconciler import Reconciler

logger = get_logger(__name__)


def scene_role_for(value: int) -> SceneRole:
    if value >= SCENE_OPEN_THRESHOLD:
        return SceneRole.OPEN
    if value >= SCENE_PRIVACY_THRESHOLD:
        return SceneRole.PRIVACY
    return SceneRole.CLOSE


def choose_scene(links: SceneLinks, value: int) -> tuple[SceneRole, int] | None:
    """Scene for a target value: [90, 100] open, [40, 90) privacy (else open), [0, 40) close."""
    role = scene_role_for(value)
    scene_id = links.get(role)
    if scene_id is None and role is SceneRole.PRIVACY:
        role = SceneRole.OPEN
        scene_id = links.open
    if scene_id is None:
        return None
    return role, scene_id


def _strip_scene_prefix(name: str) -> str:
    name = name.strip()
    return name[len("Scene ") :].strip() if name.startswith("Scene ") else name


class CommandRouter:
    """Resolves and executes commands for local devices.

    Args:
        projection: local device store
        identity: identity mapping
        reconciler: used for on-demand scene linking
        hub_for: returns the hub for a gateway address, registering it when unknown
        primary_hub: returns the primary hub (scene owner), if any
        config: scene aliases for name resolution

    """

    lp: str = "router:"

    def __init__(
        self,
        projection: DeviceProjection,
        identity: IdentityStore,
        reconciler: Reconciler,
        hub_for: Callable[[str], Hub | None],
        primary_hub: Callable[[], Hub | None],
        config: BridgeConfig | None = None,
    ) -> None:
        self.projection: DeviceProjection = projection
        self.identity: IdentityStore = identity
        self.reconciler: Reconciler = reconciler
        self.hub_for = hub_for
        self.primary_hub = primary_hub
        self.config: BridgeConfig = config or BridgeConfig()

    async def handle(self, ref: int, value: float) -> None:
        """Execute one command.

        Raises:
            ControlResolutionError: the device cannot be mapped to a hub call
            HubError: the hub call failed (the device value is left unchanged)

        """
        lp = f"{self.lp}handle:"
        target = max(0, min(100, round(value)))
        link = self.resolve(ref)
        if link is None:
            link = await self._resolve_scene_by_name(ref)
        if link.kind.is_shade_status:
            raise ControlResolutionError(ref, f"{link.kind} is a read-only status feature")

        logger.info(
            "%s device %s -> %s",
            lp,
            ref,
            target,
            extra={"hub": link.hub, "remote_id": link.remote_id, "kind": str(link.kind)},
        )
        if link.kind is DeviceKind.SCENE_ACTIVATOR:
            await self._activate(ref, link.scenes.hub or link.hub, link.remote_id)
            self.projection.set_value(ref, target)
            return

        await self._control_shade(ref, link, target)
        self.projection.set_value(ref, target, f"{target}%")
        feature_ref = self.identity.lookup(link.hub, link.remote_id, DeviceKind.SHADE_POSITION)
        if feature_ref is not None:
            self.projection.set_value(feature_ref, target, f"{target}%")

    def resolve(self, ref: int) -> DeviceLink | None:
        """Control link of a device from its metadata, else from the identity mapping.

        A link recovered from the mapping is written back to the device metadata.
        """
        link = DeviceLink.from_metadata(self.projection.get_metadata(ref))
        if link is not None:
            return link
        if not self.projection.exists(ref):
            raise ControlResolutionError(ref, "no such device")
        record = self.identity.reverse_lookup(ref)
        if record is None:
            return None
        extra = record.extra
        link = DeviceLink(
            kind=record.key.kind,
            hub=record.key.hub,
            remote_id=record.key.remote_id,
            scenes=SceneLinks(
                open=extra.get("open"),
                close=extra.get("close"),
                privacy=extra.get("privacy"),
                hub=extra.get("scene_hub"),
            ),
        )
        logger.info("%sresolve: Repaired metadata of device %s from the identity mapping", self.lp, ref)
        self.projection.set_metadata(ref, link.to_metadata())
        return link

    async def _resolve_scene_by_name(self, ref: int) -> DeviceLink:
        """Last resort for scene activators without a link: configured alias, then the primary's scene list."""
        lp = f"{self.lp}resolve_scene:"
        device = self.projection.get(ref)
        raw = self.projection.get_metadata(ref) or {}
        name = _strip_scene_prefix(str(raw.get("scene_name") or (device.name if device else "")))
        if not name:
            raise ControlResolutionError(ref, "device has no hub link and no name to resolve")

        found: tuple[str, int] | None = self.config.resolve_alias(name)
        if found is None:
            primary = self.primary_hub()
            if primary is None or not primary.can_list_scenes:
                raise ControlResolutionError(ref, f"no scene link for {name!r} and no hub to look it up on")
            folded = name.casefold()
            for scene in await primary.client.list_scenes():
                if scene.name.casefold() == folded:
                    found = (scene.hub, scene.id)
                    break
        if found is None:
            raise ControlResolutionError(ref, f"no scene named {name!r}")

        hub, scene_id = found
        link = DeviceLink(kind=DeviceKind.SCENE_ACTIVATOR, hub=hub, remote_id=scene_id, scene_name=name)
        self.projection.set_metadata(ref, link.to_metadata())
        self.identity.put(hub, scene_id, DeviceKind.SCENE_ACTIVATOR, ref)
        logger.info("%s Linked device %s to scene %s:%s by name %r", lp, ref, hub, scene_id, name)
        return link

    def _hub(self, ref: int, address: str | None) -> Hub:
        hub = self.hub_for(address) if address else None
        if hub is None:
            raise ControlResolutionError(ref, f"no hub registered for {address!r}")
        return hub

    async def _activate(self, ref: int, address: str | None, scene_id: int) -> None:
        hub = self._hub(ref, address)
        await hub.client.activate_scene(scene_id)

    async def _control_shade(self, ref: int, link: DeviceLink, target: int) -> None:
        lp = f"{self.lp}control_shade:"
        if link.scenes.is_linked:
            await self._via_scene(ref, link.scenes, target)
            return

        hub = self._hub(ref, link.hub)
        if hub.can_set_position:
            try:
                await hub.client.set_position(link.remote_id, target / 100)
            except PositionControlUnsupportedError as e:
                logger.info("%s %s, switching shade %s to scene control", lp, e, link.remote_id)
                hub.can_set_position = False
            else:
                return

        primary = self.primary_hub()
        if primary is None or not primary.can_list_scenes:
            raise ControlResolutionError(ref, "direct positioning is unsupported and no scenes can be listed")
        try:
            links = await self.reconciler.link_shade_scenes(primary, ref)
        except HubError as e:
            raise ControlResolutionError(ref, f"direct positioning is unsupported and scene lookup failed: {e}") from e
        if not links.is_linked:
            raise ControlResolutionError(ref, "direct positioning is unsupported and no scenes move this shade")
        await self._via_scene(ref, links, target)

    async def _via_scene(self, ref: int, links: SceneLinks, target: int) -> None:
        chosen = choose_scene(links, target)
        if chosen is None:
            raise ControlResolutionError(ref, f"no {scene_role_for(target)} scene linked for value {target}")
        role, scene_id = chosen
        address = links.hub
        if address is None:
            primary = self.primary_hub()
            address = primary.address if primary else None
        logger.debug("%s_via_scene: device %s value %s -> %s scene %s", self.lp, ref, target, role, scene_id)
        await self._activate(ref, address, scene_id)
