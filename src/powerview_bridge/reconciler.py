"""Discovery and sync engine.

A discovery run for one hub lists its shades (and, on the primary hub, its
scenes), makes sure every listed entity has exactly one local device, links
scenes to the shades they move, and then removes local devices whose hub entity
is gone or that duplicate an entity already represented. The identity mapping
is consulted before anything is created; a full device scan is only the repair
path for mappings that were lost.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from powerview_bridge.const import DEVICE_GROUP_LABEL
from powerview_bridge.correlation import correlation_context
from powerview_bridge.exceptions import HubError, NotPrimaryGatewayError
from powerview_bridge.identity_store import IdentityKey, IdentityStore
from powerview_bridge.logging_abstraction import get_logger
from powerview_bridge.projection import DeviceProjection
from powerview_bridge.structs import (
    SHADE_STATUS_KINDS,
    DeviceKind,
    DeviceLink,
    Hub,
    Scene,
    SceneLinks,
    Shade,
)

logger = get_logger(__name__)

SCENE_GROUP_LABEL = f"{DEVICE_GROUP_LABEL} Scenes"
STATUS_FEATURE_NAMES: dict[DeviceKind, str] = {
    DeviceKind.SHADE_POSITION: "Position",
    DeviceKind.SHADE_BATTERY: "Battery",
    DeviceKind.SHADE_SIGNAL: "Signal",
}
# trailing words stripped from a scene name to get its room
_SCENE_ROOM_SUFFIXES = (" privacy", " open", " close", " on", " off", " raise", " lower", " stop")


def format_shade_name(shade: Shade) -> str:
    label = shade.name.strip()
    if not label or label == f"Shade {shade.id}":
        return f"Shade {shade.id}"
    return f"Shade {shade.id} - {label}"


def scene_room(scene_name: str) -> str | None:
    """``"Living Room Privacy" -> "Living Room"``; names without a known suffix are returned whole."""
    name = (scene_name or "").strip()
    if not name:
        return None
    lowered = name.casefold()
    for suffix in _SCENE_ROOM_SUFFIXES:
        if lowered.endswith(suffix):
            room = name[: -len(suffix)].strip()
            if room:
                return room
    return name


def link_scenes(shade_id: int, scenes: Iterable[Scene]) -> SceneLinks:
    """Open / close / privacy scenes that include ``shade_id``. The first scene found per role wins."""
    links = SceneLinks()
    for scene in scenes:
        if shade_id not in scene.shade_ids:
            continue
        role = scene.role
        if role is None or links.get(role) is not None:
            continue
        setattr(links, role.value, scene.id)
        if links.hub is None:
            links.hub = scene.hub
    return links


def dedupe_by_id[T: (Shade, Scene)](items: Iterable[T], what: str, lp: str) -> list[T]:
    seen: set[int] = set()
    unique: list[T] = []
    for item in items:
        if item.id in seen:
            logger.warning("%s Dropping duplicate %s id %s reported by the hub", lp, what, item.id)
            continue
        seen.add(item.id)
        unique.append(item)
    return unique


@dataclass
class DiscoveryResult:
    hub: str
    shades_listed: bool = False
    scenes_listed: bool = False
    not_primary: bool = False
    error: str | None = None
    created: int = 0
    repaired: int = 0
    deleted: int = 0
    failed: int = 0
    shades: list[Shade] = field(default_factory=list)
    scenes: list[Scene] = field(default_factory=list)


class Reconciler:
    """Keeps the local device store in line with what the hubs report.

    Args:
        projection: local device store
        identity: identity mapping
        gateway_seen: called with every gateway address that owns a listed shade
            (lets the bridge register hubs it was not configured with)

    """

    lp: str = "reconciler:"

    def __init__(
        self,
        projection: DeviceProjection,
        identity: IdentityStore,
        gateway_seen: Callable[[str], object] | None = None,
    ) -> None:
        self.projection: DeviceProjection = projection
        self.identity: IdentityStore = identity
        self.gateway_seen: Callable[[str], object] | None = gateway_seen

    def _log_not_primary(self, hub: Hub, what: str) -> None:
        if not hub.not_primary_logged:
            logger.info(
                "%s Hub %s is not the primary gateway, skipping %s discovery (the primary hub covers it)",
                self.lp,
                hub.address,
                what,
            )
            hub.not_primary_logged = True
        else:
            logger.debug("%s Hub %s still not primary, skipping %s", self.lp, hub.address, what)

    async def discover(self, hub: Hub) -> DiscoveryResult:
        """Run one discovery pass for ``hub``. The caller holds the hub's discovery lock."""
        lp = f"{self.lp}discover:"
        result = DiscoveryResult(hub=hub.address)
        with correlation_context(prefix="discover"):
            try:
                shades = await hub.client.list_shades()
            except NotPrimaryGatewayError:
                self._log_not_primary(hub, "shade")
                result.not_primary = True
                return result
            except HubError as e:
                logger.warning(
                    "%s Listing shades failed, keeping existing devices untouched: %s",
                    lp,
                    e,
                    extra={"hub": hub.address},
                )
                result.error = str(e)
                return result
            result.shades_listed = True
            result.shades = shades = dedupe_by_id(shades, "shade", lp)
            hub.covered_gateways = {s.hub for s in shades} | {hub.address}
            if self.gateway_seen is not None:
                for gateway in sorted(hub.covered_gateways - {hub.address}):
                    self.gateway_seen(gateway)

            scenes: list[Scene] = []
            if hub.is_primary and hub.can_list_scenes:
                try:
                    scenes = await hub.client.list_scenes()
                except NotPrimaryGatewayError:
                    hub.can_list_scenes = False
                    self._log_not_primary(hub, "scene")
                except HubError as e:
                    logger.warning("%s Listing scenes failed, scene links left as they are: %s", lp, e)
                else:
                    result.scenes_listed = True
                    result.scenes = scenes = dedupe_by_id(scenes, "scene", lp)

            with self.projection.batch(), self.identity.batch():
                for shade in shades:
                    links = link_scenes(shade.id, scenes) if result.scenes_listed else None
                    try:
                        created, repaired = self.ensure_shade(shade, links)
                    except Exception:
                        logger.exception("%s Failed to sync shade %s", lp, shade.id, extra={"hub": shade.hub})
                        result.failed += 1
                        continue
                    result.created += created
                    result.repaired += repaired

                for scene in scenes:
                    try:
                        created, repaired = self.ensure_scene(scene)
                    except Exception:
                        logger.exception("%s Failed to sync scene %s", lp, scene.id, extra={"hub": scene.hub})
                        result.failed += 1
                        continue
                    result.created += created
                    result.repaired += repaired

                # after the creation pass, never before
                result.deleted = self.sweep(
                    shade_scope=hub.covered_gateways,
                    shade_keys={(s.hub, s.id) for s in shades},
                    scene_scope={hub.address} if result.scenes_listed else set(),
                    scene_keys={(s.hub, s.id) for s in scenes},
                )

            logger.info(
                "%s Hub %s: %s shades, %s scenes, %s created, %s repaired, %s removed",
                lp,
                hub.address,
                len(shades),
                len(scenes),
                result.created,
                result.repaired,
                result.deleted,
                extra={"hub": hub.address, "failed": result.failed},
            )
        return result

    def _find_ref(self, hub: str, remote_id: int, kind: DeviceKind) -> int | None:
        ref = self.identity.lookup(hub, remote_id, kind)
        if ref is not None:
            return ref
        return self._scan_for(hub, remote_id, kind)

    def _scan_for(self, hub: str, remote_id: int, kind: DeviceKind) -> int | None:
        """Repair path: find a device by its stored link when the mapping has no entry."""
        for ref in self.projection.refs():
            link = DeviceLink.from_metadata(self.projection.get_metadata(ref))
            if link is not None and link.kind is kind and link.hub == hub and link.remote_id == remote_id:
                logger.info(
                    "%s Recovered mapping %s:%s (%s) -> %s from device metadata",
                    self.lp,
                    hub,
                    remote_id,
                    kind,
                    ref,
                )
                self.identity.put(hub, remote_id, kind, ref)
                return ref
        return None

    def _store_link(self, ref: int, desired: DeviceLink) -> bool:
        """Write the control metadata when it differs. True when something was repaired."""
        current = DeviceLink.from_metadata(self.projection.get_metadata(ref))
        if current == desired:
            return False
        self.projection.set_metadata(ref, desired.to_metadata())
        return True

    def ensure_shade(self, shade: Shade, links: SceneLinks | None = None) -> tuple[int, int]:
        """Make sure ``shade`` has its control device and status features.

        ``links`` replaces the stored scene links; None keeps whatever is stored.
        Returns ``(created, repaired)`` device counts.
        """
        created = repaired = 0
        ref = self._find_ref(shade.hub, shade.id, DeviceKind.SHADE_CONTROL)
        if ref is None:
            ref = self.projection.create_device(format_shade_name(shade), DEVICE_GROUP_LABEL)
            created += 1
            logger.info("%s Created shade device %s for %s:%s", self.lp, ref, shade.hub, shade.id)

        if links is None:
            current = DeviceLink.from_metadata(self.projection.get_metadata(ref))
            links = current.scenes if current is not None else SceneLinks()
        desired = DeviceLink(kind=DeviceKind.SHADE_CONTROL, hub=shade.hub, remote_id=shade.id, scenes=links)
        if self._store_link(ref, desired) and not created:
            repaired += 1
        self.identity.put(
            shade.hub,
            shade.id,
            DeviceKind.SHADE_CONTROL,
            ref,
            open=links.open,
            close=links.close,
            privacy=links.privacy,
            scene_hub=links.hub,
        )

        for kind in SHADE_STATUS_KINDS:
            feature_ref = self._find_ref(shade.hub, shade.id, kind)
            if feature_ref is None:
                feature_ref = self.projection.create_feature(ref, STATUS_FEATURE_NAMES[kind])
                created += 1
            status_link = DeviceLink(kind=kind, hub=shade.hub, remote_id=shade.id)
            if self._store_link(feature_ref, status_link) and not created:
                repaired += 1
            self.identity.put(shade.hub, shade.id, kind, feature_ref)

        self.apply_shade_state(shade)
        return created, repaired

    def ensure_scene(self, scene: Scene) -> tuple[int, int]:
        created = repaired = 0
        ref = self._find_ref(scene.hub, scene.id, DeviceKind.SCENE_ACTIVATOR)
        if ref is None:
            name = f"Scene {scene.name}" if scene.name else f"Scene {scene.id}"
            ref = self.projection.create_device(name, scene_room(scene.name) or SCENE_GROUP_LABEL)
            created += 1
            logger.info("%s Created scene device %s for %s:%s", self.lp, ref, scene.hub, scene.id)
        desired = DeviceLink(
            kind=DeviceKind.SCENE_ACTIVATOR,
            hub=scene.hub,
            remote_id=scene.id,
            scene_name=scene.name or None,
        )
        if self._store_link(ref, desired) and not created:
            repaired += 1
        self.identity.put(scene.hub, scene.id, DeviceKind.SCENE_ACTIVATOR, ref)
        return created, repaired

    def sweep(
        self,
        shade_scope: set[str],
        shade_keys: set[tuple[str, int]],
        scene_scope: set[str],
        scene_keys: set[tuple[str, int]],
    ) -> int:
        """Delete orphaned and duplicate devices. Returns the number deleted.

        Only devices linked to a hub address in the matching scope are
        considered; devices of hubs that were not listed are left alone. Among
        duplicates the ref held by the identity mapping survives, otherwise the
        oldest one.
        """
        lp = f"{self.lp}sweep:"
        deleted = 0
        claimed: dict[IdentityKey, int] = {}
        for ref in sorted(self.projection.refs()):
            if not self.projection.exists(ref):
                continue  # went with its parent
            link = DeviceLink.from_metadata(self.projection.get_metadata(ref))
            if link is None:
                continue
            if link.kind.is_shade:
                if link.hub not in shade_scope:
                    continue
                upstream = (link.hub, link.remote_id) in shade_keys
            else:
                if link.hub not in scene_scope:
                    continue
                upstream = (link.hub, link.remote_id) in scene_keys

            key = IdentityKey(link.hub, link.remote_id, link.kind)
            if not upstream:
                logger.info("%s Removing device %s, %s no longer reported by the hub", lp, ref, key.encode())
                self._delete(ref, link)
                deleted += 1
                continue

            mapped = self.identity.lookup(key.hub, key.remote_id, key.kind)
            keeper = mapped if mapped is not None else claimed.get(key, ref)
            if keeper != ref:
                logger.warning("%s Removing duplicate device %s of %s (kept %s)", lp, ref, key.encode(), keeper)
                self._delete(ref, link)
                deleted += 1
                continue
            claimed[key] = ref
            if mapped is None:
                self.identity.put(key.hub, key.remote_id, key.kind, ref)
        return deleted

    def _delete(self, ref: int, link: DeviceLink) -> None:
        self.projection.delete(ref)
        self.identity.invalidate_ref(ref)
        if link.kind is DeviceKind.SHADE_CONTROL:
            # features went with the parent, lookups drop their stale mappings
            for kind in SHADE_STATUS_KINDS:
                _ = self.identity.lookup(link.hub, link.remote_id, kind)

    def _set_status(self, shade: Shade, kind: DeviceKind, value: int) -> None:
        ref = self.identity.lookup(shade.hub, shade.id, kind)
        if ref is not None:
            self.projection.set_value(ref, value, f"{value}%")

    def apply_shade_state(self, shade: Shade) -> bool:
        """Push polled state onto a shade's devices. Returns False when the shade has no device yet.

        Unknown values are skipped, as are zero battery / signal readings, so a
        bad reading never overwrites the last good value.
        """
        ref = self.identity.lookup(shade.hub, shade.id, DeviceKind.SHADE_CONTROL)
        if ref is None:
            return False
        percent = shade.position_percent
        if percent is not None:
            self.projection.set_value(ref, percent, f"{percent}%")
            self._set_status(shade, DeviceKind.SHADE_POSITION, percent)
        if shade.battery:
            self._set_status(shade, DeviceKind.SHADE_BATTERY, shade.battery)
        if shade.signal:
            self._set_status(shade, DeviceKind.SHADE_SIGNAL, shade.signal)
        return True

    async def link_shade_scenes(self, hub: Hub, shade_ref: int) -> SceneLinks:
        """Look up scenes for one shade on demand and store the links.

        Used when a shade that was driven by position turns out to need scene
        control. Scenes come from ``hub`` (the primary).
        """
        link = DeviceLink.from_metadata(self.projection.get_metadata(shade_ref))
        if link is None or link.kind is not DeviceKind.SHADE_CONTROL:
            return SceneLinks()
        scenes = await hub.client.list_scenes()
        links = link_scenes(link.remote_id, scenes)
        if links.is_linked:
            self.ensure_shade_links(shade_ref, link, links)
        return links

    def ensure_shade_links(self, shade_ref: int, link: DeviceLink, links: SceneLinks) -> None:
        self.projection.set_metadata(shade_ref, link.model_copy(update={"scenes": links}).to_metadata())
        self.identity.put(
            link.hub,
            link.remote_id,
            DeviceKind.SHADE_CONTROL,
            shade_ref,
            open=links.open,
            close=links.close,
            privacy=links.privacy,
            scene_hub=links.hub,
        )
