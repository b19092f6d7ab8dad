"""Home Assistant MQTT discovery for shades, status sensors, scenes and the bridge itself."""

from __future__ import annotations

import re
import unicodedata
from typing import TYPE_CHECKING, Any

from powerview_bridge.const import (
    BRIDGE_OBJ_ID,
    ORIGIN_STRUCT,
    POWERVIEW_MANUFACTURER,
    POWERVIEW_VERSION,
)
from powerview_bridge.logging_abstraction import get_logger
from powerview_bridge.structs import DeviceKind, DeviceLink

if TYPE_CHECKING:
    from powerview_bridge.mqtt.client import MQTTClient
    from powerview_bridge.projection import LocalDevice

logger = get_logger(__name__)

TOPIC_TEMPLATE = "{0}/{1}/{2}/config"

BRIDGE_DEVICE_REGISTRY_CONF: dict[str, Any] = {
    "identifiers": [BRIDGE_OBJ_ID],
    "manufacturer": POWERVIEW_MANUFACTURER,
    "name": "PowerView Bridge",
    "sw_version": POWERVIEW_VERSION,
    "model": "PowerView Hub Bridge",
}


def slugify(text: str) -> str:
    """``'Living Room Shade' -> 'living_room_shade'``"""
    text = unicodedata.normalize("NFKD", text)
    text = text.encode("ascii", "ignore").decode("ascii").lower()
    text = re.sub(r"[^\w\s-]", "", text)
    text = re.sub(r"[-\s]+", "_", text)
    return text.strip("_")


def entity_platform(device: LocalDevice) -> str | None:
    """HA platform for a local device; None for devices that carry no hub link."""
    link = DeviceLink.from_metadata(device.metadata)
    if link is None:
        return None
    if link.kind is DeviceKind.SHADE_CONTROL:
        return "cover"
    if link.kind is DeviceKind.SCENE_ACTIVATOR:
        return "scene"
    return "sensor"


def unique_id_for(ref: int) -> str:
    return f"{BRIDGE_OBJ_ID}_{ref}"


class DiscoveryHelper:
    """Builds and publishes discovery configs. Entities are keyed by local ref."""

    def __init__(self, mqtt_client: MQTTClient) -> None:
        self.client: MQTTClient = mqtt_client

    def _device_registry_struct(self, device: LocalDevice, link: DeviceLink) -> dict[str, Any]:
        root = device
        if device.parent_ref is not None:
            root = self.client.registry.get(device.parent_ref) or device
        struct: dict[str, Any] = {
            "identifiers": [unique_id_for(root.ref)],
            "manufacturer": POWERVIEW_MANUFACTURER,
            "name": root.name,
            "model": "PowerView Scene" if link.kind is DeviceKind.SCENE_ACTIVATOR else "PowerView Shade",
            "via_device": BRIDGE_OBJ_ID,
        }
        if root.group:
            struct["suggested_area"] = root.group
        return struct

    def build_entity_config(self, device: LocalDevice) -> tuple[str, dict[str, Any]] | None:
        """``(platform, config)`` for a device, or None when it is not linked to a hub entity."""
        link = DeviceLink.from_metadata(device.metadata)
        platform = entity_platform(device)
        if link is None or platform is None:
            return None
        topic = self.client.topic
        ref = device.ref
        config: dict[str, Any] = {
            "default_entity_id": f"{platform}.{slugify(device.name) or unique_id_for(ref)}",
            "unique_id": unique_id_for(ref),
            "avty_t": f"{topic}/availability/bridge",
            "pl_avail": "online",
            "pl_not_avail": "offline",
            "origin": ORIGIN_STRUCT,
            "device": self._device_registry_struct(device, link),
        }
        if platform == "cover":
            config.update(
                {
                    "name": None,
                    "device_class": "shade",
                    "command_topic": f"{topic}/set/{ref}",
                    "payload_open": "OPEN",
                    "payload_close": "CLOSE",
                    "payload_stop": "STOP",
                    "state_topic": f"{topic}/status/{ref}",
                    "state_open": "open",
                    "state_closed": "closed",
                    "position_topic": f"{topic}/status/{ref}/position",
                    "set_position_topic": f"{topic}/set/{ref}/position",
                    "position_open": 100,
                    "position_closed": 0,
                }
            )
        elif platform == "scene":
            config.update(
                {
                    "name": None,
                    "command_topic": f"{topic}/set/{ref}",
                    "payload_on": "ON",
                }
            )
        else:
            config.update(
                {
                    "name": device.name,
                    "state_topic": f"{topic}/status/{ref}",
                    "unit_of_measurement": "%",
                    "state_class": "measurement",
                }
            )
            if link.kind is DeviceKind.SHADE_BATTERY:
                config["device_class"] = "battery"
                config["entity_category"] = "diagnostic"
            elif link.kind is DeviceKind.SHADE_SIGNAL:
                config["entity_category"] = "diagnostic"
        return platform, config

    async def register_device(self, device: LocalDevice) -> str | None:
        """Publish the discovery config of one device. Returns the platform it was announced as."""
        lp = f"{self.client.lp}hass:"
        built = self.build_entity_config(device)
        if built is None:
            logger.debug("%s Device %s has no hub link, not announced", lp, device.ref)
            return None
        platform, config = built
        ok = await self.client.publish_json_msg(
            TOPIC_TEMPLATE.format(self.client.ha_topic, platform, config["unique_id"]),
            config,
            retain=True,
        )
        if not ok:
            logger.error("%s Failed to publish discovery config for device %s", lp, device.ref)
            return None
        return platform

    async def remove_device(self, ref: int, platform: str) -> bool:
        """Publish an empty retained config so HA drops the entity."""
        return await self.client.publish(
            TOPIC_TEMPLATE.format(self.client.ha_topic, platform, unique_id_for(ref)),
            b"",
            retain=True,
        )

    async def purge_removed(self) -> int:
        """Drop HA entities of devices deleted while the broker was unreachable."""
        lp = f"{self.client.lp}hass:"
        stale = [(ref, p) for ref, p in self.client.announced.items() if not self.client.registry.exists(ref)]
        purged = 0
        for ref, platform in stale:
            if not await self.remove_device(ref, platform):
                logger.warning("%s Could not remove entity of deleted device %s, retrying on next connect", lp, ref)
                continue
            _ = self.client.announced.pop(ref, None)
            purged += 1
        if purged:
            logger.info("%s Removed %s entities of deleted devices", lp, purged)
        return purged

    async def create_bridge_device(self) -> bool:
        """Bridge device with its "Rediscover devices" button."""
        lp = f"{self.client.lp}create_bridge_device:"
        topic = self.client.topic
        _ = await self.client.publish(f"{topic}/availability/bridge", b"online", retain=True)
        entity_unique_id = f"{BRIDGE_OBJ_ID}_rediscover"
        button_conf = {
            "platform": "button",
            "object_id": entity_unique_id,
            "command_topic": f"{topic}/set/bridge/rediscover",
            "payload_press": "PRESS",
            "avty_t": f"{topic}/availability/bridge",
            "name": "Rediscover devices",
            "unique_id": entity_unique_id,
            "entity_category": "config",
            "origin": ORIGIN_STRUCT,
            "device": BRIDGE_DEVICE_REGISTRY_CONF,
        }
        ok = await self.client.publish_json_msg(
            TOPIC_TEMPLATE.format(self.client.ha_topic, "button", entity_unique_id),
            button_conf,
            retain=True,
        )
        if not ok:
            logger.error("%s Failed to publish rediscover button entity config", lp)
        return ok

    async def homeassistant_discovery(self) -> bool:
        """Announce the bridge and every linked device, then publish their current state."""
        lp = f"{self.client.lp}hass:"
        if not self.client.is_connected:
            return False
        logger.info("%s Starting device discovery...", lp)
        _ = await self.create_bridge_device()
        await self.purge_removed()
        announced = 0
        for ref in sorted(self.client.registry.refs()):
            device = self.client.registry.get(ref)
            if device is None:
                continue
            platform = await self.register_device(device)
            if platform is None:
                continue
            self.client.announced[ref] = platform
            announced += 1
            _ = await self.client.state_updates.publish_device_state(device)
        logger.info("%s Announced %s entities", lp, announced)
        return True
