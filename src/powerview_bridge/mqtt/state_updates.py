"""Publishes local device values to MQTT state topics."""

from __future__ import annotations

from typing import TYPE_CHECKING

from powerview_bridge.logging_abstraction import get_logger
from powerview_bridge.mqtt.discovery import entity_platform

if TYPE_CHECKING:
    from powerview_bridge.mqtt.client import MQTTClient
    from powerview_bridge.projection import LocalDevice

logger = get_logger(__name__)


def cover_state(position: int) -> str:
    return "closed" if position <= 0 else "open"


class StateUpdateHelper:
    """Helper class for publishing device values to MQTT."""

    def __init__(self, mqtt_client: MQTTClient) -> None:
        self.client: MQTTClient = mqtt_client

    async def publish_device_state(self, device: LocalDevice) -> bool:
        """Publish the value of one device. Devices without a value yet are skipped."""
        lp = f"{self.client.lp}state:"
        if device.value is None:
            return False
        platform = entity_platform(device)
        topic = f"{self.client.topic}/status/{device.ref}"
        value = round(device.value)
        if platform == "cover":
            ok = await self.client.publish(f"{topic}/position", str(value).encode())
            ok = await self.client.publish(topic, cover_state(value).encode()) and ok
        elif platform == "sensor":
            ok = await self.client.publish(topic, str(value).encode())
        else:
            # scenes are stateless in HA
            return False
        if not ok:
            logger.debug("%s Failed to publish state of device %s", lp, device.ref)
        return ok

    async def pub_bridge_online(self, online: bool) -> bool:
        return await self.client.publish(
            f"{self.client.topic}/availability/bridge",
            b"online" if online else b"offline",
            retain=True,
        )
