"""MQTT command routing.

Topics handled::

    <topic>/set/<ref>/position   0-100
    <topic>/set/<ref>            OPEN | CLOSE | STOP | ON
    <topic>/set/bridge/rediscover PRESS
    <ha_topic>/status            HA birth / will
"""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING, Any, cast

from powerview_bridge.const import (
    POWERVIEW_HASS_BIRTH_MSG,
    POWERVIEW_HASS_STATUS_TOPIC,
    POWERVIEW_HASS_WILL_MSG,
)
from powerview_bridge.logging_abstraction import get_logger

if TYPE_CHECKING:
    from powerview_bridge.mqtt.client import MQTTClient

logger = get_logger(__name__)

# payload on <topic>/set/<ref> -> command value
PAYLOAD_VALUES: dict[str, int] = {"open": 100, "close": 0, "on": 100}


class CommandRouter:
    """Helper class for routing MQTT messages to the bridge."""

    def __init__(self, mqtt_client: MQTTClient) -> None:
        self.client: MQTTClient = mqtt_client
        self.tasks: set[asyncio.Task[Any]] = set()

    def _spawn(self, coro: Any, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def _handle_bridge_commands(self, extra_data: list[str], norm_pl: str, lp: str) -> None:
        if extra_data and extra_data[0] == "rediscover" and norm_pl == "press":
            logger.info("%s Rediscover button pressed! Rebuilding all devices...", lp)
            _ = self._spawn(self.client.bridge.rediscover(), "rediscover")
        else:
            logger.warning("%s Unknown bridge command: %s => %s", lp, extra_data, norm_pl)

    async def _handle_device_command(self, ref: int, extra_data: list[str], norm_pl: str, lp: str) -> None:
        if extra_data and extra_data[0] == "position":
            try:
                value = float(norm_pl)
            except ValueError:
                logger.warning("%s Bad position payload for device %s: %s", lp, ref, norm_pl)
                return
            if not 0 <= value <= 100:
                logger.warning("%s Position %s for device %s out of range 0-100, skipping...", lp, value, ref)
                return
        elif extra_data:
            logger.warning("%s Unknown command %s for device %s", lp, "/".join(extra_data), ref)
            return
        elif norm_pl == "stop":
            logger.info("%s STOP for device %s ignored, PowerView shades cannot be stopped mid-move", lp, ref)
            return
        elif norm_pl in PAYLOAD_VALUES:
            value = PAYLOAD_VALUES[norm_pl]
        else:
            logger.warning("%s Unknown payload for device %s: %s, skipping...", lp, ref, norm_pl)
            return
        logger.info("%s >>> COMMAND: device=%s value=%s", lp, ref, value)
        _ = self.client.bridge.dispatch_command(ref, value)

    async def _handle_set_topic(self, topic_parts: list[str], payload: bytes, lp: str) -> None:
        if len(topic_parts) < 3 or topic_parts[1] != "set":
            logger.warning("%s Unknown command: %s => %s", lp, "/".join(topic_parts), payload)
            return
        target = topic_parts[2]
        extra_data = topic_parts[3:]
        norm_pl = payload.decode().strip().casefold()
        if target == "bridge":
            await self._handle_bridge_commands(extra_data, norm_pl, lp)
            return
        try:
            ref = int(target)
        except ValueError:
            logger.warning("%s Device ref %r is not a number, skipping...", lp, target)
            return
        if not self.client.registry.exists(ref):
            logger.warning("%s Device %s not found, have devices been rediscovered recently?", lp, ref)
            return
        await self._handle_device_command(ref, extra_data, norm_pl, lp)

    async def _handle_hass_birth_message(self, lp: str) -> None:
        """HA restarted: re-announce discovery and state after a random delay."""
        birth_delay = random.randint(5, 15)
        logger.info(
            "%s HASS has sent MQTT BIRTH message, re-announcing device discovery and status after %s seconds...",
            lp,
            birth_delay,
        )
        await asyncio.sleep(birth_delay)
        _ = await self.client.discovery.homeassistant_discovery()

    async def _handle_hass_topic(self, topic_parts: list[str], payload: bytes, lp: str) -> None:
        if len(topic_parts) < 2 or topic_parts[1] != POWERVIEW_HASS_STATUS_TOPIC:
            return
        payload_str = payload.decode().casefold()
        if payload_str == POWERVIEW_HASS_BIRTH_MSG.casefold():
            _ = self._spawn(self._handle_hass_birth_message(lp), "hass-birth")
        elif payload_str == POWERVIEW_HASS_WILL_MSG.casefold():
            logger.info("%s received Last Will msg from Home Assistant, HASS is offline!", lp)
        else:
            logger.warning("%s Unknown HASS status message: %s", lp, payload)

    async def handle_message(self, topic: str, payload: bytes | None) -> None:
        lp = f"{self.client.lp}rcv:"
        if not payload:
            logger.debug("%s Received empty payload for topic: %s, skipping...", lp, topic)
            return
        logger.debug("%s MQTT message: topic=%s payload=%s", lp, topic, payload)
        topic_parts = topic.split("/")
        if topic_parts[0] == self.client.topic:
            await self._handle_set_topic(topic_parts, payload, lp)
        elif topic_parts[0] == self.client.ha_topic:
            await self._handle_hass_topic(topic_parts, payload, lp)

    async def start_receiver_task(self) -> None:
        """Listen for MQTT messages on the subscribed topics."""
        assert self.client.client is not None, "client must be initialized"
        async for message in self.client.client.messages:
            msg: Any = cast("Any", message)
            payload = msg.payload if isinstance(msg.payload, bytes) else None
            await self.handle_message(msg.topic.value, payload)
