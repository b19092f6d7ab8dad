"""MQTT client core: connection lifecycle, discovery and the device event publisher."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Self

import aiomqtt

from powerview_bridge.const import (
    DEVICE_LWT_MSG,
    POWERVIEW_HASS_TOPIC,
    POWERVIEW_MQTT_CONN_DELAY,
    POWERVIEW_TOPIC,
)
from powerview_bridge.logging_abstraction import get_logger
from powerview_bridge.mqtt.command_routing import CommandRouter
from powerview_bridge.mqtt.discovery import DiscoveryHelper, entity_platform
from powerview_bridge.mqtt.state_updates import StateUpdateHelper
from powerview_bridge.projection import DeviceEvent
from powerview_bridge.structs import GlobalObject
from powerview_bridge.utils import send_sigterm

if TYPE_CHECKING:
    from powerview_bridge.bridge import PowerViewBridge
    from powerview_bridge.projection import LocalDevice, LocalDeviceRegistry

logger = get_logger(__name__)

g = GlobalObject()


class MQTTClient:
    """Bridge <-> Home Assistant over MQTT.

    Device store changes are queued by a registry listener and published by a
    single publisher task, so the synchronous device store never waits on the
    broker.
    """

    lp: str = "mqtt:"
    client: aiomqtt.Client | None = None
    start_task: asyncio.Task[None] | None = None
    publisher_task: asyncio.Task[None] | None = None
    topic: str = ""
    ha_topic: str = ""

    _instance: MQTTClient | None = None

    def __new__(cls, *_args: object, **_kwargs: object) -> Self:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance  # type: ignore[return-value]

    def __init__(self, bridge: PowerViewBridge, registry: LocalDeviceRegistry) -> None:
        lp = f"{self.lp}init:"
        self.bridge: PowerViewBridge = bridge
        self.registry: LocalDeviceRegistry = registry
        self._connected: bool = False
        self.topic = g.env.mqtt_topic or POWERVIEW_TOPIC
        if not self.topic:
            self.topic = "powerview"
            logger.warning("%s MQTT topic not set, using default: %s", lp, self.topic)
        self.ha_topic = g.env.mqtt_hass_topic or POWERVIEW_HASS_TOPIC or "homeassistant"
        # ref -> platform the device was announced as, kept across reconnects until HA has dropped it
        self.announced: dict[int, str] = {}
        self.events: asyncio.Queue[tuple[DeviceEvent, LocalDevice]] = asyncio.Queue()
        self.discovery = DiscoveryHelper(self)
        self.state_updates = StateUpdateHelper(self)
        self.command_router = CommandRouter(self)
        registry.add_listener(self.on_device_event)

    @property
    def is_connected(self) -> bool:
        return self._connected

    def on_device_event(self, event: DeviceEvent, device: LocalDevice) -> None:
        self.events.put_nowait((event, device))

    async def process_event(self, event: DeviceEvent, device: LocalDevice) -> None:
        """Announce, update or remove the HA entity of one device."""
        if not self._connected:
            return
        if event is DeviceEvent.REMOVED:
            platform = self.announced.get(device.ref)
            if platform is not None and await self.discovery.remove_device(device.ref, platform):
                _ = self.announced.pop(device.ref, None)
            return
        platform = entity_platform(device)
        if platform is None:
            # created but not linked yet, announced once the link metadata lands
            return
        if self.announced.get(device.ref) != platform:
            if await self.discovery.register_device(device) is None:
                return
            self.announced[device.ref] = platform
        _ = await self.state_updates.publish_device_state(device)

    async def publisher(self) -> None:
        lp = f"{self.lp}publisher:"
        while True:
            event, device = await self.events.get()
            try:
                await self.process_event(event, device)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("%s Failed to publish %s of device %s", lp, event, device.ref)
            finally:
                self.events.task_done()

    def _get_connection_delay(self, lp: str) -> int:
        delay = POWERVIEW_MQTT_CONN_DELAY
        if delay <= 0:
            logger.debug("%s MQTT connection delay <= 0, probably a typo, using 5...", lp)
            return 5
        return delay

    async def start(self) -> None:
        lp = f"{self.lp}start:"
        if self.publisher_task is None or self.publisher_task.done():
            self.publisher_task = asyncio.create_task(self.publisher(), name="mqtt-publisher")
        try:
            while True:
                self._connected = await self.connect()
                if self._connected:
                    try:
                        await self._start_receiver(lp)
                    except aiomqtt.MqttError:
                        self._connected = False
                        continue
                else:
                    delay = self._get_connection_delay(lp)
                    logger.info(
                        "%s connecting to MQTT broker failed, sleeping for %s seconds before re-trying...",
                        lp,
                        delay,
                    )
                    await asyncio.sleep(delay)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s MQTT start() EXCEPTION", lp)

    async def _start_receiver(self, lp: str) -> None:
        assert self.client is not None, "client must be initialized"
        topics = [f"{self.topic}/set/#", f"{self.ha_topic}/status"]
        for topic in topics:
            await self.client.subscribe(topic, qos=0)
        logger.debug("%s Subscribed to MQTT topics: %s. Waiting for MQTT messages...", lp, topics)
        try:
            await self.command_router.start_receiver_task()
        except asyncio.CancelledError:
            logger.debug("%s MQTT receiver task cancelled, propagating...", lp)
            raise
        except aiomqtt.MqttError as msg_err:
            logger.warning("%s MQTT error: %s", lp, msg_err)
            raise

    async def connect(self) -> bool:
        lp = f"{self.lp}connect:"
        self._connected = False
        g.reload_env()
        lwt = aiomqtt.Will(topic=f"{self.topic}/availability/bridge", payload=DEVICE_LWT_MSG, retain=True)
        self.client = aiomqtt.Client(
            hostname=g.env.mqtt_host or "localhost",
            port=g.env.mqtt_port or 1883,
            username=g.env.mqtt_user,
            password=g.env.mqtt_pass,
            identifier="powerview_bridge",
            will=lwt,
        )
        logger.debug("%s Connecting to MQTT broker %s:%s...", lp, g.env.mqtt_host, g.env.mqtt_port)
        try:
            _ = await self.client.__aenter__()
        except aiomqtt.MqttError as mqtt_err_exc:
            logger.warning("%s Connection failed [MqttError]: %s", lp, mqtt_err_exc)
            if "code:134" in str(mqtt_err_exc):
                logger.error(
                    "%s Bad username or password, check your MQTT credentials (username: %s)",
                    lp,
                    g.env.mqtt_user,
                )
                send_sigterm()
            return False
        self._connected = True
        logger.info("%s Connected to MQTT broker: %s port: %s", lp, g.env.mqtt_host, g.env.mqtt_port)
        _ = await self.discovery.homeassistant_discovery()
        return True

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        if self._connected:
            _ = await self.state_updates.pub_bridge_online(False)
        try:
            if self.client is not None:
                logger.debug("%s Disconnecting from broker...", lp)
                await self.client.__aexit__(None, None, None)
        except aiomqtt.MqttError as ce:
            logger.warning("%s MQTT disconnect failed: %s", lp, ce)
        else:
            logger.info("%s Disconnected from MQTT broker", lp)
        finally:
            self._connected = False
            for task in (self.start_task, self.publisher_task):
                if task is not None and not task.done():
                    _ = task.cancel()

    async def publish(self, topic: str, msg_data: bytes, retain: bool = False) -> bool:
        """Publish a message to the MQTT broker."""
        lp = f"{self.lp}publish:"
        if not self._connected or self.client is None:
            return False
        try:
            _ = await self.client.publish(topic, msg_data, qos=0, retain=retain)
        except aiomqtt.MqttCodeError as mqtt_code_exc:
            logger.warning("%s [MqttCodeError] -> %s", lp, mqtt_code_exc)
            self._connected = False
        except aiomqtt.MqttError as mqtt_err:
            logger.warning("%s [MqttError] -> %s", lp, mqtt_err)
            self._connected = False
        else:
            return True
        return False

    async def publish_json_msg(self, topic: str, msg_data: dict[str, object], retain: bool = False) -> bool:
        return await self.publish(topic, json.dumps(msg_data).encode(), retain=retain)
