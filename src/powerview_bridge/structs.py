from __future__ import annotations

import asyncio
import os
import re
from argparse import Namespace
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

from pydantic import BaseModel, Field, ValidationError, field_validator

from powerview_bridge.const import (
    PERSISTENT_BASE_DIR,
    POWERVIEW_HUB_IPS,
    SCENE_CLASS_CLOSE,
    SCENE_CLASS_OPEN,
    SCENE_CLASS_PRIVACY,
    parse_hub_addresses,
)

if TYPE_CHECKING:
    import uvloop

    from powerview_bridge.poller import HubPoller

__all__ = [
    "BridgeConfig",
    "BridgeEnv",
    "DeviceKind",
    "DeviceLink",
    "GatewayInfo",
    "GlobalObject",
    "Hub",
    "HubClientProtocol",
    "HubConfig",
    "HubRole",
    "Scene",
    "SceneLinks",
    "SceneRole",
    "Shade",
    "infer_scene_role",
]


class HubRole(StrEnum):
    PRIMARY = "primary"
    SECONDARY = "secondary"


class DeviceKind(StrEnum):
    SHADE_CONTROL = "shade-control"
    SHADE_POSITION = "shade-position-status"
    SHADE_BATTERY = "shade-battery-status"
    SHADE_SIGNAL = "shade-signal-status"
    SCENE_ACTIVATOR = "scene-activator"

    @property
    def is_shade_status(self) -> bool:
        return self in (DeviceKind.SHADE_POSITION, DeviceKind.SHADE_BATTERY, DeviceKind.SHADE_SIGNAL)

    @property
    def is_shade(self) -> bool:
        return self is DeviceKind.SHADE_CONTROL or self.is_shade_status


SHADE_STATUS_KINDS: tuple[DeviceKind, ...] = (
    DeviceKind.SHADE_POSITION,
    DeviceKind.SHADE_BATTERY,
    DeviceKind.SHADE_SIGNAL,
)


class SceneRole(StrEnum):
    OPEN = "open"
    CLOSE = "close"
    PRIVACY = "privacy"


_ROLE_BY_CLASS: dict[int, SceneRole] = {
    SCENE_CLASS_OPEN: SceneRole.OPEN,
    SCENE_CLASS_CLOSE: SceneRole.CLOSE,
    SCENE_CLASS_PRIVACY: SceneRole.PRIVACY,
}
_ROLE_KEYWORDS: tuple[tuple[SceneRole, re.Pattern[str]], ...] = (
    (SceneRole.OPEN, re.compile(r"\b(open|up|raise)\b", re.IGNORECASE)),
    (SceneRole.CLOSE, re.compile(r"\b(close|down|lower)\b", re.IGNORECASE)),
    (SceneRole.PRIVACY, re.compile(r"\bprivacy\b", re.IGNORECASE)),
)


def infer_scene_role(name: str, network_number: int | None = None) -> SceneRole | None:
    """Scene role from the hub's built-in scene class, else from whole-word keywords in the name."""
    if network_number is not None and network_number in _ROLE_BY_CLASS:
        return _ROLE_BY_CLASS[network_number]
    for role, pattern in _ROLE_KEYWORDS:
        if pattern.search(name or ""):
            return role
    return None


class Shade(BaseModel):
    """Shade as reported by a hub. ``hub`` is the address of the gateway that owns it."""

    id: int
    name: str = ""
    hub: str
    position: float | None = None  # 0.0 closed .. 1.0 open
    battery: int | None = None  # percent
    signal: int | None = None  # percent
    shade_type: int | None = None

    @property
    def position_percent(self) -> int | None:
        if self.position is None:
            return None
        return max(0, min(100, round(self.position * 100)))


class Scene(BaseModel):
    id: int
    name: str = ""
    hub: str
    network_number: int | None = None
    shade_ids: list[int] = Field(default_factory=list)
    room_ids: list[int] = Field(default_factory=list)

    @property
    def role(self) -> SceneRole | None:
        return infer_scene_role(self.name, self.network_number)


class GatewayInfo(BaseModel):
    name: str | None = None
    serial: str | None = None
    firmware: str | None = None


class SceneLinks(BaseModel):
    """Scene ids that drive a scene-controlled shade. ``hub`` is where the scenes live (the primary)."""

    open: int | None = None
    close: int | None = None
    privacy: int | None = None
    hub: str | None = None

    @property
    def is_linked(self) -> bool:
        return self.open is not None or self.close is not None or self.privacy is not None

    def get(self, role: SceneRole) -> int | None:
        return getattr(self, role.value)


class DeviceLink(BaseModel):
    """Control metadata stored on every local device this bridge owns."""

    kind: DeviceKind
    hub: str
    remote_id: int
    scenes: SceneLinks = Field(default_factory=SceneLinks)
    scene_name: str | None = None

    @classmethod
    def from_metadata(cls, metadata: dict[str, Any] | None) -> DeviceLink | None:
        """Decode a metadata blob. Blobs that are missing or not ours return None."""
        if not metadata:
            return None
        try:
            return cls.model_validate(metadata)
        except ValidationError:
            return None

    def to_metadata(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class HubConfig(BaseModel):
    address: str
    role: HubRole | None = None


class BridgeConfig(BaseModel):
    """Settings read from the YAML config file (``hubs``, ``scene_aliases``, ``cloud``)."""

    hubs: list[HubConfig] = Field(default_factory=list)
    scene_aliases: dict[str, str] = Field(default_factory=dict)
    cloud_email: str | None = None
    cloud_password: str | None = None

    @field_validator("hubs", mode="before")
    @classmethod
    def _coerce_hubs(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [{"address": a} for a in parse_hub_addresses(value)]
        if isinstance(value, list):
            return [{"address": item} if isinstance(item, str) else item for item in value]
        return value

    def hub_addresses(self, fallback: list[str] | None = None) -> list[tuple[str, HubRole]]:
        """Configured hubs with roles. An unmarked first hub is the primary, the rest are secondary.

        ``fallback`` (default ``POWERVIEW_HUB_IPS``) is used when the file lists no hubs.
        """
        env_hubs = POWERVIEW_HUB_IPS if fallback is None else fallback
        hubs = self.hubs or [HubConfig(address=a) for a in env_hubs]
        result: list[tuple[str, HubRole]] = []
        has_primary = any(h.role is HubRole.PRIMARY for h in hubs)
        for idx, hub in enumerate(hubs):
            role = hub.role
            if role is None:
                role = HubRole.PRIMARY if idx == 0 and not has_primary else HubRole.SECONDARY
            result.append((hub.address, role))
        return result

    def resolve_alias(self, name: str) -> tuple[str, int] | None:
        """``"Living Room Privacy" -> ("192.168.1.10", 171)`` from a ``hub:scene_id`` alias."""
        target = self.scene_aliases.get(name)
        if target is None:
            folded = name.casefold()
            target = next((v for k, v in self.scene_aliases.items() if k.casefold() == folded), None)
        if not target or ":" not in target:
            return None
        hub, _, scene_id = target.rpartition(":")
        try:
            return hub, int(scene_id)
        except ValueError:
            return None


class HubClientProtocol(Protocol):
    """Protocol for hub clients (breaks the structs <-> hub_client import cycle)."""

    address: str

    async def list_shades(self) -> list[Shade]: ...

    async def get_shade_detail(self, shade_id: int, gateway: str | None = None) -> Shade: ...

    async def set_position(self, shade_id: int, position: float) -> None: ...

    async def list_scenes(self) -> list[Scene]: ...

    async def activate_scene(self, scene_id: int) -> None: ...

    async def fetch_gateway_info(self) -> GatewayInfo: ...

    async def close(self) -> None: ...


@dataclass
class Hub:
    """One physical gateway. Registered from config or on first sight of its address, never removed."""

    address: str
    role: HubRole
    client: HubClientProtocol
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    discovery_in_progress: bool = False
    can_list_scenes: bool = True
    can_set_position: bool = True
    # gateway addresses whose shades appeared in this hub's last successful listing
    covered_gateways: set[str] = field(default_factory=set)
    not_primary_logged: bool = False
    poller: HubPoller | None = None

    @property
    def is_primary(self) -> bool:
        return self.role is HubRole.PRIMARY


class BridgeEnv(BaseModel):
    """Environment values that can change after a ``--env`` file is loaded."""

    hub_ips: list[str] = Field(default_factory=list)
    mqtt_host: str | None = None
    mqtt_port: int | None = None
    mqtt_user: str | None = None
    mqtt_pass: str | None = None
    mqtt_topic: str | None = None
    mqtt_hass_topic: str | None = None
    cloud_email: str | None = None
    cloud_password: str | None = None
    persistent_base_dir: str | None = None


class GlobalObject:
    """Singleton container for process-wide services (signal handling and shutdown reach them here)."""

    bridge: Any = None
    mqtt_client: Any = None
    api_server: Any = None
    loop: uvloop.Loop | asyncio.AbstractEventLoop | None = None
    tasks: ClassVar[list[asyncio.Task[Any]]] = []
    env: BridgeEnv = BridgeEnv()
    cli_args: Namespace | None = None

    _instance: GlobalObject | None = None

    def __new__(cls, *_args: Any, **_kwargs: Any) -> GlobalObject:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def reload_env(self) -> None:
        """Re-read environment variables (after a dotenv file was loaded)."""
        self.env.hub_ips = parse_hub_addresses(os.environ.get("POWERVIEW_HUB_IPS"))
        self.env.mqtt_host = os.environ.get("POWERVIEW_MQTT_HOST", "homeassistant.local")
        self.env.mqtt_port = int(os.environ.get("POWERVIEW_MQTT_PORT", "1883") or 1883)
        self.env.mqtt_user = os.environ.get("POWERVIEW_MQTT_USER")
        self.env.mqtt_pass = os.environ.get("POWERVIEW_MQTT_PASS")
        self.env.mqtt_topic = os.environ.get("POWERVIEW_TOPIC", "powerview")
        self.env.mqtt_hass_topic = os.environ.get("POWERVIEW_HASS_TOPIC", "homeassistant")
        self.env.cloud_email = os.environ.get("POWERVIEW_CLOUD_EMAIL") or None
        self.env.cloud_password = os.environ.get("POWERVIEW_CLOUD_PASSWORD") or None
        self.env.persistent_base_dir = os.environ.get("POWERVIEW_PERSISTENT_BASE_DIR", PERSISTENT_BASE_DIR)
