import os
import re

from powerview_bridge import __version__

__all__ = [
    "BRIDGE_OBJ_ID",
    "DEVICE_GROUP_LABEL",
    "API_SRV_START_TASK_NAME",
    "DEVICE_LWT_MSG",
    "MQTT_CLIENT_START_TASK_NAME",
    "ORIGIN_STRUCT",
    "PERSISTENT_BASE_DIR",
    "POWERVIEW_API_HOST",
    "POWERVIEW_API_PORT",
    "POWERVIEW_API_TIMEOUT",
    "POWERVIEW_BATTERY_LEVELS",
    "POWERVIEW_CLOUD_AUTH_PATH",
    "POWERVIEW_CLOUD_BASES",
    "POWERVIEW_CLOUD_EMAIL",
    "POWERVIEW_CLOUD_PASSWORD",
    "POWERVIEW_CONFIG_FILE_PATH",
    "POWERVIEW_DEBUG",
    "POWERVIEW_DEVICES_PATH",
    "POWERVIEW_ENABLE_API",
    "POWERVIEW_HASS_BIRTH_MSG",
    "POWERVIEW_HASS_STATUS_TOPIC",
    "POWERVIEW_HASS_TOPIC",
    "POWERVIEW_HASS_WILL_MSG",
    "POWERVIEW_HUB_IPS",
    "POWERVIEW_IDENTITY_PATH",
    "POWERVIEW_LOG_FORMAT",
    "POWERVIEW_LOG_HUMAN_OUTPUT",
    "POWERVIEW_LOG_JSON_FILE",
    "POWERVIEW_MANUFACTURER",
    "POWERVIEW_MQTT_CONN_DELAY",
    "POWERVIEW_MQTT_HOST",
    "POWERVIEW_MQTT_PASS",
    "POWERVIEW_MQTT_PORT",
    "POWERVIEW_MQTT_USER",
    "POWERVIEW_PERF_THRESHOLD_MS",
    "POWERVIEW_PERF_TRACKING",
    "POWERVIEW_POLL_INTERVAL",
    "POWERVIEW_TOPIC",
    "POWERVIEW_VERSION",
    "SCENE_CLASS_CLOSE",
    "SCENE_CLASS_OPEN",
    "SCENE_CLASS_PRIVACY",
    "SCENE_OPEN_THRESHOLD",
    "SCENE_PRIVACY_THRESHOLD",
    "YES_ANSWER",
    "parse_hub_addresses",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", 1, "on", "o")
POWERVIEW_VERSION: str = __version__
DEVICE_LWT_MSG: bytes = b"offline"
POWERVIEW_MANUFACTURER = "Hunter Douglas"
DEVICE_GROUP_LABEL = "PowerView"

_HUB_SPLIT_RE = re.compile(r"[,;|]")


def parse_hub_addresses(raw: str | None) -> list[str]:
    """Split a hub address list on comma, semicolon or pipe. Order is kept, the first entry is the primary hub."""
    if not raw:
        return []
    addresses: list[str] = []
    for part in _HUB_SPLIT_RE.split(raw):
        address = part.strip()
        if address and address not in addresses:
            addresses.append(address)
    return addresses


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name, "")
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


POWERVIEW_HUB_IPS: list[str] = parse_hub_addresses(os.environ.get("POWERVIEW_HUB_IPS"))
POWERVIEW_POLL_INTERVAL: int = _env_int("POWERVIEW_POLL_INTERVAL", 30)
POWERVIEW_API_TIMEOUT: int = _env_int("POWERVIEW_API_TIMEOUT", 10)

_cloud_email = os.environ.get("POWERVIEW_CLOUD_EMAIL")
POWERVIEW_CLOUD_EMAIL: str | None = _cloud_email if _cloud_email else None
_cloud_password = os.environ.get("POWERVIEW_CLOUD_PASSWORD")
POWERVIEW_CLOUD_PASSWORD: str | None = _cloud_password if _cloud_password else None
POWERVIEW_CLOUD_BASES: tuple[str, ...] = (
    "https://app.powerview.cloud",
    "https://api.hunterdouglascloud.com",
)

POWERVIEW_MQTT_HOST = os.environ.get("POWERVIEW_MQTT_HOST", "homeassistant.local")
POWERVIEW_MQTT_PORT: int = _env_int("POWERVIEW_MQTT_PORT", 1883)
POWERVIEW_MQTT_USER = os.environ.get("POWERVIEW_MQTT_USER")
POWERVIEW_MQTT_PASS = os.environ.get("POWERVIEW_MQTT_PASS")
POWERVIEW_TOPIC = os.environ.get("POWERVIEW_TOPIC", "powerview")
POWERVIEW_HASS_TOPIC = os.environ.get("POWERVIEW_HASS_TOPIC", "homeassistant")
POWERVIEW_HASS_STATUS_TOPIC = os.environ.get("POWERVIEW_HASS_STATUS_TOPIC", "status")
POWERVIEW_HASS_BIRTH_MSG = os.environ.get("POWERVIEW_HASS_BIRTH_MSG", "online")
POWERVIEW_HASS_WILL_MSG = os.environ.get("POWERVIEW_HASS_WILL_MSG", "offline")
POWERVIEW_MQTT_CONN_DELAY: int = _env_int("POWERVIEW_MQTT_CONN_DELAY", 10)

POWERVIEW_DEBUG = os.environ.get("POWERVIEW_DEBUG", "0").casefold() in YES_ANSWER

# operator JSON API (hubs, devices, rediscover)
POWERVIEW_ENABLE_API: bool = os.environ.get("POWERVIEW_ENABLE_API", "0").casefold() in YES_ANSWER
POWERVIEW_API_HOST = os.environ.get("POWERVIEW_API_HOST", "0.0.0.0")  # noqa: S104
POWERVIEW_API_PORT: int = _env_int("POWERVIEW_API_PORT", 8089)

PERSISTENT_BASE_DIR: str = os.environ.get(
    "POWERVIEW_PERSISTENT_BASE_DIR",
    "/homeassistant/.storage/powerview-bridge/config",
)
POWERVIEW_CONFIG_FILE_PATH: str = os.environ.get("POWERVIEW_CONFIG_FILE", f"{PERSISTENT_BASE_DIR}/powerview.yaml")
POWERVIEW_IDENTITY_PATH: str = f"{PERSISTENT_BASE_DIR}/identity_map.yaml"
POWERVIEW_DEVICES_PATH: str = f"{PERSISTENT_BASE_DIR}/devices.yaml"
POWERVIEW_CLOUD_AUTH_PATH: str = f"{PERSISTENT_BASE_DIR}/.cloud_auth.json"

# batteryStatus code reported by the hub -> percent
POWERVIEW_BATTERY_LEVELS: dict[int, int] = {1: 25, 2: 50, 3: 75, 4: 100}

# scene "networkNumber" values the hub assigns to its built-in shade scenes
SCENE_CLASS_OPEN = 45057
SCENE_CLASS_CLOSE = 45058
SCENE_CLASS_PRIVACY = 45060

# command value (0-100) -> scene band for scene-controlled shades
SCENE_OPEN_THRESHOLD = 90
SCENE_PRIVACY_THRESHOLD = 40

BRIDGE_OBJ_ID: str = "powerview_bridge"
MQTT_CLIENT_START_TASK_NAME = "MQTTClient_START"
API_SRV_START_TASK_NAME = "StatusAPI_START"

ORIGIN_STRUCT = {
    "name": "powerview-bridge",
    "sw_version": POWERVIEW_VERSION,
}

# Logging Configuration
POWERVIEW_LOG_FORMAT: str = os.environ.get("POWERVIEW_LOG_FORMAT", "human")  # "json", "human", or "both"
POWERVIEW_LOG_JSON_FILE: str = os.environ.get("POWERVIEW_LOG_JSON_FILE", "")
POWERVIEW_LOG_HUMAN_OUTPUT: str = os.environ.get("POWERVIEW_LOG_HUMAN_OUTPUT", "stdout")  # "stdout", "stderr", or file path

# Performance Instrumentation
POWERVIEW_PERF_TRACKING: bool = os.environ.get("POWERVIEW_PERF_TRACKING", "true").casefold() in YES_ANSWER
_perf_threshold = os.environ.get("POWERVIEW_PERF_THRESHOLD_MS", "2000")
POWERVIEW_PERF_THRESHOLD_MS: int = int(_perf_threshold) if _perf_threshold and _perf_threshold.isdigit() else 2000
