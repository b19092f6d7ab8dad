from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from functools import partial
from pathlib import Path
from typing import Any

import dotenv
import uvloop
import yaml
from pydantic import ValidationError

from powerview_bridge.bridge import PowerViewBridge
from powerview_bridge.cloud_api import PowerViewCloudAPI
from powerview_bridge.const import (
    API_SRV_START_TASK_NAME,
    MQTT_CLIENT_START_TASK_NAME,
    POWERVIEW_CLOUD_AUTH_PATH,
    POWERVIEW_CONFIG_FILE_PATH,
    POWERVIEW_DEBUG,
    POWERVIEW_DEVICES_PATH,
    POWERVIEW_ENABLE_API,
    POWERVIEW_IDENTITY_PATH,
    POWERVIEW_VERSION,
)
from powerview_bridge.correlation import correlation_context, ensure_correlation_id
from powerview_bridge.identity_store import IdentityStore
from powerview_bridge.logging_abstraction import get_logger, set_debug
from powerview_bridge.mqtt import MQTTClient
from powerview_bridge.projection import LocalDeviceRegistry
from powerview_bridge.status_api import StatusAPIServer
from powerview_bridge.structs import BridgeConfig, GlobalObject
from powerview_bridge.utils import ensure_persistent_dir, read_yaml, signal_handler

logger = get_logger(__name__)

# aiomqtt / paho are chatty at INFO
mqtt_logger = logging.getLogger("mqtt")
mqtt_logger.setLevel(logging.ERROR)
mqtt_logger.propagate = False

# uvicorn access logs every status API request
uvi_logger = logging.getLogger("uvicorn")
uvi_access_logger = logging.getLogger("uvicorn.access")
uvi_logger.setLevel(logging.WARNING)
uvi_access_logger.setLevel(logging.WARNING)

g = GlobalObject()

BRIDGE_START_TASK_NAME = "PowerViewBridge_START"


def load_bridge_config(config_file: Path) -> BridgeConfig:
    """Parse the YAML config file. A missing or invalid file yields an empty config.

    Example::

        hubs:
          - address: 192.168.1.10
            role: primary
          - 192.168.1.11
        scene_aliases:
          Living Room Privacy: "192.168.1.10:171"
        cloud:
          email: me@example.com
          password: secret
    """
    try:
        data: dict[str, Any] = read_yaml(config_file)
    except (yaml.YAMLError, OSError):
        logger.exception("Config file %s is unreadable, ignoring it", config_file)
        return BridgeConfig()
    if not data:
        logger.info("No config file at %s, using environment settings", config_file)
        return BridgeConfig()
    cloud = data.pop("cloud", None) or {}
    if isinstance(cloud, dict):
        data.setdefault("cloud_email", cloud.get("email"))
        data.setdefault("cloud_password", cloud.get("password"))
    try:
        config = BridgeConfig.model_validate(data)
    except ValidationError:
        logger.exception("Invalid config file %s, ignoring it", config_file)
        return BridgeConfig()
    logger.info(
        "Loaded config file",
        extra={"path": str(config_file), "hubs": len(config.hubs), "scene_aliases": len(config.scene_aliases)},
    )
    return config


class PowerViewController:
    lp: str = "PowerViewController:"
    _instance: PowerViewController | None = None

    def __new__(cls, *args: object, **kwargs: object) -> PowerViewController:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self) -> None:
        asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        g.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(g.loop)
        logger.info(" Initializing PowerView Bridge", extra={"version": POWERVIEW_VERSION})
        g.loop.add_signal_handler(signal.SIGINT, partial(signal_handler, signal.SIGINT))
        g.loop.add_signal_handler(signal.SIGTERM, partial(signal_handler, signal.SIGTERM))
        logger.debug("Signal handlers configured for SIGINT & SIGTERM")

    async def start(self) -> None:
        """Build the bridge and the MQTT client and run them until shutdown."""
        _ = ensure_correlation_id()
        g.reload_env()
        base_dir = ensure_persistent_dir(g.env.persistent_base_dir)
        cli_config = g.cli_args.config if g.cli_args else None
        config = load_bridge_config(Path(cli_config or POWERVIEW_CONFIG_FILE_PATH).expanduser().resolve())

        registry = LocalDeviceRegistry(base_dir / Path(POWERVIEW_DEVICES_PATH).name)
        registry.load()
        identity = IdentityStore(base_dir / Path(POWERVIEW_IDENTITY_PATH).name, ref_exists=registry.exists)
        identity.load()
        cloud = PowerViewCloudAPI(
            email=config.cloud_email or g.env.cloud_email,
            password=config.cloud_password or g.env.cloud_password,
            auth_cache_file=str(base_dir / Path(POWERVIEW_CLOUD_AUTH_PATH).name),
        )
        g.bridge = bridge = PowerViewBridge(
            config,
            registry,
            identity,
            cloud=cloud,
            hub_addresses=config.hub_addresses(fallback=g.env.hub_ips),
        )
        g.mqtt_client = mqtt_client = MQTTClient(bridge, registry)

        mqtt_client.start_task = m_start = asyncio.Task(mqtt_client.start(), name=MQTT_CLIENT_START_TASK_NAME)
        b_start = asyncio.Task(self._start_bridge(bridge), name=BRIDGE_START_TASK_NAME)
        g.tasks.extend([m_start, b_start])
        if POWERVIEW_ENABLE_API:
            g.api_server = api_server = StatusAPIServer()
            api_server.start_task = a_start = asyncio.Task(api_server.start(), name=API_SRV_START_TASK_NAME)
            g.tasks.append(a_start)
        logger.info(" Starting bridge and MQTT client...")
        try:
            _ = await asyncio.gather(*g.tasks, return_exceptions=True)
        except Exception as e:
            logger.exception(" Service startup failed", extra={"error": str(e)})
            raise

    async def _start_bridge(self, bridge: PowerViewBridge) -> None:
        await bridge.start()
        if g.cli_args and g.cli_args.rediscover:
            logger.info(" --rediscover given, rebuilding all devices")
            _ = await bridge.rediscover()


def parse_cli() -> None:
    parser = argparse.ArgumentParser(description="PowerView Bridge")
    parser.add_argument("-D", "--debug", action="store_true", help="Enable debug mode")
    _ = parser.add_argument("--env", help="Path to the environment file", default=None, type=Path)
    _ = parser.add_argument("--config", help="Path to the YAML config file", default=None, type=Path)
    _ = parser.add_argument(
        "--rediscover",
        action="store_true",
        help="Delete all devices and discover them again after startup",
    )
    g.cli_args = args = parser.parse_args()

    if args.debug:
        set_debug(True)
        logger.info("Debug mode enabled via CLI argument")

    if args.env:
        env_path = args.env.expanduser().resolve()
        if not env_path.exists():
            logger.error("Environment file not found", extra={"path": str(env_path)})
        elif dotenv.load_dotenv(env_path, override=True):
            logger.info(" Environment variables loaded", extra={"source": str(env_path)})
            g.reload_env()
        else:
            logger.warning("No environment variables loaded from file", extra={"path": str(env_path)})


def main() -> None:
    """Entry point for the ``powerview-bridge`` command."""
    with correlation_context():
        logger.info("Starting PowerView Bridge", extra={"version": POWERVIEW_VERSION})
        parse_cli()
        if POWERVIEW_DEBUG:
            logger.info("Debug logging enabled via configuration")
            set_debug(True)

        controller = PowerViewController()
        try:
            assert g.loop is not None
            g.loop.run_until_complete(controller.start())
        except asyncio.CancelledError:
            logger.info("PowerView Bridge cancelled, shutting down...")
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
        except Exception as e:
            logger.exception(" Fatal error in main loop", extra={"error": str(e)})
        else:
            logger.info(" PowerView Bridge stopped gracefully")
        finally:
            if g.loop is not None and not g.loop.is_closed():
                g.loop.close()
            logger.info("PowerView Bridge shutdown complete")


if __name__ == "__main__":
    main()
