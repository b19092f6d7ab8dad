from __future__ import annotations

import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Any

import yaml

from powerview_bridge.const import PERSISTENT_BASE_DIR
from powerview_bridge.logging_abstraction import get_logger
from powerview_bridge.structs import GlobalObject

logger = get_logger(__name__)
g = GlobalObject()


def send_signal(signal_num: int) -> None:
    try:
        logger.debug("Sending signal %s to process %s", signal_num, os.getpid())
        os.kill(os.getpid(), signal_num)
    except OSError:
        logger.exception("Failed to send signal %s to process", signal_num)
        raise


def send_sigterm() -> None:
    """Ask the process to shut down (runs the same cleanup as Ctrl-C)."""
    send_signal(signal.SIGTERM)


async def _async_signal_cleanup() -> None:
    logger.info("PowerView Bridge: Starting signal cleanup...")
    if g.bridge:
        logger.debug("Stopping bridge...")
        await g.bridge.stop()
    if g.mqtt_client:
        logger.debug("Stopping mqtt_client...")
        await g.mqtt_client.stop()
    if g.api_server:
        logger.debug("Stopping status API...")
        await g.api_server.stop()
    for task in g.tasks:
        if not task.done():
            logger.debug("PowerView Bridge: Cancelling task: %s", task.get_name())
            _ = task.cancel()
    logger.info("PowerView Bridge: Signal cleanup completed")


def signal_handler(signum: int) -> None:
    logger.info("PowerView Bridge: Intercepted signal: %s (%s)", signal.Signals(signum).name, signum)
    loop = g.loop or asyncio.get_event_loop()
    _ = loop.create_task(_async_signal_cleanup())


def ensure_persistent_dir(base_dir: str | None = None) -> Path:
    """Create the directory that holds the config, identity map and device store; exit if impossible."""
    lp = "ensure_persistent_dir:"
    persistent_dir = Path(base_dir or PERSISTENT_BASE_DIR).expanduser().resolve()
    if not persistent_dir.exists():
        try:
            persistent_dir.mkdir(parents=True, exist_ok=True)
            logger.info("%s Created persistent directory: %s", lp, persistent_dir.as_posix())
        except OSError:
            logger.exception("%s Failed to create persistent directory: %s - Exiting...", lp, persistent_dir)
            sys.exit(1)
    return persistent_dir


def read_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML mapping; a missing or empty file is an empty dict.

    Raises:
        yaml.YAMLError: the file is not valid YAML
        OSError: the file exists but cannot be read

    """
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def set_aside(path: Path) -> Path | None:
    """Rename an unreadable state file to ``<name>.corrupt`` so the next save starts clean without losing it."""
    target = path.with_suffix(path.suffix + ".corrupt")
    try:
        path.replace(target)
    except OSError:
        logger.exception("set_aside: Failed to move %s out of the way", path)
        return None
    return target


def write_yaml_atomic(path: Path, data: Any) -> None:
    """Write through a temp file + rename so a crash never leaves a half-written file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False)
    tmp_path.replace(path)
