"""Local device store: the bridge's view of the devices it exposes to Home Assistant.

``DeviceProjection`` is the small contract the reconciler and router use.
``LocalDeviceRegistry`` implements it in memory and persists to YAML, so local
references stay stable across restarts. All calls are synchronous.
"""

from __future__ import annotations

import contextlib
from collections.abc import Callable, Generator
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Protocol

import yaml

from powerview_bridge.logging_abstraction import get_logger
from powerview_bridge.utils import read_yaml, set_aside, write_yaml_atomic

logger = get_logger(__name__)

__all__ = [
    "DeviceEvent",
    "DeviceProjection",
    "LocalDevice",
    "LocalDeviceRegistry",
]


class DeviceEvent(StrEnum):
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"


@dataclass
class LocalDevice:
    ref: int
    name: str
    group: str
    parent_ref: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    value: float | None = None
    display: str | None = None


type DeviceListener = Callable[[DeviceEvent, LocalDevice], None]


class DeviceProjection(Protocol):
    def create_device(self, name: str, group: str) -> int: ...

    def create_feature(self, parent_ref: int, name: str) -> int: ...

    def get(self, ref: int) -> LocalDevice | None: ...

    def exists(self, ref: int) -> bool: ...

    def refs(self) -> list[int]: ...

    def delete(self, ref: int) -> None: ...

    def get_metadata(self, ref: int) -> dict[str, Any] | None: ...

    def set_metadata(self, ref: int, metadata: dict[str, Any]) -> None: ...

    def get_value(self, ref: int) -> float | None: ...

    def set_value(self, ref: int, value: float, display: str | None = None) -> None: ...

    def batch(self) -> contextlib.AbstractContextManager[None]: ...


class LocalDeviceRegistry:
    """In-memory device table with YAML persistence and change listeners.

    Args:
        path: YAML file to load from / save to; None keeps everything in memory

    """

    lp: str = "devices:"

    def __init__(self, path: str | Path | None = None) -> None:
        self.path: Path | None = Path(path) if path else None
        self._devices: dict[int, LocalDevice] = {}
        self._next_ref: int = 1
        self._listeners: list[DeviceListener] = []
        self._batch_depth: int = 0
        self._dirty: bool = False

    def add_listener(self, listener: DeviceListener) -> None:
        self._listeners.append(listener)

    def _notify(self, event: DeviceEvent, device: LocalDevice) -> None:
        for listener in self._listeners:
            try:
                listener(event, device)
            except Exception:
                logger.exception("%s listener failed for %s of device %s", self.lp, event, device.ref)

    def load(self) -> None:
        if self.path is None:
            return
        try:
            data = read_yaml(self.path)
        except (yaml.YAMLError, OSError):
            logger.exception("%s Device store %s is unreadable, starting empty", self.lp, self.path)
            _ = set_aside(self.path)
            data = {}
        self._devices = {}
        for raw in data.get("devices") or []:
            try:
                device = LocalDevice(**raw)
            except TypeError as e:
                logger.warning("%s Skipping malformed device entry %r: %s", self.lp, raw, e)
                continue
            self._devices[device.ref] = device
        self._next_ref = max(int(data.get("next_ref", 1)), max(self._devices, default=0) + 1)
        logger.info("%s Loaded %s devices from %s", self.lp, len(self._devices), self.path)

    def save(self) -> None:
        if self.path is None:
            return
        data = {
            "next_ref": self._next_ref,
            "devices": [asdict(d) for d in sorted(self._devices.values(), key=lambda d: d.ref)],
        }
        write_yaml_atomic(self.path, data)
        self._dirty = False

    def _changed(self) -> None:
        self._dirty = True
        if self._batch_depth == 0:
            self.save()

    @contextlib.contextmanager
    def batch(self) -> Generator[None]:
        """Defer saving until the outermost batch exits."""
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                self.save()

    def _add(self, name: str, group: str, parent_ref: int | None) -> int:
        ref = self._next_ref
        self._next_ref += 1
        device = LocalDevice(ref=ref, name=name, group=group, parent_ref=parent_ref)
        self._devices[ref] = device
        self._changed()
        self._notify(DeviceEvent.ADDED, device)
        return ref

    def create_device(self, name: str, group: str) -> int:
        return self._add(name, group, None)

    def create_feature(self, parent_ref: int, name: str) -> int:
        parent = self._devices.get(parent_ref)
        if parent is None:
            raise KeyError(f"parent device {parent_ref} does not exist")
        return self._add(name, parent.group, parent_ref)

    def get(self, ref: int) -> LocalDevice | None:
        return self._devices.get(ref)

    def exists(self, ref: int) -> bool:
        return ref in self._devices

    def refs(self) -> list[int]:
        return list(self._devices)

    def features_of(self, parent_ref: int) -> list[LocalDevice]:
        return [d for d in self._devices.values() if d.parent_ref == parent_ref]

    def delete(self, ref: int) -> None:
        """Delete a device and its features. Unknown refs are ignored."""
        device = self._devices.pop(ref, None)
        if device is None:
            return
        for feature in self.features_of(ref):
            self.delete(feature.ref)
        self._changed()
        self._notify(DeviceEvent.REMOVED, device)

    def get_metadata(self, ref: int) -> dict[str, Any] | None:
        device = self._devices.get(ref)
        if device is None or not device.metadata:
            return None
        return dict(device.metadata)

    def set_metadata(self, ref: int, metadata: dict[str, Any]) -> None:
        device = self._devices[ref]
        if device.metadata == metadata:
            return
        device.metadata = dict(metadata)
        self._changed()
        self._notify(DeviceEvent.UPDATED, device)

    def get_value(self, ref: int) -> float | None:
        device = self._devices.get(ref)
        return device.value if device else None

    def set_value(self, ref: int, value: float, display: str | None = None) -> None:
        device = self._devices.get(ref)
        if device is None:
            logger.debug("%s set_value for unknown ref %s ignored", self.lp, ref)
            return
        if device.value == value and (display is None or device.display == display):
            return
        device.value = value
        if display is not None:
            device.display = display
        self._changed()
        self._notify(DeviceEvent.UPDATED, device)

    def __len__(self) -> int:
        return len(self._devices)
