"""Durable ``(hub, remote id, kind) -> local ref`` mapping.

The mapping is authoritative for "is this hub entity already represented" and
is consulted before any device is created. Stored as YAML with three tables::

    shades:
      "192.168.1.10:168": {ref: 12, open: 171, close: 172, privacy: 173}
    status:
      "192.168.1.10:168:shade-battery-status": {ref: 14}
    scenes:
      "192.168.1.10:171": {ref: 20}
"""

from __future__ import annotations

import contextlib
from collections.abc import Callable, Generator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from powerview_bridge.logging_abstraction import get_logger
from powerview_bridge.structs import DeviceKind
from powerview_bridge.utils import read_yaml, set_aside, write_yaml_atomic

logger = get_logger(__name__)

SHADES = "shades"
STATUS = "status"
SCENES = "scenes"
NAMESPACES = (SHADES, STATUS, SCENES)


def namespace_for(kind: DeviceKind) -> str:
    if kind is DeviceKind.SHADE_CONTROL:
        return SHADES
    if kind is DeviceKind.SCENE_ACTIVATOR:
        return SCENES
    return STATUS


@dataclass(frozen=True)
class IdentityKey:
    hub: str
    remote_id: int
    kind: DeviceKind

    @property
    def namespace(self) -> str:
        return namespace_for(self.kind)

    def encode(self) -> str:
        if self.namespace == STATUS:
            return f"{self.hub}:{self.remote_id}:{self.kind.value}"
        return f"{self.hub}:{self.remote_id}"

    @classmethod
    def decode(cls, namespace: str, key: str) -> IdentityKey | None:
        try:
            if namespace == STATUS:
                head, _, kind_value = key.rpartition(":")
                hub, _, remote_id = head.rpartition(":")
                kind = DeviceKind(kind_value)
            else:
                hub, _, remote_id = key.rpartition(":")
                kind = DeviceKind.SHADE_CONTROL if namespace == SHADES else DeviceKind.SCENE_ACTIVATOR
            return cls(hub=hub, remote_id=int(remote_id), kind=kind)
        except ValueError:
            return None


@dataclass
class IdentityRecord:
    key: IdentityKey
    ref: int
    extra: dict[str, Any] = field(default_factory=dict)


class IdentityStore:
    """Identity mapping backed by a YAML file.

    Args:
        path: YAML file; None keeps the mapping in memory only
        ref_exists: callback into the device store used to detect stale entries

    """

    lp: str = "identity:"

    def __init__(self, path: str | Path | None, ref_exists: Callable[[int], bool]) -> None:
        self.path: Path | None = Path(path) if path else None
        self._ref_exists = ref_exists
        self._tables: dict[str, dict[str, dict[str, Any]]] = {ns: {} for ns in NAMESPACES}
        self._batch_depth: int = 0
        self._dirty: bool = False

    def load(self) -> None:
        if self.path is None:
            return
        try:
            data = read_yaml(self.path)
        except (yaml.YAMLError, OSError):
            logger.exception("%s Identity mapping %s is unreadable, starting empty", self.lp, self.path)
            _ = set_aside(self.path)
            data = {}
        for ns in NAMESPACES:
            table = data.get(ns)
            if not isinstance(table, dict):
                table = {}
            self._tables[ns] = {str(k): dict(v) for k, v in table.items() if isinstance(v, dict) and "ref" in v}
        logger.info(
            "%s Loaded identity mapping",
            self.lp,
            extra={ns: len(self._tables[ns]) for ns in NAMESPACES},
        )

    def save(self) -> None:
        if self.path is not None:
            write_yaml_atomic(self.path, self._tables)
        self._dirty = False

    def _changed(self) -> None:
        self._dirty = True
        if self._batch_depth == 0:
            self.save()

    @contextlib.contextmanager
    def batch(self) -> Generator[None]:
        self._batch_depth += 1
        try:
            yield
        finally:
            self._batch_depth -= 1
            if self._batch_depth == 0 and self._dirty:
                self.save()

    def _entry(self, key: IdentityKey) -> dict[str, Any] | None:
        return self._tables[key.namespace].get(key.encode())

    def lookup(self, hub: str, remote_id: int, kind: DeviceKind) -> int | None:
        """Mapped local ref, or None. An entry whose device no longer exists is removed."""
        key = IdentityKey(hub, remote_id, kind)
        entry = self._entry(key)
        if entry is None:
            return None
        ref = int(entry["ref"])
        if not self._ref_exists(ref):
            logger.info("%s Clearing stale mapping %s -> %s", self.lp, key.encode(), ref)
            del self._tables[key.namespace][key.encode()]
            self._changed()
            return None
        return ref

    def get_record(self, hub: str, remote_id: int, kind: DeviceKind) -> IdentityRecord | None:
        key = IdentityKey(hub, remote_id, kind)
        entry = self._entry(key)
        if entry is None:
            return None
        return IdentityRecord(key=key, ref=int(entry["ref"]), extra={k: v for k, v in entry.items() if k != "ref"})

    def put(self, hub: str, remote_id: int, kind: DeviceKind, ref: int, **extra: Any) -> None:
        """Upsert a mapping. Extra fields are merged, a None value removes the field."""
        key = IdentityKey(hub, remote_id, kind)
        table = self._tables[key.namespace]
        entry = dict(table.get(key.encode(), {}))
        entry["ref"] = ref
        for name, value in extra.items():
            if value is None:
                entry.pop(name, None)
            else:
                entry[name] = value
        if table.get(key.encode()) != entry:
            table[key.encode()] = entry
            self._changed()

    def reverse_lookup(self, ref: int) -> IdentityRecord | None:
        for ns, table in self._tables.items():
            for encoded, entry in table.items():
                if int(entry.get("ref", -1)) != ref:
                    continue
                key = IdentityKey.decode(ns, encoded)
                if key is not None:
                    return IdentityRecord(key=key, ref=ref, extra={k: v for k, v in entry.items() if k != "ref"})
        return None

    def invalidate(self, hub: str, remote_id: int, kind: DeviceKind) -> None:
        key = IdentityKey(hub, remote_id, kind)
        if self._tables[key.namespace].pop(key.encode(), None) is not None:
            self._changed()

    def invalidate_ref(self, ref: int) -> None:
        """Drop every mapping that points at ``ref`` (the device was deleted)."""
        removed = False
        for table in self._tables.values():
            for encoded in [k for k, v in table.items() if int(v.get("ref", -1)) == ref]:
                del table[encoded]
                removed = True
        if removed:
            self._changed()

    def clear(self) -> None:
        self._tables = {ns: {} for ns in NAMESPACES}
        self._changed()

    def records(self) -> list[IdentityRecord]:
        result: list[IdentityRecord] = []
        for ns, table in self._tables.items():
            for encoded, entry in table.items():
                key = IdentityKey.decode(ns, encoded)
                if key is not None:
                    extra = {k: v for k, v in entry.items() if k != "ref"}
                    result.append(IdentityRecord(key=key, ref=int(entry["ref"]), extra=extra))
        return result

    def __len__(self) -> int:
        return sum(len(t) for t in self._tables.values())
