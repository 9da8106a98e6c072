"""A pool of interfaces that can be handed out to pods."""

from __future__ import annotations

import json
import os
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from infraoffload.types import InterfaceInfo


class NoFreeResourcesError(LookupError):
    """Raised when every resource of a pool is in use."""

    def __init__(self) -> None:
        super().__init__("no free resources left")


@dataclass
class Resource:
    """An interface together with its allocation state."""

    interface_info: InterfaceInfo
    in_use: bool = False


def _resource_to_dict(resource: Resource) -> dict[str, Any]:
    return {"interfaceinfo": resource.interface_info.to_dict(), "inuse": resource.in_use}


def _resource_from_dict(data: Any) -> Resource:
    if not isinstance(data, Mapping):
        raise ValueError(f"resource must be an object, got {data!r}")
    info = data.get("interfaceinfo")
    if info is None:
        raise ValueError("resource has no interface info")
    in_use = data.get("inuse", False)
    if in_use is None:
        in_use = False
    if not isinstance(in_use, bool):
        raise ValueError(f"field 'inuse' must be a boolean, got {in_use!r}")
    return Resource(interface_info=InterfaceInfo.from_dict(info), in_use=in_use)


@dataclass
class ResourcePool:
    """Thread-safe set of interfaces, handed out first-free-first."""

    pool: list[Resource] = field(default_factory=list)
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    @classmethod
    def from_interfaces(
        cls, resources: Iterable[InterfaceInfo], cache_path: str | os.PathLike[str]
    ) -> ResourcePool:
        """Build a pool, marking interfaces found in the cache directory as in use."""
        cached = {info.interface_name for info in _cached_interfaces(cache_path)}
        return cls(
            pool=[
                Resource(interface_info=info, in_use=info.interface_name in cached)
                for info in resources
            ]
        )

    def get(self) -> Resource:
        """Mark the first free resource as used and return it."""
        with self._lock:
            for resource in self.pool:
                if not resource.in_use:
                    resource.in_use = True
                    return resource
        raise NoFreeResourcesError()

    def release(self, interface_name: str) -> None:
        """Return the resource with the given interface name to the pool."""
        with self._lock:
            for resource in self.pool:
                if resource.interface_info.interface_name == interface_name:
                    resource.in_use = False
                    break

    def save(self, path: str | os.PathLike[str]) -> None:
        """Write the pool to a JSON file."""
        with self._lock:
            payload = json.dumps({"pool": [_resource_to_dict(r) for r in self.pool]})
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)


def load(path: str | os.PathLike[str]) -> ResourcePool:
    """Read a pool previously written by :meth:`ResourcePool.save`."""
    data = json.loads(Path(path).read_bytes())
    if not isinstance(data, Mapping):
        raise ValueError("resource pool file must hold a JSON object")
    entries = data.get("pool") or []
    if not isinstance(entries, list):
        raise ValueError("field 'pool' must be a list")
    return ResourcePool(pool=[_resource_from_dict(entry) for entry in entries])


def _cached_interfaces(directory: str | os.PathLike[str]) -> list[InterfaceInfo]:
    """Read every interface file in a directory, skipping unreadable ones."""
    try:
        with os.scandir(directory) as iterator:
            entries = sorted(iterator, key=lambda entry: entry.name)
    except OSError:
        return []
    result: list[InterfaceInfo] = []
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            continue
        try:
            data = json.loads(Path(entry.path).read_bytes())
            result.append(InterfaceInfo.from_dict(data))
        except (OSError, ValueError, TypeError):
            continue
    return result