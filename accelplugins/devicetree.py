"""Device tree types shared by the device plugins."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Iterable


class Health(str, enum.Enum):
    """Health state reported for a device."""

    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"


@dataclass(frozen=True)
class DeviceSpec:
    """A device node made available to a container."""

    host_path: str
    container_path: str
    permissions: str

    @staticmethod
    def rw(path: str) -> "DeviceSpec":
        """Return a read-write spec mapping ``path`` to the same container path."""
        return DeviceSpec(host_path=path, container_path=path, permissions="rw")


@dataclass(frozen=True)
class DeviceInfo:
    """Everything needed to hand one device to a container."""

    state: Health
    nodes: tuple[DeviceSpec, ...] = ()
    mounts: tuple[str, ...] = ()
    envs: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", tuple(self.nodes))
        object.__setattr__(self, "mounts", tuple(self.mounts))


class DeviceTree(dict):
    """Mapping of device type to a mapping of device id to :class:`DeviceInfo`."""

    def add_device(self, dev_type: str, dev_id: str, info: DeviceInfo) -> None:
        """Register ``info`` under ``dev_type`` with id ``dev_id``."""
        self.setdefault(dev_type, {})[dev_id] = info

    def device_ids(self, dev_type: str) -> Iterable[str]:
        """Return the ids registered for ``dev_type``."""
        return tuple(self.get(dev_type, {}))


class Notifier:
    """Receives device trees from a scanning plugin.

    The base implementation keeps the latest tree and a count of updates;
    subclasses override :meth:`notify` to act on them.
    """

    def __init__(self) -> None:
        self.latest: DeviceTree | None = None
        self.updates = 0

    def notify(self, tree: DeviceTree) -> None:
        """Accept a freshly scanned device tree."""
        self.latest = tree
        self.updates += 1