"""Device plugin that advertises Intel GPUs found in sysfs."""

from __future__ import annotations

import logging
import os
import re
import threading
from pathlib import Path

from accelplugins.devicetree import DeviceInfo, DeviceSpec, DeviceTree, Health, Notifier

log = logging.getLogger(__name__)

SYSFS_DRM_DIRECTORY = "/sys/class/drm"
DEVFS_DRI_DIRECTORY = "/dev/dri"
VENDOR_STRING = "0x8086"
NAMESPACE = "gpu.intel.com"
DEVICE_TYPE = "i915"
SCAN_PERIOD = 5.0

_GPU_DEVICE_RE = re.compile(r"card[0-9]+")
_CONTROL_DEVICE_RE = re.compile(r"controlD[0-9]+")


class GpuPlugin:
    """Periodically scans for Intel GPUs and reports them to a notifier."""

    def __init__(
        self,
        sysfs_dir: str | os.PathLike,
        devfs_dir: str | os.PathLike,
        shared_dev_num: int = 1,
        scan_period: float = SCAN_PERIOD,
    ) -> None:
        if shared_dev_num < 1:
            raise ValueError("The number of containers sharing the same GPU must be greater than zero")
        self.sysfs_dir = Path(sysfs_dir)
        self.devfs_dir = Path(devfs_dir)
        self.shared_dev_num = shared_dev_num
        self.scan_period = scan_period
        self._done = threading.Event()

    def scan_once(self) -> DeviceTree:
        """Scan sysfs once and return the devices found.

        Raises OSError when the sysfs or a GPU's drm folder cannot be read.
        """
        tree = DeviceTree()
        for name in sorted(os.listdir(self.sysfs_dir)):
            if not _GPU_DEVICE_RE.fullmatch(name):
                log.debug("Not compatible device %s", name)
                continue
            try:
                vendor = (self.sysfs_dir / name / "device" / "vendor").read_text()
            except OSError as err:
                log.warning("Skipping. Can't read vendor file: %s", err)
                continue
            if vendor.strip() != VENDOR_STRING:
                log.debug("Non-Intel GPU %s", name)
                continue

            nodes = []
            for drm_name in sorted(os.listdir(self.sysfs_dir / name / "device" / "drm")):
                if _CONTROL_DEVICE_RE.fullmatch(drm_name):
                    continue
                dev_path = self.devfs_dir / drm_name
                if not dev_path.exists():
                    continue
                log.debug("Adding %s to GPU %s", dev_path, name)
                nodes.append(DeviceSpec.rw(str(dev_path)))

            if nodes:
                info = DeviceInfo(Health.HEALTHY, nodes)
                for index in range(self.shared_dev_num):
                    tree.add_device(DEVICE_TYPE, f"{name}-{index}", info)
        return tree

    def scan(self, notifier: Notifier) -> None:
        """Report device trees to ``notifier`` until :meth:`stop` is called."""
        previously_found = -1
        try:
            while True:
                try:
                    tree = self.scan_once()
                except OSError as err:
                    log.warning("Failed to scan: %s", err)
                    tree = DeviceTree()

                found = len(tree)
                if found != previously_found:
                    log.info("GPU scan update: devices found: %d", found)
                    previously_found = found

                notifier.notify(tree)
                if self._done.wait(self.scan_period):
                    return
        finally:
            self._done.clear()

    def stop(self) -> None:
        """Ask a running (or the next) :meth:`scan` to return."""
        self._done.set()