"""Device plugin that advertises FPGA regions and accelerator functions."""

from __future__ import annotations

import enum
import functools
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable

from accelplugins.devicetree import DeviceInfo, DeviceSpec, DeviceTree, Health, Notifier

log = logging.getLogger(__name__)

DEVFS_DIRECTORY = "/dev"
SYSFS_DIRECTORY_OPAE = "/sys/class/fpga"
SYSFS_DIRECTORY_DFL = "/sys/class/fpga_region"

NAMESPACE = "fpga.intel.com"
ANNOTATION_NAME = "com.intel.fpga.mode"

# Values the driver reports when the device's firmware has crashed.
UNHEALTHY_AFU_ID = "ffffffffffffffffffffffffffffffff"
UNHEALTHY_INTERFACE_ID = "ffffffffffffffffffffffffffffffff"

SCAN_PERIOD = 5.0

DFL_DEVICE_RE = r"^region[0-9]+$"
DFL_PORT_RE = r"^dfl-port\.[0-9]+$"
OPAE_DEVICE_RE = r"^intel-fpga-dev.[0-9]+$"
OPAE_PORT_RE = r"^intel-fpga-port.[0-9]+$"

DevTypeOf = Callable[[str, str], str]
"""Maps an interface id and an AFU id to a resource name; raises ValueError on failure."""


class FpgaPluginError(Exception):
    """Raised when FPGA devices cannot be set up or scanned."""


class Mode(str, enum.Enum):
    """Scanner's mode of operation."""

    AF = "af"
    REGION = "region"
    REGION_DEVEL = "regiondevel"


@dataclass
class Afu:
    """An accelerator function port."""

    id: str
    afu_id: str
    dev_node: str


@dataclass
class Region:
    """A reconfigurable region with the ports that belong to it."""

    id: str
    interface_id: str
    dev_node: str
    afus: list[Afu] = field(default_factory=list)


@dataclass
class Device:
    """An FPGA device and its regions."""

    name: str
    regions: list[Region] = field(default_factory=list)


class Fme:
    """An FPGA management engine as seen by the plugin."""

    def __init__(self, name: str, interface_uuid: str, dev_path: str) -> None:
        self._name = name
        self._interface_uuid = interface_uuid
        self._dev_path = dev_path

    def name(self) -> str:
        """Return the FME's device name."""
        return self._name

    def interface_uuid(self) -> str:
        """Return the interface id of the region the FME manages."""
        return self._interface_uuid

    def dev_path(self) -> str:
        """Return the FME's device node path."""
        return self._dev_path


class Port:
    """An FPGA port as seen by the plugin."""

    def __init__(self, name: str, accelerator_type_uuid: str, dev_path: str, fme: Fme) -> None:
        self._name = name
        self._accelerator_type_uuid = accelerator_type_uuid
        self._dev_path = dev_path
        self._fme = fme

    def name(self) -> str:
        """Return the port's device name."""
        return self._name

    def accelerator_type_uuid(self) -> str:
        """Return the id of the function programmed into the port."""
        return self._accelerator_type_uuid

    def dev_path(self) -> str:
        """Return the port's device node path."""
        return self._dev_path

    def fme(self) -> Fme:
        """Return the management engine the port belongs to."""
        return self._fme


@dataclass
class ContainerResponse:
    """The part of an allocation response for one container."""

    annotations: dict[str, str] = field(default_factory=dict)


def _health(value: str, unhealthy: str) -> Health:
    return Health.UNHEALTHY if value == unhealthy else Health.HEALTHY


def _regions(devices: Iterable[Device]) -> Iterable[Region]:
    return (region for dev in devices for region in dev.regions)


def get_region_devel_tree(devices: Iterable[Device]) -> DeviceTree:
    """Map region interface ids to their AF ports and FME devices."""
    tree = DeviceTree()
    for region in _regions(devices):
        nodes = [DeviceSpec.rw(afu.dev_node) for afu in region.afus]
        nodes.append(DeviceSpec.rw(region.dev_node))
        health = _health(region.interface_id, UNHEALTHY_INTERFACE_ID)
        tree.add_device(f"{Mode.REGION.value}-{region.interface_id}", region.id, DeviceInfo(health, nodes))
    return tree


def get_region_tree(devices: Iterable[Device]) -> DeviceTree:
    """Map region interface ids to their AF ports only."""
    tree = DeviceTree()
    for region in _regions(devices):
        nodes = [DeviceSpec.rw(afu.dev_node) for afu in region.afus]
        health = _health(region.interface_id, UNHEALTHY_INTERFACE_ID)
        tree.add_device(f"{Mode.REGION.value}-{region.interface_id}", region.id, DeviceInfo(health, nodes))
    return tree


def get_afu_tree(devices: Iterable[Device], dev_type_of: DevTypeOf) -> DeviceTree:
    """Map AFU resource names, as given by ``dev_type_of``, to AF ports."""
    tree = DeviceTree()
    for region in _regions(devices):
        for afu in region.afus:
            try:
                dev_type = dev_type_of(region.interface_id, afu.afu_id)
            except ValueError as err:
                log.warning("failed to get devtype: %s", err)
                continue
            health = _health(afu.afu_id, UNHEALTHY_AFU_ID)
            tree.add_device(dev_type, afu.id, DeviceInfo(health, [DeviceSpec.rw(afu.dev_node)]))
    return tree


def plugin_params(
    mode: str | Mode, dev_type_of: DevTypeOf
) -> tuple[Callable[[Iterable[Device]], DeviceTree], str]:
    """Return the tree builder and container annotation value for ``mode``."""
    try:
        parsed = Mode(mode)
    except ValueError:
        raise FpgaPluginError(f"Wrong mode: '{mode}'") from None

    if parsed is Mode.AF:
        return functools.partial(get_afu_tree, dev_type_of=dev_type_of), ""
    if parsed is Mode.REGION:
        return get_region_tree, f"{NAMESPACE}/{Mode.REGION.value}"
    return get_region_devel_tree, ""


@dataclass
class FpgaPlugin:
    """Periodically scans sysfs for FPGA devices and reports them to a notifier."""

    name: str
    sysfs_dir: Path
    devfs_dir: Path
    device_re: re.Pattern
    port_re: re.Pattern
    get_dev_tree: Callable[[Iterable[Device]], DeviceTree]
    new_port: Callable[[str], Port]
    annotation_value: str = ""
    scan_period: float = SCAN_PERIOD
    _done: threading.Event = field(default_factory=threading.Event, init=False, repr=False, compare=False)

    def post_allocate(self, container_responses: Iterable[ContainerResponse]) -> None:
        """Set the programming annotation on every container when it is allowed."""
        if not self.annotation_value:
            return
        for response in container_responses:
            response.annotations = {ANNOTATION_NAME: self.annotation_value}

    def get_regions(self, names: Iterable[str]) -> list[Region]:
        """Build the regions behind the port entries among ``names``."""
        regions: dict[str, Region] = {}
        for name in names:
            if not self.port_re.search(name):
                continue
            try:
                port = self.new_port(name)
            except (OSError, ValueError) as err:
                raise FpgaPluginError(f"can't get port info for {name}: {err}") from err
            try:
                fme = port.fme()
            except (OSError, ValueError) as err:
                raise FpgaPluginError(f"can't get FME info for {name}: {err}") from err

            afu = Afu(id=port.name(), afu_id=port.accelerator_type_uuid(), dev_node=port.dev_path())
            region_name = fme.name()
            if region_name in regions:
                regions[region_name].afus.append(afu)
            else:
                regions[region_name] = Region(
                    id=region_name,
                    interface_id=fme.interface_uuid(),
                    dev_node=fme.dev_path(),
                    afus=[afu],
                )
        return list(regions.values())

    def scan_fpgas(self) -> DeviceTree:
        """Scan sysfs once and return the device tree for the plugin's mode."""
        try:
            entries = sorted(os.listdir(self.sysfs_dir))
        except OSError:
            log.warning("Can't read folder %s. Kernel driver not loaded?", self.sysfs_dir)
            return self.get_dev_tree([])

        devices = []
        for dev_name in entries:
            if not self.device_re.search(dev_name):
                continue
            try:
                device_files = sorted(os.listdir(self.sysfs_dir / dev_name))
            except OSError as err:
                raise FpgaPluginError(f"can't read {self.sysfs_dir / dev_name}: {err}") from err
            regions = self.get_regions(device_files)
            if regions:
                devices.append(Device(name=dev_name, regions=regions))
        return self.get_dev_tree(devices)

    def scan(self, notifier: Notifier) -> None:
        """Report device trees to ``notifier`` until :meth:`stop` is called."""
        try:
            while True:
                notifier.notify(self.scan_fpgas())
                if self._done.wait(self.scan_period):
                    return
        finally:
            self._done.clear()

    def stop(self) -> None:
        """Ask a running (or the next) :meth:`scan` to return."""
        self._done.set()


def _new_plugin(
    name: str,
    device_re: str,
    port_re: str,
    sysfs_dir: str | os.PathLike,
    devfs_dir: str | os.PathLike,
    mode: str | Mode,
    new_port: Callable[[str], Port],
    dev_type_of: DevTypeOf,
) -> FpgaPlugin:
    get_dev_tree, annotation_value = plugin_params(mode, dev_type_of)
    return FpgaPlugin(
        name=name,
        sysfs_dir=Path(sysfs_dir),
        devfs_dir=Path(devfs_dir),
        device_re=re.compile(device_re),
        port_re=re.compile(port_re),
        get_dev_tree=get_dev_tree,
        new_port=new_port,
        annotation_value=annotation_value,
    )


def new_plugin_dfl(
    sysfs_dir: str | os.PathLike,
    devfs_dir: str | os.PathLike,
    mode: str | Mode,
    new_port: Callable[[str], Port],
    dev_type_of: DevTypeOf,
) -> FpgaPlugin:
    """Return a plugin for the DFL kernel driver."""
    return _new_plugin("DFL", DFL_DEVICE_RE, DFL_PORT_RE, sysfs_dir, devfs_dir, mode, new_port, dev_type_of)


def new_plugin_opae(
    sysfs_dir: str | os.PathLike,
    devfs_dir: str | os.PathLike,
    mode: str | Mode,
    new_port: Callable[[str], Port],
    dev_type_of: DevTypeOf,
) -> FpgaPlugin:
    """Return a plugin for the OPAE kernel driver."""
    return _new_plugin("OPAE", OPAE_DEVICE_RE, OPAE_PORT_RE, sysfs_dir, devfs_dir, mode, new_port, dev_type_of)


def _under_root(root_path: str | os.PathLike, path: str) -> str:
    return os.path.normpath(os.path.join(os.fspath(root_path) or "/", path.lstrip("/")))


def new_plugin(
    mode: str | Mode,
    root_path: str | os.PathLike,
    new_port: Callable[[str], Port],
    dev_type_of: DevTypeOf,
) -> FpgaPlugin:
    """Return a plugin for whichever FPGA kernel driver is loaded under ``root_path``."""
    sysfs_opae = _under_root(root_path, SYSFS_DIRECTORY_OPAE)
    devfs = _under_root(root_path, DEVFS_DIRECTORY)
    if os.path.exists(sysfs_opae):
        return new_plugin_opae(sysfs_opae, devfs, mode, new_port, dev_type_of)

    sysfs_dfl = _under_root(root_path, SYSFS_DIRECTORY_DFL)
    if not os.path.exists(sysfs_dfl):
        raise FpgaPluginError(
            f"kernel driver is not loaded: neither {sysfs_opae} nor {sysfs_dfl} sysfs entry exists"
        )
    return new_plugin_dfl(sysfs_dfl, devfs, mode, new_port, dev_type_of)