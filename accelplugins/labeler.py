"""Node feature labels for Intel GPUs found in sysfs."""

from __future__ import annotations

import argparse
import glob
import logging
import os
import re
import sys
from pathlib import Path

log = logging.getLogger(__name__)

LABEL_NAMESPACE = "gpu.intel.com/"
GPU_LIST_LABEL_NAME = "cards"
MILLICORE_LABEL_NAME = "millicores"
MILLICORES_PER_GPU = 1000
MEMORY_OVERRIDE_ENV = "GPU_MEMORY_OVERRIDE"
MEMORY_RESERVED_ENV = "GPU_MEMORY_RESERVED"
VENDOR_STRING = "0x8086"

SYSFS_DIRECTORY = "/host-sys"
SYSFS_DRM_DIRECTORY = SYSFS_DIRECTORY + "/class/drm"
DEBUGFS_DRI_DIRECTORY = SYSFS_DIRECTORY + "/kernel/debug/dri"

_GPU_DEVICE_RE = re.compile(r"card[0-9]+")
_UINT64_LIMIT = 1 << 64


class LabelerError(Exception):
    """Raised when GPU labels cannot be produced."""


def _parse_uint64(text: str) -> int | None:
    if not text.isascii() or not text.isdigit():
        return None
    value = int(text)
    return value if value < _UINT64_LIMIT else None


def _to_int64(value: int) -> int:
    value %= _UINT64_LIMIT
    return value - _UINT64_LIMIT if value >= 1 << 63 else value


def env_number(name: str) -> int:
    """Return the unsigned number held in environment variable ``name``, or 0."""
    value = _parse_uint64(os.environ.get(name, ""))
    return 0 if value is None else value


def _fallback_memory() -> int:
    return env_number(MEMORY_OVERRIDE_ENV)


def add_numeric_label(labels: dict[str, str], name: str, value: int) -> None:
    """Add ``value`` to the numeric label ``name``, creating it if missing."""
    current = 0
    match = re.match(r"\s*([+-]?\d+)", labels.get(name, ""))
    if match:
        current = int(match.group(1))
    labels[name] = str(current + value)


class Labeler:
    """Scans sysfs and debugfs and builds GPU node labels."""

    def __init__(self, sysfs_drm_dir: str | os.PathLike, debugfs_dri_dir: str | os.PathLike) -> None:
        self.sysfs_drm_dir = Path(sysfs_drm_dir)
        self.debugfs_dri_dir = Path(debugfs_dri_dir)
        self.labels: dict[str, str] = {}

    def scan(self) -> list[str]:
        """Return the names of Intel GPU cards found in sysfs."""
        try:
            entries = sorted(os.listdir(self.sysfs_drm_dir))
        except OSError as err:
            raise LabelerError(f"Can't read sysfs folder: {err}") from err

        gpus = []
        for name in entries:
            if not _GPU_DEVICE_RE.fullmatch(name):
                log.debug("Not compatible device %s", name)
                continue
            try:
                vendor = (self.sysfs_drm_dir / name / "device" / "vendor").read_text()
            except OSError as err:
                log.warning("Skipping. Can't read vendor file: %s", err)
                continue
            if vendor.strip() != VENDOR_STRING:
                log.debug("Non-Intel GPU %s", name)
                continue
            try:
                os.listdir(self.sysfs_drm_dir / name / "device" / "drm")
            except OSError as err:
                raise LabelerError(f"Can't read device folder: {err}") from err
            gpus.append(name)
        return gpus

    def tile_memory_amount(self, gpu_name: str) -> tuple[int, int]:
        """Return the total memory of the GPU's tiles and the tile count."""
        reserved = env_number(MEMORY_RESERVED_ENV)
        pattern = os.path.join(glob.escape(str(self.sysfs_drm_dir / gpu_name)), "gt", "gt*", "addr_range")

        memory = 0
        tiles = 0
        for file_name in sorted(glob.glob(pattern)):
            try:
                text = Path(file_name).read_text()
            except OSError as err:
                log.warning("Skipping. Can't read file: %s", err)
                continue
            amount = _parse_uint64(text.strip())
            if amount is None:
                log.warning("Skipping. Can't convert addr_range: %r", text)
                continue
            tiles += 1
            memory = (memory + amount) % _UINT64_LIMIT

        if memory == 0:
            return _fallback_memory(), 1
        return (memory - reserved) % _UINT64_LIMIT, tiles

    def create_capability_labels(self, card_num: str, num_tiles: int) -> None:
        """Add labels read from the card's i915_capabilities debugfs file."""
        path = self.debugfs_dri_dir / card_num / "i915_capabilities"
        try:
            handle = path.open(encoding="utf-8", errors="replace")
        except OSError as err:
            log.info("Couldn't open file: %s", err)
            return

        def platform(value: str) -> None:
            prefix = f"{LABEL_NAMESPACE}platform_{value}"
            add_numeric_label(self.labels, prefix + ".count", 1)
            self.labels[prefix + ".tiles"] = str(_to_int64(num_tiles))
            self.labels[prefix + ".present"] = "true"

        def gen(value: str) -> None:
            self.labels[LABEL_NAMESPACE + "platform_gen"] = value

        actions = {
            re.compile(r"platform:[ \t\r]*(\S+)"): platform,
            re.compile(r"gen:[ \t\r]*(\S+)"): gen,
        }

        with handle:
            for line in handle:
                line = line.rstrip("\n")
                for pattern, action in actions.items():
                    match = pattern.match(line)
                    if match:
                        action(match.group(1))
                        del actions[pattern]
                        break
                if not actions:
                    return

    def create_labels(self) -> None:
        """Scan the GPUs and fill :attr:`labels`."""
        gpus = self.scan()
        for gpu_name in gpus:
            card_num = gpu_name[len("card"):]
            memory, tiles = self.tile_memory_amount(gpu_name)
            self.create_capability_labels(card_num, tiles)
            add_numeric_label(self.labels, LABEL_NAMESPACE + "memory.max", _to_int64(memory))

        self.labels[LABEL_NAMESPACE + GPU_LIST_LABEL_NAME] = ".".join(gpus)
        add_numeric_label(self.labels, LABEL_NAMESPACE + MILLICORE_LABEL_NAME, MILLICORES_PER_GPU * len(gpus))

    def format_labels(self) -> str:
        """Return the labels as ``key=value`` lines, sorted by key."""
        return "".join(f"{key}={value}\n" for key, value in sorted(self.labels.items()))


def main(argv: list[str] | None = None) -> int:
    """Print GPU labels for node feature discovery."""
    parser = argparse.ArgumentParser(description="Print Intel GPU node labels.")
    parser.parse_args(argv)

    labeler = Labeler(SYSFS_DRM_DIRECTORY, DEBUGFS_DRI_DIRECTORY)
    try:
        labeler.create_labels()
    except LabelerError as err:
        log.error("%s", err)
        return 1
    sys.stdout.write(labeler.format_labels())
    return 0


if __name__ == "__main__":
    sys.exit(main())