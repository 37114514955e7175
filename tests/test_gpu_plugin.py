import pytest

from accelplugins.devicetree import DeviceSpec, Health, Notifier
from accelplugins.gpu_plugin import DEVICE_TYPE, GpuPlugin


class StoppingNotifier(Notifier):
    def __init__(self, plugin):
        super().__init__()
        self.plugin = plugin
        self.dev_count = None

    def notify(self, tree):
        super().notify(tree)
        self.dev_count = len(tree.get(DEVICE_TYPE, {}))
        self.plugin.stop()


CASES = [
    pytest.param([], [], {}, 0, id="no sysfs mounted"),
    pytest.param([], ["card0"], {}, 0, id="no device installed"),
    pytest.param([], ["card0/device"], {"card0/device/vendor": b"0x8086"}, 0, id="missing dev node"),
    pytest.param(
        ["card0"],
        ["card0/device/drm/card0", "card0/device/drm/controlD64"],
        {"card0/device/vendor": b"0x8086"},
        1,
        id="all is correct",
    ),
    pytest.param(
        ["card0"],
        ["card0/device/drm/card0", "card1/device/drm/card1"],
        {"card0/device/vendor": b"0x8086", "card1/device/vendor": b"0x8086"},
        1,
        id="two sysfs records but one dev node",
    ),
    pytest.param(["card0"], ["card0/device/drm/card0"], {"card0/device/vendor": b"0xbeef"}, 0, id="wrong vendor"),
    pytest.param([], ["non_gpu_card"], {}, 0, id="no sysfs records"),
]


def _build(root, devfs_dirs, sysfs_dirs, sysfs_files):
    sysfs = root / "sys"
    devfs = root / "dev"
    for directory in devfs_dirs:
        (devfs / directory).mkdir(parents=True, exist_ok=True)
    for directory in sysfs_dirs:
        (sysfs / directory).mkdir(parents=True, exist_ok=True)
    for name, body in sysfs_files.items():
        (sysfs / name).write_bytes(body)
    return sysfs, devfs


@pytest.mark.parametrize("devfs_dirs, sysfs_dirs, sysfs_files, expected", CASES)
def test_scan(tmp_path, devfs_dirs, sysfs_dirs, sysfs_files, expected):
    sysfs, devfs = _build(tmp_path, devfs_dirs, sysfs_dirs, sysfs_files)
    plugin = GpuPlugin(sysfs, devfs, 1)
    notifier = StoppingNotifier(plugin)
    plugin.scan(notifier)
    assert notifier.dev_count == expected
    assert notifier.updates == 1


def test_scan_once_device_info(tmp_path):
    sysfs, devfs = _build(
        tmp_path,
        ["card0"],
        ["card0/device/drm/card0", "card0/device/drm/controlD64"],
        {"card0/device/vendor": b"0x8086\n"},
    )
    tree = GpuPlugin(sysfs, devfs, 1).scan_once()
    info = tree[DEVICE_TYPE]["card0-0"]
    assert info.state is Health.HEALTHY
    assert info.nodes == (DeviceSpec.rw(str(devfs / "card0")),)


def test_shared_devices_get_indexed_ids(tmp_path):
    sysfs, devfs = _build(
        tmp_path, ["card0"], ["card0/device/drm/card0"], {"card0/device/vendor": b"0x8086"}
    )
    tree = GpuPlugin(sysfs, devfs, 3).scan_once()
    assert sorted(tree[DEVICE_TYPE]) == ["card0-0", "card0-1", "card0-2"]


def test_scan_once_raises_without_sysfs(tmp_path):
    with pytest.raises(OSError):
        GpuPlugin(tmp_path / "missing", tmp_path / "dev").scan_once()


@pytest.mark.parametrize("shared", [0, -1])
def test_invalid_shared_dev_num(tmp_path, shared):
    with pytest.raises(ValueError):
        GpuPlugin(tmp_path, tmp_path, shared)


def test_stop_before_scan_returns_after_one_report(tmp_path):
    plugin = GpuPlugin(tmp_path / "missing", tmp_path / "dev", scan_period=60)
    notifier = Notifier()
    plugin.stop()
    plugin.scan(notifier)
    assert notifier.updates == 1
    assert notifier.latest == {}