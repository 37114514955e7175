# accelplugins

Tools for finding Intel GPU and FPGA accelerators on a Linux host by
reading sysfs, and for turning what is found into device trees and node
labels.

## Modules

- `accelplugins.devicetree` holds the shared data model:
  - `Health` has the values `HEALTHY` and `UNHEALTHY`.
  - `DeviceSpec` describes a device node. `DeviceSpec.rw(path)` maps a
    host path to the same container path with `"rw"` permissions.
  - `DeviceInfo` holds a health state, device nodes, mounts and
    environment variables.
  - `DeviceTree` is a dict from device type to a dict from device id to
    `DeviceInfo`. It has `add_device(dev_type, dev_id, info)` and
    `device_ids(dev_type)`.
  - `Notifier` receives a tree after every scan. Its `notify(tree)`
    keeps the latest tree in `latest` and counts calls in `updates`.
    Subclass it to act on trees some other way.
- `accelplugins.labeler` provides `Labeler`, which builds GPU node
  labels. It also provides `main`, the function behind the
  `gpu-nfdhook` command.
- `accelplugins.gpu_plugin` provides `GpuPlugin`, which scans for Intel
  GPUs and their device nodes.
- `accelplugins.fpga_plugin` provides `FpgaPlugin` and its factories
  for the OPAE and DFL driver layouts.

## Installation

```
pip install .
```

## GPU node labels

The `gpu-nfdhook` command takes no options. It reads
`/host-sys/class/drm` and `/host-sys/kernel/debug/dri`, then prints one
`name=value` label per line, sorted by name. It exits with status 1 if
the DRM directory cannot be read.

```
gpu-nfdhook
```

A card counts as an Intel GPU when both of these hold:

- its name matches `card<N>`;
- its `device/vendor` file reads `0x8086`.

The labels are:

- `gpu.intel.com/cards` — the GPU names joined with dots, for example
  `card0.card1`.
- `gpu.intel.com/millicores` — 1000 for each GPU.
- `gpu.intel.com/memory.max` — the sum over all GPUs of the numbers in
  their `gt/gt*/addr_range` files.
- `gpu.intel.com/platform_<name>.count`, `.tiles` and `.present`, and
  `gpu.intel.com/platform_gen`. These come from the `platform:` and
  `gen:` lines of `<debugfs>/<N>/i915_capabilities`. They are left out
  when that file cannot be opened.

Two environment variables adjust the memory figure:

- `GPU_MEMORY_RESERVED` is subtracted from the memory read from the
  tiles.
- `GPU_MEMORY_OVERRIDE` is used, with one tile, when no tile memory can
  be read.

From Python:

```python
from accelplugins.labeler import Labeler

labeler = Labeler("/host-sys/class/drm", "/host-sys/kernel/debug/dri")
labeler.create_labels()          # raises LabelerError on unreadable sysfs
print(labeler.format_labels(), end="")
```

## Scanning GPUs

`GpuPlugin(sysfs_dir, devfs_dir, shared_dev_num=1, scan_period=5.0)`
reports each Intel GPU under the device type `i915`. Each GPU appears
`shared_dev_num` times, with the ids `card0-0`, `card0-1`, and so on.
Its device nodes are the entries of `device/drm` that exist in
`devfs_dir`. `controlD<N>` nodes are skipped. A `shared_dev_num` below 1
raises `ValueError`.

Scanning works as follows:

- `scan_once()` scans one time. It raises `OSError` if sysfs cannot be
  read.
- `scan(notifier)` scans every `scan_period` seconds and passes each
  tree to the notifier. A failed scan is logged and reported as an
  empty tree.
- `stop()` makes `scan` return after its next notification.

```python
import threading

from accelplugins.devicetree import Notifier
from accelplugins.gpu_plugin import GpuPlugin


class Printer(Notifier):
    def notify(self, tree):
        print(dict(tree))


plugin = GpuPlugin("/sys/class/drm", "/dev/dri", 1, 5.0)
print(plugin.scan_once())
threading.Thread(target=plugin.scan, args=(Printer(),)).start()
# ... later
plugin.stop()
```

## Scanning FPGAs

`new_plugin(mode, root_path, new_port, dev_type_of)` picks the driver
layout under `root_path`. It uses OPAE when `sys/class/fpga` exists and
DFL when `sys/class/fpga_region` exists. If neither exists, it raises
`FpgaPluginError`. An unknown mode also raises `FpgaPluginError`. You
can also choose a layout directly with `new_plugin_opae` or
`new_plugin_dfl`.

The caller provides two callables:

- `new_port(name)` returns a `Port` for a port entry such as
  `dfl-port.0` or `intel-fpga-port.0`. A `Port` carries its name, the
  accelerator type UUID, its device node path and an `Fme`.
- `dev_type_of(interface_id, afu_id)` returns the resource name of an
  accelerator function. Raise `ValueError` to skip that function.

The `Mode` enum selects how the tree is built:

| Mode | Builder | Resource name | Device nodes |
| --- | --- | --- | --- |
| `af` | `get_afu_tree` | from `dev_type_of` | the AF port, one entry per port |
| `region` | `get_region_tree` | `region-<interface id>` | the region's ports |
| `regiondevel` | `get_region_devel_tree` | `region-<interface id>` | the region's ports plus its FME node |

An all-`f` interface or AFU id marks an entry `UNHEALTHY`.

```python
from accelplugins.fpga_plugin import ContainerResponse, new_plugin

plugin = new_plugin("region", "/", new_port, dev_type_of)
tree = plugin.scan_fpgas()

responses = [ContainerResponse()]
plugin.post_allocate(responses)
# responses[0].annotations == {"com.intel.fpga.mode": "fpga.intel.com/region"}
```

`post_allocate` adds the `com.intel.fpga.mode` annotation only in
`region` mode. `scan(notifier)` and `stop()` work as they do for
`GpuPlugin`, with one difference: an error during an FPGA scan is raised
from `scan`, not logged.

## What this package does not do

- It does not register with the kubelet or serve the device plugin
  protocol. The plugins only build device trees and pass them to a
  `Notifier` you supply.
- It has no commands for the GPU or FPGA plugins. The only command is
  `gpu-nfdhook`.
- It does not open FPGA ports from sysfs or derive AFU resource names
  itself. Both come from the `new_port` and `dev_type_of` callables.
- It does not read a mode override from the cluster.

## Running the tests

```
pip install .[test]
pytest
```