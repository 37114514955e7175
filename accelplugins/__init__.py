"""Discovery, node labels and device trees for Intel GPU and FPGA accelerators."""

__version__ = "0.19.0"

__all__ = ["devicetree", "labeler", "gpu_plugin", "fpga_plugin"]