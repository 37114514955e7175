[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "accelplugins"
version = "0.19.0"
description = "Discovery, node labelling and device-tree building for Intel GPU and FPGA accelerators exposed through sysfs"
requires-python = ">=3.10"
dependencies = []
keywords = ["gpu", "fpga", "sysfs", "device-plugin", "node-labels", "accelerator"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Hardware",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
gpu-nfdhook = "accelplugins.labeler:main"

[tool.hatch.build.targets.wheel]
packages = ["accelplugins"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
