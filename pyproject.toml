[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fluxos"
version = "0.1.0"
description = "Kernel building blocks in pure Python: page and heap allocators, a condition variable, ELF loading, memory character devices and an ext2 filesystem on in-memory disks"
requires-python = ">=3.10"
dependencies = []
keywords = ["kernel", "ext2", "elf", "allocator", "filesystem", "device-driver"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Operating System Kernels",
    "Topic :: System :: Filesystems",
    "Typing :: Typed",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["fluxos"]

[tool.pytest.ini_options]
addopts = "-ra"
