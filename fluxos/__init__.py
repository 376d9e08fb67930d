"""Kernel building blocks: page and heap allocators, a condition variable, ELF loading, memory character devices and an ext2 filesystem on in-memory disks."""

__version__ = "0.1.0"