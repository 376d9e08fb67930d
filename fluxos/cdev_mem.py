"""The memory character device: mem, kmem, null, zero, full and friends."""

from __future__ import annotations

import errno
import os
from enum import IntEnum

from .alloc import PhysicalMemory
from .dev import DeviceDriver, DeviceError, FileDescriptor, minor

MEM_MAJOR = 1


class MemMinor(IntEnum):
    MEM = 1
    KMEM = 2
    NULL = 3
    PORT = 4
    ZERO = 5
    FULL = 7
    RANDOM = 8
    URANDOM = 9
    KMSG = 11


_POSITIONED = {MemMinor.PORT, MemMinor.MEM, MemMinor.KMEM, MemMinor.KMSG}
_MEMORY = {MemMinor.PORT, MemMinor.MEM, MemMinor.KMEM}
_STREAMS = {MemMinor.RANDOM, MemMinor.URANDOM, MemMinor.KMSG}


def _kind(fd: FileDescriptor) -> MemMinor:
    try:
        return MemMinor(minor(fd.rdev))
    except ValueError:
        raise DeviceError(errno.ENODEV, f"no mem device with minor {minor(fd.rdev)}") from None


def _position(fd: FileDescriptor) -> int:
    if fd.offset is None:
        raise DeviceError(errno.EBADF, "device is not open")
    return fd.offset


class MemDevice(DeviceDriver):
    """Gives byte access to ``memory`` and the usual special sinks and sources."""

    name = "mem"

    def __init__(self, memory: PhysicalMemory) -> None:
        self.memory = memory

    def open(self, fd: FileDescriptor, flags: int, mode: int) -> None:
        if _kind(fd) in _POSITIONED:
            fd.offset = 0

    def close(self, fd: FileDescriptor) -> None:
        if _kind(fd) in _POSITIONED:
            fd.offset = None

    def read(self, fd: FileDescriptor, n: int) -> bytes:
        kind = _kind(fd)
        if kind in _MEMORY:
            address = _position(fd)
            try:
                data = self.memory.read(address, n)
            except ValueError as exc:
                raise DeviceError(errno.EFAULT, str(exc)) from None
            fd.offset = address + n
            return data
        if kind in (MemMinor.ZERO, MemMinor.FULL):
            return bytes(n)
        return b""

    def write(self, fd: FileDescriptor, data: bytes) -> int:
        kind = _kind(fd)
        if kind in _MEMORY:
            address = _position(fd)
            try:
                self.memory.write(address, data)
            except ValueError as exc:
                raise DeviceError(errno.EFAULT, str(exc)) from None
            fd.offset = address + len(data)
            return len(data)
        if kind in (MemMinor.NULL, MemMinor.ZERO):
            return len(data)
        if kind is MemMinor.FULL:
            raise DeviceError(errno.ENOSPC)
        return 0

    def lseek(self, fd: FileDescriptor, offset: int, whence: int) -> int:
        kind = _kind(fd)
        if kind in _MEMORY:
            if whence == os.SEEK_SET:
                fd.offset = offset
            elif whence == os.SEEK_CUR:
                fd.offset = _position(fd) + offset
            else:
                raise DeviceError(errno.EINVAL, f"unsupported whence {whence}")
            return fd.offset
        if kind in (MemMinor.RANDOM, MemMinor.URANDOM):
            raise DeviceError(errno.ESPIPE)
        return 0