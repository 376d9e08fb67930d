"""Character and block device driver tables keyed by major number."""

from __future__ import annotations

import errno
import os
import threading
from dataclasses import dataclass
from typing import Any, Callable

DEVICE_DRIVER_TABLE_SIZE = 256
MINOR_BITS = 20
MINOR_MASK = (1 << MINOR_BITS) - 1


class DeviceError(OSError):
    """A device operation failed; ``errno`` holds the reason."""

    def __init__(self, code: int, message: str | None = None) -> None:
        super().__init__(code, message or os.strerror(code))


def makedev(major: int, minor: int) -> int:
    """Combine a major and a minor number into a device number."""
    if major < 0 or minor < 0 or minor > MINOR_MASK:
        raise ValueError(f"invalid device numbers {major}:{minor}")
    return (major << MINOR_BITS) | minor


def major(rdev: int) -> int:
    """Return the major number of ``rdev``."""
    return rdev >> MINOR_BITS


def minor(rdev: int) -> int:
    """Return the minor number of ``rdev``."""
    return rdev & MINOR_MASK


@dataclass
class FileDescriptor:
    """An open device file: its device number and its position, if any."""

    rdev: int
    offset: int | None = None


class DeviceDriver:
    """Base driver.

    Subclasses may also define the optional hooks ``init``, ``cleanup``,
    ``fsync`` and ``fdatasync``; a driver without one of them is treated
    as if the hook succeeded.
    """

    name = "device"

    def open(self, fd: FileDescriptor, flags: int, mode: int) -> None:
        """Open ``fd``."""

    def close(self, fd: FileDescriptor) -> None:
        """Close ``fd``."""

    def read(self, fd: FileDescriptor, n: int) -> bytes:
        """Read up to ``n`` bytes."""
        return b""

    def write(self, fd: FileDescriptor, data: bytes) -> int:
        """Write ``data`` and return how many bytes were taken."""
        return 0

    def lseek(self, fd: FileDescriptor, offset: int, whence: int) -> int:
        """Move the position and return the new one."""
        return 0


class _Entry:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.driver: DeviceDriver | None = None


def _hook(driver: DeviceDriver, name: str) -> Callable[..., Any] | None:
    hook = getattr(driver, name, None)
    return hook if callable(hook) else None


class DriverTable:
    """Drivers indexed by major number, each slot guarded by its own lock."""

    def __init__(self, size: int = DEVICE_DRIVER_TABLE_SIZE) -> None:
        self.size = size
        self._entries = [_Entry() for _ in range(size)]

    def _entry(self, major_number: int) -> _Entry:
        if major_number < 0 or major_number >= self.size:
            raise DeviceError(errno.EINVAL, f"major {major_number} out of range")
        return self._entries[major_number]

    def __contains__(self, major_number: object) -> bool:
        if not isinstance(major_number, int) or not 0 <= major_number < self.size:
            return False
        return self._entries[major_number].driver is not None

    def register(self, major: int, driver: DeviceDriver) -> None:
        """Install ``driver`` under ``major`` and initialise it."""
        entry = self._entry(major)
        with entry.lock:
            if entry.driver is not None:
                raise DeviceError(errno.EINVAL, f"major {major} already registered")
            entry.driver = driver
            init = _hook(driver, "init")
            if init is not None:
                init()

    def unregister(self, major: int) -> None:
        """Clean up and remove the driver under ``major``."""
        entry = self._entry(major)
        with entry.lock:
            if entry.driver is None:
                raise DeviceError(errno.ENODEV, f"no driver for major {major}")
            cleanup = _hook(entry.driver, "cleanup")
            if cleanup is not None:
                cleanup()
            entry.driver = None

    def _call(self, fd: FileDescriptor, operation: str, *args, default=None):
        entry = self._entry(major(fd.rdev))
        with entry.lock:
            if entry.driver is None:
                raise DeviceError(errno.ENODEV, f"no driver for major {major(fd.rdev)}")
            hook = _hook(entry.driver, operation)
            if hook is None:
                return default
            return hook(fd, *args)

    def open(self, fd: FileDescriptor, flags: int, mode: int) -> None:
        self._call(fd, "open", flags, mode)

    def close(self, fd: FileDescriptor) -> None:
        self._call(fd, "close")

    def read(self, fd: FileDescriptor, n: int) -> bytes:
        return self._call(fd, "read", n, default=b"")

    def write(self, fd: FileDescriptor, data: bytes) -> int:
        return self._call(fd, "write", data, default=0)

    def lseek(self, fd: FileDescriptor, offset: int, whence: int) -> int:
        return self._call(fd, "lseek", offset, whence, default=0)

    def fsync(self, fd: FileDescriptor) -> None:
        self._call(fd, "fsync")

    def fdatasync(self, fd: FileDescriptor) -> None:
        self._call(fd, "fdatasync")