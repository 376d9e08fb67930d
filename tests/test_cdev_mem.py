import errno
import os

import pytest

from fluxos.alloc import PhysicalMemory
from fluxos.cdev_mem import MEM_MAJOR, MemDevice, MemMinor
from fluxos.dev import DeviceError, DriverTable, FileDescriptor, makedev

START = 0x1000


@pytest.fixture
def device():
    return MemDevice(PhysicalMemory(4096, start=START))


def opened(device, kind):
    fd = FileDescriptor(makedev(MEM_MAJOR, kind))
    device.open(fd, 0, 0)
    return fd


@pytest.mark.parametrize("kind", [MemMinor.MEM, MemMinor.KMEM, MemMinor.PORT])
def test_memory_write_then_read(device, kind):
    fd = opened(device, kind)
    assert device.lseek(fd, START + 10, os.SEEK_SET) == START + 10
    assert device.write(fd, b"abc") == 3
    assert fd.offset == START + 13
    assert device.lseek(fd, -3, os.SEEK_CUR) == START + 10
    assert device.read(fd, 3) == b"abc"
    assert fd.offset == START + 13
    assert device.memory.read(START + 10, 3) == b"abc"


def test_open_starts_at_zero_and_close_clears(device):
    fd = opened(device, MemMinor.KMEM)
    assert fd.offset == 0
    device.close(fd)
    assert fd.offset is None


def test_read_outside_memory_faults(device):
    fd = opened(device, MemMinor.KMEM)
    with pytest.raises(DeviceError) as info:
        device.read(fd, 4)
    assert info.value.errno == errno.EFAULT


def test_bad_whence(device):
    fd = opened(device, MemMinor.MEM)
    with pytest.raises(DeviceError) as info:
        device.lseek(fd, 0, os.SEEK_END)
    assert info.value.errno == errno.EINVAL


def test_null_device(device):
    fd = opened(device, MemMinor.NULL)
    assert device.read(fd, 16) == b""
    assert device.write(fd, b"discard me") == len(b"discard me")
    assert device.lseek(fd, 100, os.SEEK_SET) == 0


def test_zero_device(device):
    fd = opened(device, MemMinor.ZERO)
    assert device.read(fd, 8) == bytes(8)
    assert device.write(fd, b"xyz") == 3


def test_full_device(device):
    fd = opened(device, MemMinor.FULL)
    assert device.read(fd, 5) == bytes(5)
    with pytest.raises(DeviceError) as info:
        device.write(fd, b"a")
    assert info.value.errno == errno.ENOSPC


@pytest.mark.parametrize("kind", [MemMinor.RANDOM, MemMinor.URANDOM])
def test_random_cannot_seek(device, kind):
    fd = opened(device, kind)
    with pytest.raises(DeviceError) as info:
        device.lseek(fd, 0, os.SEEK_SET)
    assert info.value.errno == errno.ESPIPE


def test_unknown_minor(device):
    fd = FileDescriptor(makedev(MEM_MAJOR, 6))
    with pytest.raises(DeviceError) as info:
        device.open(fd, 0, 0)
    assert info.value.errno == errno.ENODEV


def test_through_driver_table(device):
    table = DriverTable()
    table.register(MEM_MAJOR, device)
    fd = FileDescriptor(makedev(MEM_MAJOR, MemMinor.KMEM))
    table.open(fd, 0, 0)
    table.lseek(fd, START, os.SEEK_SET)
    assert table.write(fd, b"data") == 4
    table.lseek(fd, START, os.SEEK_SET)
    assert table.read(fd, 4) == b"data"
    table.close(fd)
    assert fd.offset is None