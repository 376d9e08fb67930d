# fluxos

Parts of a small kernel, written as plain Python so they can be run, inspected
and tested without hardware or an emulator. Everything runs in memory: physical
RAM is a `bytearray`, and disks are `MemoryBlockDevice` objects addressed in
512-byte sectors.

## Modules

- `fluxos.paths`: `basename(path)` and `dirname(path)`. Trailing slashes are
  ignored and an empty path gives `"."`.
- `fluxos.alloc`
  - `PhysicalMemory(size, start=0x80000000)`: byte-addressable memory with
    `read(address, length)` and `write(address, data)`. An access outside the
    region raises `ValueError`.
  - `PageAllocator(memory, page_size=4096)`: `alloc(npages)` returns the address
    of the first free run of contiguous pages and zeroes those pages.
    `free(address)` releases the whole run. When no run fits, `MemoryError` is
    raised.
  - `Heap(pages)`: `malloc(size)` and `free(address)`. Allocations are carved
    out of page runs (arenas). Free blocks are reused or split. On free, a block
    is merged with free neighbours, and an arena left with a single block is
    handed back to the page allocator.
- `fluxos.cond`: `Condition`, a counting condition variable with
  `wait(mutex)`, `signal()` and `broadcast()`. `mutex` can be any object with
  `acquire`/`release`, such as `threading.Lock`.
- `fluxos.elf`: `parse_header(data)` checks an ELF64 little-endian executable
  and returns an `ElfHeader`. `iter_program_headers(header, data)` yields
  `ProgramHeader`s. `load_elf(data, page_size=4096)` returns a `LoadedImage`
  holding the entry point and one page-aligned `Segment` (contents and R/W/X
  flags) per `PT_LOAD` header. Invalid images raise `ElfError`, which is a
  `ValueError`.
- `fluxos.dev`:
  - `makedev`, `major` and `minor` for device numbers.
  - `FileDescriptor(rdev, offset=None)`.
  - The `DeviceDriver` base class.
  - `DriverTable`, which sends `open`, `close`, `read`, `write`, `lseek`,
    `fsync` and `fdatasync` to the driver registered for the descriptor's major
    number. It also provides `register` and `unregister`.
  - Failures raise `DeviceError`, an `OSError` carrying an errno.
- `fluxos.cdev_mem`: `MemDevice(memory)` covers the memory character devices.
  Their minors are listed in `MemMinor`.

  | Minor | Read | Write | Seek |
  | --- | --- | --- | --- |
  | `MEM`, `KMEM`, `PORT` | reads the given `PhysicalMemory` at the descriptor's offset | writes it at that offset | `SEEK_SET`/`SEEK_CUR` |
  | `NULL` | returns nothing | accepts everything | — |
  | `ZERO` | returns zeros | accepts everything | — |
  | `FULL` | returns zeros | raises `ENOSPC` | — |
  | `RANDOM`, `URANDOM` | — | — | raises `ESPIPE` |
- `fluxos.ext2_disk`:
  - `Superblock`, `GroupDescriptor` and `Inode`, each with `unpack`/`pack`.
  - `Ext2Device`, which provides:
    - byte, block, superblock, group descriptor and inode I/O;
    - inode and block allocation through the bitmaps, keeping free counts up to date.
  - `probe_devices(devices)`.
  - `mount_root(devices)`. It bumps the mount count and marks the filesystem
    as in use. If it was not cleanly unmounted before, it sets `needs_fsck`.
- `fluxos.ext2_blocks`: file block mapping through direct and singly, doubly
  and triply indirect tables.
  - `allocate_file_block`, `free_file_block`, `read_file_block` and
    `write_file_block`. Holes read as zeros, and empty indirect tables are
    freed.
  - `read_file` and `write_file`.
- `fluxos.ext2_fs`: `Ext2FileSystem(dev)` (or `Ext2FileSystem.mount(devices)`).
  - Directory entries: `find_entry`, `entry_name`, `add_entry`, `remove_entry`.
  - `lookup(path, ...)` follows symlinks up to 8 levels deep, then raises
    `ELOOP`. It checks permissions only when both `uid` and `gid` are non-zero.
  - `readlink`.
  - `mknod`, which creates regular files, directories, symlinks, device nodes,
    FIFOs and sockets according to the file type in `mode`.
  - `link`, `unlink_file`, `unlink_entry` and `directory_is_empty`.
  - `chdir`, `getcwd`, `chmod`, `chown`, `stat` (returns a `Stat`) and
    `truncate`.
  - `read_regular` and `write_regular`.

Filesystem errors raise `Ext2Error`, an `OSError` whose `errno` gives the
reason.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Example

```python
import errno

from fluxos.alloc import PageAllocator, PhysicalMemory, Heap
from fluxos.cdev_mem import MEM_MAJOR, MemDevice, MemMinor
from fluxos.dev import DeviceError, DriverTable, FileDescriptor, makedev
from fluxos.paths import basename, dirname

assert dirname("/usr/lib/") == "/usr"
assert basename("/usr/lib/") == "lib"

memory = PhysicalMemory(64 * 4096)
pages = PageAllocator(memory)
heap = Heap(pages)
address = heap.malloc(100)
heap.free(address)

table = DriverTable()
table.register(MEM_MAJOR, MemDevice(memory))

zero = FileDescriptor(makedev(MEM_MAJOR, MemMinor.ZERO))
table.open(zero, 0, 0)
assert table.read(zero, 4) == b"\0\0\0\0"

full = FileDescriptor(makedev(MEM_MAJOR, MemMinor.FULL))
try:
    table.write(full, b"x")
except DeviceError as exc:
    assert exc.errno == errno.ENOSPC
```

To work with ext2, wrap an existing filesystem image:

```python
from fluxos.ext2_disk import MemoryBlockDevice
from fluxos.ext2_fs import Ext2FileSystem

with open("root.img", "rb") as image:
    fs = Ext2FileSystem.mount([MemoryBlockDevice(image.read())])
print(fs.stat(fs.lookup("/")))
```

## What it does not do

- There is no command-line program and no way to boot anything. These are
  library pieces only.
- There is no scheduler, no processes and no page tables. `load_elf` returns
  segments but does not map them anywhere, and `Condition.wait` blocks the
  calling thread.
- The only device driver is the memory device. There is no terminal or serial
  device.
- For `RANDOM`, `URANDOM` and `KMSG`:
  - reads return no data and writes take nothing;
  - seeking on `KMSG` returns 0.
- The ext2 support only works on disks held in memory. It cannot format a
  filesystem; you need an existing image. It has no rename, no timestamp
  updates and no unmount, so the filesystem stays marked as in use after
  `mount_root`.