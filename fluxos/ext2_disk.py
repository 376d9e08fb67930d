"""On-disk ext2 structures and block, inode and bitmap management."""

from __future__ import annotations

import errno
import logging
import os
import struct
import threading
from dataclasses import dataclass, field
from typing import ClassVar, Iterable, Protocol

log = logging.getLogger(__name__)

SECTOR_SIZE = 512
SUPERBLOCK_OFFSET = 1024
SUPERBLOCK_SIZE = 1024
EXT2_SUPER_MAGIC = 0xEF53
EXT2_VALID_FS = 1
EXT2_ERROR_FS = 2
EXT2_GOOD_OLD_REV = 0
EXT2_GOOD_OLD_INODE_SIZE = 128
EXT2_ROOT_INODE = 2

_U16 = 0xFFFF
_U32 = 0xFFFFFFFF


class Ext2Error(OSError):
    """A filesystem operation failed; ``errno`` holds the reason."""

    def __init__(self, code: int, message: str | None = None) -> None:
        super().__init__(code, message or os.strerror(code))


class BlockDevice(Protocol):
    def read_sector(self, sector: int) -> bytes: ...

    def write_sector(self, sector: int, data: bytes) -> None: ...


class MemoryBlockDevice:
    """A disk held in memory and addressed in 512-byte sectors."""

    def __init__(self, image: bytes | bytearray | int) -> None:
        if isinstance(image, int):
            image = bytes(image)
        if len(image) % SECTOR_SIZE:
            raise ValueError("disk image size must be a multiple of the sector size")
        self._data = bytearray(image)

    @property
    def data(self) -> bytes:
        return bytes(self._data)

    @property
    def sector_count(self) -> int:
        return len(self._data) // SECTOR_SIZE

    def _span(self, sector: int) -> slice:
        if not 0 <= sector < self.sector_count:
            raise Ext2Error(errno.EIO, f"sector {sector} is outside the disk")
        start = sector * SECTOR_SIZE
        return slice(start, start + SECTOR_SIZE)

    def read_sector(self, sector: int) -> bytes:
        """Return the contents of one sector."""
        return bytes(self._data[self._span(sector)])

    def write_sector(self, sector: int, data: bytes) -> None:
        """Replace the contents of one sector."""
        if len(data) != SECTOR_SIZE:
            raise ValueError(f"a sector holds exactly {SECTOR_SIZE} bytes")
        self._data[self._span(sector)] = data


_SB = struct.Struct("<13IHh4H4I2HI2H")
_SB_FIELDS = (
    "inodes_count", "blocks_count", "r_blocks_count", "free_blocks_count",
    "free_inodes_count", "first_data_block", "log_block_size", "log_frag_size",
    "blocks_per_group", "frags_per_group", "inodes_per_group", "mtime", "wtime",
    "mnt_count", "max_mnt_count", "magic", "state", "errors", "minor_rev_level",
    "lastcheck", "checkinterval", "creator_os", "rev_level", "def_resuid",
    "def_resgid", "first_ino", "inode_size", "block_group_nr",
)
_SB_EXTRA = SUPERBLOCK_SIZE - _SB.size


@dataclass
class Superblock:
    inodes_count: int = 0
    blocks_count: int = 0
    r_blocks_count: int = 0
    free_blocks_count: int = 0
    free_inodes_count: int = 0
    first_data_block: int = 0
    log_block_size: int = 0
    log_frag_size: int = 0
    blocks_per_group: int = 0
    frags_per_group: int = 0
    inodes_per_group: int = 0
    mtime: int = 0
    wtime: int = 0
    mnt_count: int = 0
    max_mnt_count: int = -1
    magic: int = EXT2_SUPER_MAGIC
    state: int = EXT2_VALID_FS
    errors: int = 0
    minor_rev_level: int = 0
    lastcheck: int = 0
    checkinterval: int = 0
    creator_os: int = 0
    rev_level: int = EXT2_GOOD_OLD_REV
    def_resuid: int = 0
    def_resgid: int = 0
    first_ino: int = 11
    inode_size: int = EXT2_GOOD_OLD_INODE_SIZE
    block_group_nr: int = 0
    extra: bytes = field(default=bytes(_SB_EXTRA), repr=False)

    SIZE: ClassVar[int] = SUPERBLOCK_SIZE

    @classmethod
    def unpack(cls, data: bytes) -> Superblock:
        """Decode a superblock; a short buffer is padded with zeros."""
        raw = bytes(data[:SUPERBLOCK_SIZE]).ljust(SUPERBLOCK_SIZE, b"\0")
        values = dict(zip(_SB_FIELDS, _SB.unpack_from(raw)))
        return cls(**values, extra=raw[_SB.size:])

    def pack(self) -> bytes:
        """Encode the superblock as its 1024 on-disk bytes."""
        head = _SB.pack(*(getattr(self, name) for name in _SB_FIELDS))
        return head + bytes(self.extra[:_SB_EXTRA]).ljust(_SB_EXTRA, b"\0")


_GD = struct.Struct("<3I4H12s")


@dataclass
class GroupDescriptor:
    block_bitmap: int = 0
    inode_bitmap: int = 0
    inode_table: int = 0
    free_blocks_count: int = 0
    free_inodes_count: int = 0
    used_dirs_count: int = 0
    pad: int = 0
    reserved: bytes = field(default=bytes(12), repr=False)

    SIZE: ClassVar[int] = _GD.size

    @classmethod
    def unpack(cls, data: bytes) -> GroupDescriptor:
        """Decode a 32-byte block group descriptor."""
        return cls(*_GD.unpack_from(data))

    def pack(self) -> bytes:
        """Encode the descriptor as its 32 on-disk bytes."""
        return _GD.pack(
            self.block_bitmap, self.inode_bitmap, self.inode_table,
            self.free_blocks_count, self.free_inodes_count,
            self.used_dirs_count, self.pad, self.reserved,
        )


_INODE = struct.Struct("<2H5I2H3I15I4I12s")


@dataclass
class Inode:
    mode: int = 0
    uid: int = 0
    size: int = 0
    atime: int = 0
    ctime: int = 0
    mtime: int = 0
    dtime: int = 0
    gid: int = 0
    links_count: int = 0
    blocks: int = 0
    flags: int = 0
    osd1: int = 0
    block: list[int] = field(default_factory=lambda: [0] * 15)
    generation: int = 0
    file_acl: int = 0
    dir_acl: int = 0
    faddr: int = 0
    osd2: bytes = field(default=bytes(12), repr=False)

    SIZE: ClassVar[int] = _INODE.size

    @classmethod
    def unpack(cls, data: bytes) -> Inode:
        """Decode the first 128 bytes of an on-disk inode."""
        values = _INODE.unpack_from(data)
        return cls(*values[:12], list(values[12:27]), *values[27:])

    def pack(self) -> bytes:
        """Encode the inode as its 128 on-disk bytes."""
        if len(self.block) != 15:
            raise ValueError("an inode has exactly 15 block pointers")
        return _INODE.pack(
            self.mode, self.uid, self.size, self.atime, self.ctime, self.mtime,
            self.dtime, self.gid, self.links_count, self.blocks, self.flags,
            self.osd1, *self.block, self.generation, self.file_acl,
            self.dir_acl, self.faddr, self.osd2,
        )


def _claim_first_clear(bitmap: bytearray, limit: int) -> int | None:
    for index in range(min(limit, len(bitmap) * 8)):
        mask = 1 << (index % 8)
        if not bitmap[index // 8] & mask:
            bitmap[index // 8] |= mask
            return index
    return None


class Ext2Device:
    """An ext2 filesystem on a sector-addressed block device."""

    def __init__(self, blockdev: BlockDevice, devnum: int = 0) -> None:
        self.blockdev = blockdev
        self.devnum = devnum
        self.lock = threading.RLock()
        self.needs_fsck = False
        first = SUPERBLOCK_OFFSET // SECTOR_SIZE
        raw = b"".join(
            blockdev.read_sector(first + i)
            for i in range(SUPERBLOCK_SIZE // SECTOR_SIZE)
        )
        superblock = Superblock.unpack(raw)
        if superblock.magic != EXT2_SUPER_MAGIC:
            raise Ext2Error(errno.EINVAL, "not an ext2 filesystem")
        if not superblock.inodes_per_group or not superblock.blocks_per_group:
            raise Ext2Error(errno.EINVAL, "corrupt superblock group sizes")
        self.block_size = 1024 << superblock.log_block_size
        self.inodes_count = superblock.inodes_count
        self.blocks_count = superblock.blocks_count
        self.inodes_per_group = superblock.inodes_per_group
        self.blocks_per_group = superblock.blocks_per_group
        self.first_data_block = superblock.first_data_block
        self.blockgroups_count = -(-self.inodes_count // self.inodes_per_group)
        self.rev_level = superblock.rev_level
        if superblock.rev_level == EXT2_GOOD_OLD_REV:
            self.inode_size = EXT2_GOOD_OLD_INODE_SIZE
        else:
            self.inode_size = superblock.inode_size

    @property
    def descriptor_table_offset(self) -> int:
        """Byte offset of the block group descriptor table."""
        return (SUPERBLOCK_OFFSET // self.block_size + 1) * self.block_size

    # raw blocks and bytes

    def read_block(self, blknum: int) -> bytes:
        """Return one filesystem block."""
        per_block = self.block_size // SECTOR_SIZE
        first = blknum * per_block
        return b"".join(self.blockdev.read_sector(first + i) for i in range(per_block))

    def write_block(self, blknum: int, data: bytes) -> None:
        """Replace one filesystem block."""
        if len(data) != self.block_size:
            raise ValueError(f"a block holds exactly {self.block_size} bytes")
        per_block = self.block_size // SECTOR_SIZE
        first = blknum * per_block
        for i in range(per_block):
            self.blockdev.write_sector(
                first + i, bytes(data[i * SECTOR_SIZE:(i + 1) * SECTOR_SIZE])
            )

    def _blocks_spanning(self, length: int, offset: int) -> Iterable[tuple[int, int, int]]:
        end = offset + length
        position = offset
        while position < end:
            blknum, inblock = divmod(position, self.block_size)
            chunk = min(self.block_size - inblock, end - position)
            yield blknum, inblock, chunk
            position += chunk

    def read_bytes(self, length: int, offset: int) -> bytes:
        """Read ``length`` bytes starting at byte ``offset`` of the device."""
        parts = [
            self.read_block(blknum)[inblock:inblock + chunk]
            for blknum, inblock, chunk in self._blocks_spanning(length, offset)
        ]
        return b"".join(parts)

    def write_bytes(self, data: bytes, offset: int) -> None:
        """Write ``data`` at byte ``offset``, keeping the rest of each block."""
        copied = 0
        for blknum, inblock, chunk in self._blocks_spanning(len(data), offset):
            block = bytearray(self.read_block(blknum))
            block[inblock:inblock + chunk] = data[copied:copied + chunk]
            self.write_block(blknum, block)
            copied += chunk

    # metadata

    def read_superblock(self) -> Superblock:
        return Superblock.unpack(self.read_bytes(SUPERBLOCK_SIZE, SUPERBLOCK_OFFSET))

    def write_superblock(self, superblock: Superblock) -> None:
        self.write_bytes(superblock.pack(), SUPERBLOCK_OFFSET)

    def _descriptor_offset(self, bgnum: int) -> int:
        return self.descriptor_table_offset + bgnum * GroupDescriptor.SIZE

    def read_group_descriptor(self, bgnum: int) -> GroupDescriptor:
        return GroupDescriptor.unpack(
            self.read_bytes(GroupDescriptor.SIZE, self._descriptor_offset(bgnum))
        )

    def write_group_descriptor(self, bgnum: int, desc: GroupDescriptor) -> None:
        self.write_bytes(desc.pack(), self._descriptor_offset(bgnum))

    def _inode_offset(self, inum: int) -> int:
        if inum < 1:
            raise Ext2Error(errno.EINVAL, f"invalid inode number {inum}")
        bgnum, index = divmod(inum - 1, self.inodes_per_group)
        desc = self.read_group_descriptor(bgnum)
        return desc.inode_table * self.block_size + index * self.inode_size

    def read_inode(self, inum: int) -> Inode:
        return Inode.unpack(self.read_bytes(Inode.SIZE, self._inode_offset(inum)))

    def write_inode(self, inum: int, inode: Inode) -> None:
        self.write_bytes(inode.pack(), self._inode_offset(inum))

    # allocation

    def _adjust_counts(self, bgnum: int, kind: str, delta: int) -> None:
        desc = self.read_group_descriptor(bgnum)
        name = f"free_{kind}_count"
        setattr(desc, name, (getattr(desc, name) + delta) & _U16)
        self.write_group_descriptor(bgnum, desc)
        superblock = self.read_superblock()
        setattr(superblock, name, (getattr(superblock, name) + delta) & _U32)
        self.write_superblock(superblock)

    def allocate_inode(self) -> int:
        """Mark the first free inode as used and return its number."""
        with self.lock:
            for bgnum in range(self.blockgroups_count):
                desc = self.read_group_descriptor(bgnum)
                bitmap = bytearray(self.read_block(desc.inode_bitmap))
                index = _claim_first_clear(bitmap, self.inodes_per_group)
                if index is None:
                    continue
                self.write_block(desc.inode_bitmap, bitmap)
                self._adjust_counts(bgnum, "inodes", -1)
                return bgnum * self.inodes_per_group + index + 1
        raise Ext2Error(errno.ENOSPC, "no free inodes")

    def free_inode(self, inum: int) -> None:
        """Mark inode ``inum`` as free."""
        if inum < 1:
            raise Ext2Error(errno.EINVAL, f"invalid inode number {inum}")
        with self.lock:
            bgnum, index = divmod(inum - 1, self.inodes_per_group)
            desc = self.read_group_descriptor(bgnum)
            bitmap = bytearray(self.read_block(desc.inode_bitmap))
            bitmap[index // 8] &= ~(1 << (index % 8)) & 0xFF
            self.write_block(desc.inode_bitmap, bitmap)
            self._adjust_counts(bgnum, "inodes", 1)

    def _claim_block_in(self, bgnum: int) -> int | None:
        desc = self.read_group_descriptor(bgnum)
        bitmap = bytearray(self.read_block(desc.block_bitmap))
        index = _claim_first_clear(bitmap, self.blocks_per_group)
        if index is None:
            return None
        self.write_block(desc.block_bitmap, bitmap)
        blknum = self.first_data_block + bgnum * self.blocks_per_group + index
        self._adjust_counts(bgnum, "blocks", -1)
        return blknum

    def allocate_block(self, inode_hint: int) -> int:
        """Allocate a block, preferring the group that holds ``inode_hint``."""
        if inode_hint < 1:
            raise Ext2Error(errno.EINVAL, f"invalid inode number {inode_hint}")
        hint = (inode_hint - 1) // self.inodes_per_group
        with self.lock:
            order = [hint] + [bg for bg in range(self.blockgroups_count) if bg != hint]
            for bgnum in order:
                blknum = self._claim_block_in(bgnum)
                if blknum is not None:
                    return blknum
        raise Ext2Error(errno.ENOSPC, "no free blocks")

    def free_block(self, blknum: int) -> None:
        """Mark block ``blknum`` as free."""
        if blknum < self.first_data_block:
            raise Ext2Error(errno.EINVAL, f"block {blknum} cannot be freed")
        with self.lock:
            bgnum, index = divmod(blknum - self.first_data_block, self.blocks_per_group)
            desc = self.read_group_descriptor(bgnum)
            bitmap = bytearray(self.read_block(desc.block_bitmap))
            bitmap[index // 8] &= ~(1 << (index % 8)) & 0xFF
            self.write_block(desc.block_bitmap, bitmap)
            self._adjust_counts(bgnum, "blocks", 1)


def probe_devices(devices: Iterable[BlockDevice | None]) -> list[Ext2Device]:
    """Return the ext2 filesystems found, most recently probed first.

    ``None`` entries stand for absent devices; devices that cannot be read
    or carry no ext2 superblock are skipped.
    """
    found: list[Ext2Device] = []
    for devnum, blockdev in enumerate(devices):
        if blockdev is None:
            continue
        try:
            found.insert(0, Ext2Device(blockdev, devnum))
        except OSError:
            continue
    return found


def mount_root(devices: Iterable[BlockDevice | None]) -> Ext2Device:
    """Mount the root filesystem and mark it as in use.

    The root is the first entry of :func:`probe_devices`. If the filesystem
    was not cleanly unmounted, ``needs_fsck`` is set on the result.
    """
    found = probe_devices(devices)
    if not found:
        raise Ext2Error(errno.ENODEV, "no ext2 filesystem to mount as root")
    root = found[0]
    superblock = root.read_superblock()
    superblock.mtime = 0
    superblock.mnt_count = (superblock.mnt_count + 1) & _U16
    if superblock.state == EXT2_ERROR_FS:
        root.needs_fsck = True
        log.warning("rootfs was not cleanly unmounted last time. fsck is needed.")
    superblock.state = EXT2_ERROR_FS
    root.write_superblock(superblock)
    return root