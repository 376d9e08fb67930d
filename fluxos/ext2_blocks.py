"""Mapping of file block numbers onto disk blocks through indirect tables."""

from __future__ import annotations

import errno
import struct
from typing import Iterator

from .ext2_disk import Ext2Device, Ext2Error, Inode

DIRECT_BLOCKS = 12
SINGLY_SLOT = 12
DOUBLY_SLOT = 13
TRIPLY_SLOT = 14

EXT2_S_IFMT = 0xF000
EXT2_S_IFREG = 0x8000

_U32 = 0xFFFFFFFF


def _file_size(dev: Ext2Device, inode: Inode) -> int:
    size = inode.size
    if dev.rev_level >= 1 and inode.mode & EXT2_S_IFMT == EXT2_S_IFREG:
        size |= inode.dir_acl << 32
    return size


def _set_file_size(dev: Ext2Device, inode: Inode, size: int) -> None:
    inode.size = size & _U32
    if dev.rev_level >= 1 and inode.mode & EXT2_S_IFMT == EXT2_S_IFREG:
        inode.dir_acl = (size >> 32) & _U32


def _pointers_per_block(dev: Ext2Device) -> int:
    return dev.block_size // 4


def _path(dev: Ext2Device, blknum: int) -> tuple[int, tuple[int, ...]]:
    """Return the inode slot and the indices into each indirect table."""
    if blknum < 0:
        raise Ext2Error(errno.EINVAL, f"invalid file block {blknum}")
    per = _pointers_per_block(dev)
    if blknum < DIRECT_BLOCKS:
        return blknum, ()
    rel = blknum - DIRECT_BLOCKS
    if rel < per:
        return SINGLY_SLOT, (rel,)
    rel -= per
    if rel < per * per:
        return DOUBLY_SLOT, divmod(rel, per)
    rel -= per * per
    if rel < per * per * per:
        return TRIPLY_SLOT, (rel // (per * per), (rel // per) % per, rel % per)
    raise Ext2Error(errno.EFBIG, f"file block {blknum} is beyond the largest file")


def _read_table(dev: Ext2Device, blknum: int) -> list[int]:
    per = _pointers_per_block(dev)
    return list(struct.unpack(f"<{per}I", dev.read_block(blknum)))


def _write_table(dev: Ext2Device, blknum: int, table: list[int]) -> None:
    dev.write_block(blknum, struct.pack(f"<{len(table)}I", *table))


def _allocate_zeroed(dev: Ext2Device, inum: int) -> int:
    blknum = dev.allocate_block(inum)
    dev.write_block(blknum, bytes(dev.block_size))
    return blknum


def _resolve(dev: Ext2Device, inode: Inode, blknum: int) -> int:
    """Return the disk block holding file block ``blknum``, or 0 for a hole."""
    slot, indices = _path(dev, blknum)
    target = inode.block[slot]
    for index in indices:
        if not target:
            return 0
        target = _read_table(dev, target)[index]
    return target


def allocate_file_block(dev: Ext2Device, inum: int, blknum: int) -> None:
    """Give file block ``blknum`` of inode ``inum`` a fresh disk block.

    Missing indirect tables on the way are allocated and zeroed. Raises
    EINVAL if the block is already allocated.
    """
    with dev.lock:
        inode = dev.read_inode(inum)
        slot, indices = _path(dev, blknum)
        if not indices:
            if inode.block[slot]:
                raise Ext2Error(errno.EINVAL, f"file block {blknum} already allocated")
            inode.block[slot] = dev.allocate_block(inum)
            inode.blocks += 1
        else:
            if not inode.block[slot]:
                inode.block[slot] = _allocate_zeroed(dev, inum)
                inode.blocks += 1
            table_blk = inode.block[slot]
            last = len(indices) - 1
            for depth, index in enumerate(indices):
                table = _read_table(dev, table_blk)
                if depth == last:
                    if table[index]:
                        raise Ext2Error(
                            errno.EINVAL, f"file block {blknum} already allocated"
                        )
                    table[index] = dev.allocate_block(inum)
                    _write_table(dev, table_blk, table)
                    inode.blocks += 1
                else:
                    if not table[index]:
                        table[index] = _allocate_zeroed(dev, inum)
                        _write_table(dev, table_blk, table)
                        inode.blocks += 1
                    table_blk = table[index]
        dev.write_inode(inum, inode)


def free_file_block(dev: Ext2Device, inum: int, blknum: int) -> None:
    """Release file block ``blknum`` and any indirect tables left empty.

    A block that is not allocated is left alone.
    """
    with dev.lock:
        inode = dev.read_inode(inum)
        slot, indices = _path(dev, blknum)
        if not indices:
            if not inode.block[slot]:
                return
            dev.free_block(inode.block[slot])
            inode.block[slot] = 0
            inode.blocks -= 1
            dev.write_inode(inum, inode)
            return

        chain: list[tuple[int, list[int]]] = []
        target = inode.block[slot]
        if not target:
            return
        for index in indices:
            table = _read_table(dev, target)
            chain.append((target, table))
            target = table[index]
            if not target:
                return

        dev.free_block(target)
        inode.blocks -= 1
        for (table_blk, table), index in reversed(list(zip(chain, indices))):
            table[index] = 0
            _write_table(dev, table_blk, table)
            if any(table):
                break
            dev.free_block(table_blk)
            inode.blocks -= 1
        else:
            inode.block[slot] = 0
        dev.write_inode(inum, inode)


def read_file_block(dev: Ext2Device, inum: int, blknum: int) -> bytes:
    """Return file block ``blknum``; holes read as zeros."""
    with dev.lock:
        inode = dev.read_inode(inum)
        target = _resolve(dev, inode, blknum)
        if not target:
            return bytes(dev.block_size)
        return dev.read_block(target)


def write_file_block(dev: Ext2Device, inum: int, blknum: int, data: bytes) -> None:
    """Store one full block of ``data`` as file block ``blknum``."""
    if len(data) != dev.block_size:
        raise ValueError(f"a block holds exactly {dev.block_size} bytes")
    with dev.lock:
        inode = dev.read_inode(inum)
        target = _resolve(dev, inode, blknum)
        if not target:
            allocate_file_block(dev, inum, blknum)
            inode = dev.read_inode(inum)
            target = _resolve(dev, inode, blknum)
        dev.write_block(target, data)


def _spans(block_size: int, length: int, offset: int) -> Iterator[tuple[int, int, int]]:
    end = offset + length
    position = offset
    while position < end:
        blknum, inblock = divmod(position, block_size)
        chunk = min(block_size - inblock, end - position)
        yield blknum, inblock, chunk
        position += chunk


def read_file(dev: Ext2Device, inum: int, length: int, offset: int) -> bytes:
    """Read up to ``length`` bytes of the file from ``offset``.

    The read is clipped to the file size. Raises EIO when ``offset`` is at
    or past the end of the file.
    """
    with dev.lock:
        inode = dev.read_inode(inum)
        size = _file_size(dev, inode)
        if size <= offset:
            raise Ext2Error(errno.EIO, "read past the end of the file")
        length = min(length, size - offset)
        return b"".join(
            read_file_block(dev, inum, blknum)[inblock:inblock + chunk]
            for blknum, inblock, chunk in _spans(dev.block_size, length, offset)
        )


def write_file(dev: Ext2Device, inum: int, data: bytes, offset: int) -> int:
    """Write ``data`` at ``offset``, growing the file as needed.

    Returns the number of bytes written.
    """
    with dev.lock:
        copied = 0
        for blknum, inblock, chunk in _spans(dev.block_size, len(data), offset):
            if chunk == dev.block_size:
                block = bytearray(data[copied:copied + chunk])
            else:
                block = bytearray(read_file_block(dev, inum, blknum))
                block[inblock:inblock + chunk] = data[copied:copied + chunk]
            write_file_block(dev, inum, blknum, bytes(block))
            copied += chunk

        inode = dev.read_inode(inum)
        if _file_size(dev, inode) < offset + copied:
            _set_file_size(dev, inode, offset + copied)
        dev.write_inode(inum, inode)
        return len(data)