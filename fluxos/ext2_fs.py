"""Directories, path lookup and file operations on an ext2 filesystem."""

from __future__ import annotations

import errno
import functools
import os
import struct
from dataclasses import dataclass
from typing import Iterable, Iterator

from .ext2_blocks import _file_size, _set_file_size, free_file_block, read_file, write_file
from .ext2_disk import EXT2_ROOT_INODE, BlockDevice, Ext2Device, Ext2Error, Inode, mount_root
from .paths import basename, dirname

NAME_MAX = 255
PATH_MAX = 4096
SYMLINK_MAX_DEPTH = 8
INLINE_SYMLINK_MAX = 60

EXT2_S_IFMT = 0xF000
EXT2_S_IFSOCK = 0xC000
EXT2_S_IFLNK = 0xA000
EXT2_S_IFREG = 0x8000
EXT2_S_IFBLK = 0x6000
EXT2_S_IFDIR = 0x4000
EXT2_S_IFCHR = 0x2000
EXT2_S_IFIFO = 0x1000

EXT2_FT_UNKNOWN = 0
EXT2_FT_REG_FILE = 1
EXT2_FT_DIR = 2
EXT2_FT_CHRDEV = 3
EXT2_FT_BLKDEV = 4
EXT2_FT_FIFO = 5
EXT2_FT_SOCK = 6
EXT2_FT_SYMLINK = 7

_FILE_TYPES = {
    EXT2_S_IFREG: EXT2_FT_REG_FILE,
    EXT2_S_IFDIR: EXT2_FT_DIR,
    EXT2_S_IFCHR: EXT2_FT_CHRDEV,
    EXT2_S_IFBLK: EXT2_FT_BLKDEV,
    EXT2_S_IFIFO: EXT2_FT_FIFO,
    EXT2_S_IFSOCK: EXT2_FT_SOCK,
    EXT2_S_IFLNK: EXT2_FT_SYMLINK,
}

_DIRENT = struct.Struct("<IHBB")
_READ, _WRITE, _EXEC = 4, 2, 1


def _file_type(mode: int) -> int:
    return _FILE_TYPES.get(mode & EXT2_S_IFMT, EXT2_FT_UNKNOWN)


def _permits(inode: Inode, uid: int, gid: int, bit: int) -> bool:
    mode = inode.mode
    return bool(
        (inode.uid == uid and mode & (bit << 6))
        or (inode.gid == gid and mode & (bit << 3))
        or mode & bit
    )


def _kind(inode: Inode) -> int:
    return inode.mode & EXT2_S_IFMT


def _require_dir(inode: Inode) -> None:
    if _kind(inode) != EXT2_S_IFDIR:
        raise Ext2Error(errno.ENOTDIR)


def _check_name(name: bytes) -> None:
    if len(name) > NAME_MAX:
        raise Ext2Error(errno.ENAMETOOLONG)
    if not name:
        raise Ext2Error(errno.EINVAL, "empty file name")


def _locked(method):
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        with self.dev.lock:
            return method(self, *args, **kwargs)

    return wrapper


@dataclass(frozen=True)
class Stat:
    dev: int
    ino: int
    mode: int
    nlink: int
    uid: int
    gid: int
    rdev: int
    size: int
    atime: int
    mtime: int
    ctime: int
    blksize: int
    blocks: int


@dataclass(frozen=True)
class _DirEntry:
    offset: int
    inode: int
    rec_len: int
    name: bytes
    file_type: int


class Ext2FileSystem:
    """Name-level operations over an :class:`Ext2Device`."""

    def __init__(self, dev: Ext2Device) -> None:
        self.dev = dev

    @classmethod
    def mount(cls, devices: Iterable[BlockDevice | None]) -> Ext2FileSystem:
        """Mount the root filesystem found among ``devices``."""
        return cls(mount_root(devices))

    # directory entries

    def _entries(self, dirinum: int) -> Iterator[_DirEntry]:
        offset = 0
        while True:
            try:
                header = read_file(self.dev, dirinum, _DIRENT.size, offset)
            except Ext2Error as exc:
                if exc.errno == errno.EIO:
                    return
                raise
            if len(header) < _DIRENT.size:
                return
            inum, rec_len, name_len, file_type = _DIRENT.unpack(header)
            if not rec_len:
                raise Ext2Error(errno.EIO, f"corrupt directory entry at {offset}")
            name = (
                read_file(self.dev, dirinum, name_len, offset + _DIRENT.size)
                if name_len else b""
            )
            yield _DirEntry(offset, inum, rec_len, name, file_type)
            offset += rec_len

    def _write_entry(self, dirinum: int, offset: int, inum: int, rec_len: int,
                     name: bytes, file_type: int, with_name: bool = True) -> None:
        record = _DIRENT.pack(inum, rec_len, len(name), file_type)
        if with_name:
            record += name
        write_file(self.dev, dirinum, record, offset)

    @_locked
    def find_entry(self, dirinum: int, name: str) -> int:
        """Return the inode number that ``name`` refers to in directory ``dirinum``."""
        wanted = os.fsencode(name)
        for entry in self._entries(dirinum):
            if entry.inode and entry.name == wanted:
                return entry.inode
        raise Ext2Error(errno.ENOENT, f"no entry {name!r}")

    @_locked
    def entry_name(self, dirinum: int, inum: int) -> str:
        """Return the name under which ``inum`` appears in directory ``dirinum``."""
        for entry in self._entries(dirinum):
            if entry.inode == inum:
                return os.fsdecode(entry.name)
        raise Ext2Error(errno.ENOENT, f"inode {inum} not found in directory")

    @_locked
    def add_entry(self, dirinum: int, inum: int, name: str, filetype: int) -> None:
        """Add ``name`` for ``inum`` to directory ``dirinum``."""
        raw = os.fsencode(name)
        _check_name(raw)
        try:
            self.find_entry(dirinum, name)
        except Ext2Error as exc:
            if exc.errno != errno.ENOENT:
                raise Ext2Error(errno.EEXIST) from None
        else:
            raise Ext2Error(errno.EEXIST, f"{name!r} already exists")

        needed = _DIRENT.size + len(raw)
        offset = 0
        for entry in self._entries(dirinum):
            if not entry.inode and entry.rec_len >= needed:
                self._write_entry(dirinum, entry.offset, inum, entry.rec_len, raw, filetype)
                return
            left = _DIRENT.size + len(entry.name)
            misalign = (entry.offset + left) % 4
            if misalign:
                left += 4 - misalign
            right = entry.rec_len - left
            if right >= needed:
                self._write_entry(dirinum, entry.offset, entry.inode, left,
                                  entry.name, entry.file_type, with_name=False)
                self._write_entry(dirinum, entry.offset + left, inum, right, raw, filetype)
                return
            offset = entry.offset + entry.rec_len

        block_size = self.dev.block_size
        write_file(self.dev, dirinum, bytes(block_size), offset)
        self._write_entry(dirinum, offset, inum, block_size, raw, filetype)

    @_locked
    def remove_entry(self, dirinum: int, name: str) -> None:
        """Remove ``name`` from directory ``dirinum``."""
        wanted = os.fsencode(name)
        previous: _DirEntry | None = None
        for entry in self._entries(dirinum):
            if entry.inode and entry.name == wanted:
                if previous is None or entry.offset % self.dev.block_size == 0:
                    self._write_entry(dirinum, entry.offset, 0, entry.rec_len,
                                      entry.name, entry.file_type, with_name=False)
                else:
                    self._write_entry(dirinum, previous.offset, previous.inode,
                                      previous.rec_len + entry.rec_len,
                                      previous.name, previous.file_type, with_name=False)
                return
            previous = entry
        raise Ext2Error(errno.ENOENT, f"no entry {name!r}")

    # lookup

    def _lookup(self, path: str, relinum: int, followlink: bool, uid: int, gid: int,
                r: bool, w: bool, x: bool, s: bool, depth: int) -> int:
        if len(os.fsencode(path)) + 1 > PATH_MAX:
            raise Ext2Error(errno.ENAMETOOLONG)
        if not path:
            raise Ext2Error(errno.EINVAL, "empty path")
        if depth < 0:
            raise Ext2Error(errno.ELOOP)

        current = EXT2_ROOT_INODE if path.startswith("/") else relinum
        inode = self.dev.read_inode(current)
        checking = bool(uid and gid)
        if checking and s and not _permits(inode, uid, gid, _EXEC):
            raise Ext2Error(errno.EACCES)

        names = [name for name in path.split("/") if name]
        for position, name in enumerate(names):
            more = position + 1 < len(names)
            if len(os.fsencode(name)) > NAME_MAX:
                raise Ext2Error(errno.ENAMETOOLONG)
            _require_dir(inode)
            previous = current
            current = self.find_entry(current, name)
            inode = self.dev.read_inode(current)

            if checking:
                if more and s and not _permits(inode, uid, gid, _EXEC):
                    raise Ext2Error(errno.EACCES)
                if not more:
                    for wanted, bit in ((r, _READ), (w, _WRITE), (x, _EXEC)):
                        if wanted and not _permits(inode, uid, gid, bit):
                            raise Ext2Error(errno.EACCES)

            if (more or followlink) and _kind(inode) == EXT2_S_IFLNK:
                target = self.readlink(current)
                current = self._lookup(target, previous, True, uid, gid,
                                       r, w, x, s, depth - 1)
                inode = self.dev.read_inode(current)
        return current

    @_locked
    def lookup(self, path: str, relinum: int = EXT2_ROOT_INODE, followlink: bool = True,
               uid: int = 0, gid: int = 0, r: bool = False, w: bool = False,
               x: bool = False, s: bool = False) -> int:
        """Resolve ``path`` to an inode number.

        Relative paths start at ``relinum``. Permissions are checked only
        when both ``uid`` and ``gid`` are non-zero: ``s`` asks for search
        permission on every directory passed, ``r``, ``w`` and ``x`` for
        access to the final file.
        """
        return self._lookup(path, relinum, followlink, uid, gid, r, w, x, s,
                            SYMLINK_MAX_DEPTH)

    @_locked
    def readlink(self, inum: int) -> str:
        """Return the target of symbolic link ``inum``."""
        inode = self.dev.read_inode(inum)
        if _kind(inode) != EXT2_S_IFLNK:
            raise Ext2Error(errno.EINVAL, "not a symbolic link")
        length = _file_size(self.dev, inode)
        if length > INLINE_SYMLINK_MAX:
            raw = read_file(self.dev, inum, length, 0)
        else:
            raw = struct.pack("<15I", *inode.block)[:length]
        return os.fsdecode(raw)

    # creation

    def _new_inode(self, mode: int, uid: int, gid: int) -> Inode:
        return Inode(mode=mode, uid=uid, gid=gid, links_count=1)

    def _prepare(self, parent_inum: int, raw: bytes) -> None:
        _check_name(raw)
        try:
            self.find_entry(parent_inum, os.fsdecode(raw))
        except Ext2Error as exc:
            if exc.errno != errno.ENOENT:
                raise Ext2Error(errno.EEXIST) from None
        else:
            raise Ext2Error(errno.EEXIST)
        _require_dir(self.dev.read_inode(parent_inum))

    def _create_directory(self, parent_inum: int, name: str, mode: int,
                          uid: int, gid: int) -> int:
        inode = self._new_inode(EXT2_S_IFDIR | mode, uid, gid)
        self._prepare(parent_inum, os.fsencode(name))
        inum = self.dev.allocate_inode()
        self.add_entry(parent_inum, inum, name, EXT2_FT_DIR)
        self.dev.write_inode(inum, inode)
        self.add_entry(inum, inum, ".", EXT2_FT_DIR)
        self.add_entry(inum, parent_inum, "..", EXT2_FT_DIR)

        parent = self.dev.read_inode(parent_inum)
        parent.links_count += 1
        self.dev.write_inode(parent_inum, parent)
        inode = self.dev.read_inode(inum)
        inode.links_count += 1
        self.dev.write_inode(inum, inode)
        return inum

    def _create_symlink(self, parent_inum: int, name: str, mode: int,
                        target: str | None, uid: int, gid: int) -> int:
        inode = self._new_inode(EXT2_S_IFLNK | mode, uid, gid)
        raw_name = os.fsencode(name)
        raw_target = os.fsencode(target or "")
        if len(raw_name) > NAME_MAX or len(raw_target) + 1 > PATH_MAX:
            raise Ext2Error(errno.ENAMETOOLONG)
        if not raw_target:
            raise Ext2Error(errno.EINVAL, "empty link target")
        self._prepare(parent_inum, raw_name)
        inum = self.dev.allocate_inode()
        self.add_entry(parent_inum, inum, name, EXT2_FT_SYMLINK)
        self.dev.write_inode(inum, inode)
        if len(raw_target) > INLINE_SYMLINK_MAX:
            write_file(self.dev, inum, raw_target, 0)
        else:
            padded = raw_target.ljust(INLINE_SYMLINK_MAX, b"\0")
            inode.block = list(struct.unpack("<15I", padded))
            _set_file_size(self.dev, inode, len(raw_target))
            self.dev.write_inode(inum, inode)
        return inum

    def _create_file(self, parent_inum: int, name: str, mode: int, device: int,
                     uid: int, gid: int) -> int:
        inode = self._new_inode(mode, uid, gid)
        inode.block[0] = device
        self._prepare(parent_inum, os.fsencode(name))
        inum = self.dev.allocate_inode()
        self.add_entry(parent_inum, inum, name, _file_type(mode))
        self.dev.write_inode(inum, inode)
        return inum

    @_locked
    def mknod(self, path: str, mode: int, device: int = 0, symlink: str | None = None,
              uid: int = 0, gid: int = 0, relinum: int = EXT2_ROOT_INODE) -> int:
        """Create the file at ``path`` whose type is taken from ``mode``.

        Returns the new inode number.
        """
        parent = self.lookup(dirname(path), relinum, True, uid, gid,
                             False, True, True, True)
        name = basename(path)
        kind = mode & EXT2_S_IFMT
        if kind == EXT2_S_IFLNK:
            return self._create_symlink(parent, name, mode, symlink, uid, gid)
        if kind == EXT2_S_IFDIR:
            return self._create_directory(parent, name, mode, uid, gid)
        if kind in (EXT2_S_IFBLK, EXT2_S_IFCHR):
            return self._create_file(parent, name, mode, device, uid, gid)
        if kind in (EXT2_S_IFSOCK, EXT2_S_IFREG, EXT2_S_IFIFO):
            return self._create_file(parent, name, mode, 0, uid, gid)
        raise Ext2Error(errno.EINVAL, f"unsupported file type {kind:#o}")

    @_locked
    def link(self, oldinum: int, newpath: str, uid: int = 0, gid: int = 0,
             newrelinum: int = EXT2_ROOT_INODE) -> None:
        """Give inode ``oldinum`` the additional name ``newpath``."""
        parent_inum = self.lookup(dirname(newpath), newrelinum, True, uid, gid,
                                  False, True, True, True)
        name = basename(newpath)
        _check_name(os.fsencode(name))
        parent = self.dev.read_inode(parent_inum)
        inode = self.dev.read_inode(oldinum)
        _require_dir(parent)
        if _kind(inode) == EXT2_S_IFDIR:
            raise Ext2Error(errno.EINVAL, "cannot hard link a directory")
        self.add_entry(parent_inum, oldinum, name, _file_type(inode.mode))
        inode.links_count += 1
        self.dev.write_inode(oldinum, inode)

    # removal

    @_locked
    def unlink_file(self, inum: int) -> None:
        """Drop one link to ``inum``, releasing it when the last one goes."""
        inode = self.dev.read_inode(inum)
        if inode.links_count <= 1:
            if inode.blocks:
                last = _file_size(self.dev, inode) // self.dev.block_size
                for blknum in range(last + 1):
                    free_file_block(self.dev, inum, blknum)
            self.dev.free_inode(inum)
        else:
            inode.links_count -= 1
            self.dev.write_inode(inum, inode)

    @_locked
    def unlink_entry(self, path: str, relinum: int = EXT2_ROOT_INODE) -> None:
        """Remove the directory entry named by ``path``."""
        parent = self.lookup(dirname(path), relinum, True, 0, 0,
                             False, False, False, False)
        self.remove_entry(parent, basename(path))

    @_locked
    def directory_is_empty(self, inum: int) -> bool:
        """Tell whether directory ``inum`` holds nothing besides . and .."""
        _require_dir(self.dev.read_inode(inum))
        offset = 0
        for _ in range(2):
            header = read_file(self.dev, inum, _DIRENT.size, offset)
            offset += _DIRENT.unpack(header.ljust(_DIRENT.size, b"\0"))[1]
        try:
            read_file(self.dev, inum, _DIRENT.size, offset)
        except Ext2Error as exc:
            if exc.errno == errno.EIO:
                return True
            raise
        return False

    # attributes and navigation

    @_locked
    def chdir(self, inum: int) -> int:
        """Return ``inum`` as the new working directory after checking it."""
        _require_dir(self.dev.read_inode(inum))
        return inum

    def _check_traversable(self, inode: Inode, uid: int, gid: int) -> None:
        if uid and gid:
            if not _permits(inode, uid, gid, _READ) or not _permits(inode, uid, gid, _EXEC):
                raise Ext2Error(errno.EACCES)

    @_locked
    def getcwd(self, inum: int, size: int = PATH_MAX, uid: int = 0, gid: int = 0) -> str:
        """Return the absolute path of directory ``inum``.

        Raises ERANGE if the path and its terminator need more than ``size`` bytes.
        """
        inode = self.dev.read_inode(inum)
        _require_dir(inode)
        self._check_traversable(inode, uid, gid)
        names: list[str] = []
        total = 0
        current = inum
        while current != EXT2_ROOT_INODE:
            parent = self.find_entry(current, "..")
            self._check_traversable(self.dev.read_inode(parent), uid, gid)
            name = self.entry_name(parent, current)
            total += len(os.fsencode(name)) + 1
            if total >= PATH_MAX - 1:
                raise Ext2Error(errno.ENAMETOOLONG)
            names.append(name)
            current = parent
        path = "/" + "/".join(reversed(names))
        if len(os.fsencode(path)) + 1 > size:
            raise Ext2Error(errno.ERANGE)
        return path

    @_locked
    def chmod(self, inum: int, mode: int) -> None:
        """Replace the permission bits of ``inum``, keeping its type."""
        inode = self.dev.read_inode(inum)
        inode.mode = (mode & ~EXT2_S_IFMT & 0xFFFF) | (inode.mode & EXT2_S_IFMT)
        self.dev.write_inode(inum, inode)

    @_locked
    def chown(self, inum: int, uid: int, gid: int) -> None:
        """Set the owner and group of ``inum``."""
        inode = self.dev.read_inode(inum)
        inode.uid = uid
        inode.gid = gid
        self.dev.write_inode(inum, inode)

    @_locked
    def stat(self, inum: int) -> Stat:
        """Return the attributes of ``inum``."""
        inode = self.dev.read_inode(inum)
        is_device = _kind(inode) in (EXT2_S_IFBLK, EXT2_S_IFCHR)
        return Stat(
            dev=self.dev.devnum,
            ino=inum,
            mode=inode.mode,
            nlink=inode.links_count,
            uid=inode.uid,
            gid=inode.gid,
            rdev=inode.block[0] if is_device else 0,
            size=_file_size(self.dev, inode),
            atime=inode.atime,
            mtime=inode.mtime,
            ctime=inode.ctime,
            blksize=self.dev.block_size,
            blocks=inode.blocks,
        )

    # regular files

    def _require_regular(self, inum: int) -> Inode:
        inode = self.dev.read_inode(inum)
        if _kind(inode) != EXT2_S_IFREG:
            raise Ext2Error(errno.EINVAL, "not a regular file")
        return inode

    @_locked
    def truncate(self, inum: int, size: int) -> None:
        """Shrink or extend regular file ``inum`` to ``size`` bytes."""
        inode = self._require_regular(inum)
        old = _file_size(self.dev, inode)
        if size < old:
            block_size = self.dev.block_size
            for blknum in range(size // block_size + 1, old // block_size + 1):
                free_file_block(self.dev, inum, blknum)
            inode = self.dev.read_inode(inum)
            _set_file_size(self.dev, inode, size)
            self.dev.write_inode(inum, inode)
        elif size > old:
            _set_file_size(self.dev, inode, size)
            self.dev.write_inode(inum, inode)

    @_locked
    def read_regular(self, inum: int, length: int, offset: int) -> bytes:
        """Read from regular file ``inum``."""
        self._require_regular(inum)
        return read_file(self.dev, inum, length, offset)

    @_locked
    def write_regular(self, inum: int, data: bytes, offset: int) -> int:
        """Write to regular file ``inum`` and return the byte count."""
        self._require_regular(inum)
        return write_file(self.dev, inum, data, offset)