import errno
import stat as stat_mod
import struct

import pytest

from fluxos.ext2_disk import (
    Ext2Device,
    Ext2Error,
    GroupDescriptor,
    Inode,
    MemoryBlockDevice,
    Superblock,
)
from fluxos.ext2_fs import EXT2_FT_REG_FILE, Ext2FileSystem

BS = 1024
ROOT = 2


def make_image() -> bytearray:
    image = bytearray(256 * BS)
    sb = Superblock(
        inodes_count=32, blocks_count=256, free_blocks_count=246,
        free_inodes_count=21, first_data_block=1, log_block_size=0,
        blocks_per_group=255, frags_per_group=255, inodes_per_group=32,
    )
    image[1024:2048] = sb.pack()
    gd = GroupDescriptor(block_bitmap=3, inode_bitmap=4, inode_table=5,
                         free_blocks_count=246, free_inodes_count=21,
                         used_dirs_count=1)
    image[2048:2048 + GroupDescriptor.SIZE] = gd.pack()
    image[3 * BS] = 0xFF
    image[3 * BS + 1] = 0x01
    image[4 * BS] = 0xFF
    image[4 * BS + 1] = 0x07
    root = Inode(mode=stat_mod.S_IFDIR | 0o755, size=BS, links_count=2, blocks=1)
    root.block[0] = 9
    start = 5 * BS + (ROOT - 1) * 128
    image[start:start + 128] = root.pack()
    entries = (struct.pack("<IHBB", ROOT, 12, 1, 2) + b".\0\0\0"
               + struct.pack("<IHBB", ROOT, BS - 12, 2, 2) + b"..")
    image[9 * BS:9 * BS + len(entries)] = entries
    return image


@pytest.fixture
def fs():
    return Ext2FileSystem(Ext2Device(MemoryBlockDevice(make_image())))


def expect(code, func, *args, **kwargs):
    with pytest.raises(Ext2Error) as info:
        func(*args, **kwargs)
    assert info.value.errno == code


REG = stat_mod.S_IFREG | 0o644
DIR = stat_mod.S_IFDIR | 0o755
LNK = stat_mod.S_IFLNK | 0o777


def test_root_lookup(fs):
    assert fs.lookup("/") == ROOT
    assert fs.lookup("///") == ROOT
    assert fs.find_entry(ROOT, "..") == ROOT


def test_empty_path_is_invalid(fs):
    expect(errno.EINVAL, fs.lookup, "")


def test_missing_file(fs):
    expect(errno.ENOENT, fs.lookup, "/nothing")


def test_mount_uses_probe(fs):
    mounted = Ext2FileSystem.mount([None, MemoryBlockDevice(make_image())])
    assert mounted.lookup("/") == ROOT
    assert mounted.dev.devnum == 1


def test_create_and_lookup_regular(fs):
    inum = fs.mknod("/hello.txt", REG)
    assert fs.lookup("/hello.txt") == inum
    info = fs.stat(inum)
    assert info.mode == REG
    assert info.nlink == 1
    assert info.size == 0
    assert info.blksize == BS
    assert fs.entry_name(ROOT, inum) == "hello.txt"


def test_create_existing_fails(fs):
    fs.mknod("/a", REG)
    expect(errno.EEXIST, fs.mknod, "/a", REG)


def test_invalid_type(fs):
    expect(errno.EINVAL, fs.mknod, "/weird", 0o644)


def test_write_read_round_trip(fs):
    inum = fs.mknod("/data", REG)
    payload = b"hello ext2 world"
    assert fs.write_regular(inum, payload, 0) == len(payload)
    assert fs.read_regular(inum, 100, 0) == payload
    assert fs.read_regular(inum, 5, 6) == payload[6:11]
    assert fs.stat(inum).size == len(payload)


def test_read_past_end(fs):
    inum = fs.mknod("/empty", REG)
    expect(errno.EIO, fs.read_regular, inum, 10, 0)


def test_large_file_uses_indirect_blocks(fs):
    inum = fs.mknod("/big", REG)
    payload = bytes(range(256)) * 56
    fs.write_regular(inum, payload, 0)
    assert fs.read_regular(inum, len(payload), 0) == payload
    assert fs.stat(inum).blocks > len(payload) // BS


def test_regular_ops_reject_directories(fs):
    expect(errno.EINVAL, fs.read_regular, ROOT, 1, 0)
    expect(errno.EINVAL, fs.write_regular, ROOT, b"x", 0)
    expect(errno.EINVAL, fs.truncate, ROOT, 0)


def test_directory_creation(fs):
    before = fs.stat(ROOT).nlink
    d = fs.mknod("/dir", DIR)
    assert fs.stat(ROOT).nlink == before + 1
    assert fs.stat(d).nlink == 2
    assert fs.find_entry(d, ".") == d
    assert fs.find_entry(d, "..") == ROOT
    assert fs.directory_is_empty(d) is True
    f = fs.mknod("/dir/file", REG)
    assert fs.directory_is_empty(d) is False
    assert fs.lookup("dir/file") == f
    assert fs.lookup("file", relinum=d) == f


def test_directory_is_empty_requires_directory(fs):
    inum = fs.mknod("/f", REG)
    expect(errno.ENOTDIR, fs.directory_is_empty, inum)


def test_lookup_through_file_fails(fs):
    fs.mknod("/f", REG)
    expect(errno.ENOTDIR, fs.lookup, "/f/x")


def test_getcwd(fs):
    fs.mknod("/a", DIR)
    fs.mknod("/a/b", DIR)
    b = fs.lookup("/a/b")
    assert fs.getcwd(b) == "/a/b"
    assert fs.getcwd(ROOT) == "/"
    expect(errno.ERANGE, fs.getcwd, b, 4)


def test_chdir(fs):
    d = fs.mknod("/d", DIR)
    f = fs.mknod("/f", REG)
    assert fs.chdir(d) == d
    expect(errno.ENOTDIR, fs.chdir, f)


def test_short_symlink(fs):
    fs.mknod("/dir", DIR)
    target = fs.mknod("/dir/f", REG)
    link = fs.mknod("/ln", LNK, symlink="dir")
    assert fs.readlink(link) == "dir"
    assert fs.lookup("/ln/f") == target
    assert fs.lookup("/ln", followlink=False) == link
    assert fs.lookup("/ln") == fs.lookup("/dir")
    assert stat_mod.S_ISLNK(fs.stat(link).mode)


def test_long_symlink(fs):
    target = "/" + "x" * 80
    link = fs.mknod("/long", LNK, symlink=target)
    assert fs.readlink(link) == target
    assert fs.stat(link).size == len(target)


def test_readlink_on_regular(fs):
    inum = fs.mknod("/f", REG)
    expect(errno.EINVAL, fs.readlink, inum)


def test_empty_symlink_target(fs):
    expect(errno.EINVAL, fs.mknod, "/ln", LNK, symlink="")


def test_symlink_loop(fs):
    fs.mknod("/l1", LNK, symlink="/l2")
    fs.mknod("/l2", LNK, symlink="/l1")
    expect(errno.ELOOP, fs.lookup, "/l1")


def test_hard_link(fs):
    inum = fs.mknod("/orig", REG)
    fs.link(inum, "/copy")
    assert fs.lookup("/copy") == inum
    assert fs.stat(inum).nlink == 2


def test_hard_link_directory_rejected(fs):
    d = fs.mknod("/d", DIR)
    expect(errno.EINVAL, fs.link, d, "/d2")


def test_directory_grows_past_one_block(fs):
    inum = fs.mknod("/target", REG)
    names = [f"link-number-{i:03d}" for i in range(60)]
    for name in names:
        fs.link(inum, "/" + name)
    assert all(fs.lookup("/" + name) == inum for name in names)
    assert fs.stat(ROOT).size > BS
    assert fs.stat(inum).nlink == len(names) + 1


def test_unlink_and_reuse(fs):
    inum = fs.mknod("/f", REG)
    fs.write_regular(inum, b"abc", 0)
    fs.unlink_entry("/f")
    fs.unlink_file(inum)
    expect(errno.ENOENT, fs.lookup, "/f")
    assert fs.mknod("/g", REG) == inum
    assert fs.mknod("/f", REG) != inum


def test_unlink_file_with_links_decrements(fs):
    inum = fs.mknod("/f", REG)
    fs.link(inum, "/g")
    fs.unlink_entry("/g")
    fs.unlink_file(inum)
    assert fs.stat(inum).nlink == 1
    assert fs.lookup("/f") == inum


def test_remove_entry_missing(fs):
    expect(errno.ENOENT, fs.remove_entry, ROOT, "absent")


def test_add_entry_duplicate(fs):
    inum = fs.mknod("/f", REG)
    expect(errno.EEXIST, fs.add_entry, ROOT, inum, "f", EXT2_FT_REG_FILE)


def test_chmod_keeps_type(fs):
    inum = fs.mknod("/f", REG)
    fs.chmod(inum, 0o600)
    assert fs.stat(inum).mode == stat_mod.S_IFREG | 0o600
    fs.chmod(inum, stat_mod.S_IFDIR | 0o700)
    assert stat_mod.S_ISREG(fs.stat(inum).mode)


def test_chown(fs):
    inum = fs.mknod("/f", REG)
    fs.chown(inum, 1000, 1001)
    info = fs.stat(inum)
    assert (info.uid, info.gid) == (1000, 1001)


def test_permissions(fs):
    inum = fs.mknod("/secret", stat_mod.S_IFREG | 0o600)
    fs.chown(inum, 1000, 1000)
    expect(errno.EACCES, fs.lookup, "/secret", uid=2000, gid=2000, r=True)
    assert fs.lookup("/secret", uid=1000, gid=1000, r=True) == inum


def test_char_device(fs):
    inum = fs.mknod("/tty", stat_mod.S_IFCHR | 0o620, device=0x500001)
    info = fs.stat(inum)
    assert info.rdev == 0x500001
    assert stat_mod.S_ISCHR(info.mode)
    fs.unlink_entry("/tty")
    fs.unlink_file(inum)
    expect(errno.ENOENT, fs.lookup, "/tty")


def test_truncate(fs):
    inum = fs.mknod("/f", REG)
    payload = bytes(range(200)) * 15
    fs.write_regular(inum, payload, 0)
    before = fs.stat(inum).blocks
    fs.truncate(inum, 100)
    assert fs.stat(inum).size == 100
    assert fs.stat(inum).blocks < before
    assert fs.read_regular(inum, 1000, 0) == payload[:100]
    fs.truncate(inum, 2000)
    assert fs.stat(inum).size == 2000
    grown = fs.read_regular(inum, 5000, 0)
    assert len(grown) == 2000
    assert grown[:100] == payload[:100]


def test_name_too_long(fs):
    expect(errno.ENAMETOOLONG, fs.mknod, "/" + "n" * 300, REG)
    expect(errno.ENAMETOOLONG, fs.lookup, "/" + "p" * 5000)