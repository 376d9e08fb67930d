"""Validation and loading of 64-bit little-endian ELF executables."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Iterator

ELF_MAGIC = b"\x7fELF"
EI_CLASS = 4
EI_DATA = 5
EI_VERSION = 6
ELFCLASS64 = 2
ELFDATA2LSB = 1
EV_CURRENT = 1
ET_EXEC = 2
PT_LOAD = 1
PF_X = 1
PF_W = 2
PF_R = 4

_EHDR = struct.Struct("<16sHHIQQQIHHHHHH")
_PHDR = struct.Struct("<IIQQQQQQ")
EHDR_SIZE = _EHDR.size
PHDR_SIZE = _PHDR.size


class ElfError(ValueError):
    """The image is not a loadable executable."""


@dataclass(frozen=True)
class ElfHeader:
    ident: bytes
    type: int
    machine: int
    version: int
    entry: int
    phoff: int
    shoff: int
    flags: int
    ehsize: int
    phentsize: int
    phnum: int
    shentsize: int
    shnum: int
    shstrndx: int


@dataclass(frozen=True)
class ProgramHeader:
    type: int
    flags: int
    offset: int
    vaddr: int
    paddr: int
    filesz: int
    memsz: int
    align: int


@dataclass
class Segment:
    """A page-aligned region of the user address space and its contents."""

    vstart: int
    vlen: int
    readable: bool
    writable: bool
    executable: bool
    data: bytearray = field(repr=False)


@dataclass
class LoadedImage:
    entry: int
    segments: list[Segment] = field(default_factory=list)


def parse_header(data: bytes) -> ElfHeader:
    """Unpack and validate the file header of ``data``."""
    if len(data) < EHDR_SIZE:
        raise ElfError("image is shorter than an ELF header")
    header = ElfHeader(*_EHDR.unpack_from(data))
    if header.ehsize < EHDR_SIZE:
        raise ElfError("header size is too small")
    if header.phentsize < PHDR_SIZE:
        raise ElfError("program header entry size is too small")
    if not header.phoff:
        raise ElfError("no program header table")
    if len(data) < header.phoff:
        raise ElfError("program header table lies beyond the image")
    if not header.entry:
        raise ElfError("no entry point")
    if header.ident[:4] != ELF_MAGIC:
        raise ElfError("bad magic")
    if header.ident[EI_CLASS] != ELFCLASS64:
        raise ElfError("not a 64-bit image")
    if header.ident[EI_DATA] != ELFDATA2LSB:
        raise ElfError("not a little-endian image")
    if header.ident[EI_VERSION] != EV_CURRENT:
        raise ElfError("unsupported ELF version")
    if header.type != ET_EXEC:
        raise ElfError("not an executable")
    return header


def _program_header_at(data: bytes, offset: int) -> ProgramHeader:
    if offset + PHDR_SIZE > len(data):
        raise ElfError("truncated program header")
    return ProgramHeader(*_PHDR.unpack_from(data, offset))


def iter_program_headers(header: ElfHeader, data: bytes) -> Iterator[ProgramHeader]:
    """Yield the program headers of a validated image in file order."""
    offset = header.phoff
    yield _program_header_at(data, offset)
    while True:
        cursize = offset + header.phentsize + 1
        if cursize < header.ehsize:
            return
        if (cursize - header.ehsize) // header.phentsize >= header.phnum:
            return
        if len(data) < cursize + header.phentsize:
            return
        offset += PHDR_SIZE
        yield _program_header_at(data, offset)


def _load_segment(phdr: ProgramHeader, data: bytes, page_size: int) -> Segment:
    if phdr.filesz > phdr.memsz:
        raise ElfError("segment file size exceeds its memory size")
    if phdr.offset + phdr.filesz > len(data):
        raise ElfError("segment contents lie beyond the image")
    vstart = phdr.vaddr - phdr.vaddr % page_size
    vend = -(-(phdr.vaddr + phdr.memsz) // page_size) * page_size
    contents = bytearray(vend - vstart)
    start = phdr.vaddr - vstart
    contents[start:start + phdr.filesz] = data[phdr.offset:phdr.offset + phdr.filesz]
    return Segment(
        vstart=vstart,
        vlen=vend - vstart,
        readable=bool(phdr.flags & PF_R),
        writable=bool(phdr.flags & PF_W),
        executable=bool(phdr.flags & PF_X),
        data=contents,
    )


def load_elf(data: bytes, page_size: int = 4096) -> LoadedImage:
    """Validate ``data`` and lay out each loadable segment in pages."""
    header = parse_header(data)
    image = LoadedImage(entry=header.entry)
    for phdr in iter_program_headers(header, data):
        if phdr.type == PT_LOAD:
            image.segments.append(_load_segment(phdr, data, page_size))
    return image