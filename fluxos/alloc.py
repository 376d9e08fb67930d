"""Physical page allocation and a small first-fit heap on top of it."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

PAGE_SIZE = 4096
ALLOC_HEADER_SIZE = 64
BLOCK_HEADER_SIZE = 40


class PhysicalMemory:
    """A flat, byte-addressable region of memory starting at ``start``."""

    def __init__(self, size: int, start: int = 0x80000000) -> None:
        if size < 0:
            raise ValueError("memory size must not be negative")
        self.start = start
        self._data = bytearray(size)

    @property
    def size(self) -> int:
        return len(self._data)

    @property
    def end(self) -> int:
        return self.start + len(self._data)

    def _offset(self, address: int, length: int) -> int:
        if length < 0 or address < self.start or address + length > self.end:
            raise ValueError(
                f"access of {length} bytes at {address:#x} is outside memory"
            )
        return address - self.start

    def read(self, address: int, length: int) -> bytes:
        """Return ``length`` bytes starting at ``address``."""
        offset = self._offset(address, length)
        return bytes(self._data[offset:offset + length])

    def write(self, address: int, data: bytes) -> None:
        """Store ``data`` starting at ``address``."""
        offset = self._offset(address, len(data))
        self._data[offset:offset + len(data)] = data


class PageAllocator:
    """Hands out runs of contiguous, zeroed pages from a memory region."""

    def __init__(self, memory: PhysicalMemory, page_size: int = PAGE_SIZE) -> None:
        if page_size < 1:
            raise ValueError("page size must be positive")
        self.memory = memory
        self.page_size = page_size
        self.max_pages = memory.size // page_size
        self._allocated = [False] * self.max_pages
        self._last = [False] * self.max_pages
        self._lock = threading.Lock()

    def _find_run(self, npages: int) -> int | None:
        index = 0
        limit = self.max_pages - npages
        while index < limit:
            if not self._allocated[index]:
                busy = next(
                    (j for j in range(index + 1, index + npages) if self._allocated[j]),
                    None,
                )
                if busy is None:
                    return index
                index = busy
            index += 1
        return None

    def alloc(self, npages: int) -> int:
        """Reserve ``npages`` contiguous pages and return the first address.

        Raises MemoryError when no such run is free.
        """
        if npages < 1:
            raise ValueError("at least one page must be requested")
        if self.max_pages < npages:
            raise MemoryError(f"cannot allocate {npages} pages")
        with self._lock:
            index = self._find_run(npages)
            if index is None:
                raise MemoryError(f"no run of {npages} free pages")
            self._allocated[index:index + npages] = [True] * npages
            self._last[index + npages - 1] = True
        address = self.memory.start + index * self.page_size
        self.memory.write(address, bytes(npages * self.page_size))
        return address

    def free(self, address: int) -> None:
        """Release the run of pages that starts at ``address``."""
        if address < self.memory.start:
            return
        index = (address - self.memory.start) // self.page_size
        with self._lock:
            if index >= self.max_pages or not self._allocated[index]:
                raise ValueError(f"page at {address:#x} is not allocated")
            while index < self.max_pages:
                self._allocated[index] = False
                if self._last[index]:
                    self._last[index] = False
                    break
                index += 1


@dataclass
class _Block:
    address: int
    size: int
    allocated: bool

    @property
    def data_address(self) -> int:
        return self.address + BLOCK_HEADER_SIZE

    @property
    def end(self) -> int:
        return self.data_address + self.size


@dataclass
class _Arena:
    address: int
    npages: int
    blocks: list[_Block] = field(default_factory=list)


class Heap:
    """Variable-size allocations carved out of page runs."""

    def __init__(self, pages: PageAllocator) -> None:
        self.pages = pages
        self._arenas: list[_Arena] = []
        self._lock = threading.Lock()

    def _arena_end(self, arena: _Arena) -> int:
        return arena.address + arena.npages * self.pages.page_size

    def _free_size(self, arena: _Arena) -> int:
        used = ALLOC_HEADER_SIZE + sum(b.size + BLOCK_HEADER_SIZE for b in arena.blocks)
        return arena.npages * self.pages.page_size - used

    def _place(self, arena: _Arena, size: int) -> int | None:
        if self._free_size(arena) < size + BLOCK_HEADER_SIZE:
            return None
        for position, block in enumerate(arena.blocks):
            if block.allocated:
                continue
            if block.size == size:
                block.allocated = True
                return block.data_address
            if block.size > size and block.size - size > BLOCK_HEADER_SIZE:
                remainder = block.size - size - BLOCK_HEADER_SIZE
                block.size = size
                block.allocated = True
                arena.blocks.insert(position + 1, _Block(block.end, remainder, False))
                return block.data_address
        candidate = _Block(arena.blocks[-1].end, size, True)
        if candidate.end <= self._arena_end(arena):
            arena.blocks.append(candidate)
            return candidate.data_address
        return None

    def _new_arena(self, size: int) -> int:
        page_size = self.pages.page_size
        needed = size + ALLOC_HEADER_SIZE + BLOCK_HEADER_SIZE
        npages = -(-needed // page_size)
        address = self.pages.alloc(npages)
        block = _Block(address + ALLOC_HEADER_SIZE, size, True)
        self._arenas.insert(0, _Arena(address, npages, [block]))
        return block.data_address

    def malloc(self, size: int) -> int:
        """Return the address of ``size`` fresh bytes; raises MemoryError if full."""
        if size < 1:
            raise ValueError("allocation size must be positive")
        with self._lock:
            for arena in self._arenas:
                address = self._place(arena, size)
                if address is not None:
                    return address
            return self._new_arena(size)

    def _locate(self, address: int) -> tuple[_Arena, int]:
        for arena in self._arenas:
            if not arena.address <= address < self._arena_end(arena):
                continue
            for position, block in enumerate(arena.blocks):
                if block.data_address == address and block.allocated:
                    return arena, position
        raise ValueError(f"{address:#x} is not an allocated heap address")

    def free(self, address: int | None) -> None:
        """Release a block returned by malloc; ``None`` is ignored."""
        if address is None:
            return
        with self._lock:
            arena, position = self._locate(address)
            blocks = arena.blocks
            blocks[position].allocated = False
            if position > 0 and not blocks[position - 1].allocated:
                blocks[position - 1].size += blocks[position].size + BLOCK_HEADER_SIZE
                del blocks[position]
                position -= 1
            if position + 1 < len(blocks) and not blocks[position + 1].allocated:
                blocks[position].size += blocks[position + 1].size + BLOCK_HEADER_SIZE
                del blocks[position + 1]
            if len(blocks) == 1:
                self._arenas.remove(arena)
                self.pages.free(arena.address)