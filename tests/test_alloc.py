import pytest

from fluxos.alloc import BLOCK_HEADER_SIZE, Heap, PageAllocator, PhysicalMemory

PAGE = 4096


def make_pages(npages=16):
    memory = PhysicalMemory(npages * PAGE, start=0x80000000)
    return memory, PageAllocator(memory, page_size=PAGE)


def test_memory_round_trip():
    memory = PhysicalMemory(256, start=0x1000)
    memory.write(0x1010, b"kernel")
    assert memory.read(0x1010, 6) == b"kernel"


@pytest.mark.parametrize("address, length", [(0x0fff, 1), (0x10ff, 2), (0x1100, 1)])
def test_memory_out_of_range(address, length):
    memory = PhysicalMemory(256, start=0x1000)
    with pytest.raises(ValueError):
        memory.read(address, length)


def test_first_pages_come_from_start():
    memory, pages = make_pages()
    first = pages.alloc(1)
    second = pages.alloc(1)
    assert first == memory.start
    assert second == memory.start + PAGE


def test_allocated_pages_are_zeroed():
    memory, pages = make_pages()
    address = pages.alloc(2)
    memory.write(address, b"\xff" * (2 * PAGE))
    pages.free(address)
    again = pages.alloc(2)
    assert again == address
    assert memory.read(again, 2 * PAGE) == bytes(2 * PAGE)


def test_free_releases_whole_run():
    memory, pages = make_pages()
    run = pages.alloc(3)
    pages.free(run)
    assert [pages.alloc(1) for _ in range(3)] == [run, run + PAGE, run + 2 * PAGE]


def test_busy_pages_are_skipped():
    memory, pages = make_pages()
    p0 = pages.alloc(1)
    p1 = pages.alloc(1)
    pages.free(p0)
    run = pages.alloc(2)
    assert run == p1 + PAGE
    assert pages.alloc(1) == p0


def test_request_larger_than_memory_fails():
    _, pages = make_pages(4)
    with pytest.raises(MemoryError):
        pages.alloc(5)


def test_run_may_not_end_on_last_page():
    _, pages = make_pages(4)
    with pytest.raises(MemoryError):
        pages.alloc(4)
    assert pages.alloc(3) == pages.memory.start


def test_exhausted_memory_fails():
    _, pages = make_pages(4)
    pages.alloc(3)
    with pytest.raises(MemoryError):
        pages.alloc(1)


def test_freeing_unallocated_page_is_an_error():
    memory, pages = make_pages()
    with pytest.raises(ValueError):
        pages.free(memory.start + PAGE)


def test_zero_pages_rejected():
    _, pages = make_pages()
    with pytest.raises(ValueError):
        pages.alloc(0)


def test_heap_blocks_do_not_overlap_and_keep_data():
    memory, pages = make_pages()
    heap = Heap(pages)
    a = heap.malloc(100)
    b = heap.malloc(100)
    assert a + 100 <= b or b + 100 <= a
    memory.write(a, b"a" * 100)
    memory.write(b, b"b" * 100)
    assert memory.read(a, 100) == b"a" * 100
    assert memory.read(b, 100) == b"b" * 100


def test_heap_reuses_freed_block_of_same_size():
    _, pages = make_pages()
    heap = Heap(pages)
    a = heap.malloc(100)
    heap.malloc(100)
    heap.free(a)
    assert heap.malloc(100) == a


def test_heap_splits_larger_free_block():
    _, pages = make_pages()
    heap = Heap(pages)
    big = heap.malloc(1000)
    heap.malloc(10)
    heap.free(big)
    left = heap.malloc(100)
    right = heap.malloc(100)
    assert left == big
    assert right == big + 100 + BLOCK_HEADER_SIZE


def test_heap_returns_pages_when_empty():
    memory, pages = make_pages()
    heap = Heap(pages)
    a = heap.malloc(100)
    b = heap.malloc(200)
    heap.free(a)
    heap.free(b)
    assert pages.alloc(1) == memory.start


def test_large_allocation_spans_pages():
    memory, pages = make_pages()
    heap = Heap(pages)
    address = heap.malloc(3 * PAGE)
    memory.write(address, b"x" * (3 * PAGE))
    assert memory.read(address, 3 * PAGE) == b"x" * (3 * PAGE)
    assert pages.alloc(1) >= address + 3 * PAGE


def test_heap_rejects_zero_size():
    _, pages = make_pages()
    with pytest.raises(ValueError):
        Heap(pages).malloc(0)


def test_heap_double_free_is_an_error():
    _, pages = make_pages()
    heap = Heap(pages)
    a = heap.malloc(16)
    heap.malloc(16)
    heap.free(a)
    with pytest.raises(ValueError):
        heap.free(a)


def test_heap_out_of_memory():
    _, pages = make_pages(2)
    heap = Heap(pages)
    with pytest.raises(MemoryError):
        heap.malloc(2 * PAGE)