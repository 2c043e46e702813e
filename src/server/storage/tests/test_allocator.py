"""
测试 allocator.py 模块：进位规则、冷启动、耗尽与并发分配。
"""

import threading

import pytest

from src.server.errors import AddressSpaceExhaustedError, ParseError, StoreError
from src.server.storage.allocator import CURSOR_KEY, AddressAllocator, next_ip, parse_ip
from src.server.storage.store import DurableStore


@pytest.fixture
def store(tmp_path):
    s = DurableStore(str(tmp_path / "alloc.db"))
    yield s
    s.close()


def _set_cursor(store, value: str) -> None:
    with store.update() as txn:
        txn.set(CURSOR_KEY, value.encode("ascii"))


def _get_cursor(store) -> bytes:
    with store.view() as txn:
        return txn.get(CURSOR_KEY)


@pytest.mark.parametrize(
    "current, expected",
    [
        ("10.0.0.1", "10.0.0.2"),
        ("10.0.0.253", "10.0.0.254"),
        ("10.0.0.254", "10.0.1.0"),
        ("10.0.0.255", "10.0.1.0"),
        ("10.0.254.254", "10.1.0.0"),
        ("10.254.254.254", "11.0.0.0"),
        ("192.168.100.7", "192.168.100.8"),
    ],
)
def test_next_ip(current, expected):
    assert next_ip(current) == expected


def test_next_ip_exhausted():
    with pytest.raises(AddressSpaceExhaustedError):
        next_ip("254.254.254.254")


def test_next_ip_never_yields_broadcast_octet():
    ip = "10.0.253.250"
    for _ in range(600):
        ip = next_ip(ip)
        assert max(parse_ip(ip)) <= 254


@pytest.mark.parametrize(
    "bad",
    ["", "10.0.0", "10.0.0.1.2", "10.0.0.256", "10.0.0.-1", "a.b.c.d", "10..0.1", "10.0.0.1/8"],
)
def test_parse_ip_rejects(bad):
    with pytest.raises(ParseError):
        parse_ip(bad)


def test_cold_start_persists_default_then_increments(store):
    allocator = AddressAllocator(store, "10.0.0.1")

    assert allocator.next_address() == "10.0.0.1"
    assert _get_cursor(store) == b"10.0.0.1"
    assert allocator.next_address() == "10.0.0.2"
    assert _get_cursor(store) == b"10.0.0.2"


def test_cursor_survives_new_allocator(store):
    AddressAllocator(store, "10.0.0.1").next_address()

    assert AddressAllocator(store, "10.0.0.1").next_address() == "10.0.0.2"


def test_rollover_through_store(store):
    _set_cursor(store, "10.0.0.254")

    assert AddressAllocator(store, "10.0.0.1").next_address() == "10.0.1.0"


def test_corrupt_cursor_is_parse_error(store):
    _set_cursor(store, "not-an-ip")
    allocator = AddressAllocator(store, "10.0.0.1")

    with pytest.raises(ParseError):
        allocator.next_address()
    # 游标保持原样
    assert _get_cursor(store) == b"not-an-ip"


def test_exhaustion_is_fatal(store):
    _set_cursor(store, "254.254.254.254")
    allocator = AddressAllocator(store, "10.0.0.1")

    with pytest.raises(AddressSpaceExhaustedError):
        allocator.next_address()
    assert allocator.exhausted
    assert _get_cursor(store) == b"254.254.254.254"

    # 即使有人修复了游标，分配器也不再工作
    _set_cursor(store, "10.0.0.1")
    with pytest.raises(AddressSpaceExhaustedError):
        allocator.next_address()


def test_leaving_configured_network_is_exhaustion(store):
    _set_cursor(store, "10.254.254.254")
    allocator = AddressAllocator(store, "10.0.0.1", network="10.0.0.0/8")

    with pytest.raises(AddressSpaceExhaustedError):
        allocator.next_address()


def test_default_must_be_valid():
    with pytest.raises(ParseError):
        AddressAllocator(None, "10.0.0.255")
    with pytest.raises(ParseError):
        AddressAllocator(None, "300.0.0.1")


def test_default_must_be_inside_network():
    with pytest.raises(ParseError):
        AddressAllocator(None, "192.168.0.1", network="10.0.0.0/8")


def test_closed_store_surfaces_store_error(store):
    allocator = AddressAllocator(store, "10.0.0.1")
    store.close()

    with pytest.raises(StoreError):
        allocator.next_address()


def test_concurrent_allocation_never_repeats(store):
    per_thread = 25
    threads_count = 8
    results = []
    errors = []
    lock = threading.Lock()

    def worker():
        # 每个线程使用独立的分配器实例，只共享同一个存储
        allocator = AddressAllocator(store, "10.0.0.1")
        for _ in range(per_thread):
            try:
                ip = allocator.next_address()
            except Exception as e:  # pragma: no cover - 失败时用于诊断
                with lock:
                    errors.append(e)
                return
            with lock:
                results.append(ip)

    threads = [threading.Thread(target=worker) for _ in range(threads_count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(results) == per_thread * threads_count
    assert len(set(results)) == len(results)
