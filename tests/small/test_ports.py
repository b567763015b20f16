import socket
from concurrent.futures import ThreadPoolExecutor

import pytest

from stackharness.ports import (
    PortAllocator,
    PortSet,
    get_default_allocator,
    init_default_allocator,
    is_port_bindable,
)


def test_sequential_allocations_are_distinct(allocator: PortAllocator):
    """
    Repeated allocate() calls never hand out the same port twice
    """
    ports = [allocator.allocate() for _ in range(50)]

    assert len(set(ports)) == 50
    assert all(allocator.lower <= p <= allocator.upper for p in ports)
    assert allocator.held() == frozenset(ports)


@pytest.mark.timeout(30)
def test_concurrent_allocations_are_distinct(allocator: PortAllocator):
    """
    Threads allocating at the same time still receive pairwise distinct ports
    """
    with ThreadPoolExecutor(max_workers=8) as pool:
        batches = list(pool.map(lambda _: allocator.allocate_many(25), range(8)))

    ports = [p for batch in batches for p in batch]
    assert len(ports) == 200
    assert len(set(ports)) == 200


@pytest.mark.timeout(10)
def test_released_port_is_reissued_after_wrap():
    """
    A released port becomes allocatable again once the counter wraps around
    """
    allocator = PortAllocator(43100, 43109)
    first = allocator.allocate()
    allocator.release(first)
    assert not allocator.is_held(first)

    seen: list[int] = []
    while first not in seen and len(seen) < 10:
        seen.append(allocator.allocate())

    assert first in seen


def test_release_unknown_port_is_noop(allocator: PortAllocator):
    allocator.release(1)
    assert allocator.held() == frozenset()


@pytest.mark.timeout(10)
def test_allocate_skips_unbindable_port():
    """
    A port that is already bound elsewhere is skipped and not marked held
    """
    blocker = socket.socket()
    blocker.bind(("127.0.0.1", 0))
    blocker.listen()
    busy = blocker.getsockname()[1]
    try:
        allocator = PortAllocator(busy, min(busy + 20, 65535))
        port = allocator.allocate()

        assert port != busy
        assert not allocator.is_held(busy)
        assert not is_port_bindable(busy)
    finally:
        blocker.close()


def test_invalid_range_rejected():
    with pytest.raises(ValueError, match="Invalid port range"):
        PortAllocator(5000, 4000)


def test_port_set_ports_are_distinct_and_released(allocator: PortAllocator):
    """
    A PortSet holds seven distinct ports and releases all of them at once
    """
    ports = PortSet.allocate(allocator)
    named = ports.ports()

    assert set(named) == {
        "database",
        "object_store",
        "object_store_console",
        "cache",
        "application",
        "mock_identity",
        "mock_llm",
    }
    assert len(set(named.values())) == 7
    assert allocator.held() == frozenset(named.values())

    ports.release()
    ports.release()
    assert allocator.held() == frozenset()


def test_port_sets_are_disjoint(allocator: PortAllocator):
    first = PortSet.allocate(allocator)
    second = PortSet.allocate(allocator)

    assert not set(first.ports().values()) & set(second.ports().values())


def test_default_allocator_initialised_once():
    """
    The process-wide allocator is created once and rejects a conflicting range
    """
    allocator = init_default_allocator(20000, 30000)

    assert init_default_allocator(20000, 30000) is allocator
    assert get_default_allocator() is allocator

    with pytest.raises(RuntimeError, match="already initialised"):
        init_default_allocator(30000, 40000)


def test_default_allocator_created_on_first_use():
    allocator = get_default_allocator()

    assert (allocator.lower, allocator.upper) == (15000, 60000)
    assert get_default_allocator() is allocator
