# SPDX-FileCopyrightText: 2025 Blackcat Informatics® Inc.
# SPDX-License-Identifier: MIT

import concurrent.futures
import socket

import pytest

from cluster_harness.errors import PortExhaustionError
from cluster_harness.ports import PortAllocator


def always_free(_port):
    return True


def test_preferred_port_is_returned_when_free():
    allocator = PortAllocator(probe=always_free)
    assert allocator.find_open_port(20000) == 20000
    assert allocator.find_open_port(20000) == 20001
    assert allocator.claimed() == {20000, 20001}


def test_bound_port_is_skipped():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        sock.listen()
        busy = sock.getsockname()[1]
        port = PortAllocator().find_open_port(busy)
    assert port > busy


def test_ports_are_never_repeated_across_bring_ups():
    allocator = PortAllocator(probe=always_free)
    seen = []
    for _ in range(3):
        for identity in range(4):
            seen.append(allocator.find_open_port(21000 + identity))
    assert len(seen) == len(set(seen))


def test_concurrent_callers_get_distinct_ports():
    allocator = PortAllocator(probe=always_free)
    with concurrent.futures.ThreadPoolExecutor(max_workers=16) as executor:
        ports = list(executor.map(lambda _idx: allocator.find_open_port(22000), range(64)))
    assert len(set(ports)) == 64
    assert min(ports) == 22000


def test_exhaustion_when_nothing_is_free():
    allocator = PortAllocator(window=5, probe=lambda _port: False)
    with pytest.raises(PortExhaustionError) as excinfo:
        allocator.find_open_port(23000)
    assert excinfo.value.preferred == 23000
    assert excinfo.value.window == 5


def test_exhaustion_counts_claimed_ports():
    allocator = PortAllocator(window=3, probe=always_free)
    assert [allocator.find_open_port(24000) for _ in range(3)] == [24000, 24001, 24002]
    with pytest.raises(PortExhaustionError):
        allocator.find_open_port(24000)


def test_reserved_ports_are_not_handed_out():
    allocator = PortAllocator(probe=always_free)
    allocator.reserve([25000])
    assert allocator.find_open_port(25000) == 25001


@pytest.mark.parametrize("preferred", [0, -1, 70000])
def test_invalid_preferred_port(preferred):
    with pytest.raises(ValueError):
        PortAllocator().find_open_port(preferred)


def test_window_view_shares_claims():
    allocator = PortAllocator(probe=always_free)
    narrow = allocator.with_window(2)
    assert narrow.window == 2
    assert allocator.with_window(allocator.window) is allocator
    assert narrow.find_open_port(26000) == 26000
    assert allocator.find_open_port(26000) == 26001
    with pytest.raises(PortExhaustionError):
        narrow.find_open_port(26000)
