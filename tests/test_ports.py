"""Tests for PortAllocator and the TCP probe."""

from __future__ import annotations

import socket
import threading

import pytest

from embedded_cassandra.core.ports import (
    PortAllocator,
    allocate_port,
    get_default_allocator,
    is_port_open,
)


class TestPortAllocator:
    """Tests for PortAllocator."""

    def test_allocated_port_is_bindable(self):
        """Test that the allocated port can be bound right away."""
        port = PortAllocator().allocate()

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", port))

    def test_no_duplicates_within_history(self):
        """Test that no port repeats within any window of history_size allocations."""
        allocator = PortAllocator(history_size=100)
        ports = [allocator.allocate() for _ in range(1000)]

        for start in range(0, len(ports) - 100 + 1):
            window = ports[start:start + 100]
            assert len(set(window)) == len(window)

    def test_history_is_bounded(self):
        allocator = PortAllocator(history_size=5)
        ports = [allocator.allocate() for _ in range(8)]

        assert allocator.history == ports[-5:]

    def test_concurrent_allocations_are_distinct(self):
        """Test that threads sharing one allocator never receive the same port."""
        allocator = PortAllocator()
        results = []
        lock = threading.Lock()

        def worker():
            for _ in range(10):
                port = allocator.allocate()
                with lock:
                    results.append(port)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 50
        assert len(set(results)) == 50

    def test_bind_failure_raises(self):
        """Test that an unusable host fails immediately."""
        with pytest.raises(OSError):
            PortAllocator().allocate("256.256.256.256")

    def test_default_allocator_is_shared(self):
        assert get_default_allocator() is get_default_allocator()
        port = allocate_port()
        assert port in get_default_allocator().history


class TestIsPortOpen:
    """Tests for is_port_open."""

    def test_open(self, listening_port):
        assert is_port_open("127.0.0.1", listening_port)

    def test_closed(self):
        port = PortAllocator().allocate()
        assert not is_port_open("127.0.0.1", port, timeout=0.5)
