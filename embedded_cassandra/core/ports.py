"""
Ephemeral port allocation.

The OS picks a free port for a socket bound to port 0. Ports handed out
recently are remembered so that a port whose socket was just closed (and
may already be claimed by a concurrently starting instance) is never
handed out twice in a row.
"""

from __future__ import annotations

import logging
import socket
import threading
from collections import deque
from typing import Deque, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 100
_MAX_ATTEMPTS = 1000


class PortAllocator:
    """Hands out OS-assigned ephemeral TCP ports, deduplicated against recent history."""

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE):
        self._history: Deque[int] = deque(maxlen=history_size)
        self._lock = threading.Lock()

    @property
    def history(self) -> List[int]:
        with self._lock:
            return list(self._history)

    def allocate(self, host: str = "127.0.0.1") -> int:
        """
        Allocate a port that is free right now and not recently issued.

        Rejected sockets stay bound until a fresh port is found, so the OS
        cannot return the same rejected port on the next bind.
        """
        with self._lock:
            rejected: List[socket.socket] = []
            try:
                for _ in range(_MAX_ATTEMPTS):
                    sock = _bind_ephemeral(host)
                    port = sock.getsockname()[1]
                    if port in self._history:
                        rejected.append(sock)
                        continue
                    self._history.append(port)
                    sock.close()
                    logger.debug(f"Allocated port {port} on {host}")
                    return port
            finally:
                for sock in rejected:
                    sock.close()
        raise OSError(f"Could not allocate a fresh port on {host} after {_MAX_ATTEMPTS} attempts")


def _bind_ephemeral(host: str) -> socket.socket:
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.bind((host, 0))
    except OSError:
        sock.close()
        raise
    return sock


_default_allocator: Optional[PortAllocator] = None
_default_lock = threading.Lock()


def get_default_allocator() -> PortAllocator:
    """Process-wide allocator shared by every instance."""
    global _default_allocator
    with _default_lock:
        if _default_allocator is None:
            _default_allocator = PortAllocator()
        return _default_allocator


def allocate_port(host: str = "127.0.0.1") -> int:
    return get_default_allocator().allocate(host)


def is_port_open(host: str, port: int, timeout: float = 1.0) -> bool:
    """TCP-connect probe: True when something accepts connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False
