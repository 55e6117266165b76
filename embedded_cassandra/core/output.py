"""Fan-out of process output lines to consumers, plus a bounded tail buffer."""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Deque, List

logger = logging.getLogger(__name__)

LineConsumer = Callable[[str], None]

DEFAULT_TAIL_SIZE = 30


class LineBuffer:
    """Keeps the last ``maxlen`` lines for inclusion in error messages."""

    def __init__(self, maxlen: int = DEFAULT_TAIL_SIZE):
        self._lines: Deque[str] = deque(maxlen=maxlen)
        self._lock = threading.Lock()

    def __call__(self, line: str) -> None:
        with self._lock:
            self._lines.append(line)

    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)


class OutputPipeline:
    """
    Thread-safe composite consumer.

    A consumer that raises is logged and skipped; the remaining consumers
    still receive the line.
    """

    def __init__(self) -> None:
        self._consumers: List[LineConsumer] = []
        self._lock = threading.Lock()

    def add(self, consumer: LineConsumer) -> None:
        with self._lock:
            self._consumers.append(consumer)

    def remove(self, consumer: LineConsumer) -> None:
        with self._lock:
            try:
                self._consumers.remove(consumer)
            except ValueError:
                pass

    def __call__(self, line: str) -> None:
        line = line.rstrip("\r\n")
        if not line.strip():
            return
        with self._lock:
            consumers = list(self._consumers)
        for consumer in consumers:
            try:
                consumer(line)
            except Exception as e:
                logger.error(f"Output consumer {consumer!r} failed: {e}")
