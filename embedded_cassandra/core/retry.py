"""
Retry-with-timeout combinator and cooperative interruption.

Python threads cannot be interrupted from the outside, so long-running
work polls an ``InterruptToken`` instead: every sleep goes through the
token and wakes up immediately once it is set.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional, TypeVar

from embedded_cassandra.core.errors import CassandraInterruptedError, RetryTimeoutError

T = TypeVar("T")


class InterruptToken:
    """One-shot interruption flag shared by a caller and its worker thread."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def interrupt(self) -> None:
        self._event.set()

    @property
    def interrupted(self) -> bool:
        return self._event.is_set()

    def check(self, what: str = "operation") -> None:
        """Raise if interruption has been requested."""
        if self._event.is_set():
            raise CassandraInterruptedError(f"{what} has been interrupted")

    def sleep(self, seconds: float, what: str = "operation") -> None:
        """Sleep up to ``seconds``; raise as soon as the token is set."""
        if self._event.wait(max(seconds, 0.0)):
            raise CassandraInterruptedError(f"{what} has been interrupted")


def retry_until(
    attempt: Callable[[], Optional[T]],
    *,
    timeout: float,
    interval: float = 0.1,
    interrupt: Optional[InterruptToken] = None,
    description: str = "condition",
) -> T:
    """
    Call ``attempt`` until it returns something other than ``None``.

    Args:
        attempt: Callable returning a value on success, ``None`` to retry.
            Exceptions raised by it propagate immediately.
        timeout: Overall deadline in seconds.
        interval: Upper bound for the sleep between attempts.
        interrupt: Optional token; a set token aborts the wait.
        description: Used in timeout / interruption messages.

    Returns:
        The first non-``None`` value returned by ``attempt``.

    Raises:
        RetryTimeoutError: The deadline passed.
        CassandraInterruptedError: The token was set.
    """
    deadline = time.monotonic() + timeout
    while True:
        if interrupt is not None:
            interrupt.check(description)
        result = attempt()
        if result is not None:
            return result
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise RetryTimeoutError(description, timeout)
        pause = min(interval, remaining)
        if interrupt is not None:
            interrupt.sleep(pause, description)
        else:
            time.sleep(pause)
