"""
Exclusive cross-process file lock.

Uses ``fcntl.flock`` on POSIX and ``msvcrt.locking`` on Windows, always in
non-blocking mode, polled until a deadline. A path already locked by
another thread of this process counts as contention and is retried, never
treated as an error.
"""

from __future__ import annotations

import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator, Optional, Set

from embedded_cassandra.core.errors import LockTimeoutError, RetryTimeoutError
from embedded_cassandra.core.retry import InterruptToken, retry_until

logger = logging.getLogger(__name__)

LOCK_POLL_INTERVAL = 0.1

# Paths locked by this process; flock does not exclude threads sharing a descriptor.
_held_paths: Set[str] = set()
_held_lock = threading.Lock()


def _os_lock(handle: IO[bytes]) -> bool:
    if os.name == "nt":
        import msvcrt

        try:
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
            return True
        except OSError:
            return False
    import fcntl

    try:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        return True
    except (BlockingIOError, PermissionError):
        return False


def _os_unlock(handle: IO[bytes]) -> None:
    if os.name == "nt":
        import msvcrt

        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        return
    import fcntl

    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class FileLock:
    """
    Exclusive lock on a file shared between processes.

    Usage:
        lock = FileLock(directory / ".lock")
        with lock.acquire(timeout=300):
            ...  # only one process at a time gets here
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._key = str(self.path.resolve())
        self._handle: Optional[IO[bytes]] = None

    @property
    def locked(self) -> bool:
        return self._handle is not None

    def _try_once(self) -> Optional[bool]:
        with _held_lock:
            if self._key in _held_paths:
                return None
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.path, "a+b")
            if not _os_lock(handle):
                handle.close()
                return None
            _held_paths.add(self._key)
            self._handle = handle
            return True

    def try_lock(self, timeout: float, interrupt: Optional[InterruptToken] = None) -> bool:
        """Poll for the lock for up to ``timeout`` seconds; False when it never came free."""
        if self._handle is not None:
            return True
        try:
            retry_until(
                self._try_once,
                timeout=timeout,
                interval=LOCK_POLL_INTERVAL,
                interrupt=interrupt,
                description=f"lock on '{self.path}'",
            )
        except RetryTimeoutError:
            return False
        logger.debug(f"Acquired file lock '{self.path}'")
        return True

    def release(self) -> None:
        handle = self._handle
        if handle is None:
            return
        with _held_lock:
            try:
                _os_unlock(handle)
            finally:
                handle.close()
                self._handle = None
                _held_paths.discard(self._key)
        logger.debug(f"Released file lock '{self.path}'")

    @contextmanager
    def acquire(self, timeout: float, interrupt: Optional[InterruptToken] = None) -> Iterator["FileLock"]:
        """Hold the lock for the duration of the ``with`` block."""
        if not self.try_lock(timeout, interrupt):
            raise LockTimeoutError(
                f"File lock '{self.path}' could not be acquired within {timeout:.0f}s. "
                f"Another process may be holding the lock.",
                details={"path": str(self.path), "timeout": timeout},
            )
        try:
            yield self
        finally:
            self.release()
