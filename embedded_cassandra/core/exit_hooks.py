"""
On-process-exit callbacks.

A single registration point so that lifecycle code does not touch the
interpreter's global hook list directly.
"""

from __future__ import annotations

import atexit
import logging
import threading
from typing import Callable, Dict

logger = logging.getLogger(__name__)

_hooks: Dict[int, Callable[[], None]] = {}
_lock = threading.Lock()
_counter = 0
_installed = False


def _run_hooks() -> None:
    with _lock:
        hooks = list(_hooks.items())
        _hooks.clear()
    for handle, callback in reversed(hooks):
        try:
            callback()
        except Exception as e:
            logger.error(f"Exit hook {handle} failed: {e}")


def register(callback: Callable[[], None]) -> int:
    """Run ``callback`` when the interpreter exits. Returns a handle for ``unregister``."""
    global _counter, _installed
    with _lock:
        if not _installed:
            atexit.register(_run_hooks)
            _installed = True
        _counter += 1
        _hooks[_counter] = callback
        return _counter


def unregister(handle: int) -> None:
    with _lock:
        _hooks.pop(handle, None)


def registered() -> int:
    with _lock:
        return len(_hooks)
