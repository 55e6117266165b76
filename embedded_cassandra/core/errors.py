"""
Error taxonomy for embedded Cassandra instances.

Every error carries a category and, for start failures, the tail of the
captured process output so that a failure can be diagnosed without
reading the server log files.
"""

from __future__ import annotations

import os
from enum import Enum, auto
from typing import Any, Dict, Iterable, List, Optional


class ErrorCategory(Enum):
    """Categories of lifecycle errors."""

    CREATION = auto()       # bad artifact / working directory, never retried
    START = auto()          # process died or never became ready
    INTERRUPTED = auto()    # cancelled by the caller
    STOP = auto()           # escalation exhausted
    LOCK = auto()           # cache lock not acquired
    NOT_RUNNING = auto()    # settings queried outside STARTED


class CassandraError(Exception):
    """Base error for all embedded Cassandra failures."""

    category: ErrorCategory = ErrorCategory.START

    def __init__(
        self,
        message: str,
        *,
        output: Optional[Iterable[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.output: List[str] = list(output or [])
        self.details: Dict[str, Any] = dict(details or {})

    def __str__(self) -> str:
        if not self.output:
            return self.message
        tail = f"{os.linesep}\t".join(self.output)
        return f"{self.message}{os.linesep}Output:{os.linesep}\t{tail}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.name,
            "message": self.message,
            "output": list(self.output),
            "details": dict(self.details),
        }


class CassandraCreationError(CassandraError):
    """Artifact or working directory cannot be used."""

    category = ErrorCategory.CREATION


class InvalidInstallationError(CassandraCreationError):
    """No directory looks like a Cassandra installation."""


class AmbiguousInstallationError(CassandraCreationError):
    """More than one directory looks like a Cassandra installation."""


class CassandraStartError(CassandraError):
    """Cassandra could not be started."""

    category = ErrorCategory.START


class ProcessExitedError(CassandraStartError):
    """The process exited before it became ready."""


class TransportFailedError(CassandraStartError):
    """A client transport logged that it could not bind its port."""


class StartupTimeoutError(CassandraStartError, TimeoutError):
    """The process did not become ready within the startup timeout."""


class CassandraInterruptedError(CassandraError):
    """Start or stop was cancelled by the caller."""

    category = ErrorCategory.INTERRUPTED


class CassandraStopError(CassandraError):
    """Cassandra could not be stopped."""

    category = ErrorCategory.STOP


class ProcessStillAliveError(CassandraStopError):
    """Every escalation step ran and the process is still alive."""


class LockTimeoutError(CassandraError, TimeoutError):
    """An exclusive file lock could not be acquired in time."""

    category = ErrorCategory.LOCK


class NotRunningError(CassandraError, RuntimeError):
    """Settings were requested while Cassandra is not running."""

    category = ErrorCategory.NOT_RUNNING


class RetryTimeoutError(TimeoutError):
    """A polled condition was not satisfied before its deadline."""

    def __init__(self, description: str, timeout: float):
        super().__init__(f"{description} was not satisfied within {timeout:.1f}s")
        self.description = description
        self.timeout = timeout
