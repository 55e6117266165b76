"""
Ordered shutdown: polite signal, forceful signal, destroy.

Each step gets a bounded wait. A step that fails (the helper command
errors, the pid is gone) is logged and the next step runs anyway; only
a process that survives everything is an error.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from embedded_cassandra.core.errors import ProcessStillAliveError
from embedded_cassandra.core.retry import InterruptToken
from embedded_cassandra.node.process import NodeProcess

logger = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT = 5.0
DEFAULT_FINAL_TIMEOUT = 5.0
_WAIT_SLICE = 0.1


@dataclass(frozen=True)
class EscalationStep:
    name: str
    action: Callable[[], None]


class ShutdownEscalator:
    """
    Drives a NodeProcess to exit.

    Usage:
        steps = [EscalationStep("SIGINT", send_sigint), EscalationStep("SIGKILL", send_sigkill)]
        executed = ShutdownEscalator(process, steps).run(interrupt)
    """

    def __init__(
        self,
        process: NodeProcess,
        steps: Sequence[EscalationStep],
        step_timeout: float = DEFAULT_STEP_TIMEOUT,
        final_timeout: float = DEFAULT_FINAL_TIMEOUT,
    ):
        self.process = process
        self.steps = list(steps)
        self.step_timeout = step_timeout
        self.final_timeout = final_timeout

    def run(self, interrupt: Optional[InterruptToken] = None) -> List[str]:
        """
        Execute steps until the process is gone.

        Returns:
            Names of the steps that were executed, in order; ``destroy`` is
            included when the last-resort kill was needed.

        Raises:
            ProcessStillAliveError: the process survived every step.
            CassandraInterruptedError: the token was set during a wait.
        """
        executed: List[str] = []
        for step in self.steps:
            if not self.process.is_alive():
                return executed
            executed.append(step.name)
            logger.info(f"{self.process.name}: stopping with {step.name}")
            try:
                step.action()
            except Exception as e:
                logger.warning(f"{self.process.name}: {step.name} failed: {e}")
            if self._wait(self.step_timeout, interrupt):
                return executed

        if not self.process.is_alive():
            return executed
        executed.append("destroy")
        logger.warning(f"{self.process.name}: still alive after {len(self.steps)} step(s), destroying forcibly")
        try:
            self.process.destroy_forcibly()
        except Exception as e:
            logger.warning(f"{self.process.name}: destroy failed: {e}")
        if self._wait(self.final_timeout, interrupt):
            return executed

        raise ProcessStillAliveError(
            f"{self.process.name} (pid {self.process.pid}) is still alive after: {', '.join(executed)}",
            details={"pid": self.process.pid, "steps": executed},
        )

    def _wait(self, timeout: float, interrupt: Optional[InterruptToken]) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            if self.process.wait(min(_WAIT_SLICE, max(remaining, 0.0))):
                return True
            if interrupt is not None:
                interrupt.check(f"stop of {self.process.name}")
            if remaining <= 0:
                return False
