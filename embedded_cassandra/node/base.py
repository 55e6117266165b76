"""
Node - Launches and Stops One Cassandra Process
===============================================

The platform subclasses only decide the command line and the escalation
steps; launching, output capture and the shutdown sequence are shared.
"""

from __future__ import annotations

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from embedded_cassandra.core.retry import InterruptToken
from embedded_cassandra.node.escalation import (
    DEFAULT_FINAL_TIMEOUT,
    DEFAULT_STEP_TIMEOUT,
    EscalationStep,
    ShutdownEscalator,
)
from embedded_cassandra.node.overlay import LaunchSpec
from embedded_cassandra.node.process import NodeProcess

logger = logging.getLogger(__name__)

HELPER_TIMEOUT = 30.0


def run_helper(args: Sequence[str], cwd: Optional[Path] = None, env: Optional[Dict[str, str]] = None) -> str:
    """
    Run a short-lived helper command (kill, taskkill, stop-server.ps1).

    Returns:
        The combined output of the command.

    Raises:
        subprocess.CalledProcessError: the command exited non-zero.
        OSError: the command could not be executed.
    """
    completed = subprocess.run(
        list(args),
        cwd=str(cwd) if cwd else None,
        env=env,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
        timeout=HELPER_TIMEOUT,
    )
    output = (completed.stdout or "").strip()
    if output:
        logger.info(f"{' '.join(args)}: {output}")
    if completed.returncode != 0:
        raise subprocess.CalledProcessError(completed.returncode, list(args), output=output)
    return output


class Node(ABC):
    """Platform-specific launcher for one Cassandra installation."""

    def __init__(self, step_timeout: float = DEFAULT_STEP_TIMEOUT, final_timeout: float = DEFAULT_FINAL_TIMEOUT):
        self.step_timeout = step_timeout
        self.final_timeout = final_timeout
        self._launch: Optional[LaunchSpec] = None

    @abstractmethod
    def command(self, launch: LaunchSpec) -> List[str]:
        """Command line that runs Cassandra in the foreground."""

    @abstractmethod
    def escalation_steps(self, process: NodeProcess, launch: LaunchSpec) -> List[EscalationStep]:
        """Polite, then forceful, stop steps."""

    def prepare(self, launch: LaunchSpec) -> None:
        """Hook for platform-specific preparation of the installation."""

    def environment(self, launch: LaunchSpec) -> Dict[str, str]:
        env = dict(os.environ)
        env.update(launch.environment)
        return env

    def start(self, launch: LaunchSpec) -> NodeProcess:
        """Launch the process; output is captured but not consumed until ``attach``."""
        self.prepare(launch)
        command = self.command(launch)
        logger.info(f"{launch.name}: {' '.join(command)}")
        popen = subprocess.Popen(
            command,
            cwd=str(launch.install_directory),
            env=self.environment(launch),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
            bufsize=1,
        )
        self._launch = launch
        return NodeProcess(popen, launch.name, launch.pid_file)

    def stop(self, process: NodeProcess, interrupt: Optional[InterruptToken] = None) -> List[str]:
        """Run the shutdown escalation; returns the names of the executed steps."""
        if self._launch is None:
            raise RuntimeError("Node was not started")
        steps = self.escalation_steps(process, self._launch)
        return ShutdownEscalator(process, steps, self.step_timeout, self.final_timeout).run(interrupt)

    def helper(self, launch: LaunchSpec, args: Sequence[str]) -> None:
        run_helper(args, launch.install_directory, self.environment(launch))
