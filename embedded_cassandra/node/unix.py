"""POSIX node: ``bin/cassandra -f`` stopped with ``kill -SIGINT`` / ``kill -SIGKILL``."""

from __future__ import annotations

import logging
import os
import signal
import stat
from pathlib import Path
from typing import List

from embedded_cassandra.core.version import Version
from embedded_cassandra.node.base import Node
from embedded_cassandra.node.escalation import EscalationStep
from embedded_cassandra.node.overlay import LaunchSpec
from embedded_cassandra.node.process import NodeProcess

logger = logging.getLogger(__name__)

# -R (run as root) exists since 3.1
_ROOT_FLAG_SINCE = Version.parse("3.1")


class UnixNode(Node):
    def executable(self, launch: LaunchSpec) -> Path:
        return launch.install_directory / "bin" / "cassandra"

    def prepare(self, launch: LaunchSpec) -> None:
        executable = self.executable(launch)
        if os.access(executable, os.X_OK):
            return
        mode = executable.stat().st_mode
        executable.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        logger.debug(f"Made '{executable}' executable")

    def command(self, launch: LaunchSpec) -> List[str]:
        command = [str(self.executable(launch))]
        if launch.root_allowed and launch.version > _ROOT_FLAG_SINCE:
            command.append("-R")
        command.append("-f")
        return command

    def escalation_steps(self, process: NodeProcess, launch: LaunchSpec) -> List[EscalationStep]:
        pid = process.pid
        if pid is None:
            return [
                EscalationStep("SIGINT", lambda: process.popen.send_signal(signal.SIGINT)),
                EscalationStep("SIGKILL", process.popen.kill),
            ]
        return [
            EscalationStep("SIGINT", lambda: self.helper(launch, ["kill", "-SIGINT", str(pid)])),
            EscalationStep("SIGKILL", lambda: self.helper(launch, ["kill", "-SIGKILL", str(pid)])),
        ]
