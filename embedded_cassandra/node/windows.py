"""
Windows node.

``cassandra.ps1`` runs under powershell and reports the JVM pid through a
pid file; ``stop-server.ps1`` is the polite stop and ``taskkill`` the
fallback.
"""

from __future__ import annotations

import logging
from typing import List

from embedded_cassandra.core.version import Version
from embedded_cassandra.node.base import Node
from embedded_cassandra.node.escalation import EscalationStep
from embedded_cassandra.node.overlay import LaunchSpec
from embedded_cassandra.node.process import NodeProcess

logger = logging.getLogger(__name__)

POWERSHELL = ["powershell", "-ExecutionPolicy", "Unrestricted"]
_LEGACY_FLAG_SINCE = Version.parse("2.1")


class WindowsNode(Node):
    def command(self, launch: LaunchSpec) -> List[str]:
        if launch.pid_file is None:
            raise ValueError(f"{launch.name}: a pid file is required on Windows")
        command = POWERSHELL + [str(launch.install_directory / "bin" / "cassandra.ps1"), "-p", str(launch.pid_file)]
        if launch.version > _LEGACY_FLAG_SINCE:
            command.append("-a")
        command.append("-f")
        return command

    def escalation_steps(self, process: NodeProcess, launch: LaunchSpec) -> List[EscalationStep]:
        pid = process.pid

        def polite() -> None:
            try:
                self.helper(
                    launch,
                    POWERSHELL + [str(launch.install_directory / "bin" / "stop-server.ps1"), "-p", str(launch.pid_file)],
                )
            except Exception as e:
                if pid is None:
                    raise
                logger.warning(f"{launch.name}: stop-server.ps1 failed ({e}), falling back to taskkill")
                self.helper(launch, ["taskkill", "/T", "/PID", str(pid)])

        def forceful() -> None:
            if pid is None:
                process.popen.kill()
            else:
                self.helper(launch, ["taskkill", "/T", "/F", "/PID", str(pid)])

        return [EscalationStep("stop-server", polite), EscalationStep("taskkill", forceful)]
