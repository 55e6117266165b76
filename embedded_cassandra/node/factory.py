"""Picks the Node implementation for the host platform."""

from __future__ import annotations

import platform
from typing import Optional

from embedded_cassandra.node.base import Node
from embedded_cassandra.node.escalation import DEFAULT_FINAL_TIMEOUT, DEFAULT_STEP_TIMEOUT


def is_windows(system: Optional[str] = None) -> bool:
    return (system or platform.system()).lower().startswith("windows")


def create_node(
    step_timeout: float = DEFAULT_STEP_TIMEOUT,
    final_timeout: float = DEFAULT_FINAL_TIMEOUT,
    system: Optional[str] = None,
) -> Node:
    if is_windows(system):
        from embedded_cassandra.node.windows import WindowsNode

        return WindowsNode(step_timeout, final_timeout)
    from embedded_cassandra.node.unix import UnixNode

    return UnixNode(step_timeout, final_timeout)
