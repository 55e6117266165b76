"""
Readiness detection from Cassandra log output.

Cassandra has no health-check API; the only signal that a client transport
is up is a log line. Each transport is modelled as a tiny state machine:

    UNKNOWN --"listening for cql clients on /host:port"--> READY(host, port)
    UNKNOWN --"not starting native transport"-----------> DISABLED
    UNKNOWN / READY --"failed to bind port"--------------> FAILED

Transitions are pure functions of ``(state, line)`` and never regress:
the first match wins, DISABLED and FAILED are final, and READY can only
move on to FAILED.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Iterable, List, Optional, Tuple

from embedded_cassandra.core.ports import is_port_open
from embedded_cassandra.core.version import Version

logger = logging.getLogger(__name__)

_NATIVE_START = re.compile(r"listening\s*for\s*cql\s*clients\s*on.*/([^\s/]+):(\d+)", re.IGNORECASE)
_NATIVE_DISABLED = re.compile(
    r"(not\s*starting\s*client\s*transports)|(not\s*starting\s*native\s*transport)", re.IGNORECASE
)
_NATIVE_FAILED = re.compile(r"failed\s*to\s*bind\s*port\s*(\d+)\s*on\s*.+", re.IGNORECASE)
_RPC_START = re.compile(r"binding\s*thrift\s*service\s*to.*/([^\s/]+):(\d+)", re.IGNORECASE)
_RPC_LISTENING = re.compile(r"listening\s*for\s*thrift\s*clients", re.IGNORECASE)
_RPC_DISABLED = re.compile(
    r"(not\s*starting\s*client\s*transports)|(not\s*starting\s*rpc\s*server)", re.IGNORECASE
)
_RPC_FAILED = re.compile(r"unable\s*to\s*create\s*thrift\s*socket\s*to", re.IGNORECASE)
_ENCRYPTED = "(encrypted)"


class TransportStatus(Enum):
    UNKNOWN = "unknown"
    READY = "ready"
    DISABLED = "disabled"
    FAILED = "failed"


class Transport(Enum):
    NATIVE = "native"
    RPC = "rpc"


@dataclass(frozen=True)
class TransportState:
    """Immutable readiness state of one transport."""

    status: TransportStatus = TransportStatus.UNKNOWN
    host: Optional[str] = None
    port: Optional[int] = None
    ssl_port: Optional[int] = None
    listening: bool = False

    @property
    def ready(self) -> bool:
        return self.status in (TransportStatus.READY, TransportStatus.DISABLED)

    @property
    def failed(self) -> bool:
        return self.status is TransportStatus.FAILED


def _host(raw: str) -> str:
    host = raw.strip()
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host


_FINAL = (TransportStatus.DISABLED, TransportStatus.FAILED)


def native_transition(state: TransportState, line: str, expect_ssl_port: bool = False) -> TransportState:
    """
    Next native (CQL) transport state after ``line``.

    With ``expect_ssl_port`` the server binds a separate encrypted port and
    logs it with an ``(encrypted)`` marker; the transport is READY only once
    both the plain and the encrypted ports were seen.
    """
    if state.status in _FINAL:
        return state
    match = _NATIVE_START.search(line)
    if match:
        port = int(match.group(2))
        host = state.host or _host(match.group(1))
        if expect_ssl_port and _ENCRYPTED in line.lower():
            new = replace(state, host=host, ssl_port=state.ssl_port if state.ssl_port is not None else port)
        else:
            new = replace(state, host=host, port=state.port if state.port is not None else port)
        if new.port is not None and (not expect_ssl_port or new.ssl_port is not None):
            return replace(new, status=TransportStatus.READY)
        return new
    if _NATIVE_FAILED.search(line):
        return replace(state, status=TransportStatus.FAILED)
    if state.status is TransportStatus.UNKNOWN and state.port is None and _NATIVE_DISABLED.search(line):
        return replace(state, status=TransportStatus.DISABLED)
    return state


def rpc_transition(state: TransportState, line: str) -> TransportState:
    """
    Next RPC (thrift) transport state after ``line``.

    Thrift logs the bound address first and "listening for thrift clients"
    once it accepts connections; READY needs both, in either order.
    """
    if state.status in _FINAL:
        return state
    if _RPC_FAILED.search(line):
        return replace(state, status=TransportStatus.FAILED)
    if state.status is TransportStatus.READY:
        return state
    match = _RPC_START.search(line)
    if match:
        if state.port is not None:
            return state
        new = replace(state, host=_host(match.group(1)), port=int(match.group(2)))
    elif _RPC_LISTENING.search(line):
        new = replace(state, listening=True)
    elif _RPC_DISABLED.search(line):
        return replace(state, status=TransportStatus.DISABLED)
    else:
        return state
    if new.port is not None and new.listening:
        return replace(new, status=TransportStatus.READY)
    return new


class ReadinessDetector:
    """
    Log-line consumer for one transport.

    ``accept`` is called from the output reader thread, ``is_ready`` from
    the polling loop.
    """

    def __init__(
        self,
        transport: Transport,
        transition: Callable[[TransportState, str], TransportState],
        initial: TransportState = TransportState(),
    ):
        self.transport = transport
        self._transition = transition
        self._state = initial
        self._lock = threading.Lock()

    def __call__(self, line: str) -> None:
        self.accept(line)

    def accept(self, line: str) -> None:
        with self._lock:
            previous = self._state
            self._state = self._transition(previous, line)
            changed = self._state != previous
        if changed:
            logger.debug(f"{self.transport.value} transport: {previous.status.value} -> {self._state.status.value}")

    @property
    def state(self) -> TransportState:
        with self._lock:
            return self._state

    def is_ready(self) -> bool:
        return self.state.ready

    def is_failed(self) -> bool:
        return self.state.failed

    def endpoints(self) -> List[Tuple[str, int]]:
        """(host, port) pairs this transport claims to be listening on."""
        state = self.state
        if state.status is not TransportStatus.READY or state.host is None:
            return []
        return [(state.host, p) for p in (state.port, state.ssl_port) if p is not None]

    def __repr__(self) -> str:
        return f"ReadinessDetector({self.transport.value}, {self.state})"


def native_transport_detector(version: Version, expect_ssl_port: bool = False) -> ReadinessDetector:
    """Detector for the CQL transport; versions before 2.0 never log it and start DISABLED."""
    initial = TransportState()
    if version.major < 2:
        initial = TransportState(TransportStatus.DISABLED)
    return ReadinessDetector(
        Transport.NATIVE,
        lambda state, line: native_transition(state, line, expect_ssl_port),
        initial,
    )


def rpc_transport_detector(version: Version) -> ReadinessDetector:
    """Detector for the thrift transport; removed in 4.0, so ready from the start there."""
    initial = TransportState()
    if version.major >= 4:
        initial = TransportState(TransportStatus.DISABLED)
    return ReadinessDetector(Transport.RPC, rpc_transition, initial)


class CompositeReadiness:
    """
    Overall readiness: process alive, every detector ready, and every
    captured endpoint accepting TCP connections.

    The log line can appear before the socket is accept-ready, so the log
    evidence is confirmed with a connect probe.
    """

    def __init__(
        self,
        detectors: Iterable[ReadinessDetector],
        is_alive: Callable[[], bool],
        probe: Callable[[str, int], bool] = is_port_open,
    ):
        self.detectors = list(detectors)
        self._is_alive = is_alive
        self._probe = probe

    def is_ready(self) -> bool:
        if not self._is_alive() or self.failed():
            return False
        if not all(d.is_ready() for d in self.detectors):
            return False
        for detector in self.detectors:
            for host, port in detector.endpoints():
                if not self._probe(host, port):
                    logger.debug(f"{detector.transport.value} transport logged {host}:{port} but it is not accepting yet")
                    return False
        return True

    def failed(self) -> List[Transport]:
        """Transports that logged a bind failure."""
        return [d.transport for d in self.detectors if d.is_failed()]
