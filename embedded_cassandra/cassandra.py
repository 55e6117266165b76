"""
Embedded Cassandra - Lifecycle of One Instance
==============================================

    NEW --start()--> STARTING --> STARTED --stop()--> STOPPING --> STOPPED
                        |                                |
                        +--> START_FAILED                +--> STOP_FAILED
                        +--> START_INTERRUPTED           +--> STOP_INTERRUPTED

Start and stop run on a worker thread while the calling thread waits in
short slices, so Ctrl+C in the caller (or ``interrupt()`` from any other
thread) reaches the worker through an InterruptToken. Every failed or
interrupted start is followed by a best-effort stop so no process leaks.

USAGE:
    with Cassandra(CassandraConfig(version="4.1.3", port=0)) as cassandra:
        settings = cassandra.settings
        print(settings.address, settings.port)
"""

from __future__ import annotations

import itertools
import logging
import shutil
import threading
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from embedded_cassandra.artifact.cache import ExtractionCache
from embedded_cassandra.configs.cassandra_config import CassandraConfig
from embedded_cassandra.core import exit_hooks
from embedded_cassandra.core.errors import (
    CassandraInterruptedError,
    CassandraStartError,
    CassandraStopError,
    NotRunningError,
    ProcessExitedError,
    RetryTimeoutError,
    StartupTimeoutError,
    TransportFailedError,
)
from embedded_cassandra.core.output import LineBuffer, OutputPipeline
from embedded_cassandra.core.readiness import (
    CompositeReadiness,
    ReadinessDetector,
    TransportStatus,
    native_transport_detector,
    rpc_transport_detector,
)
from embedded_cassandra.core.retry import InterruptToken, retry_until
from embedded_cassandra.core.settings import Settings
from embedded_cassandra.core.version import Version
from embedded_cassandra.node.base import Node
from embedded_cassandra.node.factory import create_node, is_windows
from embedded_cassandra.node.overlay import ConfigurationOverlay, LaunchSpec
from embedded_cassandra.node.process import NodeProcess

logger = logging.getLogger(__name__)

READINESS_POLL_INTERVAL = 0.1
INTERRUPT_JOIN_TIMEOUT = 10.0
JOIN_SLICE = 0.1
EXIT_WATCH_INTERVAL = 0.5
READER_DRAIN_TIMEOUT = 1.0

DEFAULT_NATIVE_PORT = 9042
DEFAULT_RPC_PORT = 9160
DEFAULT_ADDRESS = "127.0.0.1"

_instance_counter = itertools.count(1)


class LifecycleState(Enum):
    """Lifecycle state of a Cassandra instance."""
    NEW = "new"
    STARTING = "starting"
    STARTED = "started"
    START_FAILED = "start_failed"
    START_INTERRUPTED = "start_interrupted"
    STOPPING = "stopping"
    STOPPED = "stopped"
    STOP_FAILED = "stop_failed"
    STOP_INTERRUPTED = "stop_interrupted"


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value) if value is not None and str(value).strip() else None
    except (TypeError, ValueError):
        return None


class Cassandra:
    """
    One embedded Cassandra node.

    ``start`` and ``stop`` are serialized by a single lock and may be called
    again after a failure; a failed start leaves the instance ready for a
    fresh attempt.
    """

    def __init__(
        self,
        config: Optional[CassandraConfig] = None,
        *,
        node_factory: Callable[[], Node] = create_node,
        cache: Optional[ExtractionCache] = None,
    ):
        self.config = config or CassandraConfig()
        self._name = self.config.name or f"cassandra-{next(_instance_counter)}"
        self._artifact = self.config.resolve_artifact()
        self._version = self._artifact.version if self.config.artifact is not None else self.config.parsed_version
        self._node_factory = node_factory
        self._cache = cache
        self._output_logger = logging.getLogger(f"{__name__}.{self._name}")

        self._lock = threading.Lock()
        self._state = LifecycleState.NEW
        self._token: Optional[InterruptToken] = None
        self._settings: Optional[Settings] = None
        self._node: Optional[Node] = None
        self._process: Optional[NodeProcess] = None
        self._launch: Optional[LaunchSpec] = None
        self._generated_directory: Optional[Path] = None
        self._buffer = LineBuffer()
        self._hook: Optional[int] = None

    # =========================================================================
    # Public API
    # =========================================================================

    @property
    def name(self) -> str:
        return self._name

    @property
    def version(self) -> Version:
        return self._version

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def settings(self) -> Settings:
        return self.get_settings()

    def get_settings(self) -> Settings:
        """Endpoints of the running node; raises NotRunningError unless STARTED."""
        settings = self._settings
        if self._state is not LifecycleState.STARTED or settings is None:
            raise NotRunningError(
                f"{self} is not running (state: {self._state.value})",
                details={"name": self._name, "state": self._state.value},
            )
        return settings

    def is_running(self) -> bool:
        process = self._process
        return self._state is LifecycleState.STARTED and process is not None and process.is_alive()

    def interrupt(self) -> None:
        """Cancel an in-flight start or stop from another thread."""
        token = self._token
        if token is not None:
            logger.info(f"{self}: interruption requested")
            token.interrupt()

    def start(self) -> None:
        """
        Start the node and block until it accepts client connections.

        Raises:
            CassandraStartError: the node could not be started.
            CassandraInterruptedError: ``interrupt()`` was called.
            KeyboardInterrupt: the calling thread was interrupted.
        """
        with self._lock:
            if self._state is LifecycleState.STARTED:
                return
            logger.info(f"Starting {self}")
            self._state = LifecycleState.STARTING
            self._buffer = LineBuffer()
            token = InterruptToken()
            self._token = token
            try:
                self._run_worker("start", self._do_start, token)
            except (KeyboardInterrupt, CassandraInterruptedError):
                self._state = LifecycleState.START_INTERRUPTED
                logger.warning(f"{self} start has been interrupted")
                self._stop_quietly()
                raise
            except Exception as e:
                self._state = LifecycleState.START_FAILED
                self._stop_quietly()
                raise CassandraStartError(
                    f"Unable to start {self}",
                    output=getattr(e, "output", None) or self._buffer.lines(),
                    details={"name": self._name, "version": str(self._version)},
                ) from e
            finally:
                self._token = None
            self._state = LifecycleState.STARTED
            if self.config.register_shutdown_hook and self._hook is None:
                self._hook = exit_hooks.register(self._on_exit)
            self._watch_exit(self._process)
            logger.info(f"{self} has been started: {self._settings.contact_point}")

    def stop(self) -> None:
        """
        Stop the node; a no-op when nothing is running.

        Raises:
            CassandraStopError: the process survived every shutdown step.
            CassandraInterruptedError: ``interrupt()`` was called.
            KeyboardInterrupt: the calling thread was interrupted.
        """
        with self._lock:
            if self._process is None:
                self._release_hook()
                if self._state is LifecycleState.STARTED:
                    self._state = LifecycleState.STOPPED
                return
            logger.info(f"Stopping {self}")
            self._state = LifecycleState.STOPPING
            token = InterruptToken()
            self._token = token
            try:
                self._run_worker("stop", self._do_stop, token)
            except (KeyboardInterrupt, CassandraInterruptedError):
                self._state = LifecycleState.STOP_INTERRUPTED
                logger.warning(f"{self} stop has been interrupted")
                raise
            except CassandraStopError:
                self._state = LifecycleState.STOP_FAILED
                raise
            except Exception as e:
                self._state = LifecycleState.STOP_FAILED
                raise CassandraStopError(
                    f"Unable to stop {self}", details={"name": self._name, "version": str(self._version)}
                ) from e
            finally:
                self._token = None
            self._state = LifecycleState.STOPPED
            self._release_hook()
            logger.info(f"{self} has been stopped")

    def __enter__(self) -> "Cassandra":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def __str__(self) -> str:
        return f"{self._name} ({self._version})"

    def __repr__(self) -> str:
        return f"Cassandra(name={self._name!r}, version={str(self._version)!r}, state={self._state.value!r})"

    # =========================================================================
    # Worker plumbing
    # =========================================================================

    def _run_worker(self, action: str, target: Callable[[InterruptToken], None], token: InterruptToken) -> None:
        errors: List[Exception] = []

        def run() -> None:
            try:
                target(token)
            except Exception as e:
                errors.append(e)

        worker = threading.Thread(target=run, name=f"{self._name}-{action}", daemon=self.config.daemon)
        worker.start()
        try:
            while worker.is_alive():
                worker.join(JOIN_SLICE)
        except KeyboardInterrupt:
            token.interrupt()
            worker.join(INTERRUPT_JOIN_TIMEOUT)
            if worker.is_alive():
                logger.warning(f"{worker.name} did not finish within {INTERRUPT_JOIN_TIMEOUT:.0f}s of interruption")
            raise
        if errors:
            raise errors[0]

    def _on_exit(self) -> None:
        self._hook = None
        try:
            self.stop()
        except Exception as e:
            logger.error(f"{self} could not be stopped on exit: {e}")

    def _watch_exit(self, process: NodeProcess) -> None:
        def watch() -> None:
            while not process.wait(EXIT_WATCH_INTERVAL):
                if self._process is not process:
                    return
            self._on_process_exit(process)

        threading.Thread(target=watch, name=f"{self._name}-exit-watcher", daemon=True).start()

    def _on_process_exit(self, process: NodeProcess) -> None:
        """Clean up after a node that exited on its own while STARTED."""
        with self._lock:
            if self._process is not process or self._state is not LifecycleState.STARTED:
                return
            logger.warning(f"{self} exited unexpectedly with code {process.exit_code}")
            try:
                self._do_stop(InterruptToken())
            except Exception as e:
                self._state = LifecycleState.STOP_FAILED
                logger.error(f"{self} could not be cleaned up after it exited: {e}")
                return
            self._state = LifecycleState.STOPPED
            self._release_hook()

    def _release_hook(self) -> None:
        if self._hook is not None:
            exit_hooks.unregister(self._hook)
            self._hook = None

    def _log_line(self, line: str) -> None:
        self._output_logger.info(line)

    # =========================================================================
    # Start
    # =========================================================================

    def _do_start(self, token: InterruptToken) -> None:
        if self._process is not None:
            logger.info(f"{self}: stopping the process left over from a previous attempt")
            self._do_stop(token)
        cache = self._cache or ExtractionCache(self.config.cache_directory)
        install_directory = self._artifact.resolve(cache, token)
        token.check(f"start of {self}")
        working_directory = self.config.resolve_working_directory(self._name)
        if self.config.working_directory is None:
            self._generated_directory = working_directory

        overlay = ConfigurationOverlay(
            self._name,
            self._version,
            install_directory,
            working_directory,
            config_properties=self.config.effective_config_properties(),
            system_properties=self.config.effective_system_properties(),
            environment_variables=self.config.environment_variables,
            jvm_options=self.config.jvm_options,
            java_home=self.config.java_home,
            root_allowed=self.config.root_allowed,
            daemon=self.config.daemon,
            windows=is_windows(),
        )
        launch = overlay.apply()
        self._launch = launch
        token.check(f"start of {self}")

        node = self._node_factory()
        self._node = node
        process = node.start(launch)
        self._process = process

        expect_ssl_port = launch.config_properties.get("native_transport_port_ssl") is not None
        native = native_transport_detector(self._version, expect_ssl_port)
        rpc = rpc_transport_detector(self._version)
        pipeline = OutputPipeline()
        pipeline.add(self._buffer)
        pipeline.add(self._log_line)
        pipeline.add(native)
        pipeline.add(rpc)
        process.attach(pipeline, daemon=self.config.daemon)

        readiness = CompositeReadiness([native, rpc], process.is_alive)

        def attempt() -> Optional[bool]:
            if not process.is_alive():
                process.join_reader(READER_DRAIN_TIMEOUT)
                raise ProcessExitedError(
                    f"{self} exited with code {process.exit_code} before it became ready",
                    output=self._buffer.lines(),
                    details={"exit_code": process.exit_code},
                )
            failed = readiness.failed()
            if failed:
                process.join_reader(READER_DRAIN_TIMEOUT)
                names = ", ".join(t.value for t in failed)
                raise TransportFailedError(
                    f"{self} could not bind its {names} transport port",
                    output=self._buffer.lines(),
                    details={"transports": [t.value for t in failed]},
                )
            return True if readiness.is_ready() else None

        try:
            retry_until(
                attempt,
                timeout=self.config.startup_timeout,
                interval=READINESS_POLL_INTERVAL,
                interrupt=token,
                description=f"start of {self}",
            )
        except RetryTimeoutError as e:
            raise StartupTimeoutError(
                f"{self} did not become ready within {self.config.startup_timeout:.0f}s",
                output=self._buffer.lines(),
                details={"timeout": self.config.startup_timeout},
            ) from e
        self._settings = self._build_settings(launch, native, rpc)

    def _build_settings(self, launch: LaunchSpec, native: ReadinessDetector, rpc: ReadinessDetector) -> Settings:
        config = launch.config_properties
        sys_props = launch.system_properties
        native_state = native.state
        rpc_state = rpc.state

        port = native_state.port or _int_or_none(sys_props.get("cassandra.native_transport_port")) \
            or _int_or_none(config.get("native_transport_port")) or DEFAULT_NATIVE_PORT
        rpc_port = rpc_state.port or _int_or_none(sys_props.get("cassandra.rpc_port")) \
            or _int_or_none(config.get("rpc_port")) or DEFAULT_RPC_PORT
        ssl_port = native_state.ssl_port or _int_or_none(config.get("native_transport_port_ssl"))
        address = native_state.host or rpc_state.host or config.get("rpc_address") or DEFAULT_ADDRESS

        return Settings(
            name=self._name,
            version=self._version,
            address=str(address),
            port=port,
            ssl_port=ssl_port,
            rpc_port=rpc_port,
            native_transport_enabled=native_state.status is TransportStatus.READY,
            rpc_transport_enabled=rpc_state.status is TransportStatus.READY,
            install_directory=launch.install_directory,
            working_directory=launch.working_directory,
            config_file=Path(launch.config_file),
        )

    # =========================================================================
    # Stop
    # =========================================================================

    def _do_stop(self, token: InterruptToken) -> None:
        process = self._process
        node = self._node
        self._settings = None
        if process is not None and node is not None:
            executed = node.stop(process, token)
            if executed:
                logger.debug(f"{self}: stopped after {', '.join(executed)}")
            process.join_reader(READER_DRAIN_TIMEOUT)
        self._process = None
        self._node = None
        if self._launch is not None:
            self._launch.cleanup()
            self._launch = None
        directory = self._generated_directory
        if directory is not None:
            self._generated_directory = None
            shutil.rmtree(directory, ignore_errors=True)
            logger.debug(f"{self}: removed working directory '{directory}'")

    def _stop_quietly(self) -> None:
        try:
            self._do_stop(InterruptToken())
        except Exception as e:
            logger.error(f"{self} could not be stopped after a failed start: {e}")
