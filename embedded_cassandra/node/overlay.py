"""
Configuration Overlay - Effective cassandra.yaml and Launch Environment
=======================================================================

Takes the distribution's default ``cassandra.yaml``, merges caller
overrides, assigns real ports where ``0`` was requested, and writes the
result to a temporary file that the launched process is pointed at via
``-Dcassandra.config=file:///...``.

Every other option ends up in a single ``JVM_EXTRA_OPTS`` environment
variable, which the bundled start scripts append to the JVM command line.
"""

from __future__ import annotations

import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence
from urllib.parse import unquote, urlparse

import httpx
import yaml

from embedded_cassandra.core.ports import PortAllocator, get_default_allocator
from embedded_cassandra.core.version import Version

logger = logging.getLogger(__name__)

CONFIG_PROPERTY = "cassandra.config"

PORT_CONFIG_KEYS = (
    "native_transport_port",
    "native_transport_port_ssl",
    "rpc_port",
    "storage_port",
    "ssl_storage_port",
)

PORT_SYSTEM_PROPERTIES = (
    "cassandra.native_transport_port",
    "cassandra.rpc_port",
    "cassandra.storage_port",
    "cassandra.ssl_storage_port",
    "cassandra.jmx.local.port",
    "cassandra.jmx.remote.port",
    "com.sun.management.jmxremote.rmi.port",
)

DEFAULT_STORAGE_PORT = "7000"
DEFAULT_SSL_STORAGE_PORT = "7001"


@dataclass
class LaunchSpec:
    """Everything a Node needs to launch one Cassandra process."""

    name: str
    version: Version
    install_directory: Path
    working_directory: Path
    environment: Dict[str, str]
    jvm_options: List[str]
    system_properties: Dict[str, Optional[str]]
    config_properties: Dict[str, Any]
    config_file: Path
    pid_file: Optional[Path] = None
    root_allowed: bool = True
    daemon: bool = True
    temporary_files: List[Path] = field(default_factory=list)

    def cleanup(self) -> None:
        """Remove generated files; safe to call more than once."""
        for path in self.temporary_files:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not delete '{path}': {e}")
        self.temporary_files.clear()


# =============================================================================
# Document helpers
# =============================================================================


def normalize(value: Any) -> Any:
    """Turn caller-supplied values into plain YAML-serializable data."""
    if isinstance(value, Mapping):
        return {str(k): normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [normalize(v) for v in value]
    if isinstance(value, os.PathLike):
        return os.fspath(value)
    return value


def set_property(document: Dict[str, Any], key: str, value: Any) -> None:
    """
    Set ``key`` in ``document``; dots in ``key`` address nested mappings.

    Missing intermediate mappings are created. Nested mappings are copied
    before modification so that the source document is never mutated.

    Raises:
        ValueError: an intermediate value exists and is not a mapping.
    """
    parts = key.split(".")
    target = document
    walked: List[str] = []
    for part in parts[:-1]:
        current = target.get(part)
        if current is None:
            current = {}
        elif not isinstance(current, Mapping):
            path = ".".join(walked + [part])
            raise ValueError(
                f"Config property '{key}: {value}' cannot be set. "
                f"Property '{path}' has type '{type(current).__name__}' and cannot have nested properties."
            )
        current = dict(current)
        target[part] = current
        target = current
        walked.append(part)
    target[parts[-1]] = normalize(value)


def load_document(location: "str | Path") -> Dict[str, Any]:
    """Parse a YAML document from a path, a ``file:`` URL or an ``http(s)`` URL."""
    text = str(location)
    parsed = urlparse(text)
    if parsed.scheme in ("http", "https"):
        response = httpx.get(text, follow_redirects=True)
        response.raise_for_status()
        content = response.text
    else:
        if parsed.scheme == "file":
            path = Path(unquote(parsed.path.lstrip("/") if os.name == "nt" else parsed.path))
        else:
            path = Path(text)
        with open(path, "r", encoding="utf-8") as f:
            content = f.read()
    document = yaml.safe_load(content)
    if document is None:
        return {}
    if not isinstance(document, Mapping):
        raise ValueError(f"'{location}' does not contain a YAML mapping")
    return dict(document)


def _is_zero(value: Any) -> bool:
    return value is not None and str(value).strip() == "0"


# =============================================================================
# Overlay
# =============================================================================


class ConfigurationOverlay:
    """
    Builds a LaunchSpec for one start attempt.

    Usage:
        overlay = ConfigurationOverlay(name, version, install_dir, work_dir,
                                       config_properties={"num_tokens": 1})
        launch = overlay.apply()
        ...
        launch.cleanup()
    """

    def __init__(
        self,
        name: str,
        version: Version,
        install_directory: Path,
        working_directory: Path,
        *,
        config_properties: Optional[Mapping[str, Any]] = None,
        system_properties: Optional[Mapping[str, Any]] = None,
        environment_variables: Optional[Mapping[str, Any]] = None,
        jvm_options: Sequence[str] = (),
        java_home: Optional[Path] = None,
        root_allowed: bool = True,
        daemon: bool = True,
        allocator: Optional[PortAllocator] = None,
        windows: Optional[bool] = None,
    ):
        self.name = name
        self.version = version
        self.install_directory = Path(install_directory)
        self.working_directory = Path(working_directory)
        self.config_properties = dict(config_properties or {})
        self.system_properties = dict(system_properties or {})
        self.environment_variables = dict(environment_variables or {})
        self.jvm_options = list(jvm_options)
        self.java_home = java_home
        self.root_allowed = root_allowed
        self.daemon = daemon
        self.allocator = allocator or get_default_allocator()
        self.windows = (os.name == "nt") if windows is None else windows

    def apply(self) -> LaunchSpec:
        sys_props: Dict[str, Optional[str]] = {
            k: (None if v is None else str(normalize(v))) for k, v in self.system_properties.items()
        }
        self._assign_ports(sys_props, PORT_SYSTEM_PROPERTIES, as_text=True)
        self._runtime_directories(sys_props)

        source = sys_props.get(CONFIG_PROPERTY) or self.install_directory / "conf" / "cassandra.yaml"
        original = load_document(source)
        document = dict(original)
        for key, value in self.config_properties.items():
            set_property(document, key, value)
        self._assign_ports(document, PORT_CONFIG_KEYS, as_text=False)
        if self.version.major >= 4:
            rewrite_seeds(original, document, sys_props)

        config_file = self._write_document(document)
        sys_props[CONFIG_PROPERTY] = config_file.as_uri()
        temporary = [config_file]

        pid_file = None
        if self.windows:
            pid_file = self.working_directory / f"{uuid.uuid4().hex}-cassandra.pid"
            temporary.append(pid_file)

        environment = self._environment(sys_props)
        logger.debug(f"{self.name}: effective config written to '{config_file}'")
        return LaunchSpec(
            name=self.name,
            version=self.version,
            install_directory=self.install_directory,
            working_directory=self.working_directory,
            environment=environment,
            jvm_options=list(self.jvm_options),
            system_properties=sys_props,
            config_properties=document,
            config_file=config_file,
            pid_file=pid_file,
            root_allowed=self.root_allowed,
            daemon=self.daemon,
            temporary_files=temporary,
        )

    def _assign_ports(self, target: Dict[str, Any], keys: Sequence[str], as_text: bool) -> None:
        for key in keys:
            if _is_zero(target.get(key)):
                port = self.allocator.allocate()
                target[key] = str(port) if as_text else port
                logger.debug(f"{self.name}: '{key}' assigned port {port}")

    def _runtime_directories(self, sys_props: Dict[str, Optional[str]]) -> None:
        for key, sub in (("cassandra.storagedir", "data"), ("cassandra.logdir", "logs")):
            if key not in sys_props:
                directory = self.working_directory / sub
                directory.mkdir(parents=True, exist_ok=True)
                sys_props[key] = str(directory)

    def _write_document(self, document: Dict[str, Any]) -> Path:
        conf = self.install_directory / "conf"
        fd, name = tempfile.mkstemp(prefix=f"{uuid.uuid4().hex[:8]}-", suffix="-cassandra.yaml", dir=conf)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            yaml.safe_dump(document, f, sort_keys=False, default_flow_style=False)
        return Path(name)

    def _environment(self, sys_props: Dict[str, Optional[str]]) -> Dict[str, str]:
        environment = {k: "" if v is None else str(normalize(v)) for k, v in self.environment_variables.items()}
        extra = list(self.jvm_options)
        for key, value in sys_props.items():
            extra.append(f"-D{key}" if value is None else f"-D{key}={value}")
        opts = " ".join(extra)
        if environment.get("JVM_EXTRA_OPTS"):
            opts = f"{environment['JVM_EXTRA_OPTS']} {opts}".strip()
        environment["JVM_EXTRA_OPTS"] = opts
        java_home = self.java_home or environment.get("JAVA_HOME") or os.getenv("JAVA_HOME")
        if java_home:
            environment["JAVA_HOME"] = str(java_home)
        return environment


def rewrite_seeds(original: Mapping[str, Any], document: Dict[str, Any], sys_props: Mapping[str, Optional[str]]) -> None:
    """
    Point ``host:<storage port>`` seed entries at the reassigned storage ports.

    Only applies when the effective storage or SSL storage port differs from
    the one in the source document.
    """
    old_storage = str(original.get("storage_port", DEFAULT_STORAGE_PORT))
    new_storage = sys_props.get("cassandra.storage_port") or str(document.get("storage_port", old_storage))
    old_ssl = str(original.get("ssl_storage_port", DEFAULT_SSL_STORAGE_PORT))
    new_ssl = sys_props.get("cassandra.ssl_storage_port") or str(document.get("ssl_storage_port", old_ssl))
    if old_storage == new_storage and old_ssl == new_ssl:
        return
    providers = document.get("seed_provider")
    if not isinstance(providers, list):
        return
    rewritten = []
    for provider in providers:
        if not isinstance(provider, Mapping):
            rewritten.append(provider)
            continue
        provider = dict(provider)
        parameters = provider.get("parameters")
        if isinstance(parameters, list):
            new_parameters = []
            for parameter in parameters:
                if isinstance(parameter, Mapping) and parameter.get("seeds") is not None:
                    parameter = dict(parameter)
                    seeds = str(parameter["seeds"])
                    if old_storage != new_storage:
                        seeds = seeds.replace(f":{old_storage}", f":{new_storage}")
                    if old_ssl != new_ssl:
                        seeds = seeds.replace(f":{old_ssl}", f":{new_ssl}")
                    parameter["seeds"] = seeds
                new_parameters.append(parameter)
            provider["parameters"] = new_parameters
        rewritten.append(provider)
    document["seed_provider"] = rewritten
