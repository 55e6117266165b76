"""
Caller-facing configuration for an embedded Cassandra instance.

Options can be set in code, loaded from a YAML file, or overridden with
``EMBEDDED_CASSANDRA_*`` environment variables::

    EMBEDDED_CASSANDRA_VERSION=4.1.3
    EMBEDDED_CASSANDRA_PORT=0
    EMBEDDED_CASSANDRA_CONFIG_PROPERTIES='{"num_tokens": 1}'
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from embedded_cassandra.artifact.sources import (
    ArchiveFile,
    ArtifactSource,
    InstalledDistribution,
    RemoteArchive,
)
from embedded_cassandra.core.errors import CassandraCreationError
from embedded_cassandra.core.version import Version

DEFAULT_VERSION = "3.11.4"
DEFAULT_STARTUP_TIMEOUT = 90.0
ENV_PREFIX = "EMBEDDED_CASSANDRA_"

# option -> system property
PORT_SYSTEM_PROPERTIES = {
    "port": "cassandra.native_transport_port",
    "rpc_port": "cassandra.rpc_port",
    "storage_port": "cassandra.storage_port",
    "ssl_storage_port": "cassandra.ssl_storage_port",
    "jmx_local_port": "cassandra.jmx.local.port",
}


def _parse_env_value(raw: str) -> Any:
    s = raw.strip()
    if s and s[0] in "[{\"":
        try:
            return json.loads(s)
        except json.JSONDecodeError:
            pass
    low = s.lower()
    if low in {"true", "yes", "on"}:
        return True
    if low in {"false", "no", "off"}:
        return False
    return s


def _artifact_from_dict(data: Mapping[str, Any], version: str) -> ArtifactSource:
    artifact_version = str(data.get("version", version))
    if data.get("install_dir"):
        return InstalledDistribution(data["install_dir"], artifact_version)
    if data.get("archive"):
        return ArchiveFile(data["archive"], artifact_version)
    return RemoteArchive(artifact_version, data.get("url"))


@dataclass
class CassandraConfig:
    """
    Options for one Cassandra instance.

    Ports set to ``0`` are replaced with free ephemeral ports at start-up;
    ``None`` keeps whatever the distribution's ``cassandra.yaml`` says.
    """

    name: Optional[str] = None
    version: str = DEFAULT_VERSION
    artifact: Optional[ArtifactSource] = None
    working_directory: Optional[Path] = None
    cache_directory: Optional[Path] = None

    # Network
    address: Optional[str] = None
    port: Optional[int] = None
    ssl_port: Optional[int] = None
    rpc_port: Optional[int] = None
    storage_port: Optional[int] = None
    ssl_storage_port: Optional[int] = None
    jmx_local_port: Optional[int] = None

    # Runtime
    java_home: Optional[Path] = None
    startup_timeout: float = DEFAULT_STARTUP_TIMEOUT
    config_properties: Dict[str, Any] = field(default_factory=dict)
    system_properties: Dict[str, Any] = field(default_factory=dict)
    environment_variables: Dict[str, Any] = field(default_factory=dict)
    jvm_options: List[str] = field(default_factory=list)

    # Behaviour
    root_allowed: bool = True
    register_shutdown_hook: bool = True
    daemon: bool = True

    def __post_init__(self) -> None:
        Version.parse(str(self.version))
        if self.startup_timeout <= 0:
            raise ValueError(f"startup_timeout must be positive, got {self.startup_timeout}")
        for option in ("port", "ssl_port", "rpc_port", "storage_port", "ssl_storage_port", "jmx_local_port"):
            value = getattr(self, option)
            if value is not None and not 0 <= int(value) <= 65535:
                raise ValueError(f"{option} must be between 0 and 65535, got {value}")

    @property
    def parsed_version(self) -> Version:
        return Version.parse(str(self.version))

    def resolve_artifact(self) -> ArtifactSource:
        return self.artifact if self.artifact is not None else RemoteArchive(self.parsed_version)

    def resolve_working_directory(self, name: str) -> Path:
        """The per-instance directory holding data, logs and the pid file."""
        if self.working_directory is None:
            return Path(tempfile.mkdtemp(prefix=f"embedded-{name}-"))
        directory = Path(self.working_directory)
        if directory.exists() and not directory.is_dir():
            raise CassandraCreationError(
                f"Working directory '{directory}' exists and is not a directory",
                details={"path": str(directory)},
            )
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def effective_config_properties(self) -> Dict[str, Any]:
        properties = dict(self.config_properties)
        if self.address is not None:
            properties["rpc_address"] = self.address
            properties["listen_address"] = self.address
        if self.ssl_port is not None:
            properties["native_transport_port_ssl"] = self.ssl_port
        return properties

    def effective_system_properties(self) -> Dict[str, Any]:
        properties = dict(self.system_properties)
        for option, key in PORT_SYSTEM_PROPERTIES.items():
            value = getattr(self, option)
            if value is not None:
                properties[key] = value
        return properties

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> "CassandraConfig":
        """Load from dictionary; unknown keys are ignored."""
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in config.items() if k in known}
        version = str(values.get("version", DEFAULT_VERSION))
        values["version"] = version
        artifact = values.get("artifact")
        if isinstance(artifact, Mapping):
            values["artifact"] = _artifact_from_dict(artifact, version)
        elif isinstance(artifact, str):
            values["artifact"] = ArchiveFile(artifact, version)
        for key in ("working_directory", "cache_directory", "java_home"):
            if values.get(key) is not None:
                values[key] = Path(values[key]).expanduser()
        for key in ("port", "ssl_port", "rpc_port", *PORT_SYSTEM_PROPERTIES):
            if values.get(key) is not None:
                values[key] = int(values[key])
        if "startup_timeout" in values:
            values["startup_timeout"] = float(values["startup_timeout"])
        if isinstance(values.get("jvm_options"), str):
            values["jvm_options"] = values["jvm_options"].split()
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: str | os.PathLike[str]) -> "CassandraConfig":
        p = Path(path)
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError("Config YAML must contain a mapping at the root")
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, *, prefix: str = ENV_PREFIX, base: Optional["CassandraConfig"] = None) -> "CassandraConfig":
        """Overlay ``EMBEDDED_CASSANDRA_<OPTION>`` variables onto ``base`` (or defaults)."""
        known = {f.name for f in fields(cls)}
        overrides: Dict[str, Any] = {}
        for k, v in os.environ.items():
            if not k.startswith(prefix):
                continue
            option = k[len(prefix):].lower()
            if option in known:
                overrides[option] = _parse_env_value(v)
        data = base.to_dict() if base is not None else {}
        if base is not None and base.artifact is not None and "artifact" not in overrides:
            data.pop("artifact", None)
            config = cls.from_dict({**data, **overrides})
            config.artifact = base.artifact
            return config
        return cls.from_dict({**data, **overrides})

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Path):
                value = str(value)
            elif isinstance(value, ArtifactSource):
                value = repr(value)
            result[f.name] = value
        return result
