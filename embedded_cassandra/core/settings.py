"""Resolved runtime endpoints of a started Cassandra instance."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from embedded_cassandra.core.version import Version


@dataclass(frozen=True)
class Settings:
    """Snapshot of where a running Cassandra node is listening."""

    name: str
    version: Version
    address: str
    port: int
    ssl_port: Optional[int]
    rpc_port: int
    native_transport_enabled: bool
    rpc_transport_enabled: bool
    install_directory: Optional[Path] = None
    working_directory: Optional[Path] = None
    config_file: Optional[Path] = None

    @property
    def contact_point(self) -> str:
        host = f"[{self.address}]" if ":" in self.address else self.address
        return f"{host}:{self.port}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": str(self.version),
            "address": self.address,
            "port": self.port,
            "ssl_port": self.ssl_port,
            "rpc_port": self.rpc_port,
            "native_transport_enabled": self.native_transport_enabled,
            "rpc_transport_enabled": self.rpc_transport_enabled,
            "install_directory": str(self.install_directory) if self.install_directory else None,
            "working_directory": str(self.working_directory) if self.working_directory else None,
            "config_file": str(self.config_file) if self.config_file else None,
        }
