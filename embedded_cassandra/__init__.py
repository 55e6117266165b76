"""
Embedded Cassandra - Run Apache Cassandra as a supervised child process
"""

from __future__ import annotations

from typing import TYPE_CHECKING

__version__ = "0.1.0"

# Static analyzers don't infer exports provided via `__getattr__`.
if TYPE_CHECKING:
    from typing import Any

    Cassandra: Any
    CassandraConfig: Any
    LifecycleState: Any
    Settings: Any
    Version: Any
    ArchiveFile: Any
    RemoteArchive: Any
    InstalledDistribution: Any
    CassandraError: Any


# Lazy imports so that `import embedded_cassandra` stays cheap
def __getattr__(name):
    if name in {"Cassandra", "LifecycleState"}:
        from embedded_cassandra import cassandra

        return getattr(cassandra, name)
    elif name == "CassandraConfig":
        from embedded_cassandra.configs import CassandraConfig

        return CassandraConfig
    elif name == "Settings":
        from embedded_cassandra.core.settings import Settings

        return Settings
    elif name == "Version":
        from embedded_cassandra.core.version import Version

        return Version
    elif name in {"ArchiveFile", "RemoteArchive", "InstalledDistribution"}:
        from embedded_cassandra.artifact import sources

        return getattr(sources, name)
    elif name == "CassandraError":
        from embedded_cassandra.core.errors import CassandraError

        return CassandraError
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "Cassandra",
    "CassandraConfig",
    "LifecycleState",
    "Settings",
    "Version",
    "ArchiveFile",
    "RemoteArchive",
    "InstalledDistribution",
    "CassandraError",
    "__version__",
]
