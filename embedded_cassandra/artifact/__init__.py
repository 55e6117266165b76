"""Cassandra distributions and the shared extraction cache."""
from embedded_cassandra.artifact.cache import ExtractionCache
from embedded_cassandra.artifact.sources import (
    ArchiveFile,
    ArtifactSource,
    InstalledDistribution,
    RemoteArchive,
)

__all__ = [
    "ExtractionCache",
    "ArtifactSource",
    "ArchiveFile",
    "RemoteArchive",
    "InstalledDistribution",
]
