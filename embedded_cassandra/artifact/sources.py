"""
Artifact sources: where a Cassandra distribution comes from.

- ArchiveFile: a local tar/zip archive, extracted through the cache
- RemoteArchive: downloaded with httpx, then extracted through the cache
- InstalledDistribution: an already unpacked tree, used as-is
"""

from __future__ import annotations

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx

from embedded_cassandra.artifact.cache import ExtractionCache, find_installation
from embedded_cassandra.core.errors import CassandraCreationError
from embedded_cassandra.core.retry import InterruptToken
from embedded_cassandra.core.version import Version

logger = logging.getLogger(__name__)

MIRROR_ENV = "EMBEDDED_CASSANDRA_MIRROR"
DOWNLOAD_TIMEOUT_ENV = "EMBEDDED_CASSANDRA_DOWNLOAD_TIMEOUT"
DEFAULT_MIRROR = "https://archive.apache.org/dist/cassandra"
DEFAULT_DOWNLOAD_TIMEOUT = 300.0


def default_mirror() -> str:
    return os.getenv(MIRROR_ENV) or DEFAULT_MIRROR


def download_timeout() -> float:
    """Download timeout from the environment, read on every call."""
    raw = os.getenv(DOWNLOAD_TIMEOUT_ENV)
    if not raw:
        return DEFAULT_DOWNLOAD_TIMEOUT
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"{DOWNLOAD_TIMEOUT_ENV}={raw!r} is not a number, using {DEFAULT_DOWNLOAD_TIMEOUT:.0f}s")
        return DEFAULT_DOWNLOAD_TIMEOUT


class ArtifactSource(ABC):
    """A versioned Cassandra distribution."""

    def __init__(self, version: "str | Version"):
        self.version = Version.of(version)

    @abstractmethod
    def resolve(self, cache: ExtractionCache, interrupt: Optional[InterruptToken] = None) -> Path:
        """Return a ready-to-use installation directory."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.version})"


class ArchiveFile(ArtifactSource):
    """A distribution archive on the local file system."""

    def __init__(self, path: "str | Path", version: "str | Version"):
        super().__init__(version)
        self.path = Path(path)

    def _archive(self) -> Path:
        if not self.path.is_file():
            raise CassandraCreationError(f"Archive '{self.path}' does not exist", details={"path": str(self.path)})
        return self.path

    def resolve(self, cache: ExtractionCache, interrupt: Optional[InterruptToken] = None) -> Path:
        return cache.ensure(self.version, self._archive, interrupt)

    def __repr__(self) -> str:
        return f"ArchiveFile('{self.path}', {self.version})"


class RemoteArchive(ArtifactSource):
    """A distribution downloaded from an Apache mirror; only fetched on a cache miss."""

    def __init__(
        self,
        version: "str | Version",
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        super().__init__(version)
        self.url = url or f"{default_mirror()}/{self.version}/apache-cassandra-{self.version}-bin.tar.gz"
        self.timeout = timeout if timeout is not None else download_timeout()
        self.client = client
        self._download_dir: Optional[Path] = None

    def download(self) -> Path:
        """Stream the archive into a temporary file and return its path."""
        self._download_dir = Path(tempfile.mkdtemp(prefix=f"apache-cassandra-{self.version}-"))
        target = self._download_dir / self.url.rsplit("/", 1)[-1]
        logger.info(f"Downloading '{self.url}'")
        try:
            stream = self.client.stream if self.client is not None else httpx.stream
            with stream("GET", self.url, timeout=self.timeout, follow_redirects=True) as response:
                response.raise_for_status()
                total = int(response.headers.get("Content-Length", 0))
                received = 0
                with open(target, "wb") as out:
                    for chunk in response.iter_bytes():
                        out.write(chunk)
                        received += len(chunk)
        except httpx.HTTPError as e:
            raise CassandraCreationError(
                f"Cassandra {self.version} could not be downloaded from '{self.url}': {e}",
                details={"url": self.url},
            ) from e
        logger.info(f"Downloaded {received} of {total or received} bytes into '{target}'")
        return target

    def resolve(self, cache: ExtractionCache, interrupt: Optional[InterruptToken] = None) -> Path:
        try:
            return cache.ensure(self.version, self.download, interrupt)
        finally:
            self._cleanup()

    def _cleanup(self) -> None:
        directory = self._download_dir
        if directory is None:
            return
        for child in directory.iterdir():
            child.unlink(missing_ok=True)
        directory.rmdir()
        self._download_dir = None


class InstalledDistribution(ArtifactSource):
    """An already unpacked distribution; the cache is bypassed."""

    def __init__(self, path: "str | Path", version: "str | Version"):
        super().__init__(version)
        self.path = Path(path)

    def resolve(self, cache: ExtractionCache, interrupt: Optional[InterruptToken] = None) -> Path:
        if not self.path.is_dir():
            raise CassandraCreationError(f"'{self.path}' is not a directory", details={"path": str(self.path)})
        return find_installation(self.path)

    def __repr__(self) -> str:
        return f"InstalledDistribution('{self.path}', {self.version})"
