"""
Extraction Cache - Shared, Versioned Cassandra Installations
============================================================

Layout::

    <root>/<version>/
        .lock         exclusive file lock, held only while extracting
        .extracted    marker: the tree below is complete and immutable
        apache-cassandra-<version>/
            bin/  lib/  conf/cassandra.yaml

Any number of processes may call ``ensure`` for the same version at the
same time; exactly one of them extracts, the rest wait on the lock and
then take the fast path.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, List, Optional

from embedded_cassandra.artifact.archive import DEFAULT_SKIP, extract_archive
from embedded_cassandra.core.errors import AmbiguousInstallationError, InvalidInstallationError
from embedded_cassandra.core.file_lock import FileLock
from embedded_cassandra.core.retry import InterruptToken
from embedded_cassandra.core.version import Version

logger = logging.getLogger(__name__)

LOCK_FILE = ".lock"
MARKER_FILE = ".extracted"
DEFAULT_LOCK_TIMEOUT = 300.0

ArchiveSupplier = Callable[[], Path]


def default_cache_root() -> Path:
    configured = os.getenv("EMBEDDED_CASSANDRA_CACHE_DIR")
    if configured:
        return Path(configured).expanduser()
    return Path.home() / ".embedded-cassandra" / "artifact"


def is_installation(directory: Path) -> bool:
    """True when ``directory`` looks like an unpacked Cassandra distribution."""
    return (
        (directory / "bin").is_dir()
        and (directory / "lib").is_dir()
        and (directory / "conf" / "cassandra.yaml").is_file()
    )


def find_installation(root: Path) -> Path:
    """
    The single installation directory at or below ``root``.

    Raises:
        InvalidInstallationError: nothing looks like an installation.
        AmbiguousInstallationError: more than one candidate.
    """
    candidates: List[Path] = []
    for current, dirs, _files in os.walk(root):
        path = Path(current)
        dirs[:] = [d for d in dirs if not d.startswith(".")]
        if is_installation(path):
            candidates.append(path)
            dirs[:] = []
    if not candidates:
        raise InvalidInstallationError(
            f"'{root}' does not contain a Cassandra installation (bin/, lib/, conf/cassandra.yaml)",
            details={"path": str(root)},
        )
    if len(candidates) > 1:
        found = ", ".join(str(c) for c in sorted(candidates))
        raise AmbiguousInstallationError(
            f"'{root}' contains more than one Cassandra installation: {found}",
            details={"path": str(root), "candidates": [str(c) for c in candidates]},
        )
    return candidates[0]


class ExtractionCache:
    """
    Populates ``<root>/<version>`` exactly once across processes.

    Usage:
        cache = ExtractionCache()
        install_dir = cache.ensure(Version.parse("4.1.3"), lambda: Path("apache-cassandra-4.1.3-bin.tar.gz"))
    """

    def __init__(
        self,
        root: Optional[Path] = None,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        skip: tuple = DEFAULT_SKIP,
    ):
        self.root = Path(root) if root is not None else default_cache_root()
        self.lock_timeout = lock_timeout
        self.skip = skip

    def directory(self, version: Version) -> Path:
        return self.root / str(version)

    def is_extracted(self, version: Version) -> bool:
        return (self.directory(version) / MARKER_FILE).exists()

    def ensure(
        self,
        version: Version,
        archive_supplier: ArchiveSupplier,
        interrupt: Optional[InterruptToken] = None,
    ) -> Path:
        """Return the installation directory for ``version``, extracting it first if needed."""
        directory = self.directory(version)
        marker = directory / MARKER_FILE
        if marker.exists():
            return find_installation(directory)

        directory.mkdir(parents=True, exist_ok=True)
        lock = FileLock(directory / LOCK_FILE)
        with lock.acquire(self.lock_timeout, interrupt):
            if marker.exists():
                logger.debug(f"'{directory}' was extracted by another process")
                return find_installation(directory)
            archive = archive_supplier()
            logger.info(f"Extracting Cassandra {version} from '{archive}' into '{directory}'")
            extract_archive(archive, directory, self.skip)
            installation = find_installation(directory)
            marker.touch()
            logger.info(f"Cassandra {version} is available at '{installation}'")
            return installation
