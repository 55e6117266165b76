"""Tests for archive extraction, the extraction cache and artifact sources."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from conftest import distribution_entries, make_distribution, make_tar
from embedded_cassandra.artifact.archive import extract_archive
from embedded_cassandra.artifact.cache import (
    ExtractionCache,
    MARKER_FILE,
    find_installation,
    is_installation,
)
from embedded_cassandra.artifact.sources import (
    DEFAULT_DOWNLOAD_TIMEOUT,
    ArchiveFile,
    InstalledDistribution,
    RemoteArchive,
    download_timeout,
)
from embedded_cassandra.core.errors import (
    AmbiguousInstallationError,
    CassandraCreationError,
    InvalidInstallationError,
    LockTimeoutError,
)
from embedded_cassandra.core.file_lock import FileLock
from embedded_cassandra.core.version import Version

VERSION = Version.parse("4.1.3")


class SpySupplier:
    """Archive supplier that counts how often it is asked for the archive."""

    def __init__(self, archive):
        self.archive = archive
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            self.calls += 1
        return self.archive


class TestExtractArchive:
    """Tests for extract_archive."""

    def test_skips_documentation(self, tmp_path, distribution_archive):
        destination = tmp_path / "out"
        extract_archive(distribution_archive, destination)

        top = destination / "apache-cassandra-4.1.3"
        assert (top / "bin" / "cassandra").is_file()
        assert (top / "conf" / "cassandra.yaml").is_file()
        assert not (top / "doc").exists()
        assert not (top / "javadoc").exists()

    def test_keeps_executable_bit(self, tmp_path, distribution_archive):
        extract_archive(distribution_archive, tmp_path / "out")
        mode = (tmp_path / "out" / "apache-cassandra-4.1.3" / "bin" / "cassandra").stat().st_mode
        assert mode & 0o100

    def test_zip(self, tmp_path):
        import zipfile

        archive = tmp_path / "dist.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            for name, content in distribution_entries().items():
                if not name.endswith("/"):
                    zf.writestr(name, content)
        extract_archive(archive, tmp_path / "out")

        assert is_installation(tmp_path / "out" / "apache-cassandra-4.1.3")
        assert not (tmp_path / "out" / "apache-cassandra-4.1.3" / "doc").exists()

    def test_rejects_path_traversal(self, tmp_path):
        archive = make_tar(tmp_path / "evil.tar.gz", {"../evil.txt": b"x"})
        with pytest.raises(ValueError):
            extract_archive(archive, tmp_path / "out")
        assert not (tmp_path / "evil.txt").exists()

    def test_rejects_unknown_format(self, tmp_path):
        archive = tmp_path / "plain.txt"
        archive.write_text("not an archive")
        with pytest.raises(ValueError):
            extract_archive(archive, tmp_path / "out")


class TestFindInstallation:
    """Tests for locating the installation inside an extracted tree."""

    def test_single(self, tmp_path):
        make_distribution(tmp_path / "apache-cassandra-4.1.3")
        assert find_installation(tmp_path) == tmp_path / "apache-cassandra-4.1.3"

    def test_none(self, tmp_path):
        (tmp_path / "empty").mkdir()
        with pytest.raises(InvalidInstallationError):
            find_installation(tmp_path)

    def test_ambiguous(self, tmp_path):
        make_distribution(tmp_path / "a")
        make_distribution(tmp_path / "b")
        with pytest.raises(AmbiguousInstallationError) as exc_info:
            find_installation(tmp_path)
        assert isinstance(exc_info.value, CassandraCreationError)


class TestExtractionCache:
    """Tests for ExtractionCache."""

    def test_extracts_once(self, tmp_path, distribution_archive):
        cache = ExtractionCache(tmp_path / "cache")
        supplier = SpySupplier(distribution_archive)

        first = cache.ensure(VERSION, supplier)
        second = cache.ensure(VERSION, supplier)

        assert first == second == tmp_path / "cache" / "4.1.3" / "apache-cassandra-4.1.3"
        assert supplier.calls == 1
        assert (tmp_path / "cache" / "4.1.3" / MARKER_FILE).exists()
        assert cache.is_extracted(VERSION)

    def test_concurrent_callers_extract_once(self, tmp_path, distribution_archive):
        """Test that many threads racing on an empty cache extract exactly once."""
        cache = ExtractionCache(tmp_path / "cache", lock_timeout=30)
        supplier = SpySupplier(distribution_archive)
        barrier = threading.Barrier(8)

        def ensure():
            barrier.wait()
            return cache.ensure(VERSION, supplier)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: ensure(), range(8)))

        assert supplier.calls == 1
        assert len(set(results)) == 1

    def test_fast_path_skips_supplier(self, tmp_path, distribution_archive):
        cache = ExtractionCache(tmp_path / "cache")
        cache.ensure(VERSION, lambda: distribution_archive)

        def fail():
            raise AssertionError("supplier must not be called")

        assert is_installation(cache.ensure(VERSION, fail))

    def test_invalid_archive_leaves_no_marker(self, tmp_path):
        archive = make_tar(tmp_path / "bad.tar.gz", {"readme.txt": b"nothing here"})
        cache = ExtractionCache(tmp_path / "cache")

        with pytest.raises(InvalidInstallationError):
            cache.ensure(VERSION, lambda: archive)
        assert not cache.is_extracted(VERSION)

    def test_ambiguous_archive(self, tmp_path):
        entries = {**distribution_entries("a"), **distribution_entries("b")}
        archive = make_tar(tmp_path / "two.tar.gz", entries)

        with pytest.raises(AmbiguousInstallationError):
            ExtractionCache(tmp_path / "cache").ensure(VERSION, lambda: archive)

    def test_lock_timeout(self, tmp_path, distribution_archive):
        """Test that a held lock is never bypassed."""
        cache = ExtractionCache(tmp_path / "cache", lock_timeout=0.3)
        cache.directory(VERSION).mkdir(parents=True)
        holder = FileLock(cache.directory(VERSION) / ".lock")

        with holder.acquire(1):
            with pytest.raises(LockTimeoutError):
                cache.ensure(VERSION, lambda: distribution_archive)
        assert not cache.is_extracted(VERSION)

    def test_default_root_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("EMBEDDED_CASSANDRA_CACHE_DIR", str(tmp_path / "custom"))
        assert ExtractionCache().root == tmp_path / "custom"


class TestSources:
    """Tests for artifact sources."""

    def test_archive_file(self, tmp_path, distribution_archive):
        source = ArchiveFile(distribution_archive, "4.1.3")
        installation = source.resolve(ExtractionCache(tmp_path / "cache"))

        assert source.version == VERSION
        assert is_installation(installation)

    def test_missing_archive_file(self, tmp_path):
        source = ArchiveFile(tmp_path / "missing.tar.gz", "4.1.3")
        with pytest.raises(CassandraCreationError, match="missing.tar.gz"):
            source.resolve(ExtractionCache(tmp_path / "cache"))

    def test_installed_distribution_bypasses_cache(self, tmp_path, distribution):
        cache = ExtractionCache(tmp_path / "cache")
        assert InstalledDistribution(distribution, "4.1.3").resolve(cache) == distribution
        assert not (tmp_path / "cache").exists()

    def test_installed_distribution_must_exist(self, tmp_path):
        with pytest.raises(CassandraCreationError):
            InstalledDistribution(tmp_path / "nope", "4.1.3").resolve(ExtractionCache(tmp_path / "cache"))

    def test_remote_default_url(self):
        source = RemoteArchive("4.1.3")
        assert source.url.endswith("/4.1.3/apache-cassandra-4.1.3-bin.tar.gz")

    def test_download_timeout_read_at_construction(self, monkeypatch):
        monkeypatch.setenv("EMBEDDED_CASSANDRA_DOWNLOAD_TIMEOUT", "12")
        assert RemoteArchive("4.1.3").timeout == 12.0
        assert RemoteArchive("4.1.3", timeout=3).timeout == 3

    def test_malformed_download_timeout_falls_back(self, monkeypatch):
        monkeypatch.setenv("EMBEDDED_CASSANDRA_DOWNLOAD_TIMEOUT", "abc")
        assert download_timeout() == DEFAULT_DOWNLOAD_TIMEOUT
        assert RemoteArchive("4.1.3").timeout == DEFAULT_DOWNLOAD_TIMEOUT

    def test_mirror_from_environment(self, monkeypatch):
        monkeypatch.setenv("EMBEDDED_CASSANDRA_MIRROR", "https://mirror.test/cassandra")
        source = RemoteArchive("4.1.3")
        assert source.url == "https://mirror.test/cassandra/4.1.3/apache-cassandra-4.1.3-bin.tar.gz"

    def test_remote_archive_download(self, tmp_path, distribution_archive):
        content = distribution_archive.read_bytes()
        requests = []

        def handler(request):
            requests.append(str(request.url))
            return httpx.Response(200, content=content)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        source = RemoteArchive("4.1.3", url="https://mirror.test/cassandra.tar.gz", client=client)
        cache = ExtractionCache(tmp_path / "cache")

        assert is_installation(source.resolve(cache))
        assert is_installation(source.resolve(cache))
        assert requests == ["https://mirror.test/cassandra.tar.gz"]

    def test_remote_archive_http_error(self, tmp_path):
        client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        source = RemoteArchive("4.1.3", url="https://mirror.test/missing.tar.gz", client=client)

        with pytest.raises(CassandraCreationError, match="could not be downloaded"):
            source.resolve(ExtractionCache(tmp_path / "cache"))
