"""Shared fixtures: fake Cassandra distributions and archives."""

from __future__ import annotations

import io
import os
import socket
import stat
import sys
import tarfile
from pathlib import Path
from typing import Dict, Iterator, Optional

import pytest
import yaml

DEFAULT_CASSANDRA_YAML = {
    "cluster_name": "Test Cluster",
    "num_tokens": 256,
    "storage_port": 7000,
    "ssl_storage_port": 7001,
    "native_transport_port": 9042,
    "rpc_port": 9160,
    "rpc_address": "localhost",
    "seed_provider": [
        {
            "class_name": "org.apache.cassandra.locator.SimpleSeedProvider",
            "parameters": [{"seeds": "127.0.0.1:7000"}],
        }
    ],
}

# Stands in for bin/cassandra: reads JVM_EXTRA_OPTS, binds the native port
# and prints the log lines Cassandra prints.
FAKE_CASSANDRA_SCRIPT = '''#!__PYTHON__
import os
import signal
import socket
import sys
import time
from urllib.parse import unquote, urlparse

import yaml

props = {}
for token in os.environ.get("JVM_EXTRA_OPTS", "").split():
    if token.startswith("-D"):
        key, _, value = token[2:].partition("=")
        props[key] = value

with open(unquote(urlparse(props["cassandra.config"]).path), encoding="utf-8") as f:
    config = yaml.safe_load(f) or {}

port = int(props.get("cassandra.native_transport_port") or config.get("native_transport_port") or 9042)
mode = os.environ.get("FAKE_CASSANDRA_MODE", "ok")

print("INFO  [main] Fake Cassandra starting, args: " + " ".join(sys.argv[1:]), flush=True)
if mode == "exit":
    print("ERROR [main] Exception encountered during startup: fake failure", flush=True)
    sys.exit(3)

if mode == "ignore-sigint":
    signal.signal(signal.SIGINT, signal.SIG_IGN)
else:
    signal.signal(signal.SIGINT, lambda signum, frame: sys.exit(0))

with open(os.path.join(props["cassandra.storagedir"], "fake.pid"), "w") as f:
    f.write(str(os.getpid()))

server = None
if mode != "hang":
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    server.bind(("127.0.0.1", port))
    server.listen(50)
    print("INFO  [main] Starting listening for CQL clients on localhost/127.0.0.1:%d (unencrypted)..." % port, flush=True)

while True:
    time.sleep(0.1)
'''


def make_distribution(root: Path, config: Optional[Dict] = None, script: bool = False) -> Path:
    """Create bin/, lib/ and conf/cassandra.yaml under ``root``."""
    (root / "bin").mkdir(parents=True, exist_ok=True)
    (root / "lib").mkdir(parents=True, exist_ok=True)
    (root / "conf").mkdir(parents=True, exist_ok=True)
    document = DEFAULT_CASSANDRA_YAML if config is None else config
    with open(root / "conf" / "cassandra.yaml", "w", encoding="utf-8") as f:
        yaml.safe_dump(document, f, sort_keys=False)
    executable = root / "bin" / "cassandra"
    if script:
        executable.write_text(FAKE_CASSANDRA_SCRIPT.replace("__PYTHON__", sys.executable), encoding="utf-8")
        executable.chmod(executable.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    else:
        executable.write_text("#!/bin/sh\n", encoding="utf-8")
    return root


def make_tar(path: Path, entries: Dict[str, bytes]) -> Path:
    """Write a .tar.gz whose members are ``entries`` (name -> content; trailing '/' = directory)."""
    with tarfile.open(path, "w:gz") as tar:
        for name, content in entries.items():
            info = tarfile.TarInfo(name.rstrip("/"))
            if name.endswith("/"):
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            else:
                info.size = len(content)
                info.mode = 0o755 if "/bin/" in name else 0o644
                tar.addfile(info, io.BytesIO(content))
    return path


def distribution_entries(top: str = "apache-cassandra-4.1.3") -> Dict[str, bytes]:
    return {
        f"{top}/": b"",
        f"{top}/bin/cassandra": b"#!/bin/sh\n",
        f"{top}/lib/cassandra.jar": b"jar",
        f"{top}/conf/cassandra.yaml": yaml.safe_dump(DEFAULT_CASSANDRA_YAML).encode(),
        f"{top}/doc/index.html": b"<html/>",
        f"{top}/javadoc/index.html": b"<html/>",
    }


@pytest.fixture
def distribution(tmp_path: Path) -> Path:
    return make_distribution(tmp_path / "apache-cassandra-4.1.3")


@pytest.fixture
def distribution_archive(tmp_path: Path) -> Path:
    return make_tar(tmp_path / "apache-cassandra-4.1.3-bin.tar.gz", distribution_entries())


@pytest.fixture
def listening_port() -> Iterator[int]:
    """A port with something accepting connections on 127.0.0.1."""
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(16)
    try:
        yield server.getsockname()[1]
    finally:
        server.close()


class SequentialAllocator:
    """PortAllocator stand-in that hands out predictable ports."""

    def __init__(self, start: int = 50000):
        self.next_port = start
        self.allocated = []

    def allocate(self, host: str = "127.0.0.1") -> int:
        port = self.next_port
        self.next_port += 1
        self.allocated.append(port)
        return port


@pytest.fixture
def allocator() -> SequentialAllocator:
    return SequentialAllocator()


posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX process control")
