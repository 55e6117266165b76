"""
Command Line Entrypoint - Embedded Cassandra
============================================

Commands:
- run: Start a node and keep it running until SIGINT / SIGTERM
- extract: Populate the extraction cache and print the installation directory
- ports: Print free ephemeral ports

Usage:
    embedded-cassandra run --version 4.1.3 --port 0
    embedded-cassandra run --archive apache-cassandra-4.1.3-bin.tar.gz --version 4.1.3
    embedded-cassandra run --config cassandra-embedded.yaml
    embedded-cassandra extract --version 4.1.3
    embedded-cassandra ports 3
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import List, Optional

import yaml

logger = logging.getLogger("embedded_cassandra.entrypoint")

COMMANDS = ("run", "extract", "ports")


def _configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _parse_property(text: str) -> tuple:
    key, sep, value = text.partition("=")
    if not key:
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got '{text}'")
    if not sep:
        return key, None
    return key, yaml.safe_load(value) if value else ""


def build_config(args: argparse.Namespace):
    """CassandraConfig from a YAML file, EMBEDDED_CASSANDRA_* variables and flags, in that order."""
    from embedded_cassandra.artifact.sources import ArchiveFile, InstalledDistribution
    from embedded_cassandra.configs.cassandra_config import CassandraConfig

    config = CassandraConfig.from_yaml(args.config) if args.config else None
    config = CassandraConfig.from_env(base=config)

    if args.version:
        config.version = args.version
    if args.archive:
        config.artifact = ArchiveFile(args.archive, config.version)
    elif args.install_dir:
        config.artifact = InstalledDistribution(args.install_dir, config.version)
    if args.cache_dir:
        config.cache_directory = Path(args.cache_dir)
    for option in ("name", "address", "port", "rpc_port", "storage_port", "startup_timeout"):
        value = getattr(args, option, None)
        if value is not None:
            setattr(config, option, value)
    if getattr(args, "working_dir", None):
        config.working_directory = Path(args.working_dir)
    for key, value in getattr(args, "config_property", None) or []:
        config.config_properties[key] = value
    for key, value in getattr(args, "system_property", None) or []:
        config.system_properties[key] = value
    config.jvm_options.extend(getattr(args, "jvm_option", None) or [])
    return config


# ============================================================================
# Commands
# ============================================================================


def cmd_run(args: argparse.Namespace) -> int:
    """Start a node and block until a termination signal arrives."""
    from embedded_cassandra.cassandra import Cassandra
    from embedded_cassandra.core.errors import CassandraError

    config = build_config(args)
    cassandra = Cassandra(config)
    shutdown = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Signal {signum} received, shutting down")
        shutdown.set()

    try:
        cassandra.start()
    except CassandraError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.warning("Start interrupted")
        return 130

    signal.signal(signal.SIGTERM, signal_handler)
    print(json.dumps(cassandra.settings.to_dict(), indent=2), flush=True)
    try:
        while not shutdown.wait(0.5):
            if not cassandra.is_running():
                logger.error(f"{cassandra} exited unexpectedly")
                cassandra.stop()
                return 1
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")

    try:
        cassandra.stop()
    except CassandraError as e:
        logger.error(str(e))
        return 1
    return 0


def cmd_extract(args: argparse.Namespace) -> int:
    """Make sure the distribution is extracted into the cache."""
    from embedded_cassandra.artifact.cache import ExtractionCache
    from embedded_cassandra.core.errors import CassandraError

    config = build_config(args)
    cache = ExtractionCache(config.cache_directory)
    try:
        install_directory = config.resolve_artifact().resolve(cache)
    except CassandraError as e:
        logger.error(str(e))
        return 1
    print(install_directory)
    return 0


def cmd_ports(args: argparse.Namespace) -> int:
    """Print ``count`` distinct free ports, one per line."""
    from embedded_cassandra.core.ports import allocate_port

    for _ in range(args.count):
        print(allocate_port(args.host))
    return 0


# ============================================================================
# Main
# ============================================================================


def _add_artifact_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="YAML file with CassandraConfig options")
    parser.add_argument("--version", help="Cassandra version (default: 3.11.4)")
    source = parser.add_mutually_exclusive_group()
    source.add_argument("--archive", help="Local distribution archive (.tar.gz or .zip)")
    source.add_argument("--install-dir", help="Already extracted distribution")
    parser.add_argument("--cache-dir", help="Extraction cache root")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    _configure_logging()
    parser = argparse.ArgumentParser(
        prog="embedded-cassandra",
        description="Run Apache Cassandra as a child process",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run       Start a node (default)
  extract   Extract a distribution into the cache
  ports     Print free ports

Examples:
  embedded-cassandra run --version 4.1.3 --port 0 -C num_tokens=1
  embedded-cassandra extract --archive apache-cassandra-4.1.3-bin.tar.gz --version 4.1.3
  embedded-cassandra ports 3
        """,
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Start a node")
    _add_artifact_arguments(run_parser)
    run_parser.add_argument("--name", help="Instance name")
    run_parser.add_argument("--working-dir", help="Directory for data and logs")
    run_parser.add_argument("--address", help="rpc_address / listen_address")
    run_parser.add_argument("--port", type=int, help="Native transport port (0 = random)")
    run_parser.add_argument("--rpc-port", type=int, help="Thrift port (0 = random)")
    run_parser.add_argument("--storage-port", type=int, help="Storage port (0 = random)")
    run_parser.add_argument("--startup-timeout", type=float, help="Seconds to wait for readiness")
    run_parser.add_argument("-C", "--config-property", type=_parse_property, action="append",
                            metavar="KEY=VALUE", help="cassandra.yaml override, dotted keys nest")
    run_parser.add_argument("-D", "--system-property", type=_parse_property, action="append",
                            metavar="KEY[=VALUE]", help="JVM system property")
    run_parser.add_argument("-J", "--jvm-option", action="append", metavar="OPTION", help="Extra JVM option")

    extract_parser = subparsers.add_parser("extract", help="Extract a distribution into the cache")
    _add_artifact_arguments(extract_parser)

    ports_parser = subparsers.add_parser("ports", help="Print free ports")
    ports_parser.add_argument("count", type=int, nargs="?", default=1)
    ports_parser.add_argument("--host", default="127.0.0.1")

    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] not in COMMANDS + ("-h", "--help"):
        argv = ["run"] + argv
    args = parser.parse_args(argv)

    if args.command == "run":
        return cmd_run(args)
    elif args.command == "extract":
        return cmd_extract(args)
    elif args.command == "ports":
        return cmd_ports(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
