"""Tests for NodeProcess, the platform nodes and helper commands."""

from __future__ import annotations

import signal
import stat
import subprocess
import sys
import time
from pathlib import Path
from unittest.mock import MagicMock

import psutil
import pytest

from conftest import posix_only
from embedded_cassandra.core.version import Version
from embedded_cassandra.node.base import run_helper
from embedded_cassandra.node.factory import create_node, is_windows
from embedded_cassandra.node.overlay import LaunchSpec
from embedded_cassandra.node.process import NodeProcess, read_pid_file
from embedded_cassandra.node.unix import UnixNode
from embedded_cassandra.node.windows import WindowsNode


def launch_spec(install: Path, version="4.1.3", root_allowed=True, pid_file=None) -> LaunchSpec:
    return LaunchSpec(
        name="cassandra-test",
        version=Version.parse(version),
        install_directory=install,
        working_directory=install,
        environment={"JVM_EXTRA_OPTS": ""},
        jvm_options=[],
        system_properties={},
        config_properties={},
        config_file=install / "conf" / "cassandra.yaml",
        pid_file=pid_file,
        root_allowed=root_allowed,
    )


def python_popen(code: str) -> subprocess.Popen:
    return subprocess.Popen(
        [sys.executable, "-c", code],
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
    )


class TestUnixNode:
    """Tests for UnixNode commands."""

    def test_command_with_root_flag(self, distribution):
        command = UnixNode().command(launch_spec(distribution))
        assert command == [str(distribution / "bin" / "cassandra"), "-R", "-f"]

    @pytest.mark.parametrize("version,root_allowed", [("3.1", True), ("3.1.0", True), ("2.2.19", True), ("4.1.3", False)])
    def test_command_without_root_flag(self, distribution, version, root_allowed):
        command = UnixNode().command(launch_spec(distribution, version, root_allowed))
        assert command == [str(distribution / "bin" / "cassandra"), "-f"]

    @posix_only
    def test_prepare_makes_script_executable(self, distribution):
        executable = distribution / "bin" / "cassandra"
        executable.chmod(0o644)

        UnixNode().prepare(launch_spec(distribution))

        assert executable.stat().st_mode & stat.S_IXUSR

    def test_steps_without_pid_signal_the_popen(self, distribution):
        process = MagicMock()
        process.pid = None

        steps = UnixNode().escalation_steps(process, launch_spec(distribution))
        assert [s.name for s in steps] == ["SIGINT", "SIGKILL"]

        for step in steps:
            step.action()
        process.popen.send_signal.assert_called_once_with(signal.SIGINT)
        process.popen.kill.assert_called_once_with()


class TestWindowsNode:
    """Tests for WindowsNode commands."""

    def test_command(self, distribution):
        pid_file = distribution / "cassandra.pid"
        command = WindowsNode().command(launch_spec(distribution, "3.11.4", pid_file=pid_file))

        assert command == [
            "powershell",
            "-ExecutionPolicy",
            "Unrestricted",
            str(distribution / "bin" / "cassandra.ps1"),
            "-p",
            str(pid_file),
            "-a",
            "-f",
        ]

    @pytest.mark.parametrize("version", ["2.0.17", "2.1"])
    def test_legacy_command_has_no_a_flag(self, distribution, version):
        command = WindowsNode().command(launch_spec(distribution, version, pid_file=distribution / "pid"))
        assert "-a" not in command
        assert command[-1] == "-f"

    def test_late_2_1_patch_has_a_flag(self, distribution):
        command = WindowsNode().command(launch_spec(distribution, "2.1.20", pid_file=distribution / "pid"))
        assert "-a" in command

    def test_pid_file_required(self, distribution):
        with pytest.raises(ValueError):
            WindowsNode().command(launch_spec(distribution))


class TestFactory:
    def test_platform_selection(self):
        assert isinstance(create_node(system="Windows"), WindowsNode)
        assert isinstance(create_node(system="Linux"), UnixNode)
        assert isinstance(create_node(system="Darwin"), UnixNode)

    def test_is_windows(self):
        assert is_windows("Windows")
        assert not is_windows("Linux")


class TestRunHelper:
    def test_output_returned(self):
        assert run_helper([sys.executable, "-c", "print('stopped')"]) == "stopped"

    def test_non_zero_exit_raises(self):
        with pytest.raises(subprocess.CalledProcessError) as exc_info:
            run_helper([sys.executable, "-c", "import sys; print('no such process'); sys.exit(1)"])
        assert exc_info.value.returncode == 1
        assert "no such process" in exc_info.value.output


class TestReadPidFile:
    def test_non_digits_stripped(self, tmp_path):
        path = tmp_path / "pid"
        path.write_bytes(b"\xef\xbb\xbf 1234\r\n")
        assert read_pid_file(path) == 1234

    def test_missing_or_empty(self, tmp_path):
        assert read_pid_file(tmp_path / "missing") is None
        (tmp_path / "empty").write_text("\n")
        assert read_pid_file(tmp_path / "empty") is None


class TestNodeProcess:
    """Tests for NodeProcess against real child processes."""

    def test_output_is_consumed(self):
        popen = python_popen("print('first'); print('second')")
        process = NodeProcess(popen, "cassandra-test")
        lines = []

        thread = process.attach(lines.append)
        assert process.wait(10)
        thread.join(5)

        assert [line.strip() for line in lines] == ["first", "second"]
        assert thread.daemon
        assert thread.name == "cassandra-test"
        assert process.exit_code == 0
        assert not process.is_alive()

    def test_pid_from_popen(self):
        popen = python_popen("pass")
        process = NodeProcess(popen, "cassandra-test")
        assert process.pid == popen.pid
        process.wait(10)

    def test_pid_from_pid_file(self, tmp_path):
        pid_file = tmp_path / "cassandra.pid"
        pid_file.write_text("4242")
        popen = python_popen("pass")
        process = NodeProcess(popen, "cassandra-test", pid_file)

        assert process.pid == 4242
        process.wait(10)

    def test_unknown_pid(self, tmp_path):
        """Test that a pid file that never appears gives up after about a second."""
        popen = python_popen("pass")
        process = NodeProcess(popen, "cassandra-test", tmp_path / "never.pid")

        start = time.monotonic()
        assert process.pid is None
        assert 0.9 <= time.monotonic() - start < 5
        process.wait(10)

    def test_wait_timeout(self):
        popen = python_popen("import time; time.sleep(30)")
        process = NodeProcess(popen, "cassandra-test")
        try:
            assert not process.wait(0.1)
            assert process.is_alive()
        finally:
            process.destroy_forcibly()
        assert process.wait(10)

    @posix_only
    def test_destroy_kills_children(self):
        code = (
            "import subprocess, sys, time\n"
            "child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
            "print(child.pid, flush=True)\n"
            "time.sleep(60)\n"
        )
        popen = python_popen(code)
        child_pid = int(popen.stdout.readline())
        process = NodeProcess(popen, "cassandra-test")

        process.destroy_forcibly()

        assert process.wait(10)
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            try:
                if psutil.Process(child_pid).status() == psutil.STATUS_ZOMBIE:
                    break
            except psutil.NoSuchProcess:
                break
            time.sleep(0.05)
        else:
            pytest.fail(f"child process {child_pid} survived")
