"""Handle for one launched Cassandra process and its output reader thread."""

from __future__ import annotations

import logging
import re
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Optional

import psutil

logger = logging.getLogger(__name__)

PID_FILE_TIMEOUT = 1.0


def read_pid_file(pid_file: Path) -> Optional[int]:
    """Pid written by the start script; anything but digits is ignored."""
    try:
        text = pid_file.read_text(encoding="utf-8", errors="ignore")
    except OSError:
        return None
    digits = re.sub(r"\D", "", text)
    if not digits:
        return None
    pid = int(digits)
    return pid if pid > 0 else None


class NodeProcess:
    """
    One OS process started by a Node.

    On POSIX the pid comes straight from the Popen object. On Windows the
    Popen pid belongs to the powershell wrapper, so the real pid is read
    from the pid file that ``cassandra.ps1 -p`` writes. That file may
    appear a little after the process starts.
    """

    def __init__(self, popen: subprocess.Popen, name: str, pid_file: Optional[Path] = None):
        self.popen = popen
        self.name = name
        self.pid_file = pid_file
        self._pid: Optional[int] = None
        self._pid_resolved = False
        self._reader: Optional[threading.Thread] = None

    @property
    def pid(self) -> Optional[int]:
        """The Cassandra pid, or None when it cannot be determined."""
        if self._pid_resolved:
            return self._pid
        if self.pid_file is None:
            self._pid = self.popen.pid
        else:
            deadline = time.monotonic() + PID_FILE_TIMEOUT
            while True:
                self._pid = read_pid_file(self.pid_file)
                if self._pid is not None or time.monotonic() >= deadline:
                    break
                time.sleep(0.05)
            if self._pid is None:
                logger.warning(f"{self.name}: pid file '{self.pid_file}' was not written, pid is unknown")
        self._pid_resolved = True
        return self._pid

    def is_alive(self) -> bool:
        return self.popen.poll() is None

    @property
    def exit_code(self) -> Optional[int]:
        return self.popen.poll()

    def wait(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds; True when the process has exited."""
        try:
            self.popen.wait(timeout=max(timeout, 0.0))
            return True
        except subprocess.TimeoutExpired:
            return False

    def destroy_forcibly(self) -> None:
        """Kill the whole process tree, then the direct child."""
        pid = self.popen.pid
        try:
            parent = psutil.Process(pid)
            children = parent.children(recursive=True)
        except psutil.NoSuchProcess:
            children = []
        for child in children:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass
        if self.is_alive():
            self.popen.kill()
        logger.debug(f"{self.name}: destroyed process {pid} and {len(children)} child process(es)")

    def attach(self, consumer: Callable[[str], None], daemon: bool = True) -> threading.Thread:
        """Start a thread that feeds every output line into ``consumer`` until EOF."""
        if self._reader is not None:
            return self._reader
        thread = threading.Thread(target=self._read_output, args=(consumer,), name=self.name, daemon=daemon)
        self._reader = thread
        thread.start()
        return thread

    def join_reader(self, timeout: float) -> None:
        if self._reader is not None:
            self._reader.join(timeout)

    def _read_output(self, consumer: Callable[[str], None]) -> None:
        stream = self.popen.stdout
        if stream is None:
            return
        try:
            for line in iter(stream.readline, ""):
                consumer(line)
        except (OSError, ValueError) as e:
            logger.debug(f"{self.name}: output reader stopped: {e}")
        finally:
            try:
                stream.close()
            except OSError:
                pass

    def __repr__(self) -> str:
        return f"NodeProcess(name={self.name!r}, pid={self.popen.pid}, alive={self.is_alive()})"
