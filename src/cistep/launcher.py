"""Process launching for steps.

The executor never creates processes itself. It goes through a `Launcher`,
which turns a command line into a `ProcessHandle`. `SubprocessLauncher` is the
real implementation; tests substitute an in-memory one.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import IO, Any

logger = logging.getLogger(__name__)

# Seconds to keep reading output after the process exited, for pipes inherited by background children
DRAIN_TIMEOUT = 1.0
READ_SIZE = 65536


class ProcessHandle(ABC):
    """A running (or finished) external process."""

    @abstractmethod
    def wait(self, timeout: float) -> int | None:
        """
        Wait up to `timeout` seconds for the process to exit.

        Returns the exit code, or None if the process is still running.
        Once the process has exited, returns the same exit code on every call.
        """
        ...

    @abstractmethod
    def terminate(self) -> None:
        """Ask the process (and its children) to stop."""
        ...

    @abstractmethod
    def kill(self) -> None:
        """Forcibly stop the process (and its children)."""
        ...

    @abstractmethod
    def output(self) -> tuple[bytes, bytes]:
        """Get the captured (stdout, stderr). Complete only once the process has exited."""
        ...


class Launcher(ABC):
    """Creates processes for step commands."""

    @abstractmethod
    def launch(self, command: str, cwd: Path, env: Mapping[str, str]) -> ProcessHandle:
        """
        Start `command` in `cwd` with exactly the environment `env`.

        Raises:
            ValueError: If the command line cannot be parsed.
            OSError: If the program cannot be started (e.g. FileNotFoundError).

        """
        ...


class PopenHandle(ProcessHandle):
    """ProcessHandle backed by subprocess.Popen."""

    def __init__(self, proc: subprocess.Popen[bytes], drain_timeout: float = DRAIN_TIMEOUT):
        self._proc = proc
        self._drain_timeout = drain_timeout
        self._returncode: int | None = None
        self._stdout: list[bytes] = []
        self._stderr: list[bytes] = []
        self._lock = threading.Lock()
        self._readers = [
            self._start_reader(proc.stdout, self._stdout, "stdout"),
            self._start_reader(proc.stderr, self._stderr, "stderr"),
        ]

    def _start_reader(self, stream: IO[bytes] | None, chunks: list[bytes], name: str) -> threading.Thread:
        def read() -> None:
            if stream is None:
                return
            with stream:
                for chunk in iter(lambda: stream.read1(READ_SIZE), b""):
                    with self._lock:
                        chunks.append(chunk)

        thread = threading.Thread(target=read, name=f"cistep-{name}-{self._proc.pid}", daemon=True)
        thread.start()
        return thread

    @property
    def pid(self) -> int:
        return self._proc.pid

    def wait(self, timeout: float) -> int | None:
        if self._returncode is not None:
            return self._returncode
        try:
            returncode = self._proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

        # Background children may still hold the pipes open; collect what is there and move on
        deadline = time.monotonic() + self._drain_timeout
        for reader in self._readers:
            reader.join(max(deadline - time.monotonic(), 0))
        if any(reader.is_alive() for reader in self._readers):
            logger.debug("Process %d exited but its output pipes are still open", self._proc.pid)

        self._returncode = returncode
        return self._returncode

    def _signal_group(self, sig: int) -> None:
        # The process leads its own session, so this reaches the tools it spawned too
        with contextlib.suppress(ProcessLookupError):
            os.killpg(self._proc.pid, sig)

    def terminate(self) -> None:
        if self._returncode is not None:
            return
        if os.name == "posix":
            self._signal_group(signal.SIGTERM)
        else:
            self._proc.terminate()

    def kill(self) -> None:
        if self._returncode is not None:
            return
        if os.name == "posix":
            self._signal_group(signal.SIGKILL)
        else:
            self._proc.kill()

    def output(self) -> tuple[bytes, bytes]:
        with self._lock:
            return b"".join(self._stdout), b"".join(self._stderr)


class SubprocessLauncher(Launcher):
    """
    Launch commands as OS processes.

    Args:
        shell: Optional argv prefix the command line is appended to
            (e.g. ["bash", "-ec"]). When None, the command line is split with
            shell-like quoting rules and the program is executed directly, so a
            missing program is reported as a launch error rather than exit 127.

    """

    def __init__(self, shell: Sequence[str] | None = None):
        self.shell = list(shell) if shell else None

    def build_argv(self, command: str) -> list[str]:
        """Turn a command line into an argv list."""
        if self.shell:
            return [*self.shell, command]
        argv = shlex.split(command)
        if not argv:
            raise ValueError("command is empty")
        return argv

    def launch(self, command: str, cwd: Path, env: Mapping[str, str]) -> ProcessHandle:
        argv = self.build_argv(command)

        if os.name == "posix":
            session_kwargs: dict[str, Any] = {"start_new_session": True}
        else:
            session_kwargs = {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}  # type: ignore[attr-defined]

        logger.debug("Launching %s in %s", argv, cwd)
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd),
            env=dict(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            **session_kwargs,
        )
        return PopenHandle(proc)
