"""Pytest configuration for cistep tests."""

from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from cistep.launcher import Launcher, ProcessHandle


@pytest.fixture(autouse=True)
def reset_state(monkeypatch: pytest.MonkeyPatch):
    """Reset global output state and disable colors / GHA markers."""
    from cistep.output import reset_output_manager

    # Must unset FORCE_COLOR because Rich ignores NO_COLOR when FORCE_COLOR is set
    monkeypatch.delenv("FORCE_COLOR", raising=False)
    monkeypatch.delenv("GITHUB_ACTIONS", raising=False)
    monkeypatch.delenv("CISTEP_TIMEOUT", raising=False)
    monkeypatch.delenv("CISTEP_KILL_GRACE", raising=False)
    monkeypatch.setenv("NO_COLOR", "1")

    reset_output_manager()
    yield
    reset_output_manager()


# =============================================================================
# Fake launcher
# =============================================================================


@dataclass
class FakeProgram:
    """Scripted behavior for a command run through the FakeLauncher."""

    exit_code: int = 0
    stdout: bytes = b""
    stderr: bytes = b""
    duration: float = 0.0
    hang: bool = False  # runs until terminated
    ignore_terminate: bool = False  # only a kill stops it
    kill_delay: float = 0.0  # seconds between kill and exit


class FakeHandle(ProcessHandle):
    def __init__(self, program: FakeProgram):
        self.program = program
        self.started = time.monotonic()
        self.terminated = False
        self.killed_at: float | None = None
        self.exit_code: int | None = None

    def wait(self, timeout: float) -> int | None:
        if self.exit_code is not None:
            return self.exit_code
        if self.killed_at is not None:
            remaining = self.killed_at + self.program.kill_delay - time.monotonic()
            if remaining <= timeout:
                time.sleep(max(remaining, 0))
                self.exit_code = -9
                return self.exit_code
            time.sleep(timeout)
            return None
        if self.terminated and not self.program.ignore_terminate:
            self.exit_code = -15
            return self.exit_code
        if not self.program.hang:
            remaining = self.started + self.program.duration - time.monotonic()
            if remaining <= timeout:
                time.sleep(max(remaining, 0))
                self.exit_code = self.program.exit_code
                return self.exit_code
        time.sleep(timeout)
        return None

    def terminate(self) -> None:
        self.terminated = True

    @property
    def killed(self) -> bool:
        return self.killed_at is not None

    def kill(self) -> None:
        self.killed_at = time.monotonic()

    def output(self) -> tuple[bytes, bytes]:
        return self.program.stdout, self.program.stderr


@dataclass
class Launch:
    command: str
    cwd: Path
    env: dict[str, str]


@dataclass
class FakeLauncher(Launcher):
    """
    In-memory launcher. Commands not registered succeed immediately;
    programs listed in `missing` raise FileNotFoundError like a missing tool.
    """

    programs: dict[str, FakeProgram] = field(default_factory=dict)
    missing: set[str] = field(default_factory=set)
    launched: list[Launch] = field(default_factory=list)
    handles: list[FakeHandle] = field(default_factory=list)

    def register(self, command: str, **behavior: object) -> FakeProgram:
        program = FakeProgram(**behavior)  # type: ignore[arg-type]
        self.programs[command] = program
        return program

    @property
    def commands(self) -> list[str]:
        return [launch.command for launch in self.launched]

    def launch(self, command: str, cwd: Path, env: Mapping[str, str]) -> ProcessHandle:
        program_name = command.split()[0]
        if program_name in self.missing:
            raise FileNotFoundError(2, "No such file or directory", program_name)
        self.launched.append(Launch(command=command, cwd=cwd, env=dict(env)))
        handle = FakeHandle(self.programs.get(command, FakeProgram()))
        self.handles.append(handle)
        return handle


@pytest.fixture
def fake_launcher() -> FakeLauncher:
    return FakeLauncher()
