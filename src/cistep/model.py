"""Data model for pipeline runs: steps, their results, and artifacts."""

from __future__ import annotations

import math
import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import InvalidTransitionError

# Sentinel exit codes for results where the command did not exit on its own
SETUP_ERROR_EXIT_CODE = 126
LAUNCH_ERROR_EXIT_CODE = 127
TIMEOUT_EXIT_CODE = 124
CANCELLED_EXIT_CODE = 130


def slugify(name: str) -> str:
    """Turn a display name into something usable as a file or key name."""
    slug = re.sub(r"[^A-Za-z0-9._-]+", "-", name).strip("-").lower()
    return slug or "unnamed"


def normalize_env(value: Any) -> Any:
    """Coerce the values of an env mapping to strings."""
    if not isinstance(value, dict):
        return value
    # YAML happily produces ints and bools; the process environment only takes strings
    return {str(k): str(v).lower() if isinstance(v, bool) else str(v) for k, v in value.items()}


class Step(BaseModel):
    """
    A single named external command.

    Attributes:
        name: Display name of the step.
        command: The command line to run. Must not be empty.
        working_directory: Directory to run in. Relative paths are resolved
            against the run's working directory; None means the run's directory.
        timeout: Seconds before the step is terminated. None uses the executor default.
        env: Extra environment variables for this step only.

    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    name: str = Field(min_length=1)
    command: str = Field(alias="run")
    working_directory: Path | None = Field(default=None, alias="working-directory")
    timeout: float | None = Field(default=None, gt=0)
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("command")
    @classmethod
    def _command_not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("command must not be empty")
        return value

    @field_validator("timeout")
    @classmethod
    def _timeout_is_finite(cls, value: float | None) -> float | None:
        if value is not None and not math.isfinite(value):
            raise ValueError("timeout must be finite")
        return value

    @field_validator("env", mode="before")
    @classmethod
    def _env_as_strings(cls, value: Any) -> Any:
        return normalize_env(value)

    def resolve_directory(self, base: Path) -> Path:
        """Get the directory this step runs in, given the run's working directory."""
        if self.working_directory is None:
            return base
        if self.working_directory.is_absolute():
            return self.working_directory
        return base / self.working_directory


class ArtifactSpec(BaseModel):
    """Declares a file or directory to capture after the run, whatever its outcome."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    name: str = Field(min_length=1)
    source_path: Path = Field(alias="path")


class StepOutcome(Enum):
    """How a step ended."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"  # ran, exited non-zero
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    SETUP_ERROR = "setup_error"
    LAUNCH_ERROR = "launch_error"


@dataclass(frozen=True)
class StepResult:
    """
    Result of executing one step. Immutable once produced.

    Attributes:
        step: The step that was executed.
        outcome: How the step ended.
        exit_code: Exit code of the process, or a sentinel when it did not exit on its own.
        stdout: Captured standard output.
        stderr: Captured standard error.
        duration: Wall-clock seconds spent on the step.
        error: Description of the engine-level problem, if any.

    """

    step: Step
    outcome: StepOutcome
    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""
    duration: float = 0.0
    error: str | None = None

    @property
    def ok(self) -> bool:
        """True if the step exited with code 0."""
        return self.outcome is StepOutcome.SUCCEEDED

    @property
    def timed_out(self) -> bool:
        return self.outcome is StepOutcome.TIMED_OUT

    @property
    def cancelled(self) -> bool:
        return self.outcome is StepOutcome.CANCELLED

    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def describe(self) -> str:
        """Short human-readable description of the outcome."""
        if self.outcome is StepOutcome.SUCCEEDED:
            return "succeeded"
        if self.outcome is StepOutcome.FAILED:
            return f"exit code {self.exit_code}"
        if self.outcome is StepOutcome.TIMED_OUT:
            return f"timed out after {self.duration:.1f}s"
        if self.outcome is StepOutcome.CANCELLED:
            return "cancelled"
        return self.error or self.outcome.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step.name,
            "command": self.step.command,
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "duration": round(self.duration, 3),
            "error": self.error,
            "stdout": self.stdout_text(),
            "stderr": self.stderr_text(),
        }


@dataclass(frozen=True)
class ArtifactRecord:
    """An artifact persisted to the blob store."""

    name: str
    location: str
    size_bytes: int
    source_path: Path | None = None


@dataclass(frozen=True)
class ArtifactFailure:
    """An artifact that could not be collected. A warning, never a run failure."""

    name: str
    source_path: Path
    reason: str


class RunStatus(Enum):
    """Status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED)


_ALLOWED_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING},
    RunStatus.RUNNING: {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED},
}


def new_run_id(name: str) -> str:
    """Generate a unique run id, usable as a blob store key prefix."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{slugify(name)}_{timestamp}_{uuid.uuid4().hex[:8]}"


@dataclass
class PipelineRun:
    """
    One end-to-end execution of an ordered step list.

    Owned by the PipelineExecutor driving it. Results and artifacts are
    appended as the run progresses; the status moves
    Pending -> Running -> Succeeded | Failed | Cancelled, and the terminal
    status is set exactly once.
    """

    run_id: str
    name: str
    working_directory: Path
    steps: tuple[Step, ...] = ()
    results: list[StepResult] = field(default_factory=list)
    artifacts: list[ArtifactRecord] = field(default_factory=list)
    artifact_failures: list[ArtifactFailure] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    _status: RunStatus = field(default=RunStatus.PENDING, init=False)
    _start_time: float | None = field(default=None, init=False, repr=False)
    _elapsed: float | None = field(default=None, init=False, repr=False)

    @property
    def status(self) -> RunStatus:
        return self._status

    @property
    def ok(self) -> bool:
        return self._status is RunStatus.SUCCEEDED

    @property
    def elapsed(self) -> float:
        """Seconds from start to finish (or to now, while running)."""
        if self._elapsed is not None:
            return self._elapsed
        if self._start_time is None:
            return 0.0
        return time.perf_counter() - self._start_time

    @property
    def first_failure(self) -> StepResult | None:
        """The first result that did not succeed, if any."""
        for result in self.results:
            if not result.ok:
                return result
        return None

    def _transition(self, status: RunStatus) -> None:
        if status not in _ALLOWED_TRANSITIONS.get(self._status, set()):
            raise InvalidTransitionError(
                f"Run '{self.run_id}' cannot move from {self._status.value} to {status.value}"
            )
        self._status = status

    def start(self) -> None:
        self._transition(RunStatus.RUNNING)
        self.started_at = datetime.now()
        self._start_time = time.perf_counter()

    def finish(self, status: RunStatus) -> None:
        self._transition(status)
        self.finished_at = datetime.now()
        self._elapsed = self.elapsed

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable view of the run, for reports."""
        first_failure = self.first_failure
        return {
            "run_id": self.run_id,
            "name": self.name,
            "status": self._status.value,
            "working_directory": str(self.working_directory),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "elapsed": round(self.elapsed, 3),
            "first_failure": first_failure.step.name if first_failure else None,
            "results": [r.to_dict() for r in self.results],
            "artifacts": [
                {"name": a.name, "location": a.location, "size_bytes": a.size_bytes} for a in self.artifacts
            ],
            "artifact_failures": [
                {"name": f.name, "source_path": str(f.source_path), "reason": f.reason} for f in self.artifact_failures
            ],
        }
