"""Executor configuration.

Everything process-wide that a run depends on (environment, working
directory, timeouts) lives in one immutable `ExecutorConfig`, passed to the
executor at construction.
"""

from __future__ import annotations

import math
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .model import Step

DEFAULT_TIMEOUT = 3600.0
DEFAULT_KILL_GRACE_PERIOD = 5.0
DEFAULT_POLL_INTERVAL = 0.1


def _snapshot_environ() -> dict[str, str]:
    return dict(os.environ)


class ExecutorConfig(BaseModel):
    """
    Immutable configuration for a PipelineExecutor.

    Attributes:
        working_directory: Directory steps run in unless they say otherwise.
        env: Environment overrides applied to every step.
        inherited_env: Base environment, snapshotted from the process at construction.
            Pass an empty dict to start steps from a clean environment.
        color: Force color output on (True) or off (False) in child processes. None leaves it alone.
        default_timeout: Per-step timeout in seconds, used when a step sets none.
        kill_grace_period: Seconds to wait after terminating a process before killing it.
        poll_interval: Seconds between checks for timeout and cancellation while a step runs.
        shell: Optional argv prefix to run commands through (e.g. ["bash", "-ec"]).
            When None, commands are split with shell-like quoting and executed directly.
        persist_step_logs: Store each step's captured output as an artifact.

    """

    model_config = ConfigDict(frozen=True)

    working_directory: Path = Field(default_factory=Path.cwd)
    env: dict[str, str] = Field(default_factory=dict)
    inherited_env: dict[str, str] = Field(default_factory=_snapshot_environ)
    color: bool | None = None
    default_timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)
    kill_grace_period: float = Field(default=DEFAULT_KILL_GRACE_PERIOD, ge=0)
    poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)
    shell: list[str] | None = None
    persist_step_logs: bool = False

    @field_validator("default_timeout")
    @classmethod
    def _timeout_is_finite(cls, value: float) -> float:
        if not math.isfinite(value):
            raise ValueError("default_timeout must be finite")
        return value

    @field_validator("shell")
    @classmethod
    def _shell_not_empty(cls, value: list[str] | None) -> list[str] | None:
        if value is not None and not value:
            raise ValueError("shell must name a program")
        return value

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> ExecutorConfig:
        """
        Build a config, taking defaults from CISTEP_* environment variables.

        Recognized variables:
            CISTEP_TIMEOUT: default per-step timeout in seconds
            CISTEP_KILL_GRACE: grace period before killing a terminated step

        Explicit keyword overrides win over the environment.
        """
        environ = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        if timeout := environ.get("CISTEP_TIMEOUT"):
            values["default_timeout"] = float(timeout)
        if grace := environ.get("CISTEP_KILL_GRACE"):
            values["kill_grace_period"] = float(grace)
        values.update(overrides)
        return cls(**values)

    def environment_for(self, step: Step) -> dict[str, str]:
        """Build the full environment for a step's process."""
        env = dict(self.inherited_env)

        # NO_COLOR takes precedence over FORCE_COLOR in most tools, so set exactly one
        if self.color is True:
            env.pop("NO_COLOR", None)
            env["FORCE_COLOR"] = "1"
            env["CLICOLOR_FORCE"] = "1"
        elif self.color is False:
            env.pop("FORCE_COLOR", None)
            env.pop("CLICOLOR_FORCE", None)
            env["NO_COLOR"] = "1"

        env.update(self.env)
        env.update(step.env)
        return env

    def timeout_for(self, step: Step) -> float:
        return step.timeout if step.timeout is not None else self.default_timeout


def get_default_store_root() -> Path:
    """Get the default root directory for the filesystem artifact store."""
    # Check for environment variable override (useful in CI)
    if env_root := os.environ.get("CISTEP_ARTIFACT_DIR"):
        return Path(env_root)

    return Path.home() / ".cistep" / "artifacts"
