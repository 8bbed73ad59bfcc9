"""Execution of a single step."""

from __future__ import annotations

import logging
import time

from .cancel import CancelToken
from .config import ExecutorConfig
from .errors import LaunchError, SetupError
from .launcher import Launcher, ProcessHandle, SubprocessLauncher
from .model import CANCELLED_EXIT_CODE, TIMEOUT_EXIT_CODE, Step, StepOutcome, StepResult

logger = logging.getLogger(__name__)

# Minimum seconds to wait for a killed process to be reaped
KILL_REAP_TIMEOUT = 1.0


class StepRunner:
    """
    Runs one step at a time and reports how it went.

    A step that exits non-zero produces a failed StepResult. Problems that
    prevent the command from running at all are raised as SetupError or
    LaunchError. The runner never retries.
    """

    def __init__(self, config: ExecutorConfig, launcher: Launcher | None = None):
        self.config = config
        self.launcher = launcher if launcher is not None else SubprocessLauncher(shell=config.shell)

    def execute(self, step: Step, *, cancel_token: CancelToken | None = None) -> StepResult:
        """
        Execute a step, blocking until it exits, times out, or is cancelled.

        Args:
            step: The step to run.
            cancel_token: When cancelled, the running process is terminated and
                the result is marked cancelled.

        Returns:
            StepResult for the step. Timed out and cancelled steps carry a
            sentinel exit code and whatever output was captured.

        Raises:
            SetupError: The working directory is missing or the command cannot be parsed.
            LaunchError: The program could not be started.

        """
        cwd = step.resolve_directory(self.config.working_directory)
        if not cwd.is_dir():
            raise SetupError(f"Working directory does not exist: {cwd}", step=step)

        timeout = self.config.timeout_for(step)
        env = self.config.environment_for(step)

        start_time = time.perf_counter()
        try:
            handle = self.launcher.launch(step.command, cwd, env)
        except ValueError as e:
            raise SetupError(f"Malformed command for step '{step.name}': {e}", step=step) from e
        except OSError as e:
            raise LaunchError(step, e) from e

        deadline = start_time + timeout
        while True:
            if cancel_token is not None and cancel_token.cancelled:
                logger.info("Cancelling step '%s'", step.name)
                self._stop(handle)
                return self._interrupted(step, handle, StepOutcome.CANCELLED, start_time)

            remaining = deadline - time.perf_counter()
            if remaining <= 0:
                logger.info("Step '%s' exceeded its %.1fs timeout", step.name, timeout)
                self._stop(handle)
                return self._interrupted(step, handle, StepOutcome.TIMED_OUT, start_time)

            exit_code = handle.wait(min(self.config.poll_interval, remaining))
            if exit_code is not None:
                break

        stdout, stderr = handle.output()
        outcome = StepOutcome.SUCCEEDED if exit_code == 0 else StepOutcome.FAILED
        return StepResult(
            step=step,
            outcome=outcome,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration=time.perf_counter() - start_time,
        )

    def _stop(self, handle: ProcessHandle) -> None:
        """Terminate, then kill if the process outlives the grace period."""
        handle.terminate()
        if handle.wait(self.config.kill_grace_period) is not None:
            return
        logger.warning("Process did not exit within %.1fs of SIGTERM, killing it", self.config.kill_grace_period)
        handle.kill()
        # A killed process still has to be reaped, even with no grace period
        if handle.wait(max(self.config.kill_grace_period, KILL_REAP_TIMEOUT)) is None:
            logger.error("Process did not exit after SIGKILL")

    def _interrupted(self, step: Step, handle: ProcessHandle, outcome: StepOutcome, start_time: float) -> StepResult:
        stdout, stderr = handle.output()
        exit_code = TIMEOUT_EXIT_CODE if outcome is StepOutcome.TIMED_OUT else CANCELLED_EXIT_CODE
        elapsed = time.perf_counter() - start_time
        if outcome is StepOutcome.TIMED_OUT:
            error = f"Timed out after {self.config.timeout_for(step):.1f}s"
        else:
            error = "Cancelled"
        return StepResult(
            step=step,
            outcome=outcome,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            duration=elapsed,
            error=error,
        )
