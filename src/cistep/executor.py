"""Execution of a whole pipeline run.

The executor runs the steps of one run strictly in order on the calling
thread, stops at the first step that does not succeed, and always collects
artifacts afterwards, on every exit path:

1. Run moves Pending -> Running
2. Each step runs via the StepRunner; its result is appended to the run
3. The first failed / timed out / cancelled step stops the loop
4. Artifacts are collected (also after failure and cancellation)
5. The terminal status is set: Succeeded, Failed or Cancelled
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from .artifacts import ArtifactCollector, BlobStore, MemoryBlobStore
from .cancel import CancelToken
from .config import ExecutorConfig
from .errors import CancellationError, LaunchError, SetupError
from .launcher import Launcher
from .model import (
    LAUNCH_ERROR_EXIT_CODE,
    SETUP_ERROR_EXIT_CODE,
    ArtifactSpec,
    PipelineRun,
    RunStatus,
    Step,
    StepOutcome,
    StepResult,
    new_run_id,
)
from .output import OutputManager, get_output_manager
from .runner import StepRunner

logger = logging.getLogger(__name__)


class PipelineExecutor:
    """
    Executes pipeline runs.

    One executor can be used for many runs, including concurrently from
    several threads: each `run` call owns its PipelineRun, and the only shared
    state is the blob store, written under run-scoped keys.

    Args:
        config: Immutable settings (working directory, environment, timeouts).
        store: Where artifacts go. Defaults to an in-memory store.
        launcher: Process launcher. Defaults to real subprocesses.
        output: Console output. Defaults to the global OutputManager.

    """

    def __init__(
        self,
        config: ExecutorConfig | None = None,
        *,
        store: BlobStore | None = None,
        launcher: Launcher | None = None,
        output: OutputManager | None = None,
    ):
        self.config = config if config is not None else ExecutorConfig()
        self.runner = StepRunner(self.config, launcher)
        self.collector = ArtifactCollector(store if store is not None else MemoryBlobStore())
        self._output = output

    @property
    def output(self) -> OutputManager:
        return self._output if self._output is not None else get_output_manager()

    def run(
        self,
        steps: Sequence[Step],
        artifacts: Iterable[ArtifactSpec] = (),
        *,
        cancel_token: CancelToken | None = None,
        name: str = "pipeline",
        run_id: str | None = None,
    ) -> PipelineRun:
        """
        Execute `steps` in order and collect `artifacts`.

        Blocks until the run has reached a terminal status. Step failures,
        setup and launch errors end the run as Failed, never as an exception.

        Args:
            steps: The steps, in execution order.
            artifacts: Paths to capture once the steps are done, whatever the outcome.
            cancel_token: Cancelling it stops the current step and ends the run as Cancelled.
            name: Display name of the pipeline.
            run_id: Identity of the run, used to scope artifact keys. Generated if omitted.

        Returns:
            The finished PipelineRun.

        """
        run = PipelineRun(
            run_id=run_id or new_run_id(name),
            name=name,
            working_directory=self.config.working_directory,
            steps=tuple(steps),
        )
        token = cancel_token if cancel_token is not None else CancelToken()
        artifact_specs = list(artifacts)

        self.output.run_header(name, run.run_id)
        logger.info("Starting run %s with %d steps", run.run_id, len(run.steps))
        run.start()

        status = RunStatus.FAILED
        try:
            status = self._execute_steps(run, token)
        finally:
            # Artifacts matter most when something went wrong, so collect on every path
            try:
                self._collect(run, artifact_specs)
            finally:
                run.finish(status)
                logger.info("Run %s finished: %s", run.run_id, status.value)

        return run

    def _execute_steps(self, run: PipelineRun, token: CancelToken) -> RunStatus:
        last_index = len(run.steps) - 1
        for index, step in enumerate(run.steps):
            try:
                token.raise_if_cancelled()
            except CancellationError:
                logger.info("Run %s cancelled before step '%s'", run.run_id, step.name)
                self.output.skipped_steps([s.name for s in run.steps[index:]])
                return RunStatus.CANCELLED

            self.output.step_header(step.name, step.command, is_last=index == last_index)
            result = self._execute_step(step, token)
            run.results.append(result)
            self.output.step_result(result, is_last=index == last_index)

            if not result.ok:
                logger.info("Step '%s' did not succeed (%s), stopping", step.name, result.describe())
                self.output.skipped_steps([s.name for s in run.steps[index + 1 :]])
                # Cancellation overrides whatever the step itself reported
                return RunStatus.CANCELLED if result.cancelled or token.cancelled else RunStatus.FAILED

        if token.cancelled:
            return RunStatus.CANCELLED
        return RunStatus.SUCCEEDED

    def _execute_step(self, step: Step, token: CancelToken) -> StepResult:
        """Run one step, turning engine-level errors into a failed result."""
        try:
            return self.runner.execute(step, cancel_token=token)
        except SetupError as e:
            logger.error("Setup error in step '%s': %s", step.name, e)
            return StepResult(
                step=step, outcome=StepOutcome.SETUP_ERROR, exit_code=SETUP_ERROR_EXIT_CODE, error=str(e)
            )
        except LaunchError as e:
            logger.error("Launch error in step '%s': %s", step.name, e)
            return StepResult(
                step=step, outcome=StepOutcome.LAUNCH_ERROR, exit_code=LAUNCH_ERROR_EXIT_CODE, error=str(e)
            )

    def _collect(self, run: PipelineRun, specs: list[ArtifactSpec]) -> None:
        before = len(run.artifact_failures)
        self.collector.collect(run, specs)
        if self.config.persist_step_logs:
            self.collector.collect_logs(run)
        for failure in run.artifact_failures[before:]:
            self.output.artifact_warning(failure)


def run_pipeline(
    steps: Sequence[Step],
    artifacts: Iterable[ArtifactSpec] = (),
    *,
    config: ExecutorConfig | None = None,
    store: BlobStore | None = None,
    cancel_token: CancelToken | None = None,
    name: str = "pipeline",
) -> PipelineRun:
    """Execute a pipeline with a one-off executor."""
    executor = PipelineExecutor(config, store=store)
    return executor.run(steps, artifacts, cancel_token=cancel_token, name=name)
