"""Tests for the data model."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from cistep.errors import InvalidTransitionError
from cistep.model import (
    ArtifactSpec,
    PipelineRun,
    RunStatus,
    Step,
    StepOutcome,
    StepResult,
    new_run_id,
    slugify,
)


def _run(**kwargs) -> PipelineRun:
    return PipelineRun(run_id="run-1", name="test", working_directory=Path("/tmp"), **kwargs)


# =============================================================================
# Step
# =============================================================================


def test_step_requires_command():
    with pytest.raises(ValidationError, match="command must not be empty"):
        Step(name="build", command="")
    with pytest.raises(ValidationError, match="command must not be empty"):
        Step(name="build", command="   ")


def test_step_requires_name():
    with pytest.raises(ValidationError):
        Step(name="", command="make")


def test_step_accepts_workflow_keys():
    step = Step.model_validate({"name": "Build", "run": "cargo build", "working-directory": "./Server"})
    assert step.command == "cargo build"
    assert step.working_directory == Path("Server")


def test_step_is_immutable():
    step = Step(name="build", command="make")
    with pytest.raises(ValidationError):
        step.command = "rm -rf /"  # type: ignore[misc]


def test_step_env_values_become_strings():
    step = Step(name="build", command="make", env={"JOBS": 4, "VERBOSE": True})
    assert step.env == {"JOBS": "4", "VERBOSE": "true"}


@pytest.mark.parametrize("timeout", [0, -1, float("inf")])
def test_step_timeout_must_be_positive_and_finite(timeout):
    with pytest.raises(ValidationError):
        Step(name="build", command="make", timeout=timeout)


def test_resolve_directory():
    base = Path("/work")
    assert Step(name="a", command="x").resolve_directory(base) == base
    assert Step(name="a", command="x", working_directory=Path("sub")).resolve_directory(base) == base / "sub"
    assert Step(name="a", command="x", working_directory=Path("/abs")).resolve_directory(base) == Path("/abs")


def test_artifact_spec_path_alias():
    spec = ArtifactSpec.model_validate({"name": "server-logs", "path": "log.txt"})
    assert spec.source_path == Path("log.txt")
    assert ArtifactSpec(name="logs", source_path=Path("out")).source_path == Path("out")


# =============================================================================
# StepResult
# =============================================================================


def test_step_result_flags():
    step = Step(name="build", command="make")

    ok = StepResult(step=step, outcome=StepOutcome.SUCCEEDED, exit_code=0)
    assert ok.ok and not ok.timed_out and not ok.cancelled

    timed_out = StepResult(step=step, outcome=StepOutcome.TIMED_OUT, exit_code=124, duration=2.0)
    assert timed_out.timed_out and not timed_out.ok
    assert timed_out.describe() == "timed out after 2.0s"

    failed = StepResult(step=step, outcome=StepOutcome.FAILED, exit_code=2)
    assert failed.describe() == "exit code 2"


def test_step_result_is_immutable():
    result = StepResult(step=Step(name="build", command="make"), outcome=StepOutcome.SUCCEEDED, exit_code=0)
    with pytest.raises(AttributeError):
        result.exit_code = 1  # type: ignore[misc]


def test_step_result_text_tolerates_invalid_utf8():
    result = StepResult(
        step=Step(name="build", command="make"), outcome=StepOutcome.SUCCEEDED, exit_code=0, stdout=b"ok \xff"
    )
    assert result.stdout_text().startswith("ok ")


# =============================================================================
# PipelineRun
# =============================================================================


def test_run_status_machine():
    run = _run()
    assert run.status is RunStatus.PENDING

    run.start()
    assert run.status is RunStatus.RUNNING
    assert run.started_at is not None

    run.finish(RunStatus.SUCCEEDED)
    assert run.status is RunStatus.SUCCEEDED
    assert run.status.is_terminal
    assert run.finished_at is not None


def test_terminal_status_is_entered_once():
    run = _run()
    run.start()
    run.finish(RunStatus.FAILED)
    with pytest.raises(InvalidTransitionError):
        run.finish(RunStatus.SUCCEEDED)
    assert run.status is RunStatus.FAILED


def test_cannot_finish_before_start():
    with pytest.raises(InvalidTransitionError):
        _run().finish(RunStatus.SUCCEEDED)


def test_cannot_start_twice():
    run = _run()
    run.start()
    with pytest.raises(InvalidTransitionError):
        run.start()


def test_first_failure():
    build = Step(name="build", command="make")
    test = Step(name="test", command="make test")
    run = _run(steps=(build, test))
    assert run.first_failure is None

    run.results.append(StepResult(step=build, outcome=StepOutcome.SUCCEEDED, exit_code=0))
    run.results.append(StepResult(step=test, outcome=StepOutcome.FAILED, exit_code=2))
    assert run.first_failure is not None
    assert run.first_failure.step.name == "test"


def test_run_to_dict_is_json_serializable():
    step = Step(name="build", command="make")
    run = _run(steps=(step,))
    run.start()
    run.results.append(StepResult(step=step, outcome=StepOutcome.FAILED, exit_code=2, stderr=b"boom"))
    run.finish(RunStatus.FAILED)

    data = json.loads(json.dumps(run.to_dict()))
    assert data["status"] == "failed"
    assert data["first_failure"] == "build"
    assert data["results"][0]["stderr"] == "boom"


def test_new_run_id_is_unique_and_key_safe():
    first = new_run_id("Server Build")
    second = new_run_id("Server Build")
    assert first != second
    assert first.startswith("server-build_")
    assert "/" not in first


def test_slugify():
    assert slugify("Run tests") == "run-tests"
    assert slugify("Build / Test") == "build-test"
    assert slugify("!!!") == "unnamed"
