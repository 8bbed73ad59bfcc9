"""Loading pipeline definitions from YAML files.

Two formats are accepted. The native one:

    name: server
    working-directory: ./Server
    env:
      CARGO_TERM_COLOR: always
    on:
      push:
        branches: [main]
    steps:
      - name: Build
        run: cargo build --verbose
      - name: Run tests
        run: cargo test --verbose
        timeout: 1200
    artifacts:
      - name: server-logs
        path: log.txt

and GitHub Actions workflows (anything with a top-level `jobs:` key), from
which a single job is converted: its `run:` steps become steps and its
`actions/upload-artifact` steps become artifacts. Other `uses:` steps
(checkout, toolchain setup) are skipped, since they are the job of whatever
prepared the working directory.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .config import ExecutorConfig
from .errors import DefinitionError
from .model import ArtifactSpec, Step, normalize_env
from .triggers import TriggerGate

logger = logging.getLogger(__name__)

UPLOAD_ARTIFACT_ACTION = "actions/upload-artifact"

# GitHub Actions runs `run:` steps with bash, failing on the first error
WORKFLOW_SHELL = ["bash", "-e", "-c"]


def _default_step_name(command: str) -> str:
    first_line = command.strip().splitlines()[0] if command.strip() else command
    return f"Run {first_line}"


class PipelineDefinition(BaseModel):
    """A pipeline as described in a definition file."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="forbid")

    name: str = "pipeline"
    working_directory: Path | None = Field(default=None, alias="working-directory")
    env: dict[str, str] = Field(default_factory=dict)
    timeout: float | None = Field(default=None, gt=0)
    shell: list[str] | None = None
    on: dict[str, Any] | list[str] | str | None = None
    steps: list[Step] = Field(default_factory=list)
    artifacts: list[ArtifactSpec] = Field(default_factory=list)

    @field_validator("env", mode="before")
    @classmethod
    def _env_as_strings(cls, value: Any) -> Any:
        return normalize_env(value)

    @field_validator("steps", mode="before")
    @classmethod
    def _name_unnamed_steps(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        named = []
        for raw in value:
            if isinstance(raw, dict) and "name" not in raw and isinstance(raw.get("run"), str):
                raw = {**raw, "name": _default_step_name(raw["run"])}
            named.append(raw)
        return named

    def trigger_gate(self) -> TriggerGate:
        return TriggerGate.from_dict(self.on)

    def executor_config(self, base_directory: Path, **overrides: Any) -> ExecutorConfig:
        """
        Build the executor configuration for this pipeline.

        Args:
            base_directory: Directory the pipeline's own working directory is relative to.
            **overrides: ExecutorConfig fields that take precedence (e.g. from the command line).

        """
        working_directory = base_directory
        if self.working_directory is not None:
            working_directory = base_directory / self.working_directory

        values: dict[str, Any] = {"working_directory": working_directory, "env": dict(self.env)}
        if self.timeout is not None:
            values["default_timeout"] = self.timeout
        if self.shell is not None:
            values["shell"] = list(self.shell)

        extra_env = overrides.pop("env", None)
        if extra_env:
            values["env"].update(extra_env)
        values.update({k: v for k, v in overrides.items() if v is not None})
        return ExecutorConfig.from_env(**values)


def _as_mapping(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise DefinitionError(f"{what} must be a mapping, got {type(value).__name__}")
    return value


def _minutes_to_seconds(value: Any, what: str) -> float:
    # Expressions such as ${{ inputs.timeout }} are not evaluated
    try:
        return float(value) * 60
    except (TypeError, ValueError):
        raise DefinitionError(f"{what}: timeout-minutes must be a number, got {value!r}") from None


def _convert_workflow(data: dict[str, Any], job_id: str | None) -> dict[str, Any]:
    """Convert one job of a GitHub Actions workflow into the native format."""
    jobs = _as_mapping(data.get("jobs"), "jobs")
    if not jobs:
        raise DefinitionError("workflow defines no jobs")
    if job_id is None:
        if len(jobs) != 1:
            raise DefinitionError(f"workflow defines several jobs, pick one of: {', '.join(jobs)}")
        job_id = next(iter(jobs))
    elif job_id not in jobs:
        raise DefinitionError(f"job '{job_id}' not found, available jobs: {', '.join(jobs)}")

    job = _as_mapping(jobs[job_id], f"job '{job_id}'")

    defaults = _as_mapping(_as_mapping(data.get("defaults"), "defaults").get("run"), "defaults.run")
    job_defaults = _as_mapping(_as_mapping(job.get("defaults"), "defaults").get("run"), "defaults.run")
    default_directory = job_defaults.get("working-directory", defaults.get("working-directory"))

    env = {**_as_mapping(data.get("env"), "env"), **_as_mapping(job.get("env"), "env")}

    steps: list[dict[str, Any]] = []
    artifacts: list[dict[str, Any]] = []
    for index, raw in enumerate(job.get("steps") or [], start=1):
        raw = _as_mapping(raw, f"step {index}")
        if "run" in raw:
            step: dict[str, Any] = {"run": raw["run"]}
            if "name" in raw:
                step["name"] = str(raw["name"])
            directory = raw.get("working-directory", default_directory)
            if directory is not None:
                step["working-directory"] = directory
            if "env" in raw:
                step["env"] = raw["env"]
            if "timeout-minutes" in raw:
                step["timeout"] = _minutes_to_seconds(raw["timeout-minutes"], f"step {index}")
            steps.append(step)
            continue

        uses = str(raw.get("uses", ""))
        action = uses.split("@", 1)[0]
        if action == UPLOAD_ARTIFACT_ACTION:
            artifacts += _convert_upload_artifact(raw, index)
        else:
            logger.info("Skipping step %d (%s): not a run step", index, uses or "no 'run' or 'uses'")

    converted: dict[str, Any] = {
        "name": str(data.get("name") or job_id),
        "env": env,
        "shell": WORKFLOW_SHELL,
        "steps": steps,
        "artifacts": artifacts,
    }
    if "on" in data:
        converted["on"] = data["on"]
    if "timeout-minutes" in job:
        converted["timeout"] = _minutes_to_seconds(job["timeout-minutes"], f"job '{job_id}'")
    return converted


def _convert_upload_artifact(raw: dict[str, Any], index: int) -> list[dict[str, Any]]:
    with_params = _as_mapping(raw.get("with"), f"step {index} 'with'")
    name = str(with_params.get("name", "artifact"))
    # Exclusion patterns ("!path") have no equivalent here
    paths = [line.strip() for line in str(with_params.get("path", "")).splitlines()]
    paths = [p for p in paths if p and not p.startswith("!")]
    if not paths:
        raise DefinitionError(f"step {index} uploads artifact '{name}' without a path")
    if len(paths) == 1:
        return [{"name": name, "path": paths[0]}]
    return [{"name": f"{name}-{i}", "path": path} for i, path in enumerate(paths, start=1)]


def parse_pipeline(text: str, *, source: Path | str | None = None, job: str | None = None) -> PipelineDefinition:
    """
    Parse a pipeline definition from YAML text.

    Args:
        text: The YAML document.
        source: Where the text came from, for error messages.
        job: For GitHub Actions workflows, the id of the job to convert.

    Raises:
        DefinitionError: If the document is not valid YAML or not a valid definition.

    """
    # YAML 1.2 (ruamel's default) keeps the workflow `on:` key a string
    yaml = YAML(typ="safe", pure=True)
    try:
        data = yaml.load(text)
    except YAMLError as e:
        raise DefinitionError(f"invalid YAML: {e}", source) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise DefinitionError("a pipeline definition must be a mapping", source)

    try:
        if "jobs" in data:
            data = _convert_workflow(data, job)
        elif job is not None:
            raise DefinitionError("--job only applies to GitHub Actions workflows")
        return PipelineDefinition.model_validate(data)
    except DefinitionError as e:
        if e.source is None:
            raise DefinitionError(str(e), source) from e
        raise
    except ValidationError as e:
        raise DefinitionError(_format_validation_error(e), source) from e


def load_pipeline(path: Path | str, *, job: str | None = None) -> PipelineDefinition:
    """Load a pipeline definition file. See `parse_pipeline`."""
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise DefinitionError(f"cannot read file: {e}", path) from e
    return parse_pipeline(text, source=path, job=job)


def _format_validation_error(error: ValidationError) -> str:
    problems = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"])
        problems.append(f"{location}: {detail['msg']}" if location else detail["msg"])
    return "; ".join(problems)
