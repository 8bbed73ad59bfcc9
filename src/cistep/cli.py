"""Command-line interface for cistep."""

from __future__ import annotations

import json
import logging
import signal
import sys
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from types import FrameType

import click
from rich.console import Console
from rich.logging import RichHandler

from .artifacts import FileSystemBlobStore
from .cancel import CancelToken
from .definition import load_pipeline
from .errors import DefinitionError
from .executor import PipelineExecutor
from .model import RunStatus
from .output import Verbosity, configure_output, get_output_manager
from .triggers import EventKind

EXIT_SUCCEEDED = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130

_EXIT_CODES = {
    RunStatus.SUCCEEDED: EXIT_SUCCEEDED,
    RunStatus.FAILED: EXIT_FAILED,
    RunStatus.CANCELLED: EXIT_CANCELLED,
}

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _parse_env_pairs(pairs: tuple[str, ...]) -> dict[str, str]:
    env: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint="--env")
        env[key] = value
    return env


@contextmanager
def _cancel_on_signals(token: CancelToken) -> Generator[None, None, None]:
    """Turn SIGINT / SIGTERM into a cancellation of the running pipeline."""

    def handler(signum: int, frame: FrameType | None) -> None:
        token.cancel(f"received {signal.Signals(signum).name}")

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, old_handler in previous.items():
            signal.signal(sig, old_handler)


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Level for diagnostic logging (written to stderr)",
)
@click.version_option(package_name="cistep")
def main(log_level: str) -> None:
    """Run build-test-artifact pipelines."""
    _configure_logging(log_level)


@main.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--workdir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory the pipeline runs in (default: current directory)",
)
@click.option(
    "--store",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="CISTEP_ARTIFACT_DIR",
    default=None,
    help="Artifact store directory (default: ~/.cistep/artifacts)",
)
@click.option("--job", default=None, help="Job to run, for workflows with several jobs")
@click.option("--timeout", type=click.FLOAT, default=None, help="Default per-step timeout in seconds")
@click.option("--env", "env_pairs", multiple=True, metavar="KEY=VALUE", help="Extra environment variable")
@click.option(
    "--event",
    type=click.Choice([kind.value for kind in EventKind]),
    default=None,
    help="Triggering event; the run is skipped if the pipeline does not react to it",
)
@click.option("--branch", default=None, help="Branch of the triggering event")
@click.option("--step-logs/--no-step-logs", default=True, help="Store each step's output as an artifact")
@click.option("--report", type=click.Path(dir_okay=False, path_type=Path), default=None, help="Write a JSON report")
@click.option("--color/--no-color", default=None, help="Force color on/off (default: auto-detect)")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Show the output of every step")
@click.option("--quiet", "-q", is_flag=True, default=False, help="Only print the summary")
def run(
    pipeline_file: Path,
    workdir: Path | None,
    store: Path | None,
    job: str | None,
    timeout: float | None,
    env_pairs: tuple[str, ...],
    event: str | None,
    branch: str | None,
    step_logs: bool,
    report: Path | None,
    color: bool | None,
    verbose: bool,
    quiet: bool,
) -> None:
    """Run the pipeline described by PIPELINE_FILE."""
    if (event is None) != (branch is None):
        raise click.UsageError("--event and --branch must be given together")

    verbosity = Verbosity.QUIET if quiet else Verbosity.VERBOSE if verbose else Verbosity.NORMAL
    output_mgr = configure_output(verbosity=verbosity, force_color=color)
    env = _parse_env_pairs(env_pairs)

    try:
        definition = load_pipeline(pipeline_file, job=job)
        config = definition.executor_config(
            (workdir or Path.cwd()).resolve(),
            env=env,
            default_timeout=timeout,
            color=color,
            persist_step_logs=step_logs,
        )
    except DefinitionError as e:
        output_mgr.error(str(e))
        sys.exit(EXIT_USAGE)
    except ValueError as e:
        # Bad CISTEP_* values or command-line overrides
        output_mgr.error(f"Invalid settings: {e}")
        sys.exit(EXIT_USAGE)

    if event is not None and branch is not None:
        request = definition.trigger_gate().on_event(event, branch)
        if request is None:
            output_mgr.print(f"Pipeline '{definition.name}' does not run on {event} to '{branch}', skipping")
            sys.exit(EXIT_SUCCEEDED)

    executor = PipelineExecutor(config, store=FileSystemBlobStore(store), output=output_mgr)
    token = CancelToken()
    with _cancel_on_signals(token):
        pipeline_run = executor.run(definition.steps, definition.artifacts, cancel_token=token, name=definition.name)

    output_mgr.run_summary(pipeline_run)

    if report is not None:
        report.parent.mkdir(parents=True, exist_ok=True)
        report.write_text(json.dumps(pipeline_run.to_dict(), indent=2))
        logger.info("Wrote report to %s", report)

    sys.exit(_EXIT_CODES[pipeline_run.status])


@main.command()
@click.argument("pipeline_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--job", default=None, help="Job to check, for workflows with several jobs")
def validate(pipeline_file: Path, job: str | None) -> None:
    """Check that PIPELINE_FILE is a valid pipeline definition."""
    output_mgr = get_output_manager()
    try:
        definition = load_pipeline(pipeline_file, job=job)
    except DefinitionError as e:
        output_mgr.error(str(e))
        sys.exit(EXIT_USAGE)

    output_mgr.print(f"{definition.name}: {len(definition.steps)} steps, {len(definition.artifacts)} artifacts")
    for step in definition.steps:
        output_mgr.print(f"  step {step.name}: {step.command}")
    for spec in definition.artifacts:
        output_mgr.print(f"  artifact {spec.name}: {spec.source_path}")


@main.command("fetch-artifact")
@click.argument("location")
@click.option(
    "--store",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="CISTEP_ARTIFACT_DIR",
    default=None,
    help="Artifact store directory (default: ~/.cistep/artifacts)",
)
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), default=None, help="Write to file")
def fetch_artifact(location: str, store: Path | None, output: Path | None) -> None:
    """Read back an artifact by the LOCATION printed in the run summary."""
    try:
        data = FileSystemBlobStore(store).get(location)
    except (OSError, ValueError) as e:
        get_output_manager().error(f"Cannot read artifact {location}: {e}")
        sys.exit(EXIT_FAILED)

    if output is None:
        click.get_binary_stream("stdout").write(data)
    else:
        output.write_bytes(data)


if __name__ == "__main__":
    main()
