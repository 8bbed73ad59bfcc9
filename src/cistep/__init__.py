"""
cistep - run build-test-artifact pipelines.

A pipeline is an ordered list of steps (external commands) plus artifacts to
capture. Steps run one after the other; the first one that fails stops the
run, and the artifacts are collected whatever happened.

Basic usage:

    from pathlib import Path

    from cistep import ArtifactSpec, ExecutorConfig, PipelineExecutor, Step

    executor = PipelineExecutor(ExecutorConfig(working_directory=Path("Server")))
    run = executor.run(
        [
            Step(name="Build", command="cargo build --verbose"),
            Step(name="Run tests", command="cargo test --verbose"),
        ],
        [ArtifactSpec(name="server-logs", source_path=Path("log.txt"))],
    )
    print(run.status, [r.exit_code for r in run.results])

Or from the command line:

    cistep run .github/workflows/server.yml --event push --branch main
"""

from .artifacts import ArtifactCollector, BlobStore, FileSystemBlobStore, MemoryBlobStore
from .cancel import CancelToken
from .config import ExecutorConfig
from .definition import PipelineDefinition, load_pipeline, parse_pipeline
from .errors import (
    ArtifactCollectionError,
    CancellationError,
    DefinitionError,
    InvalidTransitionError,
    LaunchError,
    PipelineError,
    SetupError,
)
from .executor import PipelineExecutor, run_pipeline
from .launcher import Launcher, ProcessHandle, SubprocessLauncher
from .model import (
    ArtifactFailure,
    ArtifactRecord,
    ArtifactSpec,
    PipelineRun,
    RunStatus,
    Step,
    StepOutcome,
    StepResult,
)
from .runner import StepRunner
from .triggers import EventKind, RunRequest, Trigger, TriggerGate, on_pull_request, on_push

__all__ = [
    # Model
    "Step",
    "StepResult",
    "StepOutcome",
    "PipelineRun",
    "RunStatus",
    "ArtifactSpec",
    "ArtifactRecord",
    "ArtifactFailure",
    # Execution
    "ExecutorConfig",
    "PipelineExecutor",
    "run_pipeline",
    "StepRunner",
    "CancelToken",
    "Launcher",
    "ProcessHandle",
    "SubprocessLauncher",
    # Artifacts
    "ArtifactCollector",
    "BlobStore",
    "FileSystemBlobStore",
    "MemoryBlobStore",
    # Definitions and triggers
    "PipelineDefinition",
    "load_pipeline",
    "parse_pipeline",
    "EventKind",
    "RunRequest",
    "Trigger",
    "TriggerGate",
    "on_push",
    "on_pull_request",
    # Errors
    "PipelineError",
    "SetupError",
    "DefinitionError",
    "LaunchError",
    "ArtifactCollectionError",
    "CancellationError",
    "InvalidTransitionError",
]
