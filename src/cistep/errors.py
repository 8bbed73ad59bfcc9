"""Exception types raised by cistep.

A step that runs and exits non-zero is not an error: it produces a failed
`StepResult`. The exceptions here describe the engine-level problems around it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

    from .model import Step


class PipelineError(Exception):
    """Base class for all cistep errors."""


class SetupError(PipelineError):
    """The step could not be prepared, so its command was never launched."""

    def __init__(self, message: str, step: Step | None = None):
        self.step = step
        super().__init__(message)


class DefinitionError(SetupError):
    """A pipeline definition file is malformed."""

    def __init__(self, message: str, source: Path | str | None = None):
        self.source = source
        if source is not None:
            message = f"{source}: {message}"
        super().__init__(message)


class LaunchError(PipelineError):
    """The external tool could not be started (not found, not executable)."""

    def __init__(self, step: Step, cause: OSError):
        self.step = step
        self.cause = cause
        super().__init__(f"Could not launch '{step.command}' for step '{step.name}': {cause}")


class ArtifactCollectionError(PipelineError):
    """An artifact could not be read or stored. Never fatal to a run."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Artifact '{name}': {reason}")


class CancellationError(PipelineError):
    """Raised when work is attempted after the run was cancelled."""


class InvalidTransitionError(PipelineError, RuntimeError):
    """A pipeline run was moved to a status its state machine does not allow."""
