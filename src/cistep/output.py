"""Console output for pipeline runs.

Provides the OutputManager, which renders a run as a tree:

    ▼ server
    │
    ├─▶ Build
    │    $ cargo build --verbose
    │    ✓ 12.31s
    └─▶ Run tests
         $ cargo test --verbose
         ✗ exit code 101 in 3.02s

followed by a summary of the terminal status, the first failing step and the
collected artifacts. When GITHUB_ACTIONS=true, steps are wrapped in
::group:: markers instead.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from rich.console import Console

if TYPE_CHECKING:
    from .model import ArtifactFailure, ArtifactRecord, PipelineRun, StepResult


class Verbosity(Enum):
    """Verbosity levels for output."""

    QUIET = 0  # Summary only
    NORMAL = 1  # Headers, status, output of failed steps
    VERBOSE = 2  # Also the full output of every step


# Symbols for tree output
SYMBOLS = {
    "entry": "\u25bc",  # Top-level entry point (▼)
    "branch": "\u251c\u2500\u25b6",  # Sequential item (├─▶)
    "last": "\u2514\u2500\u25b6",  # Last item (└─▶)
    "pipe": "\u2502",  # Continuation line (│)
    "success": "\u2713",  # Success (✓)
    "failure": "\u2717",  # Failure (✗)
    "warning": "!",
}

# Lines of output shown for a failed step when not verbose
FAILURE_TAIL_LINES = 20


def prefix_lines(text: str, prefix: str) -> str:
    """Prefix every line of `text`."""
    return "\n".join(f"{prefix}{line}" for line in text.split("\n"))


def format_summary(run: PipelineRun) -> list[str]:
    """
    Build the plain-text run summary.

    Always states the terminal status, the first failing step (if any), and
    which artifacts were and were not collected.
    """
    lines = [f"Run {run.run_id}: {run.status.value.upper()} in {run.elapsed:.2f}s"]
    lines.append(f"Steps: {len(run.results)} of {len(run.steps)} executed")

    first_failure = run.first_failure
    if first_failure is not None:
        lines.append(f"First failing step: {first_failure.step.name} ({first_failure.describe()})")

    if run.artifacts:
        lines.append("Collected artifacts:")
        lines += [f"  {_describe_record(record)}" for record in run.artifacts]
    else:
        lines.append("Collected artifacts: none")

    if run.artifact_failures:
        lines.append("Missing artifacts:")
        lines += [f"  {_describe_failure(failure)}" for failure in run.artifact_failures]

    return lines


def _describe_record(record: ArtifactRecord) -> str:
    return f"{record.name} ({record.size_bytes} bytes) -> {record.location}"


def _describe_failure(failure: ArtifactFailure) -> str:
    return f"{failure.name}: {failure.reason}"


@dataclass
class OutputManager:
    """
    Centralized output formatting for cistep.

    Step output is captured by the runner and printed here afterwards, prefixed
    at the step's level, so concurrent runs never interleave inside a step block.
    """

    console: Console = field(default_factory=Console)
    verbosity: Verbosity = Verbosity.NORMAL
    _is_gha: bool = field(default_factory=lambda: os.environ.get("GITHUB_ACTIONS") == "true")
    _lock: threading.RLock = field(default_factory=threading.RLock)

    @property
    def in_gha(self) -> bool:
        """Whether running in GitHub Actions."""
        return self._is_gha

    @property
    def colors_enabled(self) -> bool:
        return self.console.color_system is not None

    def _print_raw(self, message: str, style: str | None = None, end: str = "\n") -> None:
        # Disable markup and highlighting so command output is printed verbatim
        with self._lock:
            self.console.print(message, style=style, end=end, markup=False, highlight=False, soft_wrap=True)

    def _continuation(self, is_last: bool) -> str:
        return "     " if is_last else f"{SYMBOLS['pipe']}    "

    def run_header(self, name: str, run_id: str) -> None:
        if self.verbosity is Verbosity.QUIET:
            return
        if self._is_gha:
            self._print_raw(f"Run {name} ({run_id})")
            return
        self._print_raw(f"\n{SYMBOLS['entry']} {name}", style="bold blue")
        self._print_raw(SYMBOLS["pipe"])

    def step_header(self, name: str, command: str, is_last: bool = False) -> None:
        if self.verbosity is Verbosity.QUIET:
            return
        if self._is_gha:
            self._print_raw(f"::group::{name}")
            self._print_raw(f"$ {command}")
            return
        symbol = SYMBOLS["last"] if is_last else SYMBOLS["branch"]
        self._print_raw(f"{symbol} {name}", style="bold cyan")
        self._print_raw(f"{self._continuation(is_last)}$ {command}", style="dim")

    def step_result(self, result: StepResult, is_last: bool = False) -> None:
        """Print a finished step's output (when relevant) and its status line."""
        if self.verbosity is Verbosity.QUIET:
            return
        prefix = "" if self._is_gha else self._continuation(is_last)

        text = _combined_output(result)
        if text and self.verbosity is Verbosity.VERBOSE:
            self._print_raw(prefix_lines(text, prefix))
        elif text and not result.ok:
            tail = text.split("\n")[-FAILURE_TAIL_LINES:]
            self._print_raw(prefix_lines("\n".join(tail), prefix))

        if result.ok:
            self._print_raw(f"{prefix}{SYMBOLS['success']} {result.duration:.2f}s", style="green")
        else:
            self._print_raw(f"{prefix}{SYMBOLS['failure']} {result.describe()} in {result.duration:.2f}s", style="red")

        if self._is_gha:
            self._print_raw("::endgroup::")
            if not result.ok:
                self._print_raw(f"::error::Step '{result.step.name}' failed: {result.describe()}")

    def skipped_steps(self, names: list[str]) -> None:
        if self.verbosity is Verbosity.QUIET or not names:
            return
        prefix = "" if self._is_gha else f"{SYMBOLS['pipe']} "
        for name in names:
            self._print_raw(f"{prefix}- {name} (not run)", style="dim")

    def artifact_warning(self, failure: ArtifactFailure) -> None:
        if self._is_gha:
            self._print_raw(f"::warning::Artifact {_describe_failure(failure)}")
        elif self.verbosity is not Verbosity.QUIET:
            self._print_raw(f"{SYMBOLS['warning']} artifact {_describe_failure(failure)}", style="yellow")

    def run_summary(self, run: PipelineRun) -> None:
        """Print the run summary. Printed at every verbosity."""
        lines = format_summary(run)
        if run.ok:
            headline_style = "bold green"
            symbol = SYMBOLS["success"]
        else:
            headline_style = "bold red"
            symbol = SYMBOLS["failure"]
        self._print_raw(f"\n{symbol} {lines[0]}", style=headline_style)
        for line in lines[1:]:
            style = "yellow" if line.startswith("Missing") else None
            self._print_raw(line, style=style)

    def print(self, message: str, style: str | None = None) -> None:
        self._print_raw(message, style=style)

    def error(self, message: str) -> None:
        """Print an error message."""
        if self._is_gha:
            self._print_raw(f"::error::{message}")
        else:
            self._print_raw(f"Error: {message}", style="bold red")


def _combined_output(result: StepResult) -> str:
    parts = [text.rstrip("\n") for text in (result.stdout_text(), result.stderr_text()) if text.strip()]
    return "\n".join(parts)


# Global output manager instance
_output_manager: OutputManager | None = None


def get_output_manager() -> OutputManager:
    """Get the global output manager instance."""
    global _output_manager
    if _output_manager is None:
        _output_manager = OutputManager()
    return _output_manager


def reset_output_manager() -> None:
    """Reset the global output manager (for testing)."""
    global _output_manager
    _output_manager = None


def configure_output(
    verbosity: Verbosity = Verbosity.NORMAL,
    force_color: bool | None = None,
) -> OutputManager:
    """
    Configure the global output manager.

    Args:
        verbosity: Output verbosity level
        force_color: Force color output on/off (None for auto-detect)

    Returns:
        The configured OutputManager instance.

    """
    global _output_manager

    console_kwargs: dict[str, Any] = {}
    if force_color is not None:
        console_kwargs["force_terminal"] = force_color
        if not force_color:
            console_kwargs["no_color"] = True

    _output_manager = OutputManager(
        console=Console(**console_kwargs),
        verbosity=verbosity,
    )
    return _output_manager
