"""Cancellation of in-flight pipeline runs."""

from __future__ import annotations

import threading

from .errors import CancellationError


class CancelToken:
    """
    A thread-safe, one-way cancellation flag.

    Hand the same token to `PipelineExecutor.run` and to whatever decides to
    cancel (a signal handler, another thread). Cancelling terminates the step
    that is currently running and prevents further steps from starting.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or `timeout` elapses. Returns True if cancelled."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError(self._reason or "cancelled")
