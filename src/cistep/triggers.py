"""Event triggers: deciding whether an event should start a run."""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

BRANCH_REF_PREFIX = "refs/heads/"
NEGATION_PREFIX = "!"


class EventKind(Enum):
    """Kinds of source-control events that can trigger a run."""

    PUSH = "push"
    PULL_REQUEST = "pull_request"


@dataclass
class Trigger:
    """
    Fires for one kind of event on matching branches.

    Branch patterns follow GitHub Actions filter syntax: `*` matches within one
    path segment, `**` across segments, `?` and `+` repeat the previous
    character, `[...]` is a character class. Patterns are applied in order and
    a pattern starting with `!` excludes what it matches, so
    `["release/**", "!release/**-alpha"]` skips alpha releases. No patterns
    means every branch matches.
    """

    kind: EventKind
    branches: list[str] | None = None

    def matches(self, kind: EventKind, branch: str) -> bool:
        if kind is not self.kind:
            return False
        if not self.branches:
            return True
        matched = False
        for pattern in self.branches:
            negated = pattern.startswith(NEGATION_PREFIX)
            if negated:
                pattern = pattern[len(NEGATION_PREFIX) :]
            if branch_pattern_regex(pattern).fullmatch(branch):
                matched = not negated
        return matched


@functools.lru_cache(maxsize=256)
def branch_pattern_regex(pattern: str) -> re.Pattern[str]:
    """Translate a GitHub Actions branch filter into a regular expression."""
    parts: list[str] = []
    i = 0
    while i < len(pattern):
        char = pattern[i]
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
            continue
        if char == "*":
            parts.append("[^/]*")
        elif char in "?+":
            # A quantifier needs a single character before it
            if parts and not parts[-1].endswith(("*", "?", "+")):
                parts.append(char)
            else:
                parts.append(re.escape(char))
        elif char == "[" and pattern.find("]", i + 2) != -1:
            end = pattern.find("]", i + 2)
            body = pattern[i + 1 : end]
            parts.append("[" + "".join(c if c == "-" else re.escape(c) for c in body) + "]")
            i = end + 1
            continue
        elif char == "\\" and i + 1 < len(pattern):
            parts.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        else:
            parts.append(re.escape(char))
        i += 1
    return re.compile("".join(parts))


def on_push(branches: list[str] | None = None) -> Trigger:
    """Create a push trigger."""
    return Trigger(EventKind.PUSH, branches)


def on_pull_request(branches: list[str] | None = None) -> Trigger:
    """Create a pull request trigger."""
    return Trigger(EventKind.PULL_REQUEST, branches)


@dataclass(frozen=True)
class RunRequest:
    """A request to start a pipeline run, produced by the TriggerGate."""

    event: EventKind
    branch: str
    requested_at: datetime = field(default_factory=datetime.now)


class TriggerGate:
    """
    Decides which events start a run.

    Events that match no trigger are ignored: `on_event` returns None.
    """

    def __init__(self, triggers: list[Trigger]):
        self.triggers = list(triggers)

    @classmethod
    def from_dict(cls, on: dict[str, Any] | list[str] | str | None) -> TriggerGate:
        """
        Build a gate from a workflow-style `on:` value.

        Accepts `push`, `[push, pull_request]` or
        `{push: {branches: [main]}, pull_request: {branches: [main]}}`.
        Event kinds other than push and pull_request are ignored.
        """
        if on is None:
            return cls([])
        if isinstance(on, str):
            on = [on]
        if isinstance(on, list):
            on = {kind: None for kind in on}

        triggers = []
        kinds = {kind.value: kind for kind in EventKind}
        for key, config in on.items():
            if key not in kinds:
                continue
            branches = None
            if isinstance(config, dict) and config.get("branches") is not None:
                value = config["branches"]
                branches = [str(value)] if isinstance(value, str) else [str(b) for b in value]
            triggers.append(Trigger(kinds[key], branches))
        return cls(triggers)

    def on_event(self, kind: EventKind | str, branch: str) -> RunRequest | None:
        """
        Check an event against the triggers.

        Args:
            kind: The event kind (`push` or `pull_request`).
            branch: Branch name; a leading `refs/heads/` is ignored.

        Returns:
            A RunRequest if any trigger matches, otherwise None.

        """
        if isinstance(kind, str):
            try:
                kind = EventKind(kind)
            except ValueError:
                return None
        branch = branch.removeprefix(BRANCH_REF_PREFIX)
        if any(trigger.matches(kind, branch) for trigger in self.triggers):
            return RunRequest(event=kind, branch=branch)
        return None
