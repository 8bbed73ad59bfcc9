"""Tests for event triggers."""

import pytest

from cistep.triggers import EventKind, RunRequest, Trigger, TriggerGate, on_pull_request, on_push


def test_trigger_matches_kind_and_branch():
    trigger = on_push(branches=["main"])

    assert trigger.matches(EventKind.PUSH, "main")
    assert not trigger.matches(EventKind.PUSH, "feature")
    assert not trigger.matches(EventKind.PULL_REQUEST, "main")


def test_trigger_without_branches_matches_all():
    trigger = on_pull_request()
    assert trigger.matches(EventKind.PULL_REQUEST, "anything/at-all")


def test_trigger_branch_globs():
    trigger = Trigger(EventKind.PUSH, ["release/*", "main"])

    assert trigger.matches(EventKind.PUSH, "release/1.2")
    assert not trigger.matches(EventKind.PUSH, "releases")


@pytest.mark.parametrize(
    "pattern, branch, expected",
    [
        ("release/*", "release/1.2", True),
        ("release/*", "release/a/b", False),
        ("release/**", "release/a/b", True),
        ("**", "feature/deep/branch", True),
        ("v[12].x", "v1.x", True),
        ("v[12].x", "v3.x", False),
        ("v[12].x", "v1-x", False),
        ("feature-?", "feature", True),
        ("fix+", "fixxx", True),
        ("fix+", "fi", False),
    ],
)
def test_branch_filter_syntax(pattern, branch, expected):
    assert Trigger(EventKind.PUSH, [pattern]).matches(EventKind.PUSH, branch) is expected


def test_negated_branch_patterns():
    trigger = on_push(["release/**", "!release/**-alpha"])

    assert trigger.matches(EventKind.PUSH, "release/1.0")
    assert not trigger.matches(EventKind.PUSH, "release/1.0-alpha")
    assert not trigger.matches(EventKind.PUSH, "main")


def test_later_pattern_can_include_again():
    trigger = on_push(["release/**", "!release/**-alpha", "release/2.0-alpha"])

    assert trigger.matches(EventKind.PUSH, "release/2.0-alpha")
    assert not trigger.matches(EventKind.PUSH, "release/1.0-alpha")


def test_gate_returns_run_request():
    gate = TriggerGate([on_push(["main"]), on_pull_request(["main"])])

    request = gate.on_event(EventKind.PUSH, "main")

    assert isinstance(request, RunRequest)
    assert request.event is EventKind.PUSH
    assert request.branch == "main"
    assert gate.on_event("pull_request", "main") is not None


def test_gate_ignores_non_matching_events():
    gate = TriggerGate([on_push(["main"])])

    assert gate.on_event(EventKind.PUSH, "develop") is None
    assert gate.on_event(EventKind.PULL_REQUEST, "main") is None
    assert gate.on_event("release", "main") is None


def test_gate_strips_ref_prefix():
    gate = TriggerGate([on_push(["main"])])
    request = gate.on_event("push", "refs/heads/main")
    assert request is not None
    assert request.branch == "main"


def test_gate_without_triggers_never_fires():
    assert TriggerGate([]).on_event(EventKind.PUSH, "main") is None
    assert TriggerGate.from_dict(None).on_event(EventKind.PUSH, "main") is None


def test_from_workflow_mapping():
    gate = TriggerGate.from_dict(
        {
            "push": {"branches": ["main"]},
            "pull_request": {"branches": ["main"]},
            "workflow_dispatch": None,
        }
    )

    assert [t.kind for t in gate.triggers] == [EventKind.PUSH, EventKind.PULL_REQUEST]
    assert gate.on_event("push", "main") is not None
    assert gate.on_event("pull_request", "feature") is None


@pytest.mark.parametrize("on", ["push", ["push"], {"push": None}, {"push": {}}])
def test_from_short_forms(on):
    gate = TriggerGate.from_dict(on)
    assert gate.on_event("push", "any-branch") is not None
    assert gate.on_event("pull_request", "any-branch") is None


def test_from_single_branch_string():
    gate = TriggerGate.from_dict({"push": {"branches": "main"}})
    assert gate.triggers[0].branches == ["main"]
