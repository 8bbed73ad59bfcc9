"""Tests for the executor configuration."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from cistep.config import DEFAULT_TIMEOUT, ExecutorConfig, get_default_store_root
from cistep.model import Step


def test_environment_layers():
    config = ExecutorConfig(
        inherited_env={"PATH": "/bin", "MODE": "inherited", "KEEP": "1"},
        env={"MODE": "config", "CARGO_TERM_COLOR": "always"},
    )
    step = Step(name="build", command="make", env={"MODE": "step"})

    env = config.environment_for(step)
    assert env == {"PATH": "/bin", "MODE": "step", "KEEP": "1", "CARGO_TERM_COLOR": "always"}


def test_inherited_env_is_snapshotted(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("CISTEP_TEST_VAR", "before")
    config = ExecutorConfig()
    monkeypatch.setenv("CISTEP_TEST_VAR", "after")

    env = config.environment_for(Step(name="a", command="true"))
    assert env["CISTEP_TEST_VAR"] == "before"


def test_clean_environment():
    config = ExecutorConfig(inherited_env={}, env={"ONLY": "this"})
    assert config.environment_for(Step(name="a", command="true")) == {"ONLY": "this"}


def test_color_toggle():
    step = Step(name="a", command="true")

    forced = ExecutorConfig(inherited_env={"NO_COLOR": "1"}, color=True).environment_for(step)
    assert forced["FORCE_COLOR"] == "1"
    assert "NO_COLOR" not in forced

    disabled = ExecutorConfig(inherited_env={"FORCE_COLOR": "1"}, color=False).environment_for(step)
    assert disabled["NO_COLOR"] == "1"
    assert "FORCE_COLOR" not in disabled

    untouched = ExecutorConfig(inherited_env={"FORCE_COLOR": "1"}).environment_for(step)
    assert untouched == {"FORCE_COLOR": "1"}


@pytest.mark.parametrize("timeout", [0, -5, float("inf")])
def test_default_timeout_must_be_bounded(timeout):
    with pytest.raises(ValidationError):
        ExecutorConfig(default_timeout=timeout)


def test_timeout_for():
    config = ExecutorConfig(default_timeout=60)
    assert config.timeout_for(Step(name="a", command="true")) == 60
    assert config.timeout_for(Step(name="a", command="true", timeout=5)) == 5
    assert ExecutorConfig().default_timeout == DEFAULT_TIMEOUT


def test_config_is_immutable():
    config = ExecutorConfig()
    with pytest.raises(ValidationError):
        config.default_timeout = 1  # type: ignore[misc]


def test_empty_shell_rejected():
    with pytest.raises(ValidationError):
        ExecutorConfig(shell=[])


def test_from_env():
    config = ExecutorConfig.from_env({"CISTEP_TIMEOUT": "90", "CISTEP_KILL_GRACE": "2"})
    assert config.default_timeout == 90
    assert config.kill_grace_period == 2


def test_from_env_overrides_win(tmp_path: Path):
    config = ExecutorConfig.from_env({"CISTEP_TIMEOUT": "90"}, default_timeout=10, working_directory=tmp_path)
    assert config.default_timeout == 10
    assert config.working_directory == tmp_path


def test_default_store_root(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setenv("CISTEP_ARTIFACT_DIR", str(tmp_path))
    assert get_default_store_root() == tmp_path

    monkeypatch.delenv("CISTEP_ARTIFACT_DIR")
    assert get_default_store_root() == Path.home() / ".cistep" / "artifacts"
