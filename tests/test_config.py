"""Test runner config loading and the config getters."""

from __future__ import annotations

from pathlib import Path

import yaml

from dotfiles_installer.config import (
    get_logging_config,
    get_paths_config,
    get_policy_config,
    get_timeouts_config,
    load_runner_config,
)
from dotfiles_installer.constants import CONFIG_FILE, STATE_DIR_NAME


def _write_config(dotfiles_dir: Path, data) -> None:
    path = dotfiles_dir / STATE_DIR_NAME / CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(data if isinstance(data, str) else yaml.safe_dump(data))


def test_missing_config_is_empty(tmp_path: Path) -> None:
    assert load_runner_config(tmp_path) == ({}, None)


def test_invalid_config_reports_error(tmp_path: Path) -> None:
    _write_config(tmp_path, "timeouts: [1, 2\n")

    config, err = load_runner_config(tmp_path)

    assert config == {}
    assert err and "YAMLError" in err


def test_timeouts_fall_back_to_defaults() -> None:
    timeouts = get_timeouts_config({})

    assert timeouts == {
        "package": 300,
        "phase": 600,
        "global": 900,
        "heartbeat": 10,
        "phase_heartbeat": 15,
        "grace": 1.0,
    }


def test_timeouts_from_file(tmp_path: Path) -> None:
    _write_config(tmp_path, {"timeouts": {"package": 120, "global": "600", "grace": -1}})
    config, err = load_runner_config(tmp_path)

    timeouts = get_timeouts_config(config)

    assert err is None
    assert timeouts["package"] == 120
    assert timeouts["global"] == 600
    assert timeouts["grace"] == 1.0


def test_policy_config() -> None:
    assert get_policy_config({}) == {
        "abort_on_required_failure": True,
        "cancel_siblings_on_required_failure": True,
        "max_concurrency": None,
    }
    policy = get_policy_config({"policy": {"cancel_siblings_on_required_failure": False, "max_concurrency": 2}})
    assert policy["cancel_siblings_on_required_failure"] is False
    assert policy["max_concurrency"] == 2
    assert get_policy_config({"policy": {"max_concurrency": 0}})["max_concurrency"] is None


def test_paths_config_expands_user(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("HOME", str(tmp_path))

    paths = get_paths_config({"paths": {"plan": "~/plan.yaml"}})

    assert paths["plan"] == tmp_path / "plan.yaml"
    assert paths["status_file"] is None
    assert paths["cache_dir"] == tmp_path / ".cache"


def test_logging_level_precedence(monkeypatch) -> None:
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    assert get_logging_config({})["level"] == "INFO"

    monkeypatch.setenv("LOG_LEVEL", "debug")
    assert get_logging_config({})["level"] == "DEBUG"
    assert get_logging_config({"logging": {"level": "warning"}})["level"] == "WARNING"

    monkeypatch.setenv("LOG_LEVEL", "chatty")
    assert get_logging_config({})["level"] == "INFO"
