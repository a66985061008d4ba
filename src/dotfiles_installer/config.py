"""Load optional runner configuration from `.dotfiles_installer/config.yaml`."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_CACHE_DIR,
    DEFAULT_GRACE_SECONDS,
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_LOG_LEVEL,
    DEFAULT_PACKAGE_TIMEOUT_SECONDS,
    DEFAULT_PHASE_HEARTBEAT_SECONDS,
    DEFAULT_PHASE_TIMEOUT_SECONDS,
    DEFAULT_SCRIPT_TIMEOUT_SECONDS,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error
from .utils import _coerce_float

VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


def load_runner_config(dotfiles_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        dotfiles_dir: Root of the dotfiles checkout.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = dotfiles_dir.resolve() / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _positive(value: Any, default: float) -> float:
    number = _coerce_float(value)
    if number is None or number <= 0:
        return default
    return number


def get_timeouts_config(config: dict[str, Any]) -> dict[str, float]:
    """Resolve the `timeouts` block, falling back to the built-in defaults.

    Args:
        config: Runner configuration dictionary.

    Returns:
        A mapping with `package`, `phase`, `global`, `heartbeat`,
        `phase_heartbeat` and `grace` in seconds.
    """
    raw = _get_nested(config, "timeouts")
    raw = raw if isinstance(raw, dict) else {}
    return {
        "package": _positive(raw.get("package"), DEFAULT_PACKAGE_TIMEOUT_SECONDS),
        "phase": _positive(raw.get("phase"), DEFAULT_PHASE_TIMEOUT_SECONDS),
        "global": _positive(raw.get("global"), DEFAULT_SCRIPT_TIMEOUT_SECONDS),
        "heartbeat": _positive(raw.get("heartbeat"), DEFAULT_HEARTBEAT_SECONDS),
        "phase_heartbeat": _positive(raw.get("phase_heartbeat"), DEFAULT_PHASE_HEARTBEAT_SECONDS),
        "grace": _positive(raw.get("grace"), DEFAULT_GRACE_SECONDS),
    }


def get_policy_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract run policy switches.

    Args:
        config: Runner configuration dictionary.

    Returns:
        A mapping with `abort_on_required_failure`,
        `cancel_siblings_on_required_failure` and `max_concurrency` (None when
        unset or invalid).
    """
    raw = _get_nested(config, "policy")
    raw = raw if isinstance(raw, dict) else {}
    max_concurrency: Optional[int] = None
    value = raw.get("max_concurrency")
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        max_concurrency = value
    return {
        "abort_on_required_failure": bool(raw.get("abort_on_required_failure", True)),
        "cancel_siblings_on_required_failure": bool(raw.get("cancel_siblings_on_required_failure", True)),
        "max_concurrency": max_concurrency,
    }


def get_paths_config(config: dict[str, Any]) -> dict[str, Optional[Path]]:
    raw = _get_nested(config, "paths")
    raw = raw if isinstance(raw, dict) else {}

    def _path(key: str) -> Optional[Path]:
        value = raw.get(key)
        if isinstance(value, str) and value.strip():
            return Path(value).expanduser()
        return None

    return {
        "plan": _path("plan"),
        "status_file": _path("status_file"),
        "cache_dir": _path("cache_dir") or Path(DEFAULT_CACHE_DIR).expanduser(),
    }


def get_logging_config(config: dict[str, Any]) -> dict[str, Any]:
    """Resolve the log level: config file, then `LOG_LEVEL`, then the default."""
    raw = _get_nested(config, "logging")
    raw = raw if isinstance(raw, dict) else {}
    level = str(raw.get("level") or os.environ.get("LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper()
    if level not in VALID_LOG_LEVELS:
        level = DEFAULT_LOG_LEVEL
    return {"level": level, "file": bool(raw.get("file", True))}
