"""Shared helpers for tests that drive real subprocesses."""

from __future__ import annotations

import os
import sys
import time
from pathlib import Path
from typing import Callable

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def read_pid(path: Path, timeout: float = 5.0) -> int:
    assert wait_for(lambda: path.exists() and path.read_text().strip().isdigit(), timeout), f"no pid in {path}"
    return int(path.read_text().strip())


@pytest.fixture
def pidfile(tmp_path: Path) -> Path:
    return tmp_path / "child.pid"


def pid_is_running(pid: int) -> bool:
    """Return True if `pid` exists and is not a zombie."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except PermissionError:
        return True
    except OSError:
        return False

    # A killed child that nobody reaped yet still answers signal 0.
    try:
        with open(f"/proc/{pid}/stat", "r") as handle:
            fields = handle.read().rsplit(")", 1)
    except OSError:
        return True
    return not (len(fields) == 2 and fields[1].split()[:1] == ["Z"])
