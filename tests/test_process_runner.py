"""Test running, capturing and cancelling single external commands."""

from __future__ import annotations

import sys
import threading
import time
from pathlib import Path

import pytest

from conftest import pid_is_running, read_pid, wait_for
from dotfiles_installer.process import ProcessResult, ProcessRunner


def _run_in_thread(runner: ProcessRunner, command) -> tuple[threading.Thread, dict]:
    box: dict = {}

    def _target() -> None:
        box["result"] = runner.run(command)

    thread = threading.Thread(target=_target, daemon=True)
    thread.start()
    return thread, box


def test_run_captures_combined_output_and_exit_code() -> None:
    result = ProcessRunner().run("echo out; echo err >&2; exit 3")

    assert isinstance(result, ProcessResult)
    assert result.exit_code == 3
    assert result.cancelled is False
    text = result.text()
    assert "out" in text
    assert "err" in text


def test_run_accepts_argv_list() -> None:
    result = ProcessRunner().run([sys.executable, "-c", "print('hi from argv')"])

    assert result.exit_code == 0
    assert "hi from argv" in result.text()


def test_output_is_written_to_log_file(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "phase" / "task.log"
    ProcessRunner(log_path=log_path).run("echo logged line")

    assert log_path.read_text().strip() == "logged line"


def test_output_tail_is_capped() -> None:
    result = ProcessRunner(max_output_bytes=100).run([sys.executable, "-c", "print('x' * 1000 + 'END')"])

    assert len(result.output) <= 100
    assert result.text().strip().endswith("END")


def test_cancel_terminates_running_command() -> None:
    runner = ProcessRunner(grace_period=0.5)
    thread, box = _run_in_thread(runner, "sleep 30")
    assert wait_for(lambda: runner.pid is not None)

    started = time.monotonic()
    assert runner.cancel() is True
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert time.monotonic() - started < 3
    assert box["result"].cancelled is True
    assert box["result"].exit_code != 0


def test_cancel_reaches_grandchildren(pidfile: Path) -> None:
    runner = ProcessRunner(grace_period=0.5)
    thread, _ = _run_in_thread(runner, f"sleep 30 & echo $! > {pidfile}; wait")
    grandchild = read_pid(pidfile)
    assert pid_is_running(grandchild)

    runner.cancel()
    thread.join(timeout=5)

    assert wait_for(lambda: not pid_is_running(grandchild), timeout=3)


def test_cancel_escalates_when_sigterm_is_ignored(tmp_path: Path) -> None:
    log_path = tmp_path / "stubborn.log"
    runner = ProcessRunner(grace_period=0.3, log_path=log_path)
    script = (
        "import signal, time; "
        "signal.signal(signal.SIGTERM, signal.SIG_IGN); "
        "print('ready', flush=True); "
        "time.sleep(30)"
    )
    thread, box = _run_in_thread(runner, [sys.executable, "-c", script])
    assert wait_for(lambda: log_path.exists() and "ready" in log_path.read_text())

    started = time.monotonic()
    runner.cancel()
    thread.join(timeout=5)
    elapsed = time.monotonic() - started

    assert not thread.is_alive()
    assert elapsed >= 0.3
    assert elapsed < 4
    assert box["result"].exit_code != 0


def test_cancel_is_idempotent() -> None:
    runner = ProcessRunner(grace_period=0.2)
    thread, _ = _run_in_thread(runner, "sleep 30")
    assert wait_for(lambda: runner.pid is not None)

    assert runner.cancel() is True
    thread.join(timeout=5)
    assert runner.cancel() is False
    assert runner.cancel() is False


def test_cancel_before_run_never_spawns(tmp_path: Path) -> None:
    marker = tmp_path / "ran"
    runner = ProcessRunner()

    assert runner.cancel() is False
    result = runner.run(f"touch {marker}")

    assert result.cancelled is True
    assert result.exit_code == -1
    assert runner.pid is None
    assert not marker.exists()


def test_runner_is_single_use() -> None:
    runner = ProcessRunner()
    runner.run("true")

    with pytest.raises(RuntimeError):
        runner.run("true")


def test_spawn_failure_raises_oserror(tmp_path: Path) -> None:
    with pytest.raises(OSError):
        ProcessRunner().run([str(tmp_path / "does-not-exist")])


def test_env_overrides_are_merged() -> None:
    result = ProcessRunner(env={"DOTFILES_TEST_VALUE": "abc"}).run("echo $DOTFILES_TEST_VALUE; echo $PATH")

    lines = result.text().splitlines()
    assert lines[0] == "abc"
    assert lines[1]
