"""Run a single external command with combined output capture and hard cancellation."""

from __future__ import annotations

import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Optional

from loguru import logger

from .constants import DEFAULT_GRACE_SECONDS, DEFAULT_MAX_OUTPUT_BYTES
from .models import Command

# How long to wait for the kernel to reap a SIGKILLed process.
KILL_WAIT_SECONDS = 2.0


@dataclass(frozen=True)
class ProcessResult:
    output: bytes
    exit_code: int
    cancelled: bool = False
    pid: Optional[int] = None

    def text(self, max_chars: Optional[int] = None) -> str:
        text = self.output.decode("utf-8", errors="replace")
        if max_chars is not None and len(text) > max_chars:
            return text[-max_chars:]
        return text


class _OutputTail:
    """Keep the last `limit` bytes of a stream."""

    def __init__(self, limit: int):
        self.limit = max(0, limit)
        self._data = bytearray()
        self._lock = threading.Lock()

    def write(self, chunk: bytes) -> None:
        with self._lock:
            self._data.extend(chunk)
            overflow = len(self._data) - self.limit
            if overflow > 0:
                del self._data[:overflow]

    def getvalue(self) -> bytes:
        with self._lock:
            return bytes(self._data)


def _stream_output(pipe: IO[bytes], tail: _OutputTail, log_path: Optional[Path]) -> None:
    handle = open(log_path, "wb") if log_path else None
    try:
        for chunk in iter(lambda: pipe.read1(8192), b""):
            tail.write(chunk)
            if handle:
                handle.write(chunk)
                handle.flush()
    except (OSError, ValueError):
        # Pipe torn down underneath us during a kill.
        pass
    finally:
        if handle:
            handle.close()
        try:
            pipe.close()
        except OSError:
            pass


class ProcessRunner:
    """Execute one external command per instance.

    The child runs in its own session so a cancel reaches the whole command
    tree (`sh -c`, npm's helpers, ...), not just the direct child. Instances
    share no state, so many can run concurrently from worker threads.
    """

    def __init__(
        self,
        *,
        grace_period: float = DEFAULT_GRACE_SECONDS,
        log_path: Optional[Path] = None,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
    ):
        self.grace_period = grace_period
        self.log_path = log_path
        self.max_output_bytes = max_output_bytes
        self.cwd = cwd
        self.env = env
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen[bytes]] = None
        self._started = False
        self._cancelled = False

    @property
    def pid(self) -> Optional[int]:
        process = self._process
        return process.pid if process else None

    @property
    def cancelled(self) -> bool:
        with self._lock:
            return self._cancelled

    def run(self, command: Command) -> ProcessResult:
        """Run `command` to completion and return its combined output and exit code.

        Args:
            command: A shell command string or an argv list.

        Returns:
            A `ProcessResult`. A runner cancelled before spawning returns
            exit code -1 without ever starting the command.

        Raises:
            OSError: If the command cannot be spawned.
            RuntimeError: If the runner is reused.
        """
        env = None
        if self.env:
            env = dict(os.environ)
            env.update(self.env)

        with self._lock:
            if self._started:
                raise RuntimeError("ProcessRunner instances are single-use")
            self._started = True
            if self._cancelled:
                return ProcessResult(output=b"", exit_code=-1, cancelled=True)
            if self.log_path:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
            # Spawn under the lock so cancel() either sees the process or
            # prevents it from ever starting.
            process = subprocess.Popen(
                command,
                shell=isinstance(command, str),
                cwd=self.cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=(os.name != "nt"),
            )
            self._process = process

        logger.debug("Spawned pid={} for: {}", process.pid, command)

        tail = _OutputTail(self.max_output_bytes)
        reader = threading.Thread(
            target=_stream_output,
            args=(process.stdout, tail, self.log_path),
            name=f"output-{process.pid}",
            daemon=True,
        )
        reader.start()

        exit_code = process.wait()
        # Stragglers left in the task's process group die with it.
        self._signal_group(process, signal.SIGKILL if os.name != "nt" else None)
        reader.join(timeout=max(self.grace_period, 1.0))

        return ProcessResult(
            output=tail.getvalue(),
            exit_code=exit_code,
            cancelled=self.cancelled,
            pid=process.pid,
        )

    def cancel(self) -> bool:
        """Request termination, escalating to a forceful kill after the grace period.

        Safe to call from any thread, any number of times, before, during or
        after `run`.

        Returns:
            True if a live process was signalled by this call.
        """
        with self._lock:
            self._cancelled = True
            process = self._process
        if process is None or process.poll() is not None:
            return False

        logger.debug("Terminating pid={} (grace {}s)", process.pid, self.grace_period)
        self._signal_group(process, signal.SIGTERM)
        try:
            process.wait(timeout=self.grace_period)
            return True
        except subprocess.TimeoutExpired:
            pass

        logger.debug("pid={} ignored SIGTERM; killing", process.pid)
        self._signal_group(process, signal.SIGKILL if os.name != "nt" else None)
        try:
            process.wait(timeout=KILL_WAIT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning("pid={} still alive {}s after SIGKILL", process.pid, KILL_WAIT_SECONDS)
        return True

    @staticmethod
    def _signal_group(process: subprocess.Popen[bytes], sig: Optional[int]) -> None:
        if os.name == "nt" or sig is None:
            try:
                if sig == signal.SIGTERM:
                    process.terminate()
                else:
                    process.kill()
            except OSError:
                pass
            return
        try:
            os.killpg(process.pid, sig)
        except (ProcessLookupError, PermissionError):
            pass
