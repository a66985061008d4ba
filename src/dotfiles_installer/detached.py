"""Launch background jobs that deliberately outlive the supervised run.

Detached jobs (the extension watchdog, for instance) are fire-and-forget: they
get a new session, no stdin and their own log, and nothing in the run ever
registers or cancels them.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from .models import DetachedJob


def launch_detached(job: DetachedJob, log_path: Optional[Path] = None) -> int:
    """Start `job` in the background and return its pid.

    Raises:
        OSError: If the command cannot be spawned.
    """
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        output = open(log_path, "ab")
    else:
        output = open(os.devnull, "wb")
    try:
        process = subprocess.Popen(
            job.command,
            shell=isinstance(job.command, str),
            stdin=subprocess.DEVNULL,
            stdout=output,
            stderr=subprocess.STDOUT,
            start_new_session=(os.name != "nt"),
            close_fds=True,
        )
    finally:
        # The child keeps its own copy of the descriptor.
        output.close()
    logger.info("Detached job '{}' started with pid={}", job.name, process.pid)
    return process.pid
