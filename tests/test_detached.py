"""Test that detached jobs run in the background and outside the run."""

from __future__ import annotations

import os
import sys
from pathlib import Path

from conftest import wait_for
from dotfiles_installer.detached import launch_detached
from dotfiles_installer.models import DetachedJob


def test_detached_job_runs_in_its_own_session(tmp_path: Path) -> None:
    out = tmp_path / "sid"
    log_path = tmp_path / "detached" / "job.log"
    script = "import os; print(os.getsid(0))"
    job = DetachedJob("probe", f"{sys.executable} -c '{script}' > {out}; echo finished")

    pid = launch_detached(job, log_path)

    assert pid > 0
    assert wait_for(lambda: log_path.exists() and "finished" in log_path.read_text())
    assert int(out.read_text().strip()) != os.getsid(0)


def test_detached_job_without_log(tmp_path: Path) -> None:
    marker = tmp_path / "ran"

    launch_detached(DetachedJob("quiet", f"touch {marker}"))

    assert wait_for(marker.exists)
