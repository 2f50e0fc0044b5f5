"""Provide the git helpers used by the push gate."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Optional

from .utils import _child_env

GIT_PUSH_TIMEOUT_SECONDS = 120


def _git_head_sha(project_dir: Path) -> Optional[str]:
    result = subprocess.run(
        ["git", "rev-parse", "HEAD"],
        cwd=project_dir,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def _git_push(
    project_dir: Path,
    remote: str,
    branch: str,
    *,
    timeout_seconds: int = GIT_PUSH_TIMEOUT_SECONDS,
) -> subprocess.CompletedProcess[str]:
    """Push `branch` to `remote`.

    Raises:
        RuntimeError: If no branch is given.
        subprocess.CalledProcessError: If git exits nonzero.
        subprocess.TimeoutExpired: If the push hangs past the timeout.
    """
    if not branch:
        raise RuntimeError("Branch is required to push")
    return subprocess.run(
        ["git", "push", remote, branch],
        cwd=project_dir,
        capture_output=True,
        text=True,
        env=_child_env(),
        timeout=timeout_seconds,
        check=True,
    )
