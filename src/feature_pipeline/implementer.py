"""Invoke the autonomous coding-agent CLI against the on-disk task file."""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Any, Optional, Protocol

from loguru import logger

from .constants import DEFAULT_IMPLEMENTER_COMMAND
from .errors import ImplementationRunError
from .worker import _run_streaming


class Implementer(Protocol):
    def run_once(self, run_dir: Path) -> dict[str, Any]: ...


class ImplementationRunner:
    """Run one blocking, best-effort implementation pass.

    The agent reads the task file itself and flips story statuses as it goes;
    completion is verified separately by reading the task file afterwards.
    Partial work is left in place on failure for the next run to continue.
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        command: str = DEFAULT_IMPLEMENTER_COMMAND,
        timeout_seconds: Optional[int] = None,
        echo: bool = True,
    ):
        self.project_dir = project_dir
        self.command = command
        self.timeout_seconds = timeout_seconds
        self.echo = echo

    def run_once(self, run_dir: Path) -> dict[str, Any]:
        """Run the agent CLI once.

        Returns:
            The process record (log paths, exit code, runtime).

        Raises:
            ImplementationRunError: On nonzero exit, timeout, or if the CLI cannot start.
        """
        parts = shlex.split(self.command)
        logger.info("Running implementation agent: {}", self.command)
        try:
            result = _run_streaming(
                parts,
                self.project_dir,
                run_dir,
                label="implementer",
                timeout_seconds=self.timeout_seconds,
                echo=self.echo,
            )
        except OSError as exc:
            raise ImplementationRunError(f"Implementation agent could not be started: {exc}") from exc

        if result["timed_out"]:
            raise ImplementationRunError(
                f"Implementation agent timed out after {self.timeout_seconds}s",
                exit_code=result["exit_code"],
                timed_out=True,
            )
        if result["exit_code"] != 0:
            raise ImplementationRunError(
                f"Implementation agent exited {result['exit_code']}: {result['stderr_tail'][-400:]}",
                exit_code=result["exit_code"],
            )
        logger.info("Implementation agent finished in {}s", result["runtime_seconds"])
        return result
