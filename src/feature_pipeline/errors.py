"""Exceptions raised by pipeline components."""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline failures."""


class ConfigError(PipelineError):
    """Invalid `.ralph/config.yaml` contents."""


class LockError(PipelineError):
    """The lock record could not be written or read."""


class ExternalCallError(PipelineError):
    """An external CLI (tracker, generator, git) failed or timed out."""

    def __init__(
        self,
        message: str,
        *,
        command: Optional[list[str]] = None,
        exit_code: Optional[int] = None,
        stderr: str = "",
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.command = command or []
        self.exit_code = exit_code
        self.stderr = stderr
        self.timed_out = timed_out


class OutputParseError(ValueError):
    """CLI output could not be decoded into the expected JSON shape."""


class ImplementationRunError(PipelineError):
    """The implementation runner exited nonzero or timed out."""

    def __init__(self, message: str, *, exit_code: Optional[int] = None, timed_out: bool = False):
        super().__init__(message)
        self.exit_code = exit_code
        self.timed_out = timed_out
