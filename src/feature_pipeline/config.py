"""Load optional pipeline configuration from `.ralph/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Optional

from .constants import (
    BACKLOG_FILE,
    CONFIG_FILE,
    DEFAULT_BRANCH,
    DEFAULT_GENERATOR_COMMAND,
    DEFAULT_GENERATOR_TIMEOUT_SECONDS,
    DEFAULT_IMPLEMENTER_COMMAND,
    DEFAULT_REMOTE,
    DEFAULT_ROADMAP_AUTHOR,
    DEFAULT_STALE_LOCK_SECONDS,
    DEFAULT_TEST_COMMAND,
    DEFAULT_TEST_TIMEOUT_SECONDS,
    DEFAULT_TRACKER_COMMAND,
    DEFAULT_TRACKER_SORT,
    DEFAULT_TRACKER_TIMEOUT_SECONDS,
    EVENTS_FILE,
    LABEL_COMPLETED,
    LABEL_IN_PROGRESS,
    LABEL_QUEUED,
    LOCK_FILE,
    PRD_FILE,
    RUNS_DIR,
    STATE_DIR_NAME,
)
from .errors import ConfigError
from .io_utils import _load_data_with_error


def load_pipeline_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    if not isinstance(data, dict):
        return {}, f"{CONFIG_FILE}: top level must be a mapping"
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _as_str(config: dict[str, Any], *keys: str, default: str) -> str:
    raw = _get_nested(config, *keys)
    if raw is None:
        return default
    if not isinstance(raw, str) or not raw.strip():
        raise ConfigError(f"{'.'.join(keys)} must be a non-empty string")
    return raw.strip()


def _as_int(config: dict[str, Any], *keys: str, default: Optional[int]) -> Optional[int]:
    raw = _get_nested(config, *keys)
    if raw is None:
        return default
    if isinstance(raw, bool) or not isinstance(raw, int) or raw <= 0:
        raise ConfigError(f"{'.'.join(keys)} must be a positive integer")
    return raw


def _as_bool(config: dict[str, Any], *keys: str, default: bool) -> bool:
    raw = _get_nested(config, *keys)
    if raw is None:
        return default
    if not isinstance(raw, bool):
        raise ConfigError(f"{'.'.join(keys)} must be true or false")
    return raw


@dataclass(frozen=True)
class Labels:
    queued: str = LABEL_QUEUED
    in_progress: str = LABEL_IN_PROGRESS
    completed: str = LABEL_COMPLETED


@dataclass(frozen=True)
class PipelineSettings:
    """Resolved settings for one pipeline invocation."""

    project_dir: Path
    labels: Labels = field(default_factory=Labels)
    tracker_command: str = DEFAULT_TRACKER_COMMAND
    tracker_timeout_seconds: int = DEFAULT_TRACKER_TIMEOUT_SECONDS
    tracker_sort: str = DEFAULT_TRACKER_SORT
    generator_command: str = DEFAULT_GENERATOR_COMMAND
    generator_timeout_seconds: int = DEFAULT_GENERATOR_TIMEOUT_SECONDS
    implementer_command: str = DEFAULT_IMPLEMENTER_COMMAND
    implementer_timeout_seconds: Optional[int] = None
    test_command: str = DEFAULT_TEST_COMMAND
    test_timeout_seconds: int = DEFAULT_TEST_TIMEOUT_SECONDS
    remote: str = DEFAULT_REMOTE
    branch: str = DEFAULT_BRANCH
    push: bool = True
    stale_after_seconds: int = DEFAULT_STALE_LOCK_SECONDS
    project_name: str = ""
    project_context: str = ""
    milestones: dict[str, str] = field(default_factory=dict)
    roadmap_author: str = DEFAULT_ROADMAP_AUTHOR
    judge: bool = True
    generate: bool = True

    @property
    def state_dir(self) -> Path:
        return self.project_dir / STATE_DIR_NAME

    @property
    def lock_path(self) -> Path:
        return self.state_dir / LOCK_FILE

    @property
    def prd_path(self) -> Path:
        return self.state_dir / PRD_FILE

    @property
    def backlog_path(self) -> Path:
        return self.state_dir / BACKLOG_FILE

    @property
    def events_path(self) -> Path:
        return self.state_dir / EVENTS_FILE

    @property
    def runs_dir(self) -> Path:
        return self.state_dir / RUNS_DIR


def settings_from_config(project_dir: Path, config: dict[str, Any]) -> PipelineSettings:
    """Build settings from a parsed config mapping.

    Raises:
        ConfigError: If a known key has the wrong type.
    """
    milestones_raw = config.get("milestones") or {}
    if not isinstance(milestones_raw, dict):
        raise ConfigError("milestones must be a mapping of version token to milestone title")
    milestones = {str(k): str(v) for k, v in milestones_raw.items() if str(k).strip() and str(v).strip()}

    project_name = _get_nested(config, "project", "name")
    project_context = _get_nested(config, "project", "context")

    return PipelineSettings(
        project_dir=project_dir.resolve(),
        labels=Labels(
            queued=_as_str(config, "labels", "queued", default=LABEL_QUEUED),
            in_progress=_as_str(config, "labels", "in_progress", default=LABEL_IN_PROGRESS),
            completed=_as_str(config, "labels", "completed", default=LABEL_COMPLETED),
        ),
        tracker_command=_as_str(config, "tracker", "command", default=DEFAULT_TRACKER_COMMAND),
        tracker_timeout_seconds=_as_int(
            config, "tracker", "timeout_seconds", default=DEFAULT_TRACKER_TIMEOUT_SECONDS
        ),
        tracker_sort=_as_str(config, "tracker", "sort", default=DEFAULT_TRACKER_SORT),
        generator_command=_as_str(config, "generator", "command", default=DEFAULT_GENERATOR_COMMAND),
        generator_timeout_seconds=_as_int(
            config, "generator", "timeout_seconds", default=DEFAULT_GENERATOR_TIMEOUT_SECONDS
        ),
        implementer_command=_as_str(config, "implementer", "command", default=DEFAULT_IMPLEMENTER_COMMAND),
        implementer_timeout_seconds=_as_int(config, "implementer", "timeout_seconds", default=None),
        test_command=_as_str(config, "gate", "test_command", default=DEFAULT_TEST_COMMAND),
        test_timeout_seconds=_as_int(config, "gate", "timeout_seconds", default=DEFAULT_TEST_TIMEOUT_SECONDS),
        remote=_as_str(config, "gate", "remote", default=DEFAULT_REMOTE),
        branch=_as_str(config, "gate", "branch", default=DEFAULT_BRANCH),
        push=_as_bool(config, "gate", "push", default=True),
        stale_after_seconds=_as_int(
            config, "lock", "stale_after_seconds", default=DEFAULT_STALE_LOCK_SECONDS
        ),
        project_name=project_name.strip() if isinstance(project_name, str) else "",
        project_context=project_context.strip() if isinstance(project_context, str) else "",
        milestones=milestones,
        roadmap_author=_as_str(config, "roadmap_author", default=DEFAULT_ROADMAP_AUTHOR),
    )


def load_settings(project_dir: Path, **overrides: Any) -> PipelineSettings:
    """Load config from disk and apply CLI overrides (None values are ignored).

    Raises:
        ConfigError: If the config file cannot be parsed or holds invalid values.
    """
    config, err = load_pipeline_config(project_dir)
    if err:
        raise ConfigError(f"config.yaml parse error: {err}")
    settings = settings_from_config(project_dir, config)
    applied = {key: value for key, value in overrides.items() if value is not None}
    return replace(settings, **applied) if applied else settings
