#!/usr/bin/env python3
"""Provide the CLI entrypoint and subcommands for the feature pipeline.

`run` (the default) performs one lock-guarded pass: judge the backlog, open
issues for approved requests, then continue or start one feature and gate it
behind the test suite before pushing.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .backlog import YamlFeatureBacklog
from .config import PipelineSettings, load_settings
from .errors import ConfigError, PipelineError
from .lock import PipelineLock
from .prd_store import PrdStore
from .sequencer import run_pipeline
from .tracker import GitHubIssueQueue

_LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)


def _configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Configure loguru logger with the specified level and optional file sink."""
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(str(log_file), level=level.upper(), format=_LOG_FORMAT, colorize=False, mode="a")


# Initialize with default level; will be reconfigured in main() based on CLI args
_configure_logging()


def _add_project_dir(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )


def _build_run_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Feature pipeline - judge, generate, implement, test and push one feature",
    )
    _add_project_dir(parser)
    parser.add_argument(
        "--skip-judge",
        action="store_true",
        help="Do not triage open backlog requests this run",
    )
    parser.add_argument(
        "--skip-generate",
        action="store_true",
        help="Do not open issues for approved backlog requests this run",
    )
    parser.add_argument(
        "--no-push",
        action="store_true",
        help="Run the test gate but never push",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Also append log output to this file",
    )
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Feature pipeline - show lock and task file state",
    )
    _add_project_dir(parser)
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON",
    )
    return parser


def _build_setup_labels_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Feature pipeline - create the pipeline labels in the tracker",
    )
    _add_project_dir(parser)
    return parser


def _build_seed_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Feature pipeline - seed the feature backlog from a roadmap file",
    )
    _add_project_dir(parser)
    parser.add_argument(
        "--roadmap",
        type=Path,
        required=True,
        help="Markdown roadmap with `## vX.Y — Name`, `### Section` and `- [ ] item` lines",
    )
    return parser


def _build_unlock_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Feature pipeline - remove the lock record unconditionally",
    )
    _add_project_dir(parser)
    return parser


def _load_settings_or_exit(project_dir: Path, **overrides: Any) -> PipelineSettings:
    try:
        return load_settings(project_dir.resolve(), **overrides)
    except ConfigError as exc:
        logger.error("Invalid configuration: {}", exc)
        raise SystemExit(2) from exc


def _run_command(args: argparse.Namespace) -> int:
    settings = _load_settings_or_exit(
        args.project_dir,
        judge=False if args.skip_judge else None,
        generate=False if args.skip_generate else None,
        push=False if args.no_push else None,
    )
    try:
        report = run_pipeline(settings)
    except ConfigError as exc:
        logger.error("Invalid configuration: {}", exc)
        return 2
    except PipelineError as exc:
        logger.error("Pipeline aborted: {}", exc)
        return 1
    except Exception:
        logger.exception("Unexpected error escaped the pipeline")
        return 1
    logger.debug("Run {} finished on path {}", report.run_id, report.path or "-")
    return 0


def _lock_summary(lock: PipelineLock) -> dict[str, Any]:
    if not lock.lock_path.exists():
        return {"state": "absent", "age_seconds": None}
    age = lock.age_seconds()
    return {
        "state": "held" if lock.is_held() else "stale",
        "age_seconds": round(age, 1) if age is not None else None,
    }


def _task_file_summary(store: PrdStore) -> Optional[dict[str, Any]]:
    raw = store.load_raw()
    if raw is None:
        return None
    stories = raw.get("userStories")
    stories = [story for story in stories if isinstance(story, dict)] if isinstance(stories, list) else []
    return {
        "project": raw.get("project"),
        "completed": sum(1 for story in stories if story.get("status") == "complete"),
        "total": len(stories),
        "complete": store.is_complete(),
        "stories": [
            {
                "id": str(story.get("id", "?")),
                "title": str(story.get("title", "")),
                "status": str(story.get("status", "-")),
            }
            for story in stories
        ],
    }


def _status_command(project_dir: Path, *, as_json: bool = False) -> int:
    settings = _load_settings_or_exit(project_dir)
    lock = PipelineLock(settings.lock_path, stale_after_seconds=settings.stale_after_seconds)

    payload: dict[str, Any] = {
        "project_dir": str(settings.project_dir),
        "state_dir": str(settings.state_dir),
        "lock": _lock_summary(lock),
        "task_file": _task_file_summary(PrdStore(settings.prd_path)),
    }

    if as_json:
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
        return 0

    console = Console()
    console.print(f"[bold]Project:[/bold] {payload['project_dir']}")
    lock_info = payload["lock"]
    age = lock_info["age_seconds"]
    age_text = f" (age {age:.0f}s)" if age is not None else ""
    console.print(f"[bold]Lock:[/bold]    {lock_info['state']}{age_text}")

    task_file = payload["task_file"]
    if task_file is None:
        console.print("[dim]No task file.[/dim]")
        return 0
    console.print(
        f"[bold]Task file:[/bold] {task_file['project'] or '-'} "
        f"{task_file['completed']}/{task_file['total']} stories complete"
    )
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Story")
    table.add_column("Status")
    for story in task_file["stories"]:
        color = "green" if story["status"] == "complete" else "yellow" if story["status"] == "skipped" else "white"
        table.add_row(story["id"], story["title"], f"[{color}]{story['status']}[/{color}]")
    console.print(table)
    return 0


def _setup_labels_command(project_dir: Path) -> int:
    settings = _load_settings_or_exit(project_dir)
    tracker = GitHubIssueQueue(
        settings.project_dir,
        command=settings.tracker_command,
        timeout_seconds=settings.tracker_timeout_seconds,
    )
    failed = tracker.ensure_labels()
    if failed:
        logger.error("Failed to create label(s): {}", ", ".join(failed))
        return 1
    logger.info("Pipeline labels ready.")
    return 0


def _seed_command(project_dir: Path, roadmap: Path) -> int:
    settings = _load_settings_or_exit(project_dir)
    try:
        markdown = roadmap.read_text(encoding="utf-8")
    except OSError as exc:
        logger.error("Unable to read roadmap {}: {}", roadmap, exc)
        return 1
    backlog = YamlFeatureBacklog(settings.backlog_path)
    try:
        added = backlog.seed_from_roadmap(markdown, author=settings.roadmap_author)
    except PipelineError as exc:
        logger.error("Unable to seed backlog: {}", exc)
        return 1
    for feature in added:
        logger.info("+ {}", feature.title)
    logger.info("Seeded {} new feature(s) into {}", len(added), settings.backlog_path)
    return 0


def _unlock_command(project_dir: Path) -> int:
    settings = _load_settings_or_exit(project_dir)
    lock = PipelineLock(settings.lock_path, stale_after_seconds=settings.stale_after_seconds)
    if not lock.lock_path.exists():
        logger.info("No lock record at {}", lock.lock_path)
        return 0
    lock.release()
    logger.info("Removed lock record {}", lock.lock_path)
    return 0


def main(argv: list[str] | None = None) -> None:
    """Run the `feature-pipeline` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Raised to return a process exit code for every subcommand.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if argv:
        if argv[0] == "status":
            args = _build_status_parser().parse_args(argv[1:])
            raise SystemExit(_status_command(args.project_dir, as_json=bool(args.json)))
        if argv[0] == "setup-labels":
            args = _build_setup_labels_parser().parse_args(argv[1:])
            raise SystemExit(_setup_labels_command(args.project_dir))
        if argv[0] == "seed":
            args = _build_seed_parser().parse_args(argv[1:])
            raise SystemExit(_seed_command(args.project_dir, args.roadmap))
        if argv[0] == "unlock":
            args = _build_unlock_parser().parse_args(argv[1:])
            raise SystemExit(_unlock_command(args.project_dir))
        if argv[0] == "run":
            argv = argv[1:]

    args = _build_run_parser().parse_args(argv)
    _configure_logging(args.log_level, args.log_file)
    raise SystemExit(_run_command(args))


if __name__ == "__main__":
    main()
