"""Read and write the label-tagged work queue hosted in GitHub Issues.

Every call goes through the `gh` CLI. The tracker is treated as an
eventually-consistent ledger: listing failures yield an empty result and label
or body edits are best-effort (logged, never raised, never retried).
"""

from __future__ import annotations

import json
import os
import re
import shlex
import subprocess
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, Optional, Protocol

from loguru import logger

from .constants import (
    DEFAULT_TRACKER_COMMAND,
    DEFAULT_TRACKER_SORT,
    DEFAULT_TRACKER_TIMEOUT_SECONDS,
    TRACKER_LABELS,
)
from .errors import ExternalCallError
from .models import WorkItem
from .utils import _child_env, _tail

_ISSUE_URL_RE = re.compile(r"/issues/(\d+)")


class IssueTracker(Protocol):
    def list_by_label(self, label: str, *, limit: int = 1, sort: Optional[str] = None) -> list[WorkItem]: ...

    def relabel(self, issue_id: int, *, add: Iterable[str] = (), remove: Iterable[str] = ()) -> bool: ...

    def close(self, issue_id: int) -> bool: ...

    def update_body(self, issue_id: int, body: str) -> bool: ...

    def create(
        self,
        title: str,
        body: str,
        labels: Iterable[str],
        milestone: Optional[str] = None,
    ) -> Optional[int]: ...


class GitHubIssueQueue:
    """`IssueTracker` backed by the GitHub CLI."""

    def __init__(
        self,
        project_dir: Path,
        *,
        command: str = DEFAULT_TRACKER_COMMAND,
        timeout_seconds: int = DEFAULT_TRACKER_TIMEOUT_SECONDS,
        sort: str = DEFAULT_TRACKER_SORT,
    ):
        self.project_dir = project_dir
        self.command = shlex.split(command)
        self.timeout_seconds = timeout_seconds
        self.sort = sort

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        cmd = [*self.command, *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                env=_child_env(),
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ExternalCallError(
                f"{cmd[0]} timed out after {self.timeout_seconds}s",
                command=cmd,
                timed_out=True,
            ) from exc
        except OSError as exc:
            raise ExternalCallError(f"{cmd[0]} could not be started: {exc}", command=cmd) from exc
        if result.returncode != 0:
            raise ExternalCallError(
                f"{' '.join(cmd[:3])} exited {result.returncode}: {_tail(result.stderr)}",
                command=cmd,
                exit_code=result.returncode,
                stderr=result.stderr,
            )
        return result

    def list_by_label(self, label: str, *, limit: int = 1, sort: Optional[str] = None) -> list[WorkItem]:
        """Return open issues carrying `label`, most popular first.

        Failures and malformed output are logged and reported as "nothing found".
        """
        args = [
            "issue",
            "list",
            "--label",
            label,
            "--state",
            "open",
            "--json",
            "number,title,body,labels",
            "--limit",
            str(limit),
            "--search",
            sort or self.sort,
        ]
        try:
            result = self._run(args)
        except ExternalCallError as exc:
            logger.warning("Listing issues labeled {} failed: {}", label, exc)
            return []
        try:
            payload = json.loads(result.stdout.strip() or "[]")
        except json.JSONDecodeError:
            logger.warning("Listing issues labeled {} returned malformed JSON", label)
            return []
        if not isinstance(payload, list):
            logger.warning("Listing issues labeled {} returned {}, expected a list", label, type(payload).__name__)
            return []
        items: list[WorkItem] = []
        for raw in payload:
            if not isinstance(raw, dict):
                continue
            try:
                items.append(WorkItem.from_dict(raw))
            except ValueError as exc:
                logger.warning("Skipping malformed issue entry: {}", exc)
        return items

    def relabel(self, issue_id: int, *, add: Iterable[str] = (), remove: Iterable[str] = ()) -> bool:
        args = ["issue", "edit", str(issue_id)]
        for label in add:
            args.extend(["--add-label", label])
        for label in remove:
            args.extend(["--remove-label", label])
        try:
            self._run(args)
        except ExternalCallError as exc:
            logger.warning("Relabeling issue #{} failed: {}", issue_id, exc)
            return False
        return True

    def close(self, issue_id: int) -> bool:
        try:
            self._run(["issue", "close", str(issue_id)])
        except ExternalCallError as exc:
            logger.warning("Closing issue #{} failed: {}", issue_id, exc)
            return False
        return True

    def update_body(self, issue_id: int, body: str) -> bool:
        with _body_file(body, prefix=f"issue-{issue_id}-") as body_path:
            try:
                self._run(["issue", "edit", str(issue_id), "--body-file", str(body_path)])
            except ExternalCallError as exc:
                logger.warning("Updating body of issue #{} failed: {}", issue_id, exc)
                return False
        return True

    def create(
        self,
        title: str,
        body: str,
        labels: Iterable[str],
        milestone: Optional[str] = None,
    ) -> Optional[int]:
        """Create an issue and return its number, or None on failure."""
        with _body_file(body, prefix="issue-new-") as body_path:
            args = ["issue", "create", "--title", title, "--body-file", str(body_path)]
            for label in labels:
                args.extend(["--label", label])
            if milestone:
                args.extend(["--milestone", milestone])
            try:
                result = self._run(args)
            except ExternalCallError as exc:
                logger.warning("Creating issue {!r} failed: {}", title, exc)
                return None
        # gh prints the issue URL, e.g. https://github.com/owner/repo/issues/42
        match = _ISSUE_URL_RE.search(result.stdout.strip())
        if not match:
            logger.warning("Created issue {!r} but could not parse its number from {!r}", title, result.stdout)
            return None
        return int(match.group(1))

    def ensure_labels(self) -> list[str]:
        """Create or update every pipeline label; return the names that failed."""
        failed: list[str] = []
        for name, color, description in TRACKER_LABELS:
            try:
                self._run(["label", "create", name, "--color", color, "--description", description, "--force"])
                logger.info("+ {} (created/updated)", name)
            except ExternalCallError as exc:
                logger.warning("Label {} could not be created: {}", name, exc)
                failed.append(name)
        return failed


@contextmanager
def _body_file(body: str, *, prefix: str) -> Iterator[Path]:
    """Write an issue body to a temp file for `--body-file`; removed afterwards."""
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=".md")
    path = Path(name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(body)
        yield path
    finally:
        path.unlink(missing_ok=True)
