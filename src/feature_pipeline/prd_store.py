"""Persist the local task descriptor and move it in and out of issue bodies."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import (
    DEFAULT_BRANCH,
    PRD_DETAILS_SUMMARY,
    PRD_SECTION_HEADING,
    STORY_DONE_STATUSES,
    STORY_STATUS_COMPLETE,
)
from .io_utils import _atomic_write_json
from .models import DescriptorMetadata, Phase, TaskDescriptor
from .utils import _now_iso

_EMBEDDED_JSON_RE = re.compile(r"```json\r?\n(.*?)\r?\n```", re.DOTALL)


def _default_phases() -> dict[str, Phase]:
    return {"1": Phase(name="Phase 1", description="")}


def _raw_stories(payload: dict[str, Any]) -> Optional[list[Any]]:
    """Return `userStories` (missing or null counts as empty), or None if it is not a list."""
    stories = payload.get("userStories")
    if stories is None:
        return []
    return stories if isinstance(stories, list) else None


def _story_status(story: Any) -> Any:
    return story.get("status") if isinstance(story, dict) else None


def extract_descriptor(body: str) -> Optional[TaskDescriptor]:
    """Parse the first fenced ```json block of an issue body.

    A missing block, malformed JSON, or a schema mismatch all yield None.
    """
    match = _EMBEDDED_JSON_RE.search(body or "")
    if not match:
        return None
    try:
        payload = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    return TaskDescriptor.from_payload(payload)


def embed_descriptor(body: str, descriptor: TaskDescriptor) -> str:
    """Append a descriptor section to an issue body, keeping existing text."""
    section = (
        f"{PRD_SECTION_HEADING}\n\n"
        f"<details><summary>{PRD_DETAILS_SUMMARY}</summary>\n\n"
        f"```json\n{json.dumps(descriptor.to_dict(), indent=2)}\n```\n\n"
        "</details>"
    )
    existing = (body or "").strip()
    if not existing:
        return section
    return f"{existing}\n\n{section}"


class PrdStore:
    """The task file at a well-known path (`.ralph/prd.json`).

    The implementation runner edits this file while it works, so progress
    checks read the raw JSON rather than the strict descriptor schema.
    """

    def __init__(self, path: Path, *, default_branch: str = DEFAULT_BRANCH):
        self.path = path
        self.default_branch = default_branch

    def exists(self) -> bool:
        return self.path.exists()

    def load_raw(self) -> Optional[dict[str, Any]]:
        """Return the parsed JSON object, or None if absent or not a JSON object."""
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Task file {} is unreadable: {}", self.path, exc)
            return None
        if not isinstance(payload, dict):
            logger.warning("Task file {} does not hold a JSON object", self.path)
            return None
        return payload

    def load(self) -> Optional[TaskDescriptor]:
        """Return the strictly decoded descriptor, or None if absent or off-schema."""
        payload = self.load_raw()
        if payload is None:
            return None
        descriptor = TaskDescriptor.from_payload(payload)
        if descriptor is None:
            logger.warning("Task file {} does not match the descriptor schema", self.path)
        return descriptor

    def save(self, descriptor: TaskDescriptor) -> None:
        """Overwrite the task file with a pretty-printed descriptor."""
        _atomic_write_json(self.path, descriptor.to_dict())

    def normalize(self) -> bool:
        """Fill missing metadata/phases/branchName; persist only if something changed.

        Every other key, including ones the runner added, is written back as read.

        Returns:
            True if at least one field was filled.
        """
        payload = self.load_raw()
        if payload is None:
            return False
        stories = _raw_stories(payload) or []
        dirty = False
        if not payload.get("metadata"):
            now = _now_iso()
            payload["metadata"] = DescriptorMetadata(
                created_at=now,
                last_updated_at=now,
                total_stories=len(stories),
                completed_stories=sum(1 for s in stories if _story_status(s) == STORY_STATUS_COMPLETE),
                current_iteration=1,
            ).model_dump(by_alias=True)
            dirty = True
        if not payload.get("phases"):
            payload["phases"] = {key: phase.model_dump() for key, phase in _default_phases().items()}
            dirty = True
        if not payload.get("branchName"):
            payload["branchName"] = self.default_branch
            dirty = True
        if dirty:
            _atomic_write_json(self.path, payload)
        return dirty

    def is_complete(self) -> bool:
        """True iff every story is complete or skipped.

        An absent or unparsable task file counts as complete. Any other story
        status, or a story without one, keeps the work item open.
        """
        payload = self.load_raw()
        if payload is None:
            return True
        stories = _raw_stories(payload)
        if stories is None:
            return True
        return all(_story_status(story) in STORY_DONE_STATUSES for story in stories)

    def materialize(self, descriptor: TaskDescriptor) -> TaskDescriptor:
        """Write a freshly started descriptor with reset progress metadata."""
        now = _now_iso()
        started = descriptor.model_copy(deep=True)
        started.branch_name = self.default_branch
        if started.phases is None:
            started.phases = _default_phases()
        started.metadata = DescriptorMetadata(
            created_at=now,
            last_updated_at=now,
            total_stories=len(started.user_stories),
            completed_stories=0,
            current_iteration=1,
        )
        self.save(started)
        return started
