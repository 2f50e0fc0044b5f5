"""Store user-submitted feature requests that feed the judge and promote stages."""

from __future__ import annotations

import re
import uuid
from pathlib import Path
from typing import Callable, Optional, Protocol

from loguru import logger
from pydantic import ValidationError

from .constants import (
    DEFAULT_ROADMAP_AUTHOR,
    FEATURE_STATUS_APPROVED,
    FEATURE_STATUS_OPEN,
    IMPL_STATUS_NONE,
    IMPL_STATUS_QUEUED,
)
from .errors import PipelineError
from .io_utils import _load_data_with_error, _save_data
from .models import FeatureRequest, Verdict
from .utils import _now_iso


class FeatureBacklog(Protocol):
    def list_open(self) -> list[FeatureRequest]: ...

    def list_approved_untracked(self) -> list[FeatureRequest]: ...

    def apply_verdict(self, verdict: Verdict) -> bool: ...

    def mark_queued(self, feature_id: str, issue_number: int) -> bool: ...

    def set_implementation_status(self, issue_number: int, status: str) -> bool: ...


class YamlFeatureBacklog:
    """`FeatureBacklog` kept in `.ralph/features.yaml` as `{features: [...]}`."""

    def __init__(self, path: Path):
        self.path = path

    def _load(self) -> list[FeatureRequest]:
        data, err = _load_data_with_error(self.path, {"features": []})
        if err:
            raise PipelineError(f"Backlog file unreadable: {err}")
        raw_items = data.get("features") or []
        if not isinstance(raw_items, list):
            raise PipelineError(f"{self.path.name}: 'features' must be a list")
        features: list[FeatureRequest] = []
        for raw in raw_items:
            try:
                features.append(FeatureRequest.model_validate(raw))
            except ValidationError as exc:
                logger.warning("Skipping malformed backlog entry {!r}: {}", raw, exc.errors()[0].get("msg"))
        return features

    def _save(self, features: list[FeatureRequest]) -> None:
        _save_data(
            self.path,
            {
                "updated_at": _now_iso(),
                "features": [f.model_dump(mode="json", exclude_none=True) for f in features],
            },
        )

    def all(self) -> list[FeatureRequest]:
        return self._load()

    def list_open(self) -> list[FeatureRequest]:
        return [f for f in self._load() if f.status == FEATURE_STATUS_OPEN]

    def list_approved_untracked(self) -> list[FeatureRequest]:
        return [
            f
            for f in self._load()
            if f.status == FEATURE_STATUS_APPROVED and f.implementation_status == IMPL_STATUS_NONE
        ]

    def _update(self, match: Callable[[FeatureRequest], bool], **changes: object) -> bool:
        features = self._load()
        for index, feature in enumerate(features):
            if match(feature):
                features[index] = feature.model_copy(update=changes)
                self._save(features)
                return True
        return False

    def apply_verdict(self, verdict: Verdict) -> bool:
        changes: dict[str, object] = {
            "ai_verdict": verdict.ai_verdict,
            "ai_reason": verdict.ai_reason,
            "status": verdict.status,
        }
        if verdict.severity:
            changes["severity"] = verdict.severity
        return self._update(lambda f: f.id == verdict.id, **changes)

    def mark_queued(self, feature_id: str, issue_number: int) -> bool:
        return self._update(
            lambda f: f.id == feature_id,
            implementation_status=IMPL_STATUS_QUEUED,
            issue_number=issue_number,
        )

    def set_implementation_status(self, issue_number: int, status: str) -> bool:
        return self._update(lambda f: f.issue_number == issue_number, implementation_status=status)

    def add(self, feature: FeatureRequest) -> None:
        features = self._load()
        features.append(feature)
        self._save(features)

    def seed_from_roadmap(self, markdown: str, *, author: str = DEFAULT_ROADMAP_AUTHOR) -> list[FeatureRequest]:
        """Insert unchecked roadmap items as open requests, skipping known titles."""
        features = self._load()
        existing = {f.title for f in features}
        added: list[FeatureRequest] = []
        for item in parse_roadmap(markdown):
            if item["title"] in existing:
                continue
            feature = FeatureRequest(
                id=str(uuid.uuid4()),
                title=item["title"],
                description=item["description"],
                author_name=author,
            )
            features.append(feature)
            existing.add(feature.title)
            added.append(feature)
        if added:
            self._save(features)
        return added


_VERSION_RE = re.compile(r"^## (v[\d.]+)\s*[—–-]\s*(.+)")
_SECTION_RE = re.compile(r"^### (.+)")
_ITEM_RE = re.compile(r"^- \[ \] (.+)")


def parse_roadmap(markdown: str) -> list[dict[str, str]]:
    """Extract unchecked `- [ ]` items under `###` sections of a roadmap file."""
    items: list[dict[str, str]] = []
    version = ""
    section: Optional[str] = None
    for line in markdown.splitlines():
        m = _VERSION_RE.match(line)
        if m:
            version = f"{m.group(1)} — {m.group(2).strip()}"
            continue
        m = _SECTION_RE.match(line)
        if m:
            section = m.group(1).strip()
            continue
        m = _ITEM_RE.match(line)
        if m and section:
            items.append(
                {
                    "title": m.group(1).strip(),
                    "description": f"From the {version} roadmap, {section} section.",
                    "section": section,
                    "version": version,
                }
            )
    return items
