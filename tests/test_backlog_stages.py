"""Test the YAML feature backlog and the judge/promote stages built on it."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Iterable, Optional

import pytest
import yaml

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from feature_pipeline.backlog import YamlFeatureBacklog, parse_roadmap
from feature_pipeline.errors import ExternalCallError, PipelineError
from feature_pipeline.judge import judge_backlog
from feature_pipeline.models import FeatureRequest, TaskDescriptor, WorkItem
from feature_pipeline.prd_store import extract_descriptor
from feature_pipeline.promote import promote_approved

ROADMAP = """# Roadmap

- [ ] Stray item without a section

## v0.2 — Collaboration

### Sharing
- [ ] Share lists by link
- [x] Export to CSV

### Comments
- [ ] Comment threads
"""

DESCRIPTOR = TaskDescriptor.model_validate(
    {
        "project": "Dark mode",
        "description": "Theme toggle",
        "userStories": [
            {
                "id": "US-001",
                "title": "Toggle",
                "description": "Switch themes",
                "acceptanceCriteria": ["Works"],
                "priority": 1,
                "status": "incomplete",
                "phase": 1,
            }
        ],
    }
)


def _backlog(tmp_path: Path, *features: FeatureRequest) -> YamlFeatureBacklog:
    backlog = YamlFeatureBacklog(tmp_path / ".ralph" / "features.yaml")
    for feature in features:
        backlog.add(feature)
    return backlog


class _ScriptedCLI:
    def __init__(self, response: str = "", error: Optional[Exception] = None):
        self.response = response
        self.error = error
        self.prompts: list[str] = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.response


class _FixedGenerator:
    def __init__(self, fail_titles: Iterable[str] = ()):
        self.fail_titles = set(fail_titles)

    def generate(self, title: str, feature: Optional[FeatureRequest] = None) -> Optional[TaskDescriptor]:
        return None if title in self.fail_titles else DESCRIPTOR

    def generate_for_work_item(self, item: WorkItem) -> Optional[TaskDescriptor]:
        return DESCRIPTOR


class _CreatingTracker:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.created: list[dict] = []

    def create(self, title: str, body: str, labels: Iterable[str], milestone: Optional[str] = None) -> Optional[int]:
        if self.fail:
            return None
        self.created.append({"title": title, "body": body, "labels": list(labels), "milestone": milestone})
        return 100 + len(self.created)

    def list_by_label(self, label: str, *, limit: int = 1, sort: Optional[str] = None) -> list[WorkItem]:
        return []

    def relabel(self, issue_id: int, *, add: Iterable[str] = (), remove: Iterable[str] = ()) -> bool:
        return True

    def close(self, issue_id: int) -> bool:
        return True

    def update_body(self, issue_id: int, body: str) -> bool:
        return True


def test_missing_backlog_file_is_empty(tmp_path: Path) -> None:
    backlog = YamlFeatureBacklog(tmp_path / "features.yaml")
    assert backlog.all() == []
    assert backlog.list_open() == []


def test_malformed_entries_are_skipped(tmp_path: Path) -> None:
    path = tmp_path / "features.yaml"
    path.write_text(
        yaml.safe_dump({"features": [{"id": "a", "title": "Good"}, {"title": "no id"}, {"id": "b", "title": "Bad", "status": "???"}]}),
        encoding="utf-8",
    )

    assert [f.id for f in YamlFeatureBacklog(path).all()] == ["a"]


def test_non_list_features_is_an_error(tmp_path: Path) -> None:
    path = tmp_path / "features.yaml"
    path.write_text("features: nope\n", encoding="utf-8")

    with pytest.raises(PipelineError):
        YamlFeatureBacklog(path).all()


def test_parse_roadmap_only_takes_unchecked_items_under_sections() -> None:
    items = parse_roadmap(ROADMAP)

    assert [i["title"] for i in items] == ["Share lists by link", "Comment threads"]
    assert items[0]["version"] == "v0.2 — Collaboration"
    assert items[0]["section"] == "Sharing"
    assert "v0.2" in items[0]["description"]


def test_seed_from_roadmap_skips_existing_titles(tmp_path: Path) -> None:
    backlog = _backlog(tmp_path, FeatureRequest(id="x", title="Comment threads"))

    added = backlog.seed_from_roadmap(ROADMAP, author="Roadmap")
    again = backlog.seed_from_roadmap(ROADMAP, author="Roadmap")

    assert [f.title for f in added] == ["Share lists by link"]
    assert added[0].author_name == "Roadmap"
    assert again == []
    assert len(backlog.all()) == 2


def test_judge_applies_valid_verdicts_for_known_ids(tmp_path: Path) -> None:
    backlog = _backlog(
        tmp_path,
        FeatureRequest(id="f1", title="Dark mode"),
        FeatureRequest(id="f2", title="Crypto mining"),
        FeatureRequest(id="f3", title="Already approved", status="approved"),
    )
    verdicts = [
        {"id": "f1", "ai_verdict": "approved", "ai_reason": "Fits", "severity": "medium", "status": "approved"},
        {"id": "f2", "ai_verdict": "rejected", "ai_reason": "Off-mission", "status": "rejected"},
        {"id": "ghost", "ai_verdict": "approved", "ai_reason": "?", "status": "approved"},
        {"id": "f1", "ai_verdict": "maybe"},
    ]
    cli = _ScriptedCLI(f"```json\n{json.dumps(verdicts)}\n```")

    outcome = judge_backlog(backlog, cli, project_name="Acme")

    assert outcome.ok is True
    assert outcome.detail == "2 of 2 judged"
    by_id = {f.id: f for f in backlog.all()}
    assert by_id["f1"].status == "approved"
    assert by_id["f1"].severity == "medium"
    assert by_id["f2"].status == "rejected"
    assert "Dark mode" in cli.prompts[0]
    assert "Already approved" not in cli.prompts[0]


def test_judge_with_nothing_open_does_not_call_cli(tmp_path: Path) -> None:
    cli = _ScriptedCLI("[]")

    outcome = judge_backlog(_backlog(tmp_path), cli)

    assert outcome.ok is True
    assert outcome.detail == "no pending features"
    assert cli.prompts == []


@pytest.mark.parametrize(
    "cli",
    [
        _ScriptedCLI(error=ExternalCallError("claude timed out", timed_out=True)),
        _ScriptedCLI('{"not": "an array"}'),
    ],
)
def test_judge_failure_is_a_failed_outcome(tmp_path: Path, cli: _ScriptedCLI) -> None:
    backlog = _backlog(tmp_path, FeatureRequest(id="f1", title="Dark mode"))

    outcome = judge_backlog(backlog, cli)

    assert outcome.ok is False
    assert backlog.all()[0].status == "open"


def test_promote_creates_queued_issue_and_marks_backlog(tmp_path: Path) -> None:
    backlog = _backlog(
        tmp_path,
        FeatureRequest(
            id="f1",
            title="Share lists by link",
            description="From the v0.2 — Collaboration roadmap, Sharing section.",
            author_name="Roadmap",
            status="approved",
            severity="high",
            ai_reason="Core to collaboration",
        ),
        FeatureRequest(id="f2", title="Crash on save", type="bug", status="approved"),
        FeatureRequest(id="f3", title="Still open"),
    )
    tracker = _CreatingTracker()

    outcome = promote_approved(
        backlog,
        _FixedGenerator(),
        tracker,
        queued_label="pipeline:queued",
        milestones={"v0.2": "v0.2 — Collaboration"},
        roadmap_author="Roadmap",
    )

    assert outcome.ok is True
    assert outcome.detail == "2 of 2 queued"
    first, second = tracker.created
    assert first["title"] == "[Feature] Share lists by link"
    assert first["labels"] == ["pipeline:queued", "type:feature", "source:roadmap", "priority:high"]
    assert first["milestone"] == "v0.2 — Collaboration"
    assert extract_descriptor(first["body"]) == DESCRIPTOR
    assert second["title"] == "[Bug] Crash on save"
    assert "type:bug" in second["labels"]
    assert second["milestone"] is None

    by_id = {f.id: f for f in backlog.all()}
    assert (by_id["f1"].implementation_status, by_id["f1"].issue_number) == ("queued", 101)
    assert by_id["f3"].implementation_status == "none"
    assert backlog.list_approved_untracked() == []


def test_promote_leaves_failures_untracked_for_retry(tmp_path: Path) -> None:
    backlog = _backlog(
        tmp_path,
        FeatureRequest(id="f1", title="Generation fails", status="approved"),
        FeatureRequest(id="f2", title="Creation fails", status="approved"),
    )

    promote_approved(backlog, _FixedGenerator(fail_titles={"Generation fails"}), _CreatingTracker(fail=True))

    assert [f.id for f in backlog.list_approved_untracked()] == ["f1", "f2"]


def test_set_implementation_status_matches_by_issue_number(tmp_path: Path) -> None:
    backlog = _backlog(tmp_path, FeatureRequest(id="f1", title="Dark mode", status="approved"))
    backlog.mark_queued("f1", 42)

    assert backlog.set_implementation_status(42, "completed") is True
    assert backlog.set_implementation_status(99, "completed") is False
    assert backlog.all()[0].implementation_status == "completed"
