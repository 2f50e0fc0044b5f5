"""Test the `feature-pipeline` CLI subcommands."""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from feature_pipeline import runner
from feature_pipeline.config import PipelineSettings
from feature_pipeline.errors import LockError
from feature_pipeline.models import RunReport, TaskDescriptor
from feature_pipeline.prd_store import PrdStore
from feature_pipeline.tracker import GitHubIssueQueue


def _exit_code(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as excinfo:
        runner.main(argv)
    return int(excinfo.value.code or 0)


def _save_descriptor(project_dir: Path) -> None:
    PrdStore(project_dir / ".ralph" / "prd.json").save(
        TaskDescriptor.model_validate(
            {
                "project": "Dark mode",
                "description": "Theme toggle",
                "userStories": [
                    {
                        "id": "US-001",
                        "title": "Toggle",
                        "description": "d",
                        "acceptanceCriteria": ["a"],
                        "priority": 1,
                        "status": "complete",
                        "phase": 1,
                    },
                    {
                        "id": "US-002",
                        "title": "Persist",
                        "description": "d",
                        "acceptanceCriteria": ["a"],
                        "priority": 2,
                        "status": "incomplete",
                        "phase": 1,
                    },
                ],
            }
        )
    )


def test_status_json_without_state(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert _exit_code(["status", "--project-dir", str(tmp_path), "--json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["lock"] == {"state": "absent", "age_seconds": None}
    assert payload["task_file"] is None


def test_status_json_reports_held_lock_and_progress(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _save_descriptor(tmp_path)
    (tmp_path / ".ralph" / "pipeline.lock").write_text(datetime.now(timezone.utc).isoformat(), encoding="utf-8")

    assert _exit_code(["status", "--project-dir", str(tmp_path), "--json"]) == 0

    payload = json.loads(capsys.readouterr().out)
    assert payload["lock"]["state"] == "held"
    assert payload["task_file"]["completed"] == 1
    assert payload["task_file"]["total"] == 2
    assert payload["task_file"]["complete"] is False


def test_status_reports_stale_lock(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    state = tmp_path / ".ralph"
    state.mkdir()
    (state / "pipeline.lock").write_text("2020-01-01T00:00:00+00:00", encoding="utf-8")

    assert _exit_code(["status", "--project-dir", str(tmp_path), "--json"]) == 0

    assert json.loads(capsys.readouterr().out)["lock"]["state"] == "stale"


def test_status_table_lists_stories(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _save_descriptor(tmp_path)

    assert _exit_code(["status", "--project-dir", str(tmp_path)]) == 0

    out = capsys.readouterr().out
    assert "absent" in out
    assert "1/2 stories complete" in out
    assert "US-002" in out


def test_status_reads_progress_from_off_schema_task_file(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    state = tmp_path / ".ralph"
    state.mkdir()
    (state / "prd.json").write_text(
        json.dumps(
            {
                "project": "Dark mode",
                "userStories": [
                    {"id": "US-001", "title": "Toggle", "status": "complete"},
                    {"id": "US-002", "title": "Persist", "status": "in_progress"},
                ],
            }
        ),
        encoding="utf-8",
    )

    assert _exit_code(["status", "--project-dir", str(tmp_path), "--json"]) == 0

    task_file = json.loads(capsys.readouterr().out)["task_file"]
    assert task_file["completed"] == 1
    assert task_file["total"] == 2
    assert task_file["complete"] is False
    assert [s["status"] for s in task_file["stories"]] == ["complete", "in_progress"]


def test_unlock_removes_record(tmp_path: Path) -> None:
    state = tmp_path / ".ralph"
    state.mkdir()
    lock_path = state / "pipeline.lock"
    lock_path.write_text(datetime.now(timezone.utc).isoformat(), encoding="utf-8")

    assert _exit_code(["unlock", "--project-dir", str(tmp_path)]) == 0
    assert not lock_path.exists()
    assert _exit_code(["unlock", "--project-dir", str(tmp_path)]) == 0


def test_seed_adds_roadmap_items(tmp_path: Path) -> None:
    roadmap = tmp_path / "FEATURES.md"
    roadmap.write_text("## v1.0 — MVP\n\n### Lists\n- [ ] Create list\n- [x] Done already\n", encoding="utf-8")

    assert _exit_code(["seed", "--project-dir", str(tmp_path), "--roadmap", str(roadmap)]) == 0

    backlog = (tmp_path / ".ralph" / "features.yaml").read_text(encoding="utf-8")
    assert "Create list" in backlog
    assert "Done already" not in backlog


def test_seed_missing_roadmap_fails(tmp_path: Path) -> None:
    assert _exit_code(["seed", "--project-dir", str(tmp_path), "--roadmap", str(tmp_path / "nope.md")]) == 1


def test_setup_labels_exit_code_reflects_failures(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(GitHubIssueQueue, "ensure_labels", lambda self: [])
    assert _exit_code(["setup-labels", "--project-dir", str(tmp_path)]) == 0

    monkeypatch.setattr(GitHubIssueQueue, "ensure_labels", lambda self: ["pipeline:queued"])
    assert _exit_code(["setup-labels", "--project-dir", str(tmp_path)]) == 1


def test_run_applies_flags_to_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[PipelineSettings] = []

    def fake_run_pipeline(settings: PipelineSettings) -> RunReport:
        seen.append(settings)
        return RunReport(run_id="r1", acquired_lock=True, path="idle")

    monkeypatch.setattr(runner, "run_pipeline", fake_run_pipeline)

    code = _exit_code(
        ["run", "--project-dir", str(tmp_path), "--skip-judge", "--no-push", "--log-file", str(tmp_path / "logs" / "p.log")]
    )

    assert code == 0
    settings = seen[0]
    assert settings.judge is False
    assert settings.generate is True
    assert settings.push is False
    assert (tmp_path / "logs" / "p.log").exists()


def test_run_is_the_default_command(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[Path] = []
    monkeypatch.setattr(
        runner,
        "run_pipeline",
        lambda settings: calls.append(settings.project_dir) or RunReport(run_id="r1"),
    )

    assert _exit_code(["--project-dir", str(tmp_path)]) == 0
    assert calls == [tmp_path.resolve()]


def test_run_with_invalid_config_exits_2(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    state = tmp_path / ".ralph"
    state.mkdir()
    (state / "config.yaml").write_text("gate: [unclosed", encoding="utf-8")
    monkeypatch.setattr(runner, "run_pipeline", lambda settings: pytest.fail("must not run"))

    assert _exit_code(["run", "--project-dir", str(tmp_path)]) == 2


def test_run_exits_1_on_unrecoverable_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def failing(settings: PipelineSettings) -> RunReport:
        raise LockError("Unable to create state directory")

    monkeypatch.setattr(runner, "run_pipeline", failing)

    assert _exit_code(["run", "--project-dir", str(tmp_path)]) == 1
