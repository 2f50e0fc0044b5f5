"""Test descriptor generation, CLI invocation and output parsing."""

from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path
from typing import Any, Iterable, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from feature_pipeline import generator as generator_mod
from feature_pipeline.errors import ExternalCallError, OutputParseError
from feature_pipeline.generator import DescriptorGenerator, GenerationCLI
from feature_pipeline.models import WorkItem
from feature_pipeline.output import parse_json_array, parse_json_object, strip_code_fence
from feature_pipeline.prd_store import extract_descriptor

DESCRIPTOR = {
    "project": "Dark mode",
    "description": "Add a dark theme toggle",
    "userStories": [
        {
            "id": "US-001",
            "title": "Toggle",
            "description": "As a user I can switch themes",
            "acceptanceCriteria": ["Toggle visible", "Typecheck passes"],
            "priority": 1,
            "status": "incomplete",
            "phase": 1,
        }
    ],
}


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


class _RecordingTracker:
    def __init__(self, *, update_ok: bool = True):
        self.update_ok = update_ok
        self.bodies: dict[int, str] = {}

    def update_body(self, issue_id: int, body: str) -> bool:
        self.bodies[issue_id] = body
        return self.update_ok

    def list_by_label(self, label: str, *, limit: int = 1, sort: Optional[str] = None) -> list[WorkItem]:
        return []

    def relabel(self, issue_id: int, *, add: Iterable[str] = (), remove: Iterable[str] = ()) -> bool:
        return True

    def close(self, issue_id: int) -> bool:
        return True

    def create(self, title: str, body: str, labels: Iterable[str], milestone: Optional[str] = None) -> Optional[int]:
        return None


def test_strip_code_fence_handles_json_fences() -> None:
    assert strip_code_fence('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_code_fence('```\n[1]\n```') == "[1]"
    assert strip_code_fence('  {"a": 1}  ') == '{"a": 1}'


def test_parse_helpers_enforce_shape() -> None:
    assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_array("[1, 2]") == [1, 2]
    with pytest.raises(OutputParseError):
        parse_json_object("[1]")
    with pytest.raises(OutputParseError):
        parse_json_array("{}")
    with pytest.raises(OutputParseError):
        parse_json_object("")
    with pytest.raises(OutputParseError):
        parse_json_object("Sure! Here is your PRD")


def test_generate_returns_descriptor_for_fenced_output(tmp_path: Path) -> None:
    cli = _ScriptedCLI(f"```json\n{json.dumps(DESCRIPTOR)}\n```")
    generator = DescriptorGenerator(cli, _RecordingTracker(), project_name="Acme", project_context="A todo app")

    descriptor = generator.generate("Dark mode")

    assert descriptor is not None
    assert descriptor.user_stories[0].id == "US-001"
    assert "Dark mode" in cli.prompts[0]
    assert "Acme" in cli.prompts[0]


@pytest.mark.parametrize(
    "cli",
    [
        _ScriptedCLI(error=ExternalCallError("claude exited 1", command=["claude"], exit_code=1)),
        _ScriptedCLI("I could not do that"),
        _ScriptedCLI(json.dumps({"project": "x", "description": "y", "userStories": []})),
    ],
)
def test_generate_reports_failure_as_none(cli: _ScriptedCLI) -> None:
    generator = DescriptorGenerator(cli, _RecordingTracker())
    assert generator.generate("Dark mode") is None


def test_generate_for_work_item_writes_descriptor_back() -> None:
    tracker = _RecordingTracker()
    generator = DescriptorGenerator(_ScriptedCLI(json.dumps(DESCRIPTOR)), tracker)
    item = WorkItem(id=42, title="Dark mode", body="Please add dark mode")

    descriptor = generator.generate_for_work_item(item)

    assert descriptor is not None
    body = tracker.bodies[42]
    assert body.startswith("Please add dark mode")
    assert extract_descriptor(body) == descriptor


def test_generate_for_work_item_survives_write_back_failure() -> None:
    tracker = _RecordingTracker(update_ok=False)
    generator = DescriptorGenerator(_ScriptedCLI(json.dumps(DESCRIPTOR)), tracker)

    assert generator.generate_for_work_item(WorkItem(id=42, title="Dark mode")) is not None


def test_generation_cli_requires_prompt_placeholder(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        GenerationCLI(tmp_path, command="claude --print")


def test_generation_cli_inlines_prompt_and_strips_nested_marker(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("CLAUDECODE", "1")
    calls: list[dict[str, Any]] = []

    def fake_run(cmd, **kwargs):
        calls.append({"cmd": cmd, **kwargs})
        return subprocess.CompletedProcess(cmd, 0, stdout="  answer \n", stderr="")

    monkeypatch.setattr(generator_mod.subprocess, "run", fake_run)
    cli = GenerationCLI(tmp_path, command="claude --print -p {prompt}", timeout_seconds=600)

    assert cli.complete("hello world") == "answer"
    assert calls[0]["cmd"] == ["claude", "--print", "-p", "hello world"]
    assert calls[0]["timeout"] == 600
    assert calls[0]["input"] is None
    assert "CLAUDECODE" not in calls[0]["env"]


def test_generation_cli_supports_prompt_file_and_stdin(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    seen: list[dict[str, Any]] = []

    def fake_run(cmd, **kwargs):
        entry = {"cmd": cmd, "input": kwargs.get("input")}
        if len(cmd) > 1 and cmd[1].endswith("prompt.txt"):
            entry["file"] = Path(cmd[1]).read_text(encoding="utf-8")
        seen.append(entry)
        return subprocess.CompletedProcess(cmd, 0, stdout="ok", stderr="")

    monkeypatch.setattr(generator_mod.subprocess, "run", fake_run)

    GenerationCLI(tmp_path, command="llm {prompt_file}").complete("from file")
    GenerationCLI(tmp_path, command="llm -").complete("from stdin")

    assert seen[0]["file"] == "from file"
    assert seen[1]["cmd"] == ["llm", "-"]
    assert seen[1]["input"] == "from stdin"


@pytest.mark.parametrize(
    "outcome",
    [
        subprocess.CompletedProcess(["claude"], 2, stdout="", stderr="rate limited"),
        subprocess.TimeoutExpired(["claude"], 600),
    ],
)
def test_generation_cli_raises_on_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, outcome: Any) -> None:
    def fake_run(cmd, **kwargs):
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    monkeypatch.setattr(generator_mod.subprocess, "run", fake_run)

    with pytest.raises(ExternalCallError):
        GenerationCLI(tmp_path, command="claude -p {prompt}").complete("x")
