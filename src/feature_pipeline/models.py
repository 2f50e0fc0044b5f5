"""Define the task descriptor schema, tracker work items, and stage results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

StoryStatus = Literal["incomplete", "complete", "skipped"]

_OPTIONAL_KEYS = ("metadata", "phases", "branchName")


class Story(BaseModel):
    """One independently completable unit of a task descriptor."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    title: str
    description: str
    acceptance_criteria: list[str] = Field(alias="acceptanceCriteria")
    priority: int
    status: StoryStatus
    phase: int


class Phase(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    description: str = ""


class DescriptorMetadata(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    created_at: str = Field(alias="createdAt")
    last_updated_at: str = Field(alias="lastUpdatedAt")
    total_stories: int = Field(alias="totalStories")
    completed_stories: int = Field(alias="completedStories")
    current_iteration: int = Field(alias="currentIteration")


class TaskDescriptor(BaseModel):
    """The story-structured plan ("PRD") for implementing one work item.

    Unknown keys are preserved so fields written by the implementation runner
    survive a load/save cycle.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    project: str
    description: str
    user_stories: list[Story] = Field(alias="userStories", min_length=1)
    metadata: Optional[DescriptorMetadata] = None
    phases: Optional[dict[str, Phase]] = None
    branch_name: Optional[str] = Field(default=None, alias="branchName")

    @classmethod
    def from_payload(cls, payload: Any) -> Optional["TaskDescriptor"]:
        """Decode a raw JSON payload, returning None on any shape mismatch."""
        if not isinstance(payload, dict):
            return None
        try:
            return cls.model_validate(payload)
        except ValidationError:
            return None

    def to_dict(self) -> dict[str, Any]:
        """Dump with JSON aliases; nulls survive except for unfilled optional fields."""
        data = self.model_dump(by_alias=True, mode="json")
        for key in _OPTIONAL_KEYS:
            if data.get(key) is None:
                data.pop(key, None)
        return data


@dataclass(frozen=True)
class WorkItem:
    """A tracker issue; labels are the only field the pipeline mutates."""

    id: int
    title: str
    body: str = ""
    labels: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "WorkItem":
        """Build a work item from `gh issue list --json` output.

        Raises:
            ValueError: If `number` is missing or not an integer.
        """
        raw_labels = data.get("labels") or []
        labels = set()
        for label in raw_labels:
            if isinstance(label, dict):
                name = label.get("name")
            else:
                name = label
            if isinstance(name, str) and name:
                labels.add(name)
        number = data.get("number")
        if isinstance(number, bool) or not isinstance(number, int):
            raise ValueError(f"Issue number missing or invalid: {number!r}")
        return cls(
            id=number,
            title=str(data.get("title") or ""),
            body=str(data.get("body") or ""),
            labels=frozenset(labels),
        )

    def describe(self) -> str:
        return f'#{self.id} "{self.title}"'


class FeatureRequest(BaseModel):
    """A user-submitted feature request or bug report in the backlog."""

    model_config = ConfigDict(extra="allow")

    id: str
    title: str
    description: str = ""
    type: Literal["feature", "bug"] = "feature"
    author_name: str = "anonymous"
    vote_count: int = 0
    status: Literal["open", "approved", "rejected", "needs_clarification"] = "open"
    ai_verdict: Optional[str] = None
    ai_reason: Optional[str] = None
    severity: Optional[Literal["critical", "high", "medium", "low"]] = None
    implementation_status: Literal["none", "queued", "in_progress", "completed"] = "none"
    issue_number: Optional[int] = None


class Verdict(BaseModel):
    """One triage decision returned by the generation CLI."""

    model_config = ConfigDict(extra="ignore")

    id: str
    ai_verdict: Literal["approved", "rejected", "needs_clarification"]
    ai_reason: str
    severity: Optional[Literal["critical", "high", "medium", "low"]] = None
    status: Literal["approved", "rejected", "needs_clarification"]


class PipelineState(str, Enum):
    """States of a single pipeline invocation."""

    IDLE = "idle"
    LOCKED = "locked"
    JUDGING = "judging"
    GENERATING = "generating"
    SELECTING = "selecting"
    CONTINUING = "continuing"
    STARTING = "starting"
    GATING = "gating"
    DONE = "done"


@dataclass
class StageOutcome:
    """Recovered result of one stage; failures are values, not exceptions."""

    stage: str
    ok: bool
    detail: str = ""
    error: Optional[str] = None

    @classmethod
    def success(cls, stage: str, detail: str = "") -> "StageOutcome":
        return cls(stage=stage, ok=True, detail=detail)

    @classmethod
    def failure(cls, stage: str, error: str, detail: str = "") -> "StageOutcome":
        return cls(stage=stage, ok=False, detail=detail, error=error)

    def to_dict(self) -> dict[str, Any]:
        return {"stage": self.stage, "ok": self.ok, "detail": self.detail, "error": self.error}


@dataclass
class GateResult:
    """Outcome of the test-then-push checkpoint."""

    tests_passed: bool
    pushed: bool
    reason: str = ""
    exit_code: Optional[int] = None
    timed_out: bool = False
    log_path: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.tests_passed and self.pushed


@dataclass
class RunReport:
    """Summary of one pipeline invocation."""

    run_id: str
    acquired_lock: bool = False
    state: PipelineState = PipelineState.IDLE
    path: Optional[str] = None
    work_item: Optional[WorkItem] = None
    outcomes: list[StageOutcome] = field(default_factory=list)
    gate: Optional[GateResult] = None

    def record(self, outcome: StageOutcome) -> StageOutcome:
        self.outcomes.append(outcome)
        return outcome

    def outcome_for(self, stage: str) -> Optional[StageOutcome]:
        for outcome in reversed(self.outcomes):
            if outcome.stage == stage:
                return outcome
        return None
