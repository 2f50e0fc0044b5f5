"""Order the pipeline stages into one coordinated, lock-guarded run.

One invocation moves through

    Idle -> Locked -> Judging -> Generating -> Selecting
         -> (Continuing | Starting) -> Gating -> Done

Judging and Generating are best-effort. Selecting re-derives everything from
current tracker labels, so a label edit that failed on an earlier run is
corrected here. Each stage reports a `StageOutcome`; only local-resource
failures (lock or task file cannot be written) escape as exceptions.
"""

from __future__ import annotations

from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger

from .backlog import FeatureBacklog, YamlFeatureBacklog
from .config import Labels, PipelineSettings
from .constants import IMPL_STATUS_COMPLETED, IMPL_STATUS_IN_PROGRESS
from .errors import ConfigError, ImplementationRunError, PipelineError
from .gate import Gate, TestAndPushGate
from .generator import DescriptorGenerator, GenerationCLI, Generator
from .implementer import ImplementationRunner, Implementer
from .io_utils import _append_event
from .judge import judge_backlog
from .lock import PipelineLock
from .models import PipelineState, RunReport, StageOutcome, WorkItem
from .prd_store import PrdStore, extract_descriptor
from .promote import promote_approved
from .tracker import GitHubIssueQueue, IssueTracker
from .utils import _new_run_id

StageFn = Callable[[], StageOutcome]


class PipelineSequencer:
    """Run the pipeline once. Collaborators are injected so tests can use fakes."""

    def __init__(
        self,
        *,
        lock: PipelineLock,
        tracker: IssueTracker,
        store: PrdStore,
        generator: Generator,
        implementer: Implementer,
        gate: Gate,
        runs_dir: Path,
        labels: Labels = Labels(),
        judge: Optional[StageFn] = None,
        promote: Optional[StageFn] = None,
        backlog: Optional[FeatureBacklog] = None,
        events_path: Optional[Path] = None,
    ):
        self.lock = lock
        self.tracker = tracker
        self.store = store
        self.generator = generator
        self.implementer = implementer
        self.gate = gate
        self.runs_dir = runs_dir
        self.labels = labels
        self.judge = judge
        self.promote = promote
        self.backlog = backlog
        self.events_path = events_path

    def run(self, run_id: Optional[str] = None) -> RunReport:
        """Execute one invocation.

        Returns:
            A report of the path taken and every stage outcome.

        Raises:
            LockError: If the lock record cannot be created.
            PipelineError: If the task file cannot be written.
        """
        report = RunReport(run_id=run_id or _new_run_id())
        with self.lock.held() as acquired:
            if not acquired:
                logger.info("Pipeline already running — skipping")
                self._event(report, "lock_skipped")
                report.state = PipelineState.DONE
                return report
            report.acquired_lock = True
            self._enter(report, PipelineState.LOCKED)
            self._event(report, "run_started")
            try:
                self._run_locked(report)
            finally:
                self._event(
                    report,
                    "run_finished",
                    path=report.path,
                    work_item=report.work_item.id if report.work_item else None,
                    pushed=report.gate.pushed if report.gate else None,
                )
        report.state = PipelineState.DONE
        logger.info("=== Pipeline run complete ===")
        return report

    def _run_locked(self, report: RunReport) -> None:
        if self.judge is not None:
            self._enter(report, PipelineState.JUDGING)
            logger.info("Step 1: Judging open features...")
            self._best_effort(report, "judge", self.judge)

        if self.promote is not None:
            self._enter(report, PipelineState.GENERATING)
            logger.info("Step 2: Generating PRDs for approved features...")
            self._best_effort(report, "generate", self.promote)

        self._enter(report, PipelineState.SELECTING)
        logger.info("Step 3: Checking for in-progress features...")
        in_progress = self.tracker.list_by_label(self.labels.in_progress, limit=1)
        if in_progress:
            self._continue(report, in_progress[0])
            return

        logger.info("Step 4: Picking next queued feature...")
        queued = self.tracker.list_by_label(self.labels.queued, limit=1)
        if not queued:
            logger.info("No queued features — nothing to implement.")
            report.path = "idle"
            report.record(StageOutcome.success("select", "nothing to do"))
            return
        self._start(report, queued[0])

    def _continue(self, report: RunReport, item: WorkItem) -> None:
        self._enter(report, PipelineState.CONTINUING)
        report.work_item = item
        self._event(report, "work_item_selected", work_item=item.id, path="continue")

        if self.store.is_complete():
            logger.info("Completed: {} — marking as done", item.describe())
            report.path = "complete"
            self._gate(report)
            self.tracker.relabel(item.id, add=[self.labels.completed], remove=[self.labels.in_progress])
            self.tracker.close(item.id)
            self._sync_backlog(item, IMPL_STATUS_COMPLETED)
            report.record(StageOutcome.success("complete", f"issue #{item.id} closed"))
            return

        logger.info("Continuing: {}", item.describe())
        report.path = "continue"
        self.store.normalize()
        if self._implement(report, item):
            self._gate(report)

    def _start(self, report: RunReport, item: WorkItem) -> None:
        self._enter(report, PipelineState.STARTING)
        report.work_item = item
        report.path = "start"
        self._event(report, "work_item_selected", work_item=item.id, path="start")

        descriptor = extract_descriptor(item.body)
        if descriptor is None:
            logger.info("Issue {} has no parseable PRD — generating inline...", item.describe())
            descriptor = self.generator.generate_for_work_item(item)
        if descriptor is None:
            logger.warning("Issue {} — PRD generation failed, skipping", item.describe())
            report.path = "skipped"
            report.record(StageOutcome.failure("start", "PRD generation failed", f"issue #{item.id}"))
            return

        try:
            self.store.materialize(descriptor)
        except OSError as exc:
            raise PipelineError(f"Unable to write task file {self.store.path}: {exc}") from exc
        logger.info("PRD written for: {}", item.describe())

        self.tracker.relabel(item.id, add=[self.labels.in_progress], remove=[self.labels.queued])
        self._sync_backlog(item, IMPL_STATUS_IN_PROGRESS)

        logger.info("Step 5: Running implementation agent...")
        if self._implement(report, item):
            logger.info("Step 6: Testing and pushing to remote...")
            self._gate(report)

    def _implement(self, report: RunReport, item: WorkItem) -> bool:
        try:
            self.implementer.run_once(self.runs_dir / report.run_id)
        except ImplementationRunError as exc:
            logger.error("Implementation run for {} failed: {}", item.describe(), exc)
            self._record(report, StageOutcome.failure("implement", str(exc), f"issue #{item.id}"))
            return False
        self._record(report, StageOutcome.success("implement", f"issue #{item.id}"))
        return True

    def _gate(self, report: RunReport) -> None:
        self._enter(report, PipelineState.GATING)
        result = self.gate.run_tests_and_push(self.runs_dir / report.run_id)
        report.gate = result
        self._event(
            report,
            "gate_finished",
            tests_passed=result.tests_passed,
            pushed=result.pushed,
            reason=result.reason,
        )

    def _best_effort(self, report: RunReport, stage: str, fn: StageFn) -> StageOutcome:
        try:
            outcome = fn()
        except Exception as exc:
            outcome = StageOutcome.failure(stage, f"{exc.__class__.__name__}: {exc}")
        if not outcome.ok:
            logger.error("{} stage failed (continuing): {}", stage.capitalize(), outcome.error)
        return self._record(report, outcome)

    def _sync_backlog(self, item: WorkItem, status: str) -> None:
        if self.backlog is None:
            return
        try:
            if not self.backlog.set_implementation_status(item.id, status):
                logger.debug("No backlog entry tracks issue #{}", item.id)
        except PipelineError as exc:
            logger.warning("Backlog status for issue #{} not updated: {}", item.id, exc)

    def _record(self, report: RunReport, outcome: StageOutcome) -> StageOutcome:
        report.record(outcome)
        self._event(report, "stage_finished", **outcome.to_dict())
        return outcome

    def _enter(self, report: RunReport, state: PipelineState) -> None:
        logger.debug("Pipeline state {} -> {}", report.state.value, state.value)
        report.state = state

    def _event(self, report: RunReport, kind: str, **fields: Any) -> None:
        if self.events_path is None:
            return
        try:
            _append_event(self.events_path, {"event": kind, "run_id": report.run_id, **fields})
        except OSError as exc:
            logger.warning("Unable to append {} event: {}", kind, exc)


def build_sequencer(settings: PipelineSettings) -> PipelineSequencer:
    """Wire the production collaborators described by `settings`.

    Raises:
        ConfigError: If the generator command template is unusable.
    """
    project_dir = settings.project_dir
    tracker = GitHubIssueQueue(
        project_dir,
        command=settings.tracker_command,
        timeout_seconds=settings.tracker_timeout_seconds,
        sort=settings.tracker_sort,
    )
    try:
        cli = GenerationCLI(
            project_dir,
            command=settings.generator_command,
            timeout_seconds=settings.generator_timeout_seconds,
        )
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc
    generator = DescriptorGenerator(
        cli,
        tracker,
        project_name=settings.project_name,
        project_context=settings.project_context,
    )
    backlog = YamlFeatureBacklog(settings.backlog_path)

    judge: Optional[StageFn] = None
    if settings.judge:
        judge = partial(
            judge_backlog,
            backlog,
            cli,
            project_name=settings.project_name,
            project_context=settings.project_context,
        )
    promote: Optional[StageFn] = None
    if settings.generate:
        promote = partial(
            promote_approved,
            backlog,
            generator,
            tracker,
            queued_label=settings.labels.queued,
            milestones=settings.milestones,
            roadmap_author=settings.roadmap_author,
        )

    return PipelineSequencer(
        lock=PipelineLock(settings.lock_path, stale_after_seconds=settings.stale_after_seconds),
        tracker=tracker,
        store=PrdStore(settings.prd_path, default_branch=settings.branch),
        generator=generator,
        implementer=ImplementationRunner(
            project_dir,
            command=settings.implementer_command,
            timeout_seconds=settings.implementer_timeout_seconds,
        ),
        gate=TestAndPushGate(
            project_dir,
            test_command=settings.test_command,
            timeout_seconds=settings.test_timeout_seconds,
            remote=settings.remote,
            branch=settings.branch,
            push=settings.push,
        ),
        runs_dir=settings.runs_dir,
        labels=settings.labels,
        judge=judge,
        promote=promote,
        backlog=backlog,
        events_path=settings.events_path,
    )


def run_pipeline(settings: PipelineSettings) -> RunReport:
    """Run one pipeline invocation for the project described by `settings`."""
    logger.info("=== Pipeline run starting for {} ===", settings.project_dir)
    return build_sequencer(settings).run()
