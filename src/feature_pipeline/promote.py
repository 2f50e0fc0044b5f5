"""Promote approved backlog items into queued tracker issues with embedded PRDs."""

from __future__ import annotations

from typing import Mapping, Optional

from loguru import logger

from .backlog import FeatureBacklog
from .constants import DEFAULT_ROADMAP_AUTHOR, LABEL_QUEUED
from .errors import PipelineError
from .generator import Generator
from .models import FeatureRequest, StageOutcome, TaskDescriptor
from .prd_store import embed_descriptor
from .tracker import IssueTracker

STAGE = "generate"


def _milestone_for(description: str, milestones: Mapping[str, str]) -> Optional[str]:
    lowered = (description or "").lower()
    for token, title in milestones.items():
        if token.lower() in lowered:
            return title
    return None


def _issue_labels(feature: FeatureRequest, *, queued_label: str, roadmap_author: str) -> list[str]:
    labels = [
        queued_label,
        "type:bug" if feature.type == "bug" else "type:feature",
        "source:roadmap" if feature.author_name == roadmap_author else "source:user",
    ]
    if feature.severity:
        labels.append(f"priority:{feature.severity}")
    return labels


def _issue_title(feature: FeatureRequest) -> str:
    kind = "Bug" if feature.type == "bug" else "Feature"
    return f"[{kind}] {feature.title}"


def _issue_body(feature: FeatureRequest, descriptor: TaskDescriptor) -> str:
    severity = f" | **Severity:** {feature.severity}" if feature.severity else ""
    header = f"**Type:** {feature.type} | **Votes:** {feature.vote_count} | **Author:** {feature.author_name}{severity}"
    if feature.ai_reason:
        header += f'\n**AI Verdict:** approved — "{feature.ai_reason}"'
    return embed_descriptor(header, descriptor)


def promote_approved(
    backlog: FeatureBacklog,
    generator: Generator,
    tracker: IssueTracker,
    *,
    queued_label: str = LABEL_QUEUED,
    milestones: Optional[Mapping[str, str]] = None,
    roadmap_author: str = DEFAULT_ROADMAP_AUTHOR,
) -> StageOutcome:
    """Generate a PRD and open a queued issue for each approved, untracked request.

    Requests whose generation or issue creation fails stay untracked and are
    retried on the next run.
    """
    try:
        features = backlog.list_approved_untracked()
    except PipelineError as exc:
        return StageOutcome.failure(STAGE, str(exc))
    if not features:
        logger.info("No approved features to process")
        return StageOutcome.success(STAGE, "no approved features")

    logger.info("Found {} approved feature(s) to generate PRDs for...", len(features))
    queued = 0
    for feature in features:
        logger.info("Generating PRD for: {}", feature.title)
        descriptor = generator.generate(feature.title, feature)
        if descriptor is None:
            logger.warning("Skipping {} ({}): PRD generation failed", feature.id, feature.title)
            continue

        issue_number = tracker.create(
            _issue_title(feature),
            _issue_body(feature, descriptor),
            _issue_labels(feature, queued_label=queued_label, roadmap_author=roadmap_author),
            _milestone_for(feature.description, milestones or {}),
        )
        if issue_number is None:
            logger.warning("Skipping {} ({}): issue creation failed", feature.id, feature.title)
            continue
        logger.info("  GitHub issue #{} created", issue_number)

        try:
            backlog.mark_queued(feature.id, issue_number)
        except PipelineError as exc:
            logger.error("Issue #{} created but backlog entry {} not updated: {}", issue_number, feature.id, exc)
            continue
        queued += 1
        logger.info("  PRD generated with {} user stories — queued", len(descriptor.user_stories))

    return StageOutcome.success(STAGE, f"{queued} of {len(features)} queued")
