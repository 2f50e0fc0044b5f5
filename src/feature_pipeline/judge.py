"""Triage open backlog items with the generation CLI."""

from __future__ import annotations

from loguru import logger
from pydantic import ValidationError

from .backlog import FeatureBacklog
from .errors import ExternalCallError, OutputParseError, PipelineError
from .generator import GenerationCLI
from .models import StageOutcome, Verdict
from .output import parse_json_array
from .prompts import _build_judge_prompt

STAGE = "judge"


def judge_backlog(
    backlog: FeatureBacklog,
    cli: GenerationCLI,
    *,
    project_name: str = "",
    project_context: str = "",
) -> StageOutcome:
    """Record an AI verdict on every open request.

    Returns:
        A failed outcome when the backlog or CLI cannot be used or the
        response is not a verdict array; otherwise a success with counts.
    """
    try:
        features = backlog.list_open()
    except PipelineError as exc:
        return StageOutcome.failure(STAGE, str(exc))
    if not features:
        logger.info("No pending features")
        return StageOutcome.success(STAGE, "no pending features")

    logger.info("Found {} pending feature(s) to judge...", len(features))
    prompt = _build_judge_prompt(features, project_name=project_name, project_context=project_context)
    try:
        response = cli.complete(prompt)
        raw_verdicts = parse_json_array(response)
    except (ExternalCallError, OutputParseError) as exc:
        return StageOutcome.failure(STAGE, f"verdicts unavailable: {exc}")

    titles = {f.id: f.title for f in features}
    applied = 0
    for raw in raw_verdicts:
        try:
            verdict = Verdict.model_validate(raw)
        except ValidationError:
            logger.warning("Ignoring malformed verdict: {!r}", raw)
            continue
        if verdict.id not in titles:
            logger.warning("Ignoring verdict for unknown feature id {}", verdict.id)
            continue
        try:
            updated = backlog.apply_verdict(verdict)
        except PipelineError as exc:
            logger.error("Failed to update {}: {}", verdict.id, exc)
            continue
        if updated:
            applied += 1
            logger.info("  {} — {}", verdict.ai_verdict.upper(), titles[verdict.id])
    return StageOutcome.success(STAGE, f"{applied} of {len(features)} judged")
