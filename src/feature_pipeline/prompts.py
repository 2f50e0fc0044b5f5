"""Build the text prompts passed to the content-generation CLI."""

from __future__ import annotations

from typing import Optional

from .models import FeatureRequest

_DESCRIPTOR_SHAPE = """{
  "project": "<project name>",
  "description": "Brief description of what this PRD covers",
  "userStories": [
    {
      "id": "US-001",
      "title": "Story title in imperative form",
      "description": "As a [role], I want [goal] so that [benefit]",
      "acceptanceCriteria": ["Criterion 1", "Criterion 2"],
      "priority": 1,
      "status": "incomplete",
      "phase": 1
    }
  ]
}"""


def _project_line(project_name: str, project_context: str) -> str:
    name = project_name or "the project"
    if project_context:
        return f"{name}, {project_context}"
    return name


def _build_prd_prompt(
    *,
    title: str,
    project_name: str = "",
    project_context: str = "",
    feature: Optional[FeatureRequest] = None,
) -> str:
    if feature is not None:
        details = f"""Feature details:
- Title: {feature.title}
- Type: {feature.type}
- Description: {feature.description or "(none provided)"}
- Author: {feature.author_name}
- Votes: {feature.vote_count}
- AI Assessment: {feature.ai_reason or "(none)"}"""
    else:
        details = f"Feature: {title}"
    shape = _DESCRIPTOR_SHAPE.replace("<project name>", project_name or "Project")
    return f"""You are a product manager generating a PRD for an autonomous development agent.

Generate a PRD JSON object for the following feature for {_project_line(project_name, project_context)}.

{details}

Return ONLY a valid JSON object (no markdown fences) with this exact structure:
{shape}

Guidelines:
- Break the feature into 1-4 user stories depending on complexity
- Each story should be independently implementable
- Acceptance criteria should be specific and testable
- Include criteria for the type checker and test suite passing
- Include end-to-end test criteria where appropriate
- Reference existing file paths and patterns from the codebase
"""


def _build_judge_prompt(
    features: list[FeatureRequest],
    *,
    project_name: str = "",
    project_context: str = "",
) -> str:
    listing = "\n\n".join(
        f"- ID: {f.id}\n  Title: {f.title}\n  Type: {f.type}\n"
        f"  Description: {f.description or '(none)'}\n  Author: {f.author_name}\n  Votes: {f.vote_count}"
        for f in features
    )
    return f"""You are a product manager triaging feature requests and bug reports for {_project_line(project_name, project_context)}.

Evaluate each submission below and return a JSON array of verdicts. For each item, decide:
- ai_verdict: "approved" (valuable and feasible), "rejected" (spam, duplicate, out of scope), or "needs_clarification" (interesting but vague)
- ai_reason: A concise 1-2 sentence explanation of your verdict
- severity: For bugs only, rate as "critical", "high", "medium", or "low". Omit for feature requests.
- status: Same value as ai_verdict

Return ONLY a valid JSON array, no markdown fences, no extra text.

Example output:
[{{"id":"abc-123","ai_verdict":"approved","ai_reason":"Clear and useful feature that improves the host experience.","status":"approved"}}]

Submissions to evaluate:

{listing}
"""
