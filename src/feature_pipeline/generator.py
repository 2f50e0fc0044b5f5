"""Turn feature descriptions into task descriptors with a content-generation CLI."""

from __future__ import annotations

import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import Optional, Protocol

from loguru import logger

from .constants import DEFAULT_GENERATOR_COMMAND, DEFAULT_GENERATOR_TIMEOUT_SECONDS
from .errors import ExternalCallError, OutputParseError
from .models import FeatureRequest, TaskDescriptor, WorkItem
from .output import parse_json_object
from .prd_store import embed_descriptor
from .prompts import _build_prd_prompt
from .tracker import IssueTracker
from .utils import _child_env, _tail


class GenerationCLI:
    """Run a one-shot text generation command and return its stdout.

    The command template must contain `{prompt}` (inlined as one argument),
    `{prompt_file}` (path to a temp file holding the prompt), or a bare `-`
    (prompt written to stdin).
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        command: str = DEFAULT_GENERATOR_COMMAND,
        timeout_seconds: int = DEFAULT_GENERATOR_TIMEOUT_SECONDS,
    ):
        self.project_dir = project_dir
        self.template = shlex.split(command)
        self.timeout_seconds = timeout_seconds
        uses_placeholder = any("{prompt}" in part or "{prompt_file}" in part for part in self.template)
        if not uses_placeholder and "-" not in self.template:
            raise ValueError("Generator command must include {prompt}, {prompt_file}, or '-' to accept stdin input.")

    def complete(self, prompt: str) -> str:
        """Return the CLI's stdout for `prompt`.

        Raises:
            ExternalCallError: On nonzero exit, timeout, or if the CLI cannot start.
        """
        with tempfile.TemporaryDirectory(prefix="pipeline-prompt-") as tmp:
            prompt_file = Path(tmp) / "prompt.txt"
            prompt_file.write_text(prompt, encoding="utf-8")
            command = [
                part.replace("{prompt_file}", str(prompt_file)).replace("{prompt}", prompt)
                for part in self.template
            ]
            stdin_text = prompt if "-" in self.template else None
            try:
                result = subprocess.run(
                    command,
                    cwd=self.project_dir,
                    input=stdin_text,
                    capture_output=True,
                    text=True,
                    env=_child_env(),
                    timeout=self.timeout_seconds,
                    check=False,
                )
            except subprocess.TimeoutExpired as exc:
                raise ExternalCallError(
                    f"{command[0]} timed out after {self.timeout_seconds}s",
                    command=self.template,
                    timed_out=True,
                ) from exc
            except OSError as exc:
                raise ExternalCallError(f"{command[0]} could not be started: {exc}", command=self.template) from exc
        if result.returncode != 0:
            raise ExternalCallError(
                f"{command[0]} exited {result.returncode}: {_tail(result.stderr)}",
                command=self.template,
                exit_code=result.returncode,
                stderr=result.stderr,
            )
        return result.stdout.strip()


class Generator(Protocol):
    def generate(self, title: str, feature: Optional[FeatureRequest] = None) -> Optional[TaskDescriptor]: ...

    def generate_for_work_item(self, item: WorkItem) -> Optional[TaskDescriptor]: ...


class DescriptorGenerator:
    """Produce task descriptors; failures are logged and reported as None."""

    def __init__(
        self,
        cli: GenerationCLI,
        tracker: IssueTracker,
        *,
        project_name: str = "",
        project_context: str = "",
    ):
        self.cli = cli
        self.tracker = tracker
        self.project_name = project_name
        self.project_context = project_context

    def generate(self, title: str, feature: Optional[FeatureRequest] = None) -> Optional[TaskDescriptor]:
        prompt = _build_prd_prompt(
            title=title,
            project_name=self.project_name,
            project_context=self.project_context,
            feature=feature,
        )
        try:
            response = self.cli.complete(prompt)
        except ExternalCallError as exc:
            logger.error("Generation CLI failed for {!r}: {}", title, exc)
            return None
        try:
            payload = parse_json_object(response)
        except OutputParseError as exc:
            logger.error("Failed to parse generated PRD JSON for {!r}: {}", title, exc)
            logger.debug("Raw generation output:\n{}", response)
            return None
        descriptor = TaskDescriptor.from_payload(payload)
        if descriptor is None:
            logger.error("Generated PRD for {!r} does not match the required shape", title)
            return None
        logger.info("Generated PRD for {!r} with {} user stories", title, len(descriptor.user_stories))
        return descriptor

    def generate_for_work_item(self, item: WorkItem) -> Optional[TaskDescriptor]:
        """Generate inline for an issue lacking an embedded PRD and write it back.

        The write-back is best-effort; the descriptor is returned even if the
        issue body could not be updated.
        """
        logger.info("Generating PRD inline for issue {}...", item.describe())
        descriptor = self.generate(item.title)
        if descriptor is None:
            return None
        if self.tracker.update_body(item.id, embed_descriptor(item.body, descriptor)):
            logger.info("PRD written back to issue #{}", item.id)
        else:
            logger.warning("PRD for issue #{} was not written back; it will be regenerated next time", item.id)
        return descriptor
