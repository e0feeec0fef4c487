"""Multi-stage "make this repository shippable" pipeline.

Stages run in a fixed order.  Each stage gets its own prompt, its own narrow
verification commands and two attempts (the second carries the first attempt's
failure).  A required stage that ends in neither ``success`` nor
``no_changes`` aborts the rest of the pipeline.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Sequence, Tuple

from .config import Settings
from .context_builder import ContextBuilder
from .models.llm_client import LLMClientError
from .orchestrator import DiffGenerator
from .progress import ProgressLog, ProgressSink
from .prompts import render_repair_prompt
from .publish import PublicationError, PublicationResult, Publisher
from .sandbox import SandboxError, SandboxHandle, SandboxManager
from .schema import Job, RepairStatus
from .tools.patch import Applicable, DiffLimits, NoChanges, PatchError, Rejected, apply_patch, validate_candidate
from .tools.preflight import CommandResult, run_command
from .tools.vcs import GitError

LOGGER = logging.getLogger(__name__)

ATTEMPTS_PER_STAGE = 2
DEFAULT_BUILD_CHECK = "npx tsc --noEmit"

CommandRunner = Callable[..., CommandResult]


@dataclass(slots=True, frozen=True)
class RepairStageConfig:
    """Static definition of one repair stage."""

    id: str
    label: str
    prompt: str
    verify_commands: Tuple[str, ...] = ()
    required: bool = False


@dataclass(slots=True)
class RepairStageResult:
    stage_id: str
    label: str
    status: RepairStatus
    attempts: int = 0
    commit: Optional[str] = None
    error: Optional[str] = None


@dataclass(slots=True)
class RepairResult:
    job_id: str
    stages: List[RepairStageResult] = field(default_factory=list)
    aborted: bool = False
    reason: Optional[str] = None
    publication: Optional[PublicationResult] = None
    progress: List[str] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        return any(stage.commit for stage in self.stages)

    @property
    def succeeded(self) -> bool:
        return not self.aborted and self.reason is None

    def format_summary(self) -> str:
        lines = [f"Repair pipeline for job {self.job_id}:"]
        for stage in self.stages:
            suffix = f" ({stage.error})" if stage.error else ""
            lines.append(f"- {stage.stage_id}: {stage.status.value}{suffix}")
        if self.reason:
            lines.append(f"Stopped: {self.reason}")
        return "\n".join(lines)


_OUTPUT_RULE = "OUTPUT: a valid unified diff. No explanation and no markdown fences."

DEFAULT_REPAIR_STAGES: Tuple[RepairStageConfig, ...] = (
    RepairStageConfig(
        id="fix-build",
        label="Fix build errors",
        prompt=(
            "You are a senior engineer fixing a broken build.\n"
            "GOAL: make the repository compile and pass its basic build check.\n"
            "RULES:\n"
            "- Fix compile errors, missing imports and broken exports first.\n"
            "- Change only what is broken; leave working code alone.\n"
            "- Break circular imports by moving the shared type into its own module.\n"
            "- Never add new dependencies; use an equivalent that is already declared.\n"
            f"{_OUTPUT_RULE}"
        ),
        verify_commands=(DEFAULT_BUILD_CHECK,),
        required=True,
    ),
    RepairStageConfig(
        id="ui-consistency",
        label="Remove UI inconsistencies",
        prompt=(
            "You are a senior front-end engineer doing a consistency pass.\n"
            "GOAL: the UI should look intentional and consistent across every page.\n"
            "RULES:\n"
            "- Unify spacing, font sizes, border radius and colour tokens using the existing theme.\n"
            "- Remove duplicate or conflicting class names on the same element.\n"
            "- Give every interactive element a visible focus style.\n"
            "- Replace inline styles that duplicate existing utility classes.\n"
            "- Do not touch business logic, routing or API calls, and do not add new pages.\n"
            f"{_OUTPUT_RULE}"
        ),
    ),
    RepairStageConfig(
        id="loading-empty-states",
        label="Add loading and empty states",
        prompt=(
            "You are a senior front-end engineer polishing the UI.\n"
            "GOAL: every async fetch shows a loading state and every list shows an empty state.\n"
            "RULES:\n"
            "- Show a simple skeleton or spinner while data is loading.\n"
            "- Show a specific, friendly message when a list or table is empty.\n"
            "- Use existing UI primitives only; do not add libraries.\n"
            "- Do not touch business logic, routing or API calls.\n"
            f"{_OUTPUT_RULE}"
        ),
    ),
    RepairStageConfig(
        id="readme",
        label="Write README",
        prompt=(
            "You are a senior engineer writing project documentation.\n"
            "GOAL: create or rewrite README.md so a new developer can clone, configure and run "
            "the project quickly.\n"
            "RULES:\n"
            "- Derive facts from package manifests, scripts, example env files and compose files.\n"
            "- Include: name and one-line description, tech stack, prerequisites, quick start, "
            "environment variables, available scripts, architecture overview, contributing.\n"
            "- Keep it precise and developer-focused.\n"
            "OUTPUT: a valid unified diff that creates or replaces README.md. No explanation and no "
            "markdown fences."
        ),
        verify_commands=("test -f README.md",),
    ),
)


def resolve_stages(
    settings: Settings,
    stages: Sequence[RepairStageConfig] = DEFAULT_REPAIR_STAGES,
) -> List[RepairStageConfig]:
    """Apply configured verification overrides to ``stages``."""

    resolved: List[RepairStageConfig] = []
    for stage in stages:
        override = settings.repair_verify.get(stage.id)
        if override is not None:
            stage = replace(stage, verify_commands=tuple(override))
        elif stage.id == "fix-build" and settings.preflight.typecheck:
            stage = replace(stage, verify_commands=(settings.preflight.typecheck,))
        resolved.append(stage)
    return resolved


def build_repair_prompt(stage: RepairStageConfig, files: Sequence[str], previous_error: Optional[str] = None) -> str:
    return render_repair_prompt(stage.label, stage.prompt, files, previous_error)


class RepairPipeline:
    """Run the repair stages against one sandbox and publish if anything landed."""

    def __init__(
        self,
        settings: Settings,
        generator: DiffGenerator,
        *,
        stages: Sequence[RepairStageConfig] | None = None,
        sandbox_manager: SandboxManager | None = None,
        context_builder: ContextBuilder | None = None,
        publisher: Publisher | None = None,
        command_runner: CommandRunner = run_command,
        progress_sink: ProgressSink | None = None,
    ) -> None:
        self.settings = settings
        self.generator = generator
        self.stages = list(stages) if stages is not None else resolve_stages(settings)
        self.sandbox_manager = sandbox_manager or SandboxManager(settings)
        self.context_builder = context_builder or ContextBuilder(settings.max_context_chars)
        self.publisher = publisher
        self.command_runner = command_runner
        self.progress_sink = progress_sink

    def run(self, job: Job, *, cancel: threading.Event | None = None) -> RepairResult:
        progress = ProgressLog(job.id, self.progress_sink)
        result = RepairResult(job_id=job.id)
        try:
            with self.sandbox_manager.session(job) as handle:
                self._run_stages(handle, result, progress, cancel)
                if result.committed and self.publisher is not None:
                    try:
                        result.publication = self.publisher.publish(
                            handle,
                            job,
                            iterations=sum(stage.attempts for stage in result.stages),
                            preflight_summary=result.format_summary(),
                        )
                        progress(result.publication.describe())
                    except PublicationError as error:
                        result.reason = f"Publication failed: {error}"
                        progress(result.reason)
        except SandboxError as error:
            result.reason = str(error)
            progress(result.reason)
        result.progress = progress.lines
        return result

    def _run_stages(
        self,
        handle: SandboxHandle,
        result: RepairResult,
        progress: ProgressLog,
        cancel: threading.Event | None,
    ) -> None:
        for stage in self.stages:
            if result.aborted or (cancel is not None and cancel.is_set()):
                if not result.aborted:
                    result.aborted = True
                    result.reason = "Repair cancelled"
                result.stages.append(RepairStageResult(stage.id, stage.label, RepairStatus.SKIPPED))
                continue

            progress(f"Repair stage {stage.id}: {stage.label}")
            outcome = self._run_stage(handle, stage, progress)
            result.stages.append(outcome)
            progress(f"Repair stage {stage.id} finished: {outcome.status.value}")
            if stage.required and outcome.status not in (RepairStatus.SUCCESS, RepairStatus.NO_CHANGES):
                result.aborted = True
                result.reason = f"Required stage '{stage.id}' ended with {outcome.status.value}: {outcome.error}"

    def _run_stage(self, handle: SandboxHandle, stage: RepairStageConfig, progress: ProgressLog) -> RepairStageResult:
        repo = handle.repo
        limits = DiffLimits(max_lines=self.settings.max_diff_lines, max_chars=self.settings.max_diff_chars)
        outcome = RepairStageResult(stage.id, stage.label, RepairStatus.FAILED)
        previous_error: Optional[str] = None

        for attempt in range(1, ATTEMPTS_PER_STAGE + 1):
            outcome.attempts = attempt
            checkpoint = repo.create_checkpoint(f"{stage.id}-{attempt}")
            context = self.context_builder.build(repo.root, stage.prompt)
            prompt = build_repair_prompt(stage, context.paths(), previous_error)
            try:
                raw = self.generator.generate(prompt, context.format(), None)
            except LLMClientError as error:
                outcome.error = f"Generation failed: {error}"
                return outcome

            validated = validate_candidate(raw, repo_root=repo.root, prompt=stage.prompt, limits=limits)
            if isinstance(validated, NoChanges):
                outcome.status = RepairStatus.NO_CHANGES
                outcome.error = None
                return outcome
            if isinstance(validated, Rejected):
                previous_error = f"Diff rejected at {validated.stage}: {validated.reason}"
            else:
                previous_error = self._apply_and_verify(handle, stage, validated)
                if previous_error is None:
                    try:
                        outcome.commit = repo.commit_staged(f"patchpilot repair: {stage.label}")
                    except GitError as error:
                        previous_error = f"Commit failed: {error}"
                    else:
                        outcome.status = RepairStatus.SUCCESS if outcome.commit else RepairStatus.NO_CHANGES
                        outcome.error = None
                        return outcome

            checkpoint.rollback()
            outcome.error = previous_error
            progress(f"Repair stage {stage.id} attempt {attempt} failed: {previous_error}")
        return outcome

    def _apply_and_verify(self, handle: SandboxHandle, stage: RepairStageConfig, diff: Applicable) -> Optional[str]:
        try:
            apply_patch(diff.diff, repo_root=handle.repo.root, index=True)
        except PatchError as error:
            return f"Diff failed to apply: {error}"
        for command in stage.verify_commands:
            ran = self.command_runner(command, cwd=handle.repo.root, timeout=self.settings.verify_timeout)
            if ran.ok:
                continue
            detail = (
                f"Timeout after {self.settings.verify_timeout:g}s"
                if ran.timed_out
                else f"Exit code {ran.exit_code}"
            )
            output = f"\n{ran.output.strip()}" if ran.output.strip() else ""
            return f"Verification command `{command}` failed ({detail}){output}"
        return None


__all__ = [
    "ATTEMPTS_PER_STAGE",
    "DEFAULT_REPAIR_STAGES",
    "RepairPipeline",
    "RepairResult",
    "RepairStageConfig",
    "RepairStageResult",
    "build_repair_prompt",
    "resolve_stages",
]
