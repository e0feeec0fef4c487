"""Job state machine: generate, validate, apply and verify until the change holds.

Each iteration starts from the last committed-good state of the sandbox.  A
rejected diff, a failed apply or a failed preflight run rolls the working tree
back to the checkpoint taken before the iteration and becomes feedback for the
next generation call.  Generation errors and sandbox errors end the job at
once; running out of iterations ends it with the full history attached.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Literal, Optional, Protocol, Sequence

from .config import Settings
from .context_builder import ContextBuilder
from .models.llm_client import LLMClientError
from .progress import ProgressLog, ProgressSink
from .prompts import (
    render_full_file_instruction,
    render_patch_feedback,
    render_preflight_feedback,
    render_readme_hint,
)
from .publish import PublicationError, PublicationResult, Publisher
from .sandbox import SandboxError, SandboxHandle, SandboxManager
from .schema import Job, JobState, JobStatus
from .tools.patch import (
    Applicable,
    DiffLimits,
    NoChanges,
    PatchError,
    Rejected,
    ValidationOutcome,
    apply_patch,
    validate_candidate,
)
from .tools.preflight import PreflightReport, run_preflight
from .tools.vcs import GitCheckpoint, GitError

LOGGER = logging.getLogger(__name__)

_README_NAMES = ("README.md", "readme.md", "README.rst", "README.txt", "README")
_README_HINT_LINES = 60
_PREVIEW_LINES = 80
_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")

IterationKind = Literal["no_changes", "rejected", "apply_failed", "preflight_failed", "succeeded"]


class DiffGenerator(Protocol):
    def generate(self, prompt: str, context: str, previous_error: Optional[str] = None) -> str:
        ...


PreflightRunner = Callable[..., PreflightReport]


@dataclass(slots=True)
class IterationRecord:
    """Everything that happened in one pass of the loop."""

    number: int
    candidate: str
    outcome: ValidationOutcome
    apply_error: Optional[str] = None
    failed_files: List[str] = field(default_factory=list)
    preflight: Optional[PreflightReport] = None
    commit: Optional[str] = None
    rolled_back: bool = False

    @property
    def kind(self) -> IterationKind:
        if isinstance(self.outcome, NoChanges):
            return "no_changes"
        if isinstance(self.outcome, Rejected):
            return "rejected"
        if self.apply_error is not None:
            return "apply_failed"
        if self.preflight is not None and not self.preflight.passed:
            return "preflight_failed"
        return "succeeded"

    @property
    def diff_text(self) -> str:
        if isinstance(self.outcome, Applicable):
            return self.outcome.diff
        return self.candidate

    def failure_reason(self) -> Optional[str]:
        if isinstance(self.outcome, Rejected):
            return f"Diff rejected at {self.outcome.stage}: {self.outcome.reason}"
        if self.apply_error is not None:
            return f"Diff failed to apply: {self.apply_error}"
        if self.preflight is not None and not self.preflight.passed:
            return self.preflight.failure_feedback()
        return None

    def feedback(self) -> str:
        if isinstance(self.outcome, Rejected):
            return render_patch_feedback(self.number, f"[{self.outcome.stage}] {self.outcome.reason}")
        if self.apply_error is not None:
            return render_patch_feedback(self.number, self.apply_error)
        if self.preflight is not None and not self.preflight.passed:
            return render_preflight_feedback(self.number, self.preflight.failure_feedback())
        return ""


@dataclass(slots=True)
class JobMetrics:
    generation_calls: int = 0
    preflight_seconds: float = 0.0
    total_seconds: float = 0.0
    files_changed: int = 0


@dataclass(slots=True)
class JobResult:
    """Terminal report for one job."""

    job_id: str
    status: JobStatus
    state: JobState
    reason: Optional[str] = None
    iterations: List[IterationRecord] = field(default_factory=list)
    commit: Optional[str] = None
    no_changes: bool = False
    branch: Optional[str] = None
    publication: Optional[PublicationResult] = None
    failed_patch_path: Optional[Path] = None
    diff_path: Optional[Path] = None
    metrics: JobMetrics = field(default_factory=JobMetrics)
    transitions: List[JobState] = field(default_factory=list)
    progress: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.SUCCEEDED

    def summary(self) -> str:
        if self.succeeded:
            if self.no_changes:
                return f"Job {self.job_id} succeeded: no changes were required."
            where = f" {self.publication.describe()}" if self.publication else ""
            return f"Job {self.job_id} succeeded after {len(self.iterations)} iteration(s).{where}"
        return f"Job {self.job_id} failed after {len(self.iterations)} iteration(s): {self.reason}"


def _slug(value: str) -> str:
    return _SLUG_RE.sub("-", value).strip("-") or "job"


def _commit_message(prompt: str) -> str:
    return f"patchpilot: {' '.join(prompt.split())[:72]}"


def _numbered_preview(text: str, limit: int = _PREVIEW_LINES) -> str:
    lines = text.splitlines()
    rendered = [f"{index:4d} | {line}" for index, line in enumerate(lines[:limit], start=1)]
    if len(lines) > limit:
        rendered.append(f"     ... ({len(lines) - limit} more lines)")
    return "\n".join(rendered)


class JobOrchestrator:
    """Drive one job from request to a verified commit or a terminal failure."""

    def __init__(
        self,
        settings: Settings,
        generator: DiffGenerator,
        *,
        sandbox_manager: SandboxManager | None = None,
        context_builder: ContextBuilder | None = None,
        publisher: Publisher | None = None,
        preflight_runner: PreflightRunner = run_preflight,
        progress_sink: ProgressSink | None = None,
    ) -> None:
        self.settings = settings
        self.generator = generator
        self.sandbox_manager = sandbox_manager or SandboxManager(settings)
        self.context_builder = context_builder or ContextBuilder(settings.max_context_chars)
        self.publisher = publisher
        self.preflight_runner = preflight_runner
        self.progress_sink = progress_sink

    def run(self, job: Job, *, cancel: threading.Event | None = None) -> JobResult:
        started = time.monotonic()
        progress = ProgressLog(job.id, self.progress_sink)
        result = JobResult(job_id=job.id, status=JobStatus.FAILED, state=JobState.INITIALIZING)
        result.transitions.append(JobState.INITIALIZING)
        progress(f"Starting job: {job.prompt}")
        try:
            with self.sandbox_manager.session(job) as handle:
                result.branch = handle.branch
                self._run_in_sandbox(job, handle, result, progress, cancel)
        except SandboxError as error:
            self._finish(result, progress, JobStatus.FAILED, str(error))
        except (GitError, OSError) as error:
            LOGGER.exception("Job %s aborted by a sandbox failure", job.id)
            self._fail_with_history(job, result, progress, f"Sandbox operation failed: {error}")
        result.metrics.total_seconds = time.monotonic() - started
        result.progress = progress.lines
        return result

    # ------------------------------------------------------------------ phases
    def _run_in_sandbox(
        self,
        job: Job,
        handle: SandboxHandle,
        result: JobResult,
        progress: ProgressLog,
        cancel: threading.Event | None,
    ) -> None:
        self._transition(result, JobState.GATHERING_CONTEXT)
        progress("Gathering repository context")
        context = self.context_builder.build(handle.repo.root, job.prompt)
        context_text = context.format() + self._readme_hint(handle.repo.root, job.prompt)
        progress(
            f"Context ready: {len(context.files)} file(s), {context.total_chars} chars"
            + (" (truncated)" if context.truncated else "")
        )

        self._transition(result, JobState.ITERATING)
        limits = DiffLimits(max_lines=self.settings.max_diff_lines, max_chars=self.settings.max_diff_chars)
        cap = self.settings.max_iterations
        consecutive_failures = 0
        apply_failures = 0
        failed_files: List[str] = []

        for number in range(1, cap + 1):
            if cancel is not None and cancel.is_set():
                self._fail_with_history(job, result, progress, f"Job cancelled before iteration {number}")
                return

            checkpoint = handle.repo.create_checkpoint(f"iteration-{number}")
            feedback = self._feedback(result.iterations)
            threshold = self.settings.fallback_after_apply_failures
            if threshold and apply_failures >= threshold:
                feedback = f"{feedback}\n\n{render_full_file_instruction(failed_files)}".strip()
                progress("Switching to full-file replacement mode")

            progress(f"Iteration {number}/{cap}: generating diff")
            result.metrics.generation_calls += 1
            try:
                raw = self.generator.generate(job.prompt, context_text, feedback or None)
            except LLMClientError as error:
                self._fail_with_history(job, result, progress, f"Generation failed: {error}")
                return

            outcome = validate_candidate(raw, repo_root=handle.repo.root, prompt=job.prompt, limits=limits)
            record = IterationRecord(number=number, candidate=raw, outcome=outcome)
            result.iterations.append(record)

            if isinstance(outcome, NoChanges):
                result.no_changes = True
                progress("Generator reported that no changes are required")
                self._finish(result, progress, JobStatus.SUCCEEDED, None)
                return

            if isinstance(outcome, Applicable):
                for note in outcome.adjustments:
                    progress(f"Sanitized: {note}")
                self._apply_and_verify(job, handle, record, outcome, progress, result)

            if record.kind == "succeeded":
                self._succeed(job, handle, record, result, progress)
                return

            self._rollback(checkpoint, record)
            progress(f"Iteration {number} failed: {record.failure_reason()}")
            consecutive_failures += 1
            if record.kind == "apply_failed" or (
                isinstance(outcome, Rejected) and outcome.stage == "applicability"
            ):
                apply_failures += 1
                failed_files = record.failed_files or failed_files
            else:
                apply_failures = 0

            limit = self.settings.max_consecutive_failures
            if limit and consecutive_failures >= limit:
                self._fail_with_history(job, result, progress, f"Stopped after {consecutive_failures} consecutive failures")
                return

        self._fail_with_history(job, result, progress, f"Exhausted {cap} iteration(s) without a verified change")

    def _apply_and_verify(
        self,
        job: Job,
        handle: SandboxHandle,
        record: IterationRecord,
        outcome: Applicable,
        progress: ProgressLog,
        result: JobResult,
    ) -> None:
        progress(f"Applying diff touching {len(outcome.paths)} path(s)")
        try:
            apply_patch(outcome.diff, repo_root=handle.repo.root, index=True)
            record.commit = handle.repo.commit_staged(_commit_message(job.prompt))
        except PatchError as error:
            record.apply_error = str(error)
            record.failed_files = list(error.details.get("failed_files") or [])
            return
        except GitError as error:
            record.apply_error = f"Commit failed: {error}"
            return
        if record.commit is None:
            record.apply_error = "The diff applied cleanly but left the working tree unchanged."
            return

        progress("Running preflight checks")
        report = self.preflight_runner(handle.repo.root, self.settings.preflight_stages())
        result.metrics.preflight_seconds += report.duration
        record.preflight = report
        progress(report.format_summary())

    def _succeed(
        self,
        job: Job,
        handle: SandboxHandle,
        record: IterationRecord,
        result: JobResult,
        progress: ProgressLog,
    ) -> None:
        repo = handle.repo
        result.commit = record.commit
        repo.tag(f"patchpilot/job-{_slug(job.id)}")
        if handle.base_commit:
            result.metrics.files_changed = len(repo.changed_files(handle.base_commit))
            result.diff_path = self._write_diff(
                Path(self.settings.jobs_dir) / f"{_slug(job.id)}.diff",
                repo.diff(handle.base_commit, "HEAD"),
            )
        progress(f"Committed {str(record.commit)[:12]} on {handle.branch}")

        if self.publisher is not None:
            summary = record.preflight.format_summary() if record.preflight else ""
            try:
                result.publication = self.publisher.publish(
                    handle, job, iterations=len(result.iterations), preflight_summary=summary
                )
            except PublicationError as error:
                self._finish(result, progress, JobStatus.FAILED, f"Publication failed: {error}")
                return
            progress(result.publication.describe())
        self._finish(result, progress, JobStatus.SUCCEEDED, None)

    # ----------------------------------------------------------------- helpers
    @staticmethod
    def _transition(result: JobResult, state: JobState) -> None:
        result.state = state
        result.transitions.append(state)
        LOGGER.debug("Job %s -> %s", result.job_id, state.value)

    def _finish(self, result: JobResult, progress: ProgressLog, status: JobStatus, reason: Optional[str]) -> None:
        result.status = status
        result.reason = reason
        self._transition(result, JobState.SUCCEEDED if status is JobStatus.SUCCEEDED else JobState.FAILED)
        progress(result.summary())

    @staticmethod
    def _rollback(checkpoint: GitCheckpoint, record: IterationRecord) -> None:
        checkpoint.rollback()
        record.rolled_back = True
        record.commit = None

    @staticmethod
    def _feedback(history: Sequence[IterationRecord]) -> str:
        failures = [record for record in history if record.failure_reason()]
        if not failures:
            return ""
        latest = failures[-1]
        parts = [latest.feedback()]
        earlier = failures[:-1]
        if earlier:
            lines = [f"- iteration {record.number}: {record.failure_reason()}" for record in earlier[-3:]]
            summary = "\n".join(line.splitlines()[0] for line in lines)
            parts.append(f"Earlier failed attempts:\n{summary}")
        return "\n\n".join(parts)

    @staticmethod
    def _readme_hint(root: Path, prompt: str) -> str:
        if "readme" not in prompt.lower():
            return ""
        for name in _README_NAMES:
            candidate = root / name
            if candidate.is_file():
                lines = candidate.read_text(encoding="utf-8", errors="replace").splitlines()
                return render_readme_hint(name, lines[:_README_HINT_LINES])
        return ""

    @staticmethod
    def _write_diff(path: Path, text: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    def _fail_with_history(self, job: Job, result: JobResult, progress: ProgressLog, headline: str) -> None:
        """Finish FAILED, persisting the last failed diff and naming its failure."""

        failed = [record for record in result.iterations if record.failure_reason()]
        last = failed[-1] if failed else None
        reason = headline
        if last is not None:
            reason = f"{headline}. Last failure: {last.failure_reason()}"
            path = Path(self.settings.patches_dir) / f"{_slug(job.id)}-iter{last.number}.diff"
            try:
                result.failed_patch_path = self._write_diff(path, last.diff_text)
            except OSError as error:
                LOGGER.error("Could not persist failing diff for job %s: %s", job.id, error)
            else:
                LOGGER.warning(
                    "Persisted failing diff for job %s to %s\n%s",
                    job.id,
                    path,
                    _numbered_preview(last.diff_text),
                )
        self._finish(result, progress, JobStatus.FAILED, reason)


def run_jobs(
    jobs: Sequence[Job],
    orchestrator: JobOrchestrator,
    *,
    max_workers: int | None = None,
    cancel: threading.Event | None = None,
) -> List[JobResult]:
    """Run independent jobs concurrently, each in its own sandbox; results keep input order."""

    workers = max(1, max_workers or orchestrator.settings.max_workers)
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="patchpilot-job") as pool:
        futures = [pool.submit(orchestrator.run, job, cancel=cancel) for job in jobs]
        return [future.result() for future in futures]


__all__ = [
    "DiffGenerator",
    "IterationRecord",
    "JobMetrics",
    "JobOrchestrator",
    "JobResult",
    "run_jobs",
]
