"""CI-parity preflight verification for patched sandboxes.

Stages always run in the fixed order install, typecheck, lint, test, smoke.
A stage without a command is skipped.  The first stage that exits non-zero or
overruns the shared timeout halts the run; later stages are not executed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Literal, Mapping, Sequence

import logging
import os
import signal
import subprocess
import time

LOGGER = logging.getLogger(__name__)

PREFLIGHT_ORDER: tuple[str, ...] = ("install", "typecheck", "lint", "test", "smoke")
_OUTPUT_LIMIT = 8_000

StageStatus = Literal["passed", "failed", "skipped"]


@dataclass(slots=True, frozen=True)
class PreflightStageConfig:
    """Description of one preflight stage."""

    name: str
    command: str | None
    timeout: float = 300.0

    @property
    def enabled(self) -> bool:
        return bool(self.command and self.command.strip())


@dataclass(slots=True)
class CommandResult:
    """Outcome of a single shell command."""

    command: str
    exit_code: int | None
    output: str
    duration: float
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0


@dataclass(slots=True)
class StageResult:
    """Result produced for one :class:`PreflightStageConfig`."""

    name: str
    status: StageStatus
    command: str | None = None
    exit_code: int | None = None
    output: str = ""
    error: str | None = None
    duration: float = 0.0

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    def short_message(self) -> str:
        if self.status == "passed":
            return f"{self.name}: passed ({self.duration:.1f}s)"
        if self.status == "skipped":
            return f"{self.name}: skipped"
        return f"{self.name}: failed ({self.error or 'unknown error'})"


@dataclass(slots=True)
class PreflightReport:
    """Aggregated result of one preflight run."""

    stages: List[StageResult] = field(default_factory=list)
    duration: float = 0.0

    @property
    def passed(self) -> bool:
        return not any(stage.failed for stage in self.stages)

    @property
    def failed_stage(self) -> StageResult | None:
        return next((stage for stage in self.stages if stage.failed), None)

    @property
    def executed(self) -> int:
        return sum(1 for stage in self.stages if stage.status != "skipped")

    def format_summary(self) -> str:
        """Return a human readable summary of the run."""

        if not self.executed:
            return "No preflight stages configured."
        lines = ["Preflight stages:"]
        lines.extend(f"- {stage.short_message()}" for stage in self.stages)
        return "\n".join(lines)

    def failure_feedback(self) -> str:
        """Render the failing stage and its captured output for the next prompt."""

        failed = self.failed_stage
        if failed is None:
            return ""
        parts = [f"Preflight stage '{failed.name}' failed: {failed.error or 'unknown error'}"]
        if failed.command:
            parts.append(f"Command: {failed.command}")
        if failed.output.strip():
            parts.append(f"Output:\n{failed.output.strip()}")
        return "\n".join(parts)


def _truncate(text: str, limit: int = _OUTPUT_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return f"...[truncated {len(text) - limit} chars]...\n{text[-limit:]}"


def _text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _kill_process_group(process: subprocess.Popen) -> None:
    # Shell grandchildren keep the pipes open unless the whole group goes.
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (AttributeError, ProcessLookupError, PermissionError):
        process.kill()


def run_command(
    command: str,
    *,
    cwd: Path,
    timeout: float,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run ``command`` through the shell, capturing combined output.

    A command that overruns ``timeout`` is killed; whatever it printed so far
    is kept in the result.
    """

    merged_env = os.environ.copy()
    merged_env.setdefault("CI", "1")
    if env:
        merged_env.update(env)

    started = time.monotonic()
    process = subprocess.Popen(  # noqa: S602 - commands come from operator configuration
        command,
        shell=True,
        cwd=cwd,
        env=merged_env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        start_new_session=True,
    )
    try:
        stdout, stderr = process.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_process_group(process)
        stdout, stderr = process.communicate()
        partial = "\n".join(part for part in (_text(stdout), _text(stderr)) if part)
        return CommandResult(
            command=command,
            exit_code=None,
            output=_truncate(partial),
            duration=time.monotonic() - started,
            timed_out=True,
        )
    combined = "\n".join(part for part in (_text(stdout), _text(stderr)) if part)
    return CommandResult(
        command=command,
        exit_code=process.returncode,
        output=_truncate(combined),
        duration=time.monotonic() - started,
    )


CommandRunner = Callable[..., CommandResult]


def run_preflight(
    repo_root: Path | str,
    stages: Sequence[PreflightStageConfig],
    *,
    runner: CommandRunner = run_command,
    on_stage: Callable[[StageResult], None] | None = None,
) -> PreflightReport:
    """Execute ``stages`` against ``repo_root`` and report the outcome."""

    root = Path(repo_root)
    by_name = {stage.name: stage for stage in stages}
    ordered = [by_name[name] for name in PREFLIGHT_ORDER if name in by_name]
    ordered.extend(stage for stage in stages if stage.name not in PREFLIGHT_ORDER)

    report = PreflightReport()
    started = time.monotonic()
    for stage in ordered:
        if not stage.enabled:
            result = StageResult(name=stage.name, status="skipped")
        else:
            LOGGER.info("Running preflight stage %s: %s", stage.name, stage.command)
            outcome = runner(stage.command, cwd=root, timeout=stage.timeout)
            if outcome.timed_out:
                error = f"Timeout after {stage.timeout:g}s"
            elif outcome.exit_code != 0:
                error = f"Exit code {outcome.exit_code}"
            else:
                error = None
            result = StageResult(
                name=stage.name,
                status="failed" if error else "passed",
                command=stage.command,
                exit_code=outcome.exit_code,
                output=outcome.output if error else "",
                error=error,
                duration=outcome.duration,
            )
        report.stages.append(result)
        if on_stage is not None:
            on_stage(result)
        if result.failed:
            LOGGER.warning("Preflight stage %s failed: %s", result.name, result.error)
            break
    report.duration = time.monotonic() - started
    return report


__all__ = [
    "CommandResult",
    "PREFLIGHT_ORDER",
    "PreflightReport",
    "PreflightStageConfig",
    "StageResult",
    "StageStatus",
    "run_command",
    "run_preflight",
]
