from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple, Union

from conftest import NULL_CHECK_DIFF, SampleRepo
from patchpilot.config import Settings
from patchpilot.context_builder import ContextBuilder
from patchpilot.models import LLMTransportError
from patchpilot.publish import Publisher
from patchpilot.repair import (
    DEFAULT_REPAIR_STAGES,
    RepairPipeline,
    build_repair_prompt,
    resolve_stages,
)
from patchpilot.schema import Job, ProjectRef, RepairStatus
from patchpilot.tools.preflight import CommandResult

README_DIFF = (
    "diff --git a/README.md b/README.md\n"
    "new file mode 100644\n"
    "--- /dev/null\n"
    "+++ b/README.md\n"
    "@@ -0,0 +1,3 @@\n"
    "+# Sample service\n"
    "+\n"
    "+Run `node src/app.js`.\n"
)
MISMATCHED_DIFF = NULL_CHECK_DIFF.replace("@@ -8,4 +8,5 @@", "@@ -8,6 +8,7 @@")


class ScriptedGenerator:
    def __init__(self, responses: Sequence[Union[str, Exception]]) -> None:
        self.responses = list(responses)
        self.calls: List[Tuple[str, str, Optional[str]]] = []

    def generate(self, prompt: str, context: str, previous_error: Optional[str] = None) -> str:
        self.calls.append((prompt, context, previous_error))
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


class FailingBuild:
    def __init__(self) -> None:
        self.commands: List[str] = []

    def __call__(self, command: str, *, cwd: Path, timeout: float) -> CommandResult:
        self.commands.append(command)
        return CommandResult(
            command=command,
            exit_code=2,
            output="src/app.js(10,3): error TS2304: Cannot find name 'DEFAULT'.",
            duration=0.1,
        )


def _job(repo: SampleRepo) -> Job:
    return Job(id="repair-1", prompt="Make this repository shippable", project=ProjectRef(local_path=str(repo.root)))


def _pipeline(settings: Settings, generator: ScriptedGenerator, **kwargs) -> RepairPipeline:
    kwargs.setdefault("context_builder", ContextBuilder(settings.max_context_chars, use_ripgrep=False))
    return RepairPipeline(settings, generator, **kwargs)


def test_required_build_stage_failure_aborts_before_readme(
    sample_repo: SampleRepo, make_settings: Callable[..., Settings]
) -> None:
    settings = make_settings()
    generator = ScriptedGenerator([NULL_CHECK_DIFF])
    build = FailingBuild()

    result = _pipeline(settings, generator, command_runner=build, publisher=Publisher(settings)).run(
        _job(sample_repo)
    )

    assert result.aborted
    assert [stage.status for stage in result.stages] == [
        RepairStatus.FAILED,
        RepairStatus.SKIPPED,
        RepairStatus.SKIPPED,
        RepairStatus.SKIPPED,
    ]
    assert result.stages[0].attempts == 2
    assert result.stages[-1].stage_id == "readme"
    assert len(generator.calls) == 2
    assert build.commands == ["npx tsc --noEmit", "npx tsc --noEmit"]
    retry_prompt = generator.calls[1][0]
    assert "## Previous attempt failed" in retry_prompt
    assert "TS2304" in retry_prompt
    assert not result.committed
    assert result.publication is None
    assert "return DEFAULT" not in sample_repo.read("src/app.js")


def test_successful_readme_stage_is_committed_and_published(
    sample_repo: SampleRepo, make_settings: Callable[..., Settings]
) -> None:
    settings = make_settings()
    generator = ScriptedGenerator(["NO_CHANGES", "NO_CHANGES", "NO_CHANGES", README_DIFF])

    result = _pipeline(settings, generator, publisher=Publisher(settings)).run(_job(sample_repo))

    assert result.succeeded, result.reason
    assert [stage.status for stage in result.stages] == [
        RepairStatus.NO_CHANGES,
        RepairStatus.NO_CHANGES,
        RepairStatus.NO_CHANGES,
        RepairStatus.SUCCESS,
    ]
    assert result.stages[-1].commit is not None
    assert result.committed
    assert result.publication is not None and result.publication.kind == "local_copy"
    assert sample_repo.read("README.md").startswith("# Sample service")
    assert "readme: success" in result.format_summary()


def test_optional_stage_failure_does_not_abort(
    sample_repo: SampleRepo, make_settings: Callable[..., Settings]
) -> None:
    settings = make_settings()
    generator = ScriptedGenerator(["NO_CHANGES", MISMATCHED_DIFF, MISMATCHED_DIFF, "NO_CHANGES", "NO_CHANGES"])

    result = _pipeline(settings, generator).run(_job(sample_repo))

    assert not result.aborted
    assert result.succeeded
    assert [stage.status for stage in result.stages] == [
        RepairStatus.NO_CHANGES,
        RepairStatus.FAILED,
        RepairStatus.NO_CHANGES,
        RepairStatus.NO_CHANGES,
    ]
    assert "Hunk line count mismatch" in (result.stages[1].error or "")
    assert not result.committed


def test_generation_error_fails_the_stage_without_retry(
    sample_repo: SampleRepo, make_settings: Callable[..., Settings]
) -> None:
    generator = ScriptedGenerator([LLMTransportError("model unavailable")])

    result = _pipeline(make_settings(), generator).run(_job(sample_repo))

    assert result.aborted
    assert result.stages[0].attempts == 1
    assert result.stages[0].error == "Generation failed: model unavailable"
    assert len(generator.calls) == 1


def test_cancelled_pipeline_skips_every_stage(
    sample_repo: SampleRepo, make_settings: Callable[..., Settings]
) -> None:
    generator = ScriptedGenerator(["NO_CHANGES"])
    cancel = threading.Event()
    cancel.set()

    result = _pipeline(make_settings(), generator).run(_job(sample_repo), cancel=cancel)

    assert result.reason == "Repair cancelled"
    assert {stage.status for stage in result.stages} == {RepairStatus.SKIPPED}
    assert generator.calls == []


def test_resolve_stages_applies_configured_checks(make_settings: Callable[..., Settings]) -> None:
    settings = make_settings(
        preflight={"typecheck": "npm run typecheck"},
        repair_verify={"readme": ["test -s README.md"]},
    )

    stages = {stage.id: stage for stage in resolve_stages(settings)}

    assert [stage.id for stage in DEFAULT_REPAIR_STAGES] == [
        "fix-build",
        "ui-consistency",
        "loading-empty-states",
        "readme",
    ]
    assert stages["fix-build"].verify_commands == ("npm run typecheck",)
    assert stages["readme"].verify_commands == ("test -s README.md",)
    assert stages["ui-consistency"].verify_commands == ()


def test_repair_prompt_lists_files_and_constraints() -> None:
    stage = DEFAULT_REPAIR_STAGES[0]

    prompt = build_repair_prompt(stage, ["src/app.js"], previous_error="Exit code 2")

    assert prompt.startswith("## Repair stage: Fix build errors")
    assert "  - src/app.js" in prompt
    assert "Exit code 2" in prompt
    assert prompt.rstrip().endswith("output exactly: NO_CHANGES")
