from __future__ import annotations

import pytest
from pydantic import ValidationError

from patchpilot.progress import ProgressLog
from patchpilot.schema import Job, ProjectRef


def test_project_requires_a_source() -> None:
    with pytest.raises(ValidationError, match="local_path or repository_url"):
        ProjectRef(github_repo="acme/widgets")


def test_job_is_frozen_and_rejects_unknown_fields() -> None:
    job = Job(id="1", prompt="do it", project=ProjectRef(local_path="/tmp/project"))

    with pytest.raises(ValidationError):
        job.prompt = "something else"  # type: ignore[misc]
    with pytest.raises(ValidationError):
        Job(id="2", prompt="x", project=ProjectRef(local_path="/tmp"), priority=1)  # type: ignore[call-arg]


def test_progress_log_forwards_to_sink() -> None:
    seen: list[tuple[str, str]] = []
    progress = ProgressLog("job-9", lambda job_id, message: seen.append((job_id, message)))

    progress("cloning")
    progress.emit("done")

    assert progress.lines == ["cloning", "done"]
    assert seen == [("job-9", "cloning"), ("job-9", "done")]
