from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from conftest import SampleRepo
from patchpilot.config import Settings
from patchpilot.sandbox import SandboxError, SandboxManager, branch_name_for
from patchpilot.schema import Job, ProjectRef
from patchpilot.tools.vcs import GitRepository


def _job(path: Path, job_id: str = "abc 123") -> Job:
    return Job(id=job_id, prompt="do something", project=ProjectRef(local_path=str(path)))


def test_branch_name_is_derived_from_job_id() -> None:
    assert branch_name_for("abc 123") == "patchpilot/abc-123"
    assert branch_name_for("///") == "patchpilot/job"


def test_local_git_project_is_copied_onto_a_job_branch(
    sample_repo: SampleRepo, make_settings: Callable[..., Settings]
) -> None:
    manager = SandboxManager(make_settings())

    handle = manager.acquire(_job(sample_repo.root))
    try:
        assert handle.branch == "patchpilot/abc-123"
        assert handle.repo.current_branch() == "patchpilot/abc-123"
        assert handle.base_commit == sample_repo.head
        assert (handle.repo.root / "src" / "app.js").is_file()
        assert handle.repo.root != sample_repo.root
    finally:
        manager.release(handle)

    assert not handle.root.exists()
    manager.release(handle)


def test_plain_directory_is_initialised_as_a_repository(
    tmp_path: Path, make_settings: Callable[..., Settings]
) -> None:
    source = tmp_path / "plain"
    source.mkdir()
    (source / "index.js").write_text("console.log('hi');\n", encoding="utf-8")
    (source / "node_modules").mkdir()
    (source / "node_modules" / "dep.js").write_text("", encoding="utf-8")
    manager = SandboxManager(make_settings())

    with manager.session(_job(source)) as handle:
        assert handle.base_commit is not None
        assert not handle.repo.has_changes()
        assert not (handle.repo.root / "node_modules").exists()
        assert not (source / ".git").exists()


def test_session_releases_the_sandbox_on_error(
    sample_repo: SampleRepo, make_settings: Callable[..., Settings]
) -> None:
    manager = SandboxManager(make_settings())
    captured: list[Path] = []

    with pytest.raises(RuntimeError, match="boom"):
        with manager.session(_job(sample_repo.root)) as handle:
            captured.append(handle.root)
            raise RuntimeError("boom")

    assert captured and not captured[0].exists()


def test_missing_source_raises_and_leaves_nothing_behind(
    tmp_path: Path, make_settings: Callable[..., Settings]
) -> None:
    settings = make_settings()
    manager = SandboxManager(settings)

    with pytest.raises(SandboxError, match="does not exist"):
        manager.acquire(_job(tmp_path / "nowhere"))

    assert list(Path(settings.sandbox_root).iterdir()) == []


def test_clone_failure_is_reported_as_sandbox_error(
    tmp_path: Path, make_settings: Callable[..., Settings]
) -> None:
    manager = SandboxManager(make_settings())
    job = Job(id="remote", prompt="x", project=ProjectRef(repository_url=str(tmp_path / "no-such-remote")))

    with pytest.raises(SandboxError, match="Failed to create sandbox"):
        manager.acquire(job)


def test_remote_repository_is_cloned(sample_repo: SampleRepo, make_settings: Callable[..., Settings]) -> None:
    manager = SandboxManager(make_settings())
    job = Job(id="remote", prompt="x", project=ProjectRef(repository_url=str(sample_repo.root)))

    with manager.session(job) as handle:
        assert handle.base_commit == sample_repo.head
        assert handle.repo.remote_url("origin") == str(sample_repo.root)


def test_clone_is_bounded_by_the_git_timeout(
    sample_repo: SampleRepo, make_settings: Callable[..., Settings], monkeypatch: pytest.MonkeyPatch
) -> None:
    seen: list[float | None] = []
    original = GitRepository.clone.__func__

    def recording_clone(cls, url, destination, **kwargs):
        seen.append(kwargs.get("timeout"))
        return original(cls, url, destination, **kwargs)

    monkeypatch.setattr(GitRepository, "clone", classmethod(recording_clone))
    manager = SandboxManager(make_settings(git_timeout=42.0))
    job = Job(id="remote", prompt="x", project=ProjectRef(repository_url=str(sample_repo.root)))

    with manager.session(job):
        pass

    assert seen == [42.0]
