"""Disposable per-job working copies."""

from __future__ import annotations

import logging
import re
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from .config import Settings
from .schema import Job
from .tools.git_url import build_credentialed_url, sanitize_repo_url
from .tools.vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

_BRANCH_UNSAFE = re.compile(r"[^A-Za-z0-9._/-]+")
_COPY_IGNORE = shutil.ignore_patterns("node_modules", "__pycache__", ".venv")


class SandboxError(RuntimeError):
    """Raised when a sandbox cannot be created; the job cannot proceed."""


def branch_name_for(job_id: str) -> str:
    """Return the throwaway branch name for ``job_id``."""
    slug = _BRANCH_UNSAFE.sub("-", job_id).strip("-./") or "job"
    return f"patchpilot/{slug}"


@dataclass(slots=True)
class SandboxHandle:
    """A populated sandbox bound to one job."""

    job_id: str
    root: Path
    repo: GitRepository
    branch: str
    base_branch: str | None
    base_commit: str | None


class SandboxManager:
    """Create and destroy sandboxes under ``settings.sandbox_root``."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def acquire(self, job: Job) -> SandboxHandle:
        """Materialise a fresh sandbox for ``job`` on its own branch."""

        parent = Path(self.settings.sandbox_root)
        parent.mkdir(parents=True, exist_ok=True)
        slug = _BRANCH_UNSAFE.sub("-", job.id).strip("-") or "job"
        root = Path(tempfile.mkdtemp(prefix=f"patchpilot-{slug}-", dir=parent))
        try:
            repo = self._populate(job, root / "repo")
            repo.ensure_identity(self.settings.git_author_name, self.settings.git_author_email)
            base_branch = job.project.base_branch or repo.current_branch()
            branch = branch_name_for(job.id)
            repo.create_branch(branch)
            handle = SandboxHandle(
                job_id=job.id,
                root=root,
                repo=repo,
                branch=branch,
                base_branch=base_branch,
                base_commit=repo.head(),
            )
        except SandboxError:
            shutil.rmtree(root, ignore_errors=True)
            raise
        except (GitError, OSError) as error:
            shutil.rmtree(root, ignore_errors=True)
            raise SandboxError(f"Failed to create sandbox for job {job.id}: {error}") from error
        LOGGER.info("Sandbox for job %s ready at %s on %s", job.id, handle.repo.root, branch)
        return handle

    def release(self, handle: SandboxHandle) -> None:
        """Delete the sandbox directory; safe to call more than once."""

        shutil.rmtree(handle.root, ignore_errors=True)
        LOGGER.debug("Released sandbox %s", handle.root)

    @contextmanager
    def session(self, job: Job) -> Iterator[SandboxHandle]:
        """Yield a sandbox that is removed on every exit path."""

        handle = self.acquire(job)
        try:
            yield handle
        finally:
            self.release(handle)

    # --------------------------------------------------------------- internals
    def _populate(self, job: Job, destination: Path) -> GitRepository:
        project = job.project
        if project.repository_url:
            token = self.settings.github_token
            url = build_credentialed_url(project.repository_url, token)
            LOGGER.info("Cloning %s for job %s", sanitize_repo_url(project.repository_url), job.id)
            return GitRepository.clone(
                url,
                destination,
                branch=project.base_branch,
                redact=[token] if token else [],
                timeout=self.settings.git_timeout,
            )

        source = Path(project.local_path or "").expanduser()
        if not source.is_dir():
            raise SandboxError(f"Local project path does not exist: {source}")
        LOGGER.info("Copying %s for job %s", source, job.id)
        shutil.copytree(source, destination, symlinks=True, ignore=_COPY_IGNORE)
        if (destination / ".git").exists():
            repo = GitRepository(destination)
            # index mirrors HEAD so job commits hold only their own diff
            repo.git("reset", "--quiet", check=False)
            if project.base_branch and repo.current_branch() != project.base_branch:
                repo.git("checkout", project.base_branch)
            return repo
        return GitRepository.initialise(
            destination,
            author_name=self.settings.git_author_name,
            author_email=self.settings.git_author_email,
        )


__all__ = ["SandboxError", "SandboxHandle", "SandboxManager", "branch_name_for"]
