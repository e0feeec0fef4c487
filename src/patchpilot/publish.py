"""Deliver a verified branch: open a GitHub pull request or copy back to a local path."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Optional

import requests

from .config import Settings
from .sandbox import SandboxHandle
from .schema import Job
from .tools.git_url import build_credentialed_url, parse_github_repo
from .tools.vcs import GitError, run_git

LOGGER = logging.getLogger(__name__)

PublicationKind = Literal["pull_request", "local_copy", "none"]
_TITLE_LIMIT = 60


class PublicationError(RuntimeError):
    """Raised when the verified branch cannot be delivered."""


@dataclass(slots=True)
class PublicationResult:
    """Where the verified change ended up."""

    kind: PublicationKind
    url: Optional[str] = None
    local_path: Optional[Path] = None
    branch: Optional[str] = None

    def describe(self) -> str:
        if self.kind == "pull_request":
            return f"Pull request opened: {self.url}"
        if self.kind == "local_copy":
            return f"Local project updated in place: {self.local_path}"
        return "No publication target configured; branch kept in the sandbox only."


def pull_request_title(prompt: str) -> str:
    head = prompt.strip().replace("\n", " ")
    if len(head) > _TITLE_LIMIT:
        return f"patchpilot: {head[:_TITLE_LIMIT]}..."
    return f"patchpilot: {head}"


def pull_request_body(
    job: Job,
    *,
    iterations: int,
    source_branch: str,
    target_branch: str,
    preflight_summary: str,
) -> str:
    return "\n".join(
        [
            "## Automated change",
            "",
            f"**Job ID:** {job.id}",
            f"**Iterations:** {iterations}",
            f"**Source Branch:** `{source_branch}`",
            f"**Target Branch:** `{target_branch}`",
            "",
            "### Original Prompt",
            "",
            job.prompt.strip(),
            "",
            "### Preflight Results",
            "",
            "```",
            preflight_summary.strip() or "No preflight stages configured.",
            "```",
        ]
    )


class Publisher:
    """Publish a sandbox branch according to the job's project descriptor."""

    def __init__(self, settings: Settings, *, session: requests.Session | None = None) -> None:
        self.settings = settings
        self._session = session or requests.Session()

    def publish(
        self,
        handle: SandboxHandle,
        job: Job,
        *,
        iterations: int,
        preflight_summary: str = "",
    ) -> PublicationResult:
        if self._github_reference(job) is not None:
            return self._open_pull_request(handle, job, iterations=iterations, preflight_summary=preflight_summary)
        if job.project.local_path:
            return self._copy_back(handle, Path(job.project.local_path))
        LOGGER.info("Job %s has no publication target", job.id)
        return PublicationResult(kind="none", branch=handle.branch)

    # ---------------------------------------------------------------- GitHub
    @staticmethod
    def _github_reference(job: Job) -> tuple[str, str] | None:
        if job.project.github_repo:
            return parse_github_repo(job.project.github_repo)
        url = job.project.repository_url or ""
        if "github.com" in url:
            return parse_github_repo(url)
        return None

    def _open_pull_request(
        self,
        handle: SandboxHandle,
        job: Job,
        *,
        iterations: int,
        preflight_summary: str,
    ) -> PublicationResult:
        parsed = self._github_reference(job)
        if parsed is None:
            raise PublicationError(f"Not a GitHub repository reference: {job.project.github_repo}")
        owner, repo = parsed
        token = self.settings.github_token
        if not token:
            raise PublicationError("GITHUB_TOKEN is required to open a pull request.")

        remote = build_credentialed_url(f"https://github.com/{owner}/{repo}", token)
        try:
            if handle.repo.remote_url("origin") is None:
                handle.repo.git("remote", "add", "origin", remote)
            else:
                handle.repo.git("remote", "set-url", "origin", remote)
            handle.repo.push(
                "origin",
                handle.branch,
                set_upstream=True,
                force=True,
                redact=[token],
                timeout=self.settings.git_timeout,
            )
        except GitError as error:
            raise PublicationError(str(error).replace(token, "***")) from error

        target_branch = job.project.base_branch or handle.base_branch or "main"
        payload = {
            "title": pull_request_title(job.prompt),
            "head": handle.branch,
            "base": target_branch,
            "body": pull_request_body(
                job,
                iterations=iterations,
                source_branch=handle.branch,
                target_branch=target_branch,
                preflight_summary=preflight_summary,
            ),
        }
        url = f"{self.settings.github_api_url.rstrip('/')}/repos/{owner}/{repo}/pulls"
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": "patchpilot",
        }
        try:
            response = self._session.post(url, json=payload, headers=headers, timeout=30)
        except requests.RequestException as error:
            raise PublicationError(f"Failed to reach the GitHub API: {error}") from error
        if response.status_code not in (200, 201):
            raise PublicationError(
                f"GitHub rejected the pull request (HTTP {response.status_code}): {response.text[:500]}"
            )
        pr_url = response.json().get("html_url")
        LOGGER.info("Opened pull request %s for job %s", pr_url, job.id)
        return PublicationResult(kind="pull_request", url=pr_url, branch=handle.branch)

    # ----------------------------------------------------------------- local
    def _copy_back(self, handle: SandboxHandle, target: Path) -> PublicationResult:
        target = target.expanduser()
        try:
            shutil.copytree(
                handle.repo.root,
                target,
                symlinks=True,
                dirs_exist_ok=True,
                ignore=shutil.ignore_patterns(".git"),
            )
        except (OSError, shutil.Error) as error:
            raise PublicationError(f"Failed to copy the sandbox back to {target}: {error}") from error
        if (target / ".git").exists():
            # history travels through git; the target's HEAD stays where it was
            try:
                run_git(
                    ["fetch", "--tags", handle.repo.root.as_posix(), f"+{handle.branch}:{handle.branch}"],
                    cwd=target,
                    timeout=self.settings.git_timeout,
                )
            except GitError as error:
                raise PublicationError(f"Failed to fetch {handle.branch} into {target}: {error}") from error
        LOGGER.info("Copied sandbox for job %s back to %s", handle.job_id, target)
        return PublicationResult(kind="local_copy", local_path=target, branch=handle.branch)


__all__ = [
    "PublicationError",
    "PublicationResult",
    "Publisher",
    "pull_request_body",
    "pull_request_title",
]
