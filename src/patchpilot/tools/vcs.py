"""Minimal git helpers
The helpers below provide just enough structure to branch a sandbox, commit
verified changes, and roll the working tree back to a known-good checkpoint.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Sequence

import os
import subprocess
import tempfile
import time


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


def _decode(payload: bytes | None) -> str:
    return payload.decode("utf-8", errors="replace") if payload else ""


def run_git(
    args: Sequence[str],
    *,
    cwd: Path,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    redact: Sequence[str] = (),
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run ``git`` with ``args`` in ``cwd`` and decode its output.

    ``redact`` lists secrets that must not appear in raised error messages.
    ``timeout`` bounds commands that talk to a remote; expiry raises ``GitError``.
    """

    def _redacted(text: str) -> str:
        for secret in redact:
            if secret:
                text = text.replace(secret, "***")
        return text

    command = ["git", *args]
    merged_env = None
    if env:
        merged_env = os.environ.copy()
        merged_env.update(env)
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
            env=merged_env,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as error:
        raise GitError(_redacted(f"git {' '.join(args)} timed out after {timeout:g}s")) from error
    result = subprocess.CompletedProcess(
        process.args, process.returncode, _decode(process.stdout), _decode(process.stderr)
    )
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(_redacted(f"git {' '.join(args)} failed: {message}"))
    return result


@dataclass(slots=True)
class GitCheckpoint:
    """Snapshot of the sandbox at a point in time.

    The checkpoint records the current ``HEAD`` commit and, when the working
    tree holds uncommitted files, a tree object capturing them.  Rolling back
    resets to that commit (dropping any commit made after it), removes
    untracked files that appeared since and puts the captured files back.
    """

    repo: "GitRepository"
    label: str
    head: str | None
    created_at: float
    worktree: str | None = None

    def rollback(self) -> None:
        """Restore the repository to the checkpoint."""

        self.repo.restore_checkpoint(self)


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def initialise(
        cls,
        root: Path | str,
        *,
        author_name: str = "patchpilot",
        author_email: str = "patchpilot@example.com",
    ) -> "GitRepository":
        """Initialise a git repository at ``root`` and commit its current files."""

        path = Path(root).resolve()
        path.mkdir(parents=True, exist_ok=True)
        run_git(["init"], cwd=path)
        run_git(["config", "user.email", author_email], cwd=path)
        run_git(["config", "user.name", author_name], cwd=path)
        run_git(["add", "--all"], cwd=path)
        run_git(["commit", "--allow-empty", "-m", "Initial commit"], cwd=path)
        return cls(path)

    @classmethod
    def clone(
        cls,
        url: str,
        destination: Path | str,
        *,
        branch: str | None = None,
        redact: Sequence[str] = (),
        timeout: float | None = None,
    ) -> "GitRepository":
        """Clone ``url`` into ``destination`` without ever prompting for credentials."""

        target = Path(destination).resolve()
        args: List[str] = ["clone"]
        if branch:
            args.extend(["--branch", branch])
        args.extend([url, target.as_posix()])
        run_git(
            args,
            cwd=target.parent,
            env={"GIT_TERMINAL_PROMPT": "0"},
            redact=redact,
            timeout=timeout,
        )
        return cls(target)

    # ------------------------------------------------------------------ git IO
    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return run_git(list(args), cwd=self.root, check=check)

    def ensure_identity(self, name: str, email: str) -> None:
        """Set a local commit identity so commits never depend on global config."""

        self.git("config", "--local", "user.name", name)
        self.git("config", "--local", "user.email", email)

    # -------------------------------------------------------------- branches
    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self.git("rev-parse", "--abbrev-ref", "HEAD", check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def create_branch(self, name: str, *, start_point: str | None = None) -> None:
        """Create and check out ``name``, reusing it when it already exists."""

        args: List[str] = ["checkout", "-b", name]
        if start_point:
            args.append(start_point)
        created = self.git(*args, check=False)
        if created.returncode != 0:
            self.git("checkout", name)

    def head(self) -> str | None:
        result = self.git("rev-parse", "--verify", "HEAD", check=False)
        if result.returncode != 0:
            return None
        head = result.stdout.strip()
        return head or None

    # ------------------------------------------------------------- repo status
    def status_entries(self) -> List[tuple[str, Path]]:
        """Return raw porcelain status entries as ``(status, path)`` pairs."""

        result = self.git("status", "--porcelain", "--untracked-files=all")
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            status_clean = status.strip() or status
            entries.append((status_clean, Path(raw_path.strip().strip('"'))))
        return entries

    def has_changes(self) -> bool:
        """Return ``True`` when there are working tree changes."""

        return bool(self.status_entries())

    # ------------------------------------------------------------- checkpoints
    def create_checkpoint(self, label: str | None = None) -> GitCheckpoint:
        """Record the current ``HEAD`` and any uncommitted files as the last known-good state."""

        head = self.head()
        return GitCheckpoint(
            repo=self,
            label=label or head or "working-tree",
            head=head,
            created_at=time.time(),
            worktree=self.snapshot_worktree() if self.has_changes() else None,
        )

    def snapshot_worktree(self) -> str:
        """Write the working tree, untracked files included, to a tree object.

        A scratch index is used so the real index and ``HEAD`` are untouched.
        """

        with tempfile.TemporaryDirectory(prefix="patchpilot-index-") as scratch:
            env = {"GIT_INDEX_FILE": str(Path(scratch) / "index")}
            head = self.head()
            if head:
                run_git(["read-tree", head], cwd=self.root, env=env)
            run_git(["add", "--all"], cwd=self.root, env=env)
            return run_git(["write-tree"], cwd=self.root, env=env).stdout.strip()

    def restore_checkpoint(self, checkpoint: GitCheckpoint) -> None:
        """Restore the repository to the state captured by ``checkpoint``."""

        if checkpoint.repo is not self:
            raise GitError("Checkpoint does not belong to this repository.")

        if checkpoint.head:
            self.git("reset", "--hard", checkpoint.head)
        else:
            self.git("reset", "--hard")

        # untracked files and the directories holding them
        self.git("clean", "-fd")
        if checkpoint.worktree:
            self._restore_worktree(checkpoint.worktree, checkpoint.head)

    def _restore_worktree(self, tree: str, head: str | None) -> None:
        with tempfile.TemporaryDirectory(prefix="patchpilot-index-") as scratch:
            env = {"GIT_INDEX_FILE": str(Path(scratch) / "index")}
            run_git(["read-tree", tree], cwd=self.root, env=env)
            run_git(["checkout-index", "--all", "--force"], cwd=self.root, env=env)
        self.git("update-index", "-q", "--refresh", check=False)
        if head:
            removed = self.git("diff", "--name-only", "--diff-filter=D", head, tree).stdout
            for line in removed.splitlines():
                if line.strip():
                    (self.root / line).unlink(missing_ok=True)

    # ----------------------------------------------------------- diff helpers
    def diff(self, *refs: str) -> str:
        """Return the unified diff between ``refs`` (defaults to the working tree)."""

        return self.git("diff", *refs).stdout

    def changed_files(self, base: str, head: str = "HEAD") -> List[Path]:
        """Return the paths that differ between ``base`` and ``head``."""

        result = self.git("diff", "--name-only", base, head)
        return [Path(line) for line in result.stdout.splitlines() if line.strip()]

    # -------------------------------------------------------------- commits
    def commit_staged(self, message: str) -> str | None:
        """Commit what is in the index, leaving other working tree changes alone.

        Returns the new commit SHA, or ``None`` when nothing is staged.
        """

        if self.git("diff", "--cached", "--quiet", check=False).returncode == 0:
            return None
        self.git("commit", "-m", message)
        return self.head()

    def tag(self, name: str, ref: str = "HEAD") -> None:
        self.git("tag", "--force", name, ref)

    # -------------------------------------------------------------- remotes
    def remote_url(self, remote: str = "origin") -> str | None:
        result = self.git("remote", "get-url", remote, check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def push(
        self,
        remote: str,
        branch: str,
        *,
        set_upstream: bool = False,
        force: bool = False,
        redact: Sequence[str] = (),
        timeout: float | None = None,
    ) -> None:
        """Push ``branch`` to ``remote`` applying requested flags."""

        args: List[str] = ["push"]
        if set_upstream:
            args.append("-u")
        if force:
            args.append("--force")
        args.extend([remote, branch])
        run_git(
            args,
            cwd=self.root,
            env={"GIT_TERMINAL_PROMPT": "0"},
            redact=redact,
            timeout=timeout,
        )


__all__ = ["GitCheckpoint", "GitError", "GitRepository", "run_git"]
