from __future__ import annotations

import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from patchpilot.config import Settings  # noqa: E402

APP_JS = textwrap.dedent(
    """
    // Sample service module
    const DEFAULT = 0;

    function describe(x) {
      return `value: ${x}`;
    }

    function getValue(x) {
      // read the value
      return x.value;
    }

    module.exports = { describe, getValue };
    """
).lstrip()

NULL_CHECK_DIFF = textwrap.dedent(
    """
    diff --git a/src/app.js b/src/app.js
    --- a/src/app.js
    +++ b/src/app.js
    @@ -8,4 +8,5 @@
     function getValue(x) {
       // read the value
    -  return x.value;
    +  if (x == null) return DEFAULT;
    +  return x.value;
     }
    """
).lstrip()


@dataclass(slots=True)
class SampleRepo:
    """Small committed JavaScript project used as a job target."""

    root: Path

    def git(self, *args: str) -> str:
        result = subprocess.run(
            ["git", *args],
            cwd=self.root,
            check=True,
            capture_output=True,
            text=True,
        )
        return result.stdout.strip()

    @property
    def head(self) -> str:
        return self.git("rev-parse", "HEAD")

    def commits_since(self, base: str, ref: str = "HEAD") -> int:
        return int(self.git("rev-list", "--count", f"{base}..{ref}"))

    def read(self, relative: str) -> str:
        return (self.root / relative).read_text(encoding="utf-8")


@pytest.fixture()
def sample_repo(tmp_path: Path) -> SampleRepo:
    """Create a git repository holding ``src/app.js`` and a notes file."""

    repo_root = tmp_path / "project"
    (repo_root / "src").mkdir(parents=True)
    (repo_root / "src" / "app.js").write_text(APP_JS, encoding="utf-8")
    (repo_root / "notes.txt").write_text("one\ntwo\n", encoding="utf-8")

    repo = SampleRepo(root=repo_root)
    repo.git("init")
    repo.git("symbolic-ref", "HEAD", "refs/heads/main")
    repo.git("config", "user.email", "agent@example.com")
    repo.git("config", "user.name", "Patch Pilot")
    repo.git("add", ".")
    repo.git("commit", "-m", "Initial sample project")
    return repo


@pytest.fixture()
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Return a factory for settings whose output paths live under ``tmp_path``."""

    def factory(**overrides: Any) -> Settings:
        values: dict[str, Any] = {
            "sandbox_root": tmp_path / "sandboxes",
            "patches_dir": tmp_path / "patches",
            "jobs_dir": tmp_path / "jobs",
        }
        values.update(overrides)
        return Settings.model_validate(values)

    return factory
