"""Collect a bounded, deterministic snapshot of files relevant to a request."""

from __future__ import annotations

import logging
import os
import posixpath
import re
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Sequence

LOGGER = logging.getLogger(__name__)

_STOPWORDS = frozenset({"the", "this", "that", "with", "from", "for", "and", "or"})
_KEYWORD_RE = re.compile(r"\b[a-z]{4,}\b")
_MAX_KEYWORDS = 5
_TRUNCATION_MARKER = "\n... [truncated]"

_JS_IMPORT_RE = re.compile(r"import\s+[^;]*?from\s+['\"](.+?)['\"]")
_JS_REQUIRE_RE = re.compile(r"require\(['\"](.+?)['\"]\)")
_PY_IMPORT_RE = re.compile(r"^\s*from\s+(\.+[\w.]*)\s+import\s+([\w, ]+)", re.MULTILINE)


@dataclass(slots=True)
class RepoContext:
    """Relative path to content mapping bounded by a character budget."""

    files: Dict[str, str] = field(default_factory=dict)
    total_chars: int = 0
    truncated: bool = False

    def paths(self) -> List[str]:
        return sorted(self.files)

    def format(self) -> str:
        return format_context(self.files)


class ContextBuilder:
    """Scan a sandbox for files matching the request's keywords.

    Discovery uses ``rg`` when it is installed and an equivalent Python walk
    otherwise.  When nothing matches, common entry points and finally the
    README or package manifest are used so the model always sees something.
    """

    CODE_SUFFIXES = (".js", ".ts", ".jsx", ".tsx", ".py", ".go", ".java", ".c", ".cpp", ".h", ".hpp")
    ENTRY_POINTS = (
        "index.js",
        "index.ts",
        "main.js",
        "main.ts",
        "app.js",
        "app.ts",
        "main.py",
        "app.py",
        "src/index.js",
        "src/index.ts",
        "src/main.js",
        "src/main.ts",
        "apps/web/src/App.tsx",
        "apps/web/src/App.jsx",
        "apps/web/src/main.tsx",
        "apps/web/src/main.jsx",
        "apps/web/index.html",
        "apps/web/package.json",
        "apps/web/vite.config.ts",
        "apps/web/vite.config.js",
    )
    FALLBACK_FILES = ("README.md", "package.json", "pyproject.toml", "readme.md", "README", "README.txt")
    EXCLUDED_DIRS = frozenset(
        {
            ".git",
            ".hg",
            ".svn",
            "__pycache__",
            ".mypy_cache",
            ".ruff_cache",
            ".pytest_cache",
            ".venv",
            "venv",
            "node_modules",
            "dist",
            "build",
        }
    )
    _RESOLVE_SUFFIXES = ("", ".js", ".ts", ".jsx", ".tsx", ".py", "/index.js", "/index.ts", "/__init__.py")

    def __init__(self, max_chars: int = 50_000, *, use_ripgrep: bool = True) -> None:
        self.max_chars = max_chars
        self.use_ripgrep = use_ripgrep and shutil.which("rg") is not None

    def build(self, repo_root: Path | str, prompt: str) -> RepoContext:
        root = Path(repo_root)
        keywords = extract_keywords(prompt)
        LOGGER.debug("Context keywords for %s: %s", root, ", ".join(keywords) or "(none)")

        discovered: set[str] = set()
        for keyword in keywords:
            matches = self._search(root, keyword)
            LOGGER.debug("Keyword %r matched %d file(s)", keyword, len(matches))
            discovered.update(matches)

        if not discovered:
            discovered.update(entry for entry in self.ENTRY_POINTS if (root / entry).is_file())
        if not discovered:
            discovered.update(entry for entry in self.FALLBACK_FILES if (root / entry).is_file())
        if not discovered:
            LOGGER.warning("No context files found in %s", root)

        context = RepoContext()
        visited: set[str] = set()
        for relative in sorted(discovered):
            if context.truncated:
                break
            self._add_with_imports(root, relative, context, visited, follow_imports=True)
        LOGGER.info(
            "Context built: %d file(s), %d chars%s",
            len(context.files),
            context.total_chars,
            " (truncated)" if context.truncated else "",
        )
        return context

    # ----------------------------------------------------------------- search
    def _search(self, root: Path, keyword: str) -> List[str]:
        if self.use_ripgrep:
            globs: List[str] = []
            for suffix in self.CODE_SUFFIXES:
                globs.extend(["-g", f"*{suffix}"])
            result = subprocess.run(
                ["rg", "-l", "-i", "--fixed-strings", *globs, keyword],
                cwd=root,
                capture_output=True,
                text=True,
                check=False,
            )
            # exit code 1 means no matches
            if result.returncode in (0, 1):
                return [line.strip() for line in result.stdout.splitlines() if line.strip()]
            LOGGER.debug("rg failed (%s); falling back to a Python scan", result.returncode)
        return self._scan(root, keyword)

    def _scan(self, root: Path, keyword: str) -> List[str]:
        needle = keyword.lower()
        found: List[str] = []
        for path in self._iter_code_files(root):
            try:
                text = path.read_text(encoding="utf-8", errors="ignore")
            except OSError:
                continue
            if needle in text.lower():
                found.append(path.relative_to(root).as_posix())
        return found

    def _iter_code_files(self, root: Path) -> Iterable[Path]:
        for current, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(name for name in dirnames if name not in self.EXCLUDED_DIRS)
            for name in sorted(filenames):
                if name.endswith(self.CODE_SUFFIXES):
                    yield Path(current) / name

    # ---------------------------------------------------------------- content
    def _add_with_imports(
        self,
        root: Path,
        relative: str,
        context: RepoContext,
        visited: set[str],
        *,
        follow_imports: bool,
    ) -> None:
        if relative in visited or context.truncated:
            return
        visited.add(relative)
        path = root / relative
        if not path.is_file():
            LOGGER.debug("Skipping %s: not a regular file", relative)
            return
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as error:
            LOGGER.debug("Skipping %s: %s", relative, error)
            return

        remaining = self.max_chars - context.total_chars
        if len(content) > remaining:
            context.truncated = True
            if remaining <= len(_TRUNCATION_MARKER):
                return
            content = content[: remaining - len(_TRUNCATION_MARKER)] + _TRUNCATION_MARKER
        context.files[relative] = content
        context.total_chars += len(content)

        if not follow_imports:
            return
        for target in self._resolve_imports(root, relative, content):
            self._add_with_imports(root, target, context, visited, follow_imports=False)

    def _resolve_imports(self, root: Path, relative: str, content: str) -> List[str]:
        base_dir = posixpath.dirname(relative)
        candidates: List[str] = []
        if relative.endswith((".js", ".jsx", ".ts", ".tsx")):
            for pattern in (_JS_IMPORT_RE, _JS_REQUIRE_RE):
                candidates.extend(
                    posixpath.normpath(posixpath.join(base_dir, specifier))
                    for specifier in pattern.findall(content)
                    if specifier.startswith(".")
                )
        elif relative.endswith(".py"):
            for module, names in _PY_IMPORT_RE.findall(content):
                candidates.extend(_python_module_paths(base_dir, module, names))

        resolved: List[str] = []
        for candidate in candidates:
            if candidate.startswith(".."):
                continue
            for suffix in self._RESOLVE_SUFFIXES:
                module_path = f"{candidate}{suffix}"
                if (root / module_path).is_file():
                    if module_path not in resolved:
                        resolved.append(module_path)
                    break
        return resolved


def _python_module_paths(base_dir: str, module: str, names: str) -> List[str]:
    dots = len(module) - len(module.lstrip("."))
    package_dir = base_dir
    for _ in range(dots - 1):
        package_dir = posixpath.dirname(package_dir)
    remainder = module[dots:].replace(".", "/")
    if remainder:
        return [posixpath.normpath(posixpath.join(package_dir, remainder))]
    # "from . import a, b" names sibling modules
    return [
        posixpath.normpath(posixpath.join(package_dir, name.strip()))
        for name in names.split(",")
        if name.strip()
    ]


def extract_keywords(prompt: str) -> List[str]:
    """Return up to five distinct lowercase words of four or more letters."""
    keywords: List[str] = []
    for word in _KEYWORD_RE.findall(prompt.lower()):
        if word in _STOPWORDS or word in keywords:
            continue
        keywords.append(word)
        if len(keywords) >= _MAX_KEYWORDS:
            break
    return keywords


def format_context(files: Dict[str, str] | Sequence[tuple[str, str]]) -> str:
    items = files.items() if isinstance(files, dict) else files
    return "".join(f"\n--- {path} ---\n{content}\n" for path, content in sorted(items))


__all__ = ["ContextBuilder", "RepoContext", "extract_keywords", "format_context"]
