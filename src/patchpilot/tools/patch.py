"""Unified diff validation and application with guard rails for generated patches.

Candidate diffs returned by the generator are untrusted text.  They travel
through six stages (normalize, extract, sanitize, structural validation,
applicability, pre-apply sanity) and come out as one of three outcomes:
``NoChanges``, ``Rejected`` or ``Applicable``.  Only an ``Applicable`` diff is
handed to :func:`apply_patch`.
"""

from __future__ import annotations

import json
import logging
import re
import subprocess
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, List, Mapping, Sequence, Set, Tuple, Union


class PatchError(RuntimeError):
    """Raised when a patch fails validation or application."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


NO_CHANGES_TOKEN = "NO_CHANGES"

TELEMETRY_LOGGER = logging.getLogger("patchpilot.telemetry")
LOGGER = logging.getLogger(__name__)

_DEFAULT_MAX_DIFF_LINES = 5_000
_DEFAULT_MAX_DIFF_CHARS = 200_000

_DIFF_HEADER = re.compile(r"^diff --git (\S+) (\S+)$")
_DIFF_HEADER_SPACED = re.compile(r"^diff --git a/(.+) b/(.+)$")
_DIFF_HEADER_START = re.compile(r"^diff --git ", re.MULTILINE)
_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@(?P<section>.*)$"
)
_PATCH_FAILED_RE = re.compile(r"error: patch failed: (?P<path>.+?)(?::(?P<line>\d+))?$")
_PATCH_DOES_NOT_APPLY_RE = re.compile(r"error: (?P<path>.+?): patch does not apply")
_HUNK_FAILED_RE = re.compile(r"error: (?P<path>.+?): hunk #(?P<hunk>\d+) failed at (?P<line>-?\d+)")

_COMMENTARY_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^Here's",
        r"^Here is",
        r"^Sure",
        r"^I'll",
        r"^Let me",
        r"^I've",
        r"^I have",
        r"^This (diff|patch|change)",
        r"^The (diff|patch|change)",
        r"^Below is",
        r"^Above is",
    )
)
_DELETION_KEYWORDS = ("delete", "remove", "drop", "eliminate", "get rid of", "take out", "rm ", "unlink")

_HEADER_PREFIXES = (
    "diff --git ",
    "index ",
    "--- ",
    "+++ ",
    "new file mode",
    "deleted file mode",
    "old mode",
    "new mode",
    "similarity index",
    "dissimilarity index",
    "rename from",
    "rename to",
    "copy from",
    "copy to",
    "Binary files",
    "GIT binary patch",
)
_BODY_PREFIXES = ("+", "-", " ", "\\")


# ---------------------------------------------------------------- outcomes
@dataclass(slots=True, frozen=True)
class NoChanges:
    """The generator deliberately reported that nothing needs to change."""

    reason: str = "Generator reported no changes are required."


@dataclass(slots=True, frozen=True)
class Rejected:
    """The diff is unusable; nothing was mutated."""

    reason: str
    stage: str


@dataclass(slots=True, frozen=True)
class Applicable:
    """The diff survived every stage and is safe to hand to ``git apply``."""

    diff: str
    paths: Tuple[Path, ...]
    adjustments: Tuple[str, ...] = ()


ValidationOutcome = Union[NoChanges, Rejected, Applicable]


@dataclass(slots=True, frozen=True)
class DiffLimits:
    """Policy ceilings enforced by the pre-apply sanity stage."""

    max_lines: int = _DEFAULT_MAX_DIFF_LINES
    max_chars: int = _DEFAULT_MAX_DIFF_CHARS


# ------------------------------------------------------------ parsed model
@dataclass(slots=True)
class Hunk:
    """Single ``@@`` block of a file section."""

    index: int
    line_no: int
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: List[str] = field(default_factory=list)

    def old_side(self) -> List[str]:
        return [line[1:] for line in self.lines if line[:1] in {" ", "-"}]

    def body_counts(self) -> tuple[int, int]:
        return _count_body(self.lines)


@dataclass(slots=True)
class FileBlock:
    """One ``diff --git`` section."""

    line_no: int
    old_path: Path | None
    new_path: Path | None
    is_new: bool = False
    is_deleted: bool = False
    is_binary: bool = False
    is_rename: bool = False
    has_mode_change: bool = False
    has_old_header: bool = False
    has_new_header: bool = False
    hunks: List[Hunk] = field(default_factory=list)

    @property
    def path(self) -> Path:
        target = self.old_path if self.is_deleted else (self.new_path or self.old_path)
        if target is None:
            raise PatchError(f"File block at line {self.line_no} names no path.")
        return target

    @property
    def label(self) -> str:
        return self.path.as_posix()


@dataclass(slots=True)
class PatchTelemetry:
    """Structured telemetry for patch validation and application."""

    patch_path: Path | None = None
    patch_bytes: int = 0
    patch_lines: int = 0
    check_returncode: int | None = None
    check_stdout: str = ""
    check_stderr: str = ""
    failing_hunks: Tuple[Mapping[str, Any], ...] = ()
    touched_paths: Tuple[Path, ...] = ()

    def failed_files(self) -> List[str]:
        """Return the distinct files git reported as failing, in report order."""

        seen: List[str] = []
        for entry in self.failing_hunks:
            path = str(entry.get("path") or "").strip()
            if path and path not in seen:
                seen.append(path)
        return seen

    def to_dict(self) -> dict[str, Any]:
        return {
            "patch_path": self.patch_path.as_posix() if self.patch_path else None,
            "patch_bytes": self.patch_bytes,
            "patch_lines": self.patch_lines,
            "check": {
                "returncode": self.check_returncode,
                "stdout": self.check_stdout,
                "stderr": self.check_stderr,
            },
            "failing_hunks": [dict(item) for item in self.failing_hunks],
            "touched_paths": [path.as_posix() for path in self.touched_paths],
        }


@dataclass(slots=True)
class PatchResult:
    """Outcome of applying a patch to the repository."""

    command: Tuple[str, ...]
    paths: Tuple[Path, ...]
    stdout: str
    stderr: str
    telemetry: PatchTelemetry | None = None


# --------------------------------------------------------------- telemetry
def _serialise_event_value(value: Any) -> Any:
    """Convert telemetry payload values into JSON-friendly representations."""
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def _emit_patch_event(event: str, **fields: Any) -> None:
    """Log structured telemetry events when validating or applying patches."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


def _parse_git_apply_failures(output: str) -> Tuple[Mapping[str, Any], ...]:
    """Parse git apply stderr for failing hunk metadata."""
    if not output:
        return ()
    entries: list[dict[str, Any]] = []
    for raw_line in output.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = _HUNK_FAILED_RE.match(line)
        if match:
            entries.append(
                {
                    "path": match.group("path"),
                    "hunk": int(match.group("hunk")),
                    "line": int(match.group("line")),
                    "reason": "hunk_failed",
                }
            )
            continue
        match = _PATCH_FAILED_RE.match(line)
        if match:
            line_text = match.group("line")
            entries.append(
                {
                    "path": match.group("path"),
                    "line": int(line_text) if line_text is not None else None,
                    "reason": "patch_failed",
                }
            )
            continue
        match = _PATCH_DOES_NOT_APPLY_RE.match(line)
        if match:
            entries.append({"path": match.group("path"), "reason": "does_not_apply"})
    return tuple(entries)


def failed_files_from_output(output: str) -> List[str]:
    """Return the files named in ``git apply`` error output."""

    return PatchTelemetry(failing_hunks=_parse_git_apply_failures(output)).failed_files()


# ----------------------------------------------------------------- helpers
def _normalise_diff_path(entry: str) -> Path | None:
    """Translate diff header operands into repository-relative paths."""
    entry = entry.strip()
    if entry == "/dev/null":
        return None
    if entry.startswith("a/") or entry.startswith("b/"):
        entry = entry[2:]
    if not entry:
        return None
    return Path(entry)


def _parse_diff_header(line: str) -> tuple[Path | None, Path | None] | None:
    match = _DIFF_HEADER.match(line) or _DIFF_HEADER_SPACED.match(line)
    if not match:
        return None
    return _normalise_diff_path(match.group(1)), _normalise_diff_path(match.group(2))


def _validate_paths(paths: Iterable[Path]) -> None:
    """Enforce path safety rules for diff entries."""
    for path in paths:
        if path.is_absolute():
            raise PatchError(f"Absolute paths are not permitted in patches: {path}")
        parts = list(path.parts)
        if any(part == ".." for part in parts):
            raise PatchError(f"Path escaping detected in patch: {path}")
        if parts and parts[0] == ".git":
            raise PatchError("Patches may not target the .git directory.")


def _default_count(value: str | None) -> int:
    """Return the number of lines represented in a hunk header."""
    return int(value) if value is not None else 1


def _format_range(start: str, original_count: str | None, actual: int) -> str:
    """Format an ``@@`` range using actual line counts."""
    if original_count is None and actual == 1:
        return start
    return f"{start},{actual}"


def _count_body(lines: Sequence[str]) -> tuple[int, int]:
    """Return ``(old, new)`` line counts represented by a hunk body."""
    old = new = 0
    for line in lines:
        prefix = line[:1]
        if prefix == " ":
            old += 1
            new += 1
        elif prefix == "-":
            old += 1
        elif prefix == "+":
            new += 1
    return old, new


def _split_diff_sections(lines: list[str]) -> list[tuple[int, int]]:
    """Identify line ranges corresponding to individual diff sections."""
    sections: list[tuple[int, int]] = []
    start: int | None = None
    for index, line in enumerate(lines):
        if line.startswith("diff --git "):
            if start is not None:
                sections.append((start, index))
            start = index
    if start is not None:
        sections.append((start, len(lines)))
    return sections


def _finish(lines: Sequence[str]) -> str:
    text = "\n".join(lines).rstrip("\n")
    return f"{text}\n" if text else ""


def _is_diff_syntax(line: str) -> bool:
    return line.startswith(_HEADER_PREFIXES) or line.startswith("@@") or line.startswith(_BODY_PREFIXES)


# ------------------------------------------------------- stage 1: normalize
def normalize_output(raw: str) -> tuple[str | NoChanges, list[str]]:
    """Strip prose and fencing around generator output and detect the sentinel."""

    adjustments: list[str] = []
    text = (raw or "").strip()
    if not text:
        raise PatchError("Generator returned empty output; expected a unified diff or NO_CHANGES.")

    body = text
    if body.startswith("```"):
        body = body.split("\n", 1)[1] if "\n" in body else ""
        adjustments.append("removed opening markdown fence")
    if body.rstrip().endswith("```") and body.rstrip().split("\n")[-1].strip() == "```":
        body = body.rstrip()[:-3]
        adjustments.append("removed closing markdown fence")
    body = body.strip("\n")

    header = _DIFF_HEADER_START.search(body)
    if body.strip() == NO_CHANGES_TOKEN or (header is None and NO_CHANGES_TOKEN in body):
        return NoChanges(), adjustments
    if header is None:
        raise PatchError("Output is not a unified diff: missing 'diff --git' header.")

    preamble = [line for line in body[: header.start()].splitlines() if line.strip()]
    if preamble:
        commentary = any(
            pattern.match(line.strip()) for line in preamble for pattern in _COMMENTARY_PATTERNS
        )
        kind = "commentary" if commentary else "text"
        adjustments.append(f"dropped {len(preamble)} line(s) of leading {kind}")
    return body[header.start():], adjustments


# --------------------------------------------------------- stage 2: extract
def extract_diff(text: str) -> tuple[str, list[str]]:
    """Cut trailing non-diff text after the last diff line; reject embedded fences."""

    lines = text.split("\n")
    last = -1
    for index, line in enumerate(lines):
        if _is_diff_syntax(line):
            last = index
    if last < 0:
        raise PatchError("Output is not a unified diff: no diff lines found.")

    adjustments: list[str] = []
    dropped = [line for line in lines[last + 1:] if line.strip()]
    if dropped:
        adjustments.append(f"dropped {len(dropped)} trailing line(s) of non-diff text")

    kept = lines[: last + 1]
    for index, line in enumerate(kept, start=1):
        if line.lstrip().startswith("```"):
            raise PatchError(f"Diff contains markdown code fences at line {index}.")
    return _finish(kept), adjustments


# -------------------------------------------------------- stage 3: sanitize
def _sanitize_hunk(header: str, body: list[str], location: str, adjustments: list[str]) -> list[str]:
    match = _HUNK_HEADER.match(header)
    if not match:
        return [header, *body]

    expected_old = _default_count(match.group("old_count"))
    expected_new = _default_count(match.group("new_count"))

    # trailing blank lines are separators unless the counts still need them
    trailing = 0
    while trailing < len(body) and body[len(body) - 1 - trailing] == "":
        trailing += 1
    core = body[: len(body) - trailing]
    old, new = _count_body([line if line else " " for line in core])
    restore = 0
    while restore < trailing and old + restore < expected_old and new + restore < expected_new:
        restore += 1
    core = core + [""] * restore

    repaired: list[str] = []
    blanks = 0
    for line in core:
        if line == "":
            blanks += 1
            repaired.append(" ")
        else:
            repaired.append(line)
    if blanks:
        adjustments.append(f"{location}: restored {blanks} blank context line(s)")

    seen_old, seen_new = _count_body(repaired)
    if (seen_old, seen_new) == (expected_old, expected_new):
        return [header, *repaired]
    if seen_old >= expected_old and seen_new >= expected_new:
        new_header = (
            f"@@ -{_format_range(match.group('old_start'), match.group('old_count'), seen_old)} "
            f"+{_format_range(match.group('new_start'), match.group('new_count'), seen_new)} @@"
            f"{match.group('section')}"
        )
        adjustments.append(
            f"{location}: adjusted hunk counts "
            f"(-{expected_old}/+{expected_new} -> -{seen_old}/+{seen_new})"
        )
        return [new_header, *repaired]
    # body shorter than declared: possibly truncated, leave for structural validation
    return [header, *repaired]


def sanitize_diff(text: str) -> tuple[str, list[str]]:
    """Repair header bookkeeping without touching hunk content."""

    adjustments: list[str] = []
    if "\r" in text:
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        adjustments.append("normalised line endings to LF")

    lines = text.split("\n")
    while lines and lines[-1] == "":
        lines.pop()

    output: list[str] = []
    for start, end in _split_diff_sections(lines):
        section = lines[start:end]
        first_hunk = next((i for i, line in enumerate(section) if line.startswith("@@")), len(section))
        header = section[:first_hunk]
        parsed = _parse_diff_header(header[0])
        location = parsed[1].as_posix() if parsed and parsed[1] else (
            parsed[0].as_posix() if parsed and parsed[0] else "<unknown>"
        )

        binary = any(line.startswith(("GIT binary patch", "Binary files")) for line in header)
        has_old = any(line.startswith("--- ") for line in header)
        has_new = any(line.startswith("+++ ") for line in header)
        if not binary:
            if any(line.startswith("--- /dev/null") for line in header) and not any(
                line.startswith("new file mode") for line in header
            ):
                header.insert(1, "new file mode 100644")
                adjustments.append(f"{location}: added missing 'new file mode' marker")
            if any(line.startswith("+++ /dev/null") for line in header) and not any(
                line.startswith("deleted file mode") for line in header
            ):
                header.insert(1, "deleted file mode 100644")
                adjustments.append(f"{location}: added missing 'deleted file mode' marker")
            if parsed and not has_old and not has_new and first_hunk < len(section):
                old_path, new_path = parsed
                is_new = any(line.startswith("new file mode") for line in header)
                is_deleted = any(line.startswith("deleted file mode") for line in header)
                header.append("--- /dev/null" if is_new or old_path is None else f"--- a/{old_path.as_posix()}")
                header.append("+++ /dev/null" if is_deleted or new_path is None else f"+++ b/{new_path.as_posix()}")
                adjustments.append(f"{location}: added missing ---/+++ headers")
        output.extend(header)

        index = first_hunk
        while index < len(section):
            hunk_header = section[index]
            index += 1
            body: list[str] = []
            while index < len(section) and not section[index].startswith("@@"):
                body.append(section[index])
                index += 1
            output.extend(_sanitize_hunk(hunk_header, body, location, adjustments))

    if not output:
        output = lines
    return _finish(output), adjustments


# ------------------------------------------------------ stage 4: structure
def parse_diff(text: str) -> List[FileBlock]:
    """Parse ``text`` into file blocks, raising :class:`PatchError` on malformed structure."""

    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    first = next((i for i, line in enumerate(lines) if line.strip()), None)
    if first is None:
        raise PatchError("Diff does not describe any file changes.")
    if not lines[first].startswith("diff --git "):
        raise PatchError("Diff contains content before the first diff --git header.")

    blocks: List[FileBlock] = []
    for start, end in _split_diff_sections(lines):
        parsed = _parse_diff_header(lines[start])
        if parsed is None:
            raise PatchError(f"Malformed diff header at line {start + 1}: {lines[start][:80]}")
        block = FileBlock(line_no=start + 1, old_path=parsed[0], new_path=parsed[1])
        if block.old_path is None and block.new_path is None:
            raise PatchError(f"Diff header at line {start + 1} names no file.")

        index = start + 1
        while index < end and not lines[index].startswith("@@"):
            line = lines[index]
            if line.startswith("new file mode") or line.startswith("--- /dev/null"):
                block.is_new = True
            elif line.startswith("deleted file mode") or line.startswith("+++ /dev/null"):
                block.is_deleted = True
            elif line.startswith(("rename from", "rename to", "copy from", "copy to")):
                block.is_rename = True
            elif line.startswith(("old mode", "new mode")):
                block.has_mode_change = True
            elif line.startswith(("GIT binary patch", "Binary files")):
                block.is_binary = True
            if line.startswith("--- "):
                block.has_old_header = True
            elif line.startswith("+++ "):
                block.has_new_header = True
            index += 1

        if block.is_binary:
            blocks.append(block)
            continue

        while index < end:
            header = lines[index]
            match = _HUNK_HEADER.match(header)
            if not match:
                raise PatchError(f"Malformed hunk header at line {index + 1}: {header[:80]}")
            hunk = Hunk(
                index=len(block.hunks) + 1,
                line_no=index + 1,
                old_start=int(match.group("old_start")),
                old_count=_default_count(match.group("old_count")),
                new_start=int(match.group("new_start")),
                new_count=_default_count(match.group("new_count")),
            )
            index += 1
            while index < end and not lines[index].startswith("@@"):
                line = lines[index]
                if not line.startswith(_BODY_PREFIXES):
                    raise PatchError(
                        f"Invalid diff line at {index + 1}: lines in hunks must start with "
                        f"'+', '-', ' ' or '\\'. Found: \"{line[:50]}\""
                    )
                hunk.lines.append(line)
                index += 1
            block.hunks.append(hunk)
        blocks.append(block)

    if not blocks:
        raise PatchError("Diff does not describe any file changes.")
    return blocks


def validate_structure(text: str) -> List[FileBlock]:
    """Check headers, hunk bookkeeping and path safety for every file block."""

    blocks = parse_diff(text)
    paths: Set[Path] = set()
    for block in blocks:
        for candidate in (block.old_path, block.new_path):
            if candidate is not None:
                paths.add(candidate)
        if block.is_binary:
            continue
        if block.hunks:
            if not block.has_old_header:
                raise PatchError(f"File block '{block.label}' (line {block.line_no}) is missing --- header.")
            if not block.has_new_header:
                raise PatchError(f"File block '{block.label}' (line {block.line_no}) is missing +++ header.")
        elif not (block.is_new or block.is_deleted or block.is_rename or block.has_mode_change):
            raise PatchError(f"File block '{block.label}' (line {block.line_no}) has no hunks (@@).")
        for hunk in block.hunks:
            seen_old, seen_new = hunk.body_counts()
            if (seen_old, seen_new) != (hunk.old_count, hunk.new_count):
                raise PatchError(
                    f"Hunk line count mismatch in {block.label} (hunk #{hunk.index}, line {hunk.line_no}): "
                    f"header declares -{hunk.old_count}/+{hunk.new_count} lines "
                    f"but the body has -{seen_old}/+{seen_new}."
                )
    _validate_paths(paths)
    return blocks


# --------------------------------------------------- stage 5: applicability
def _read_lines(path: Path) -> tuple[List[str], bool]:
    """Return the file's lines and whether every line ends in CRLF.

    Line endings are read as stored.  For a CRLF file the carriage return is
    dropped from each line so hunks (always LF after sanitizing) can be compared.
    """

    with path.open("r", encoding="utf-8", errors="surrogateescape", newline="") as handle:
        text = handle.read()
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    crlf = "\r\n" in text and text.count("\r\n") == text.count("\n")
    if crlf:
        lines = [line[:-1] if line.endswith("\r") else line for line in lines]
    return lines, crlf


def _ensure_confined(blocks: Sequence[FileBlock], root: Path) -> None:
    resolved_root = root.resolve()
    for block in blocks:
        for candidate in (block.old_path, block.new_path):
            if candidate is None:
                continue
            resolved = (resolved_root / candidate).resolve()
            if resolved != resolved_root and resolved_root not in resolved.parents:
                raise PatchError(f"Path escapes the sandbox: {candidate.as_posix()}")


def restore_crlf(diff: str, paths: Iterable[Path]) -> str:
    """Re-add carriage returns to hunk lines of blocks whose target file uses CRLF."""

    targets = set(paths)
    lines = diff.split("\n")
    for start, end in _split_diff_sections(lines):
        parsed = _parse_diff_header(lines[start])
        if not parsed or parsed[0] not in targets:
            continue
        in_hunk = False
        for index in range(start + 1, end):
            line = lines[index]
            if line.startswith("@@"):
                in_hunk = True
                continue
            if not in_hunk or line[:1] not in {" ", "+", "-"}:
                continue
            # a line followed by "\ No newline at end of file" has no terminator at all
            if index + 1 < end and lines[index + 1].startswith("\\"):
                continue
            lines[index] = f"{line}\r"
    return "\n".join(lines)


def _locate(haystack: Sequence[str], needle: Sequence[str]) -> int | None:
    if not needle:
        return 0
    width = len(needle)
    for offset in range(len(haystack) - width + 1):
        if list(haystack[offset : offset + width]) == list(needle):
            return offset
    return None


def _check_hunk_context(block: FileBlock, hunk: Hunk, file_lines: Sequence[str]) -> None:
    expected = hunk.old_side()
    if not expected:
        if hunk.old_start > len(file_lines):
            raise PatchError(
                f"Hunk #{hunk.index} in {block.label} inserts after line {hunk.old_start} "
                f"but the sandbox file has only {len(file_lines)} line(s)."
            )
        return
    position = max(hunk.old_start - 1, 0)
    if list(file_lines[position : position + len(expected)]) == expected:
        return
    if _locate(file_lines, expected) is not None:
        return
    for offset, wanted in enumerate(expected):
        actual_index = position + offset
        actual = file_lines[actual_index] if actual_index < len(file_lines) else None
        if actual != wanted:
            found = "<end of file>" if actual is None else f"`{actual}`"
            raise PatchError(
                f"Hunk #{hunk.index} in {block.label} at line {actual_index + 1} expected context "
                f"`{wanted}` but sandbox has {found}."
            )


def check_applicability(blocks: Sequence[FileBlock], repo_root: Path) -> Set[Path]:
    """Dry-run every hunk against the current sandbox content.

    Every path must resolve inside ``repo_root`` before any file is read.
    Returns the paths of modified files that use CRLF line endings.
    """

    root = Path(repo_root)
    _ensure_confined(blocks, root)
    crlf_paths: Set[Path] = set()
    for block in blocks:
        if block.is_binary:
            continue
        if block.is_new:
            target = root / block.path
            if target.exists():
                raise PatchError(
                    f"Cannot create '{block.label}' (line {block.line_no}): the file already exists "
                    "in the sandbox. Generate a diff that modifies the existing file instead."
                )
            continue

        source_path = block.old_path or block.path
        source = root / source_path
        if not source.is_file():
            action = "delete" if block.is_deleted else "modify"
            raise PatchError(
                f"Cannot {action} '{source_path.as_posix()}' (line {block.line_no}): "
                "the file does not exist in the sandbox."
            )
        if block.is_rename and block.new_path is not None and block.new_path != source_path:
            if (root / block.new_path).exists():
                raise PatchError(
                    f"Cannot rename to '{block.new_path.as_posix()}' (line {block.line_no}): "
                    "the target already exists in the sandbox."
                )
        if not block.hunks:
            continue
        file_lines, crlf = _read_lines(source)
        for hunk in block.hunks:
            _check_hunk_context(block, hunk, file_lines)
        if crlf:
            crlf_paths.add(source_path)
    return crlf_paths


# ------------------------------------------------- stage 6: pre-apply guard
def _has_deletion_intent(prompt: str) -> bool:
    lowered = prompt.lower()
    return any(keyword in lowered for keyword in _DELETION_KEYWORDS)


def check_pre_apply(
    diff: str,
    blocks: Sequence[FileBlock],
    repo_root: Path,
    *,
    limits: DiffLimits,
    prompt: str | None = None,
) -> None:
    """Enforce size ceilings, sandbox confinement and the binary/deletion policy."""

    line_count = diff.count("\n")
    if limits.max_lines > 0 and line_count > limits.max_lines:
        raise PatchError(f"Diff exceeds maximum size: {line_count} lines > {limits.max_lines} lines.")
    if limits.max_chars > 0 and len(diff) > limits.max_chars:
        raise PatchError(f"Diff exceeds maximum size: {len(diff)} characters > {limits.max_chars} characters.")

    _ensure_confined(blocks, Path(repo_root))
    for block in blocks:
        if block.is_binary:
            raise PatchError(f"Binary patches are not supported ({block.label}).")
        if block.is_deleted and prompt is not None and not _has_deletion_intent(prompt):
            raise PatchError(
                f"Rejecting diff: attempted to delete file '{block.label}' (line {block.line_no}), "
                "but the request did not ask for file deletion. Do not delete files unless explicitly requested."
            )


# ---------------------------------------------------------------- pipeline
def validate_candidate(
    raw: str,
    *,
    repo_root: Path | str,
    prompt: str | None = None,
    limits: DiffLimits | None = None,
) -> ValidationOutcome:
    """Run ``raw`` generator output through every validation stage."""

    root = Path(repo_root)
    effective_limits = limits or DiffLimits()
    adjustments: list[str] = []
    stage = "normalize"
    try:
        normalised, notes = normalize_output(raw)
        adjustments.extend(notes)
        if isinstance(normalised, NoChanges):
            _emit_patch_event("patch_no_changes", adjustments=adjustments)
            return normalised

        stage = "extract"
        extracted, notes = extract_diff(normalised)
        adjustments.extend(notes)

        stage = "sanitize"
        sanitized, notes = sanitize_diff(extracted)
        adjustments.extend(notes)

        stage = "structure"
        blocks = validate_structure(sanitized)

        stage = "applicability"
        crlf_paths = check_applicability(blocks, root)
        if crlf_paths:
            sanitized = restore_crlf(sanitized, crlf_paths)
            adjustments.extend(
                f"restored CRLF line endings for {path.as_posix()}"
                for path in sorted(crlf_paths, key=lambda item: item.as_posix())
            )

        stage = "pre-apply"
        check_pre_apply(sanitized, blocks, root, limits=effective_limits, prompt=prompt)
    except PatchError as error:
        _emit_patch_event(
            "patch_validation_failed",
            stage=stage,
            reason=str(error),
            adjustments=adjustments,
        )
        return Rejected(reason=str(error), stage=stage)

    paths: Set[Path] = set()
    for block in blocks:
        paths.update(candidate for candidate in (block.old_path, block.new_path) if candidate is not None)
    ordered = tuple(sorted(paths, key=lambda item: item.as_posix()))
    _emit_patch_event("patch_validation_passed", touched_paths=ordered, adjustments=adjustments)
    return Applicable(diff=sanitized, paths=ordered, adjustments=tuple(adjustments))


# ------------------------------------------------------------------- apply
def apply_patch(
    patch: str,
    *,
    repo_root: Path | str = ".",
    check: bool = True,
    index: bool = False,
    runner: Callable[..., subprocess.CompletedProcess[str]] = subprocess.run,
) -> PatchResult:
    """Apply a unified diff ``patch`` to ``repo_root`` via ``git apply``.

    With ``index`` the change is staged as well, so a following commit holds
    exactly the patch and nothing else from the working tree.
    """

    repo_root_path = Path(repo_root).resolve()
    if not (repo_root_path / ".git").exists():
        raise PatchError(f"Not a git repository: {repo_root_path}")
    if not patch.strip():
        raise PatchError("Patch is empty.")

    telemetry = PatchTelemetry(
        patch_bytes=len(patch.encode("utf-8", errors="surrogateescape")),
        patch_lines=patch.count("\n"),
    )
    command: Tuple[str, ...] = ("git", "apply", "--whitespace=nowarn")
    if index:
        command = (*command, "--index")

    with tempfile.NamedTemporaryFile(
        "w", encoding="utf-8", errors="surrogateescape", suffix=".patch", delete=False
    ) as handle:
        handle.write(patch)
        temp_path = Path(handle.name)
    telemetry.patch_path = temp_path

    try:
        if check:
            dry_run = runner(
                [*command, "--check", str(temp_path)],
                cwd=repo_root_path,
                capture_output=True,
                text=True,
                check=False,
            )
            telemetry.check_returncode = dry_run.returncode
            telemetry.check_stdout = dry_run.stdout.strip()
            telemetry.check_stderr = dry_run.stderr.strip()
            telemetry.failing_hunks = _parse_git_apply_failures(
                "\n".join(part for part in (dry_run.stderr, dry_run.stdout) if part)
            )
            if dry_run.returncode != 0:
                message = telemetry.check_stderr or telemetry.check_stdout or "unknown error"
                payload = telemetry.to_dict()
                _emit_patch_event("patch_validation_failed", stage="git-apply-check", telemetry=payload)
                raise PatchError(
                    f"Diff cannot be applied: {message}",
                    details={"telemetry": payload, "failed_files": telemetry.failed_files()},
                )

        result = runner(
            [*command, str(temp_path)],
            cwd=repo_root_path,
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown error"
            telemetry.failing_hunks = _parse_git_apply_failures(result.stderr)
            payload = telemetry.to_dict()
            _emit_patch_event("patch_apply_failed", telemetry=payload)
            raise PatchError(
                f"Git apply failed: {message}",
                details={"telemetry": payload, "failed_files": telemetry.failed_files()},
            )

        touched: Set[Path] = set()
        for block in parse_diff(patch):
            touched.update(candidate for candidate in (block.old_path, block.new_path) if candidate is not None)
        ordered_paths = tuple(sorted(touched, key=lambda item: item.as_posix()))
        telemetry.touched_paths = ordered_paths
        _emit_patch_event("patch_apply_succeeded", telemetry=telemetry.to_dict())
        LOGGER.debug("Applied patch touching %d path(s) in %s", len(ordered_paths), repo_root_path)

        return PatchResult(
            command=command,
            paths=ordered_paths,
            stdout=result.stdout,
            stderr=result.stderr,
            telemetry=telemetry,
        )
    finally:
        temp_path.unlink(missing_ok=True)


__all__ = [
    "Applicable",
    "DiffLimits",
    "FileBlock",
    "Hunk",
    "NO_CHANGES_TOKEN",
    "NoChanges",
    "PatchError",
    "PatchResult",
    "PatchTelemetry",
    "Rejected",
    "ValidationOutcome",
    "apply_patch",
    "check_applicability",
    "check_pre_apply",
    "extract_diff",
    "failed_files_from_output",
    "normalize_output",
    "parse_diff",
    "restore_crlf",
    "sanitize_diff",
    "validate_candidate",
    "validate_structure",
]
