"""Prompt templates and helpers shared by the job loop and repair mode."""

from __future__ import annotations

from typing import Sequence

SYSTEM_PROMPT = (
    "You are an expert software engineer working inside an isolated copy of a repository. "
    "Respond with a single unified diff in `git diff` format (with `diff --git`, `---`, `+++` "
    "and `@@` headers) that implements the request. Use paths relative to the repository root "
    "and `/dev/null` for created or deleted files. Hunk headers must count their lines exactly "
    "and context lines must match the current file content. Do not wrap the diff in markdown "
    "fences and do not add explanations. If the request needs no changes, reply with exactly: "
    "NO_CHANGES"
)

PATCH_FEEDBACK_LABEL = "PATCH FAILURE FEEDBACK:"
PREFLIGHT_FEEDBACK_LABEL = "PREFLIGHT FAILURE FEEDBACK:"

_DIFF_INSTRUCTION = "Generate a unified diff to implement this request. Output ONLY the diff, nothing else."


def render_generation_prompt(prompt: str, context: str, previous_error: str | None = None) -> str:
    """Build the user message for one generation call."""
    message = f"{context}\n\n---\n\nUSER REQUEST: {prompt}\n\n{_DIFF_INSTRUCTION}"
    if previous_error and previous_error.strip():
        message = f"{message}\n\n---\n\n{previous_error.strip()}"
    return message


def render_patch_feedback(iteration: int, reason: str) -> str:
    return (
        f"{PATCH_FEEDBACK_LABEL}\n"
        f"The diff from iteration {iteration} was rejected and nothing was applied.\n"
        f"Reason: {reason.strip()}\n"
        "Regenerate the diff against the current file content shown above."
    )


def render_preflight_feedback(iteration: int, summary: str) -> str:
    return (
        f"{PREFLIGHT_FEEDBACK_LABEL}\n"
        f"The diff from iteration {iteration} applied, but verification failed and the change was rolled back.\n"
        f"{summary.strip()}\n"
        "Fix the underlying problem in a new diff against the original files."
    )


def render_full_file_instruction(paths: Sequence[str]) -> str:
    """Ask for whole-file replacement hunks after repeated apply failures."""
    if paths:
        targets = ", ".join(paths)
        scope = f"for these files: {targets}"
    else:
        scope = "for every file you change"
    return (
        "FULL-FILE MODE: previous diffs repeatedly failed to apply because their context drifted. "
        f"Emit a diff that replaces the entire content {scope}: one hunk per file whose '-' lines "
        "list every current line and whose '+' lines list the complete new content."
    )


def render_readme_hint(readme_name: str, lines: Sequence[str]) -> str:
    """Append the head of the README so documentation edits target real content."""
    excerpt = "\n".join(lines)
    return (
        f"\n--- {readme_name} (first {len(lines)} lines) ---\n{excerpt}\n"
        f"The request mentions the README: modify {readme_name} in place rather than creating a new file.\n"
    )


def render_repair_prompt(
    label: str,
    stage_prompt: str,
    files: Sequence[str],
    previous_error: str | None = None,
) -> str:
    """Compose the prompt for one repair stage."""
    sections = [f"## Repair stage: {label}\n\n{stage_prompt.strip()}"]
    if previous_error:
        sections.append(
            "## Previous attempt failed\n"
            "The last diff for this stage failed verification with:\n"
            f"{previous_error.strip()}\n"
            "Fix the underlying issue; do not just suppress the error."
        )
    if files:
        listing = "\n".join(f"  - {path}" for path in files)
        sections.append(f"## Repository files in context\n{listing}")
    sections.append(
        "## Important constraints\n"
        "- Output only a unified diff, with no prose and no markdown fences.\n"
        "- Use paths relative to the repository root.\n"
        "- Use /dev/null as the old path for new files.\n"
        "- Keep the change focused on this stage's objective.\n"
        "- If no changes are required for this stage, output exactly: NO_CHANGES"
    )
    return "\n\n".join(sections)


__all__ = [
    "PATCH_FEEDBACK_LABEL",
    "PREFLIGHT_FEEDBACK_LABEL",
    "SYSTEM_PROMPT",
    "render_full_file_instruction",
    "render_generation_prompt",
    "render_patch_feedback",
    "render_preflight_feedback",
    "render_readme_hint",
    "render_repair_prompt",
]
