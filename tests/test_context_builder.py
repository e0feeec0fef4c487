from __future__ import annotations

from pathlib import Path

from patchpilot.context_builder import ContextBuilder, extract_keywords, format_context


def _write(root: Path, relative: str, content: str) -> None:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def test_extract_keywords_skips_short_and_stop_words() -> None:
    assert extract_keywords("Add a null check to the getValue function from utils") == [
        "null",
        "check",
        "getvalue",
        "function",
        "utils",
    ]


def test_matching_files_and_their_relative_imports_are_included(tmp_path: Path) -> None:
    _write(tmp_path, "src/app.js", "import { clamp } from './math';\nexport function checkout() { return clamp(1); }\n")
    _write(tmp_path, "src/math.js", "export const clamp = (x) => x;\n")
    _write(tmp_path, "src/unrelated.js", "export const nothing = 1;\n")
    _write(tmp_path, "node_modules/lib/checkout.js", "checkout\n")

    context = ContextBuilder(use_ripgrep=False).build(tmp_path, "fix the checkout total")

    assert context.paths() == ["src/app.js", "src/math.js"]
    assert not context.truncated
    assert "--- src/math.js ---" in context.format()


def test_python_relative_imports_are_followed(tmp_path: Path) -> None:
    _write(tmp_path, "pkg/service.py", "from .models import Invoice\n\ndef rounding():\n    return 0\n")
    _write(tmp_path, "pkg/models.py", "class Invoice:\n    pass\n")

    context = ContextBuilder(use_ripgrep=False).build(tmp_path, "fix rounding")

    assert context.paths() == ["pkg/models.py", "pkg/service.py"]


def test_budget_truncates_the_last_file(tmp_path: Path) -> None:
    _write(tmp_path, "a_widget.js", "widget\n" + "a" * 60)
    _write(tmp_path, "b_widget.js", "widget\n" + "b" * 60)

    context = ContextBuilder(max_chars=100, use_ripgrep=False).build(tmp_path, "widget colours")

    assert context.truncated
    assert context.total_chars <= 100
    assert context.files["b_widget.js"].endswith("... [truncated]")


def test_falls_back_to_entry_points_then_readme(tmp_path: Path) -> None:
    _write(tmp_path, "README.md", "# Project\n")
    builder = ContextBuilder(use_ripgrep=False)

    assert builder.build(tmp_path, "improve everything").paths() == ["README.md"]

    _write(tmp_path, "src/index.js", "console.log('start');\n")
    assert builder.build(tmp_path, "improve everything").paths() == ["src/index.js"]


def test_format_context_sorts_paths() -> None:
    rendered = format_context({"b.js": "two", "a.js": "one"})

    assert rendered == "\n--- a.js ---\none\n\n--- b.js ---\ntwo\n"
