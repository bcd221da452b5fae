"""Line-range editing and structured-file validation."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import List, Tuple

import yaml

PREVIEW_CONTEXT = 3


def _normalise_line_endings(text: str) -> str:
    """Convert CRLF/CR sequences to LF for deterministic edits."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


def _split_lines(content: str | None) -> list[str]:
    """Split text into normalised lines, guarding against ``None``."""
    if not content:
        return []
    return _normalise_line_endings(content).splitlines()


def _join_lines(lines: list[str], *, trailing_newline: bool = True) -> str:
    if not lines:
        return ""
    text = "\n".join(lines)
    return text + "\n" if trailing_newline else text


@dataclass(slots=True)
class LineEdit:
    """Outcome of applying one ``edit_lines`` request to a text."""

    content: str
    mode: str
    start_line: int
    end_line: int
    lines_removed: int
    lines_inserted: int
    total_lines: int
    warnings: List[str] = field(default_factory=list)


def apply_line_edit(content: str, start_line: int, end_line: int, new_content: str) -> LineEdit:
    """Replace ``start_line..end_line`` (1-based, inclusive) with ``new_content``.

    ``start_line`` past the end appends; ``start_line > end_line`` inserts
    before ``start_line`` without deleting. Out-of-range numbers are clamped.
    """
    lines = _split_lines(content)
    trailing = not content or content.endswith(("\n", "\r"))
    replacement = _split_lines(new_content)
    total = len(lines)
    start = max(int(start_line), 1)
    end = int(end_line)

    if start > total:
        mode = "append"
        start, end = total + 1, total
        lines.extend(replacement)
        removed = 0
    elif start > end:
        mode = "insert"
        end = start - 1
        lines[start - 1 : start - 1] = replacement
        removed = 0
    else:
        mode = "replace"
        end = min(end, total)
        removed = end - start + 1
        lines[start - 1 : end] = replacement

    return LineEdit(
        content=_join_lines(lines, trailing_newline=trailing),
        mode=mode,
        start_line=start,
        end_line=end,
        lines_removed=removed,
        lines_inserted=len(replacement),
        total_lines=len(lines),
    )


def number_lines(content: str, *, start: int = 1, end: int | None = None) -> str:
    """Render ``content`` with right-aligned 1-based line numbers."""
    lines = _split_lines(content)
    if not lines:
        return ""
    last = len(lines) if end is None else min(end, len(lines))
    first = max(start, 1)
    width = len(str(last))
    return "\n".join(f"{number:>{width}}| {lines[number - 1]}" for number in range(first, last + 1))


def edit_preview(content: str, edit: LineEdit, *, context: int = PREVIEW_CONTEXT) -> str:
    """Numbered window around the lines an edit produced."""
    first = max(edit.start_line - context, 1)
    last = edit.start_line + max(edit.lines_inserted, 1) - 1 + context
    return number_lines(content, start=first, end=last)


def count_lines(content: str) -> int:
    return len(_split_lines(content))


def is_json_path(path: str) -> bool:
    return path.lower().endswith(".json")


def is_yaml_path(path: str) -> bool:
    return path.lower().endswith((".yaml", ".yml"))


def canonicalize_structured(path: str, content: str) -> Tuple[str, List[str]]:
    """Re-serialise JSON files and validate YAML ones.

    Returns the possibly rewritten content and any warnings. Invalid content
    is returned untouched so it can still be staged and fixed later.
    """
    if is_json_path(path):
        if not content.strip():
            return content, []
        try:
            data = json.loads(content)
        except json.JSONDecodeError as error:
            return content, [
                f"{path} is not valid JSON after the edit (line {error.lineno}, column {error.colno}: "
                f"{error.msg}). The change was staged anyway; fix it in a follow-up edit."
            ]
        return json.dumps(data, indent=2, ensure_ascii=False) + "\n", []
    if is_yaml_path(path):
        try:
            list(yaml.safe_load_all(content))
        except yaml.YAMLError as error:
            mark = getattr(error, "problem_mark", None)
            where = f" (line {mark.line + 1})" if mark is not None else ""
            return content, [
                f"{path} is not valid YAML after the edit{where}: {getattr(error, 'problem', None) or error}. "
                "The change was staged anyway; fix it in a follow-up edit."
            ]
    return content, []


__all__ = [
    "LineEdit",
    "apply_line_edit",
    "canonicalize_structured",
    "count_lines",
    "edit_preview",
    "is_json_path",
    "is_yaml_path",
    "number_lines",
]
