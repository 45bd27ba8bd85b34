"""Unified diff assembly and prompt-size truncation."""

import re
from typing import Iterable, List, Optional, Tuple

TRUNCATED_MARKER = "\n... (truncated)"

_FILE_HEADER = re.compile(r"^(?:--- a/|diff --git)", re.MULTILINE)


def assemble_diff(files: Iterable[Tuple[str, Optional[str]]]) -> str:
    """Join (path, patch) pairs into a single unified-diff text.

    Files without a patch (binary, too large) are skipped.
    """
    lines: List[str] = []
    for path, patch in files:
        if not patch:
            continue
        lines.extend([f"--- a/{path}", f"+++ b/{path}", patch, ""])
    return "\n".join(lines)


def summarize_diff(diff: str, max_lines: int = 80, max_chars_per_file: int = 1500) -> str:
    """Head-truncate a diff to a per-file char cap and a total line cap."""
    if not diff:
        return ""
    if len(diff.split("\n")) <= max_lines:
        return diff

    sections = _split_files(diff)
    trimmed = [
        s[:max_chars_per_file] + TRUNCATED_MARKER if len(s) > max_chars_per_file else s
        for s in sections
    ]
    joined = "\n\n".join(trimmed)

    lines = joined.split("\n")
    if len(lines) <= max_lines:
        return joined
    return "\n".join(lines[:max_lines]) + TRUNCATED_MARKER


def _split_files(diff: str) -> List[str]:
    starts = [m.start() for m in _FILE_HEADER.finditer(diff)]
    if not starts or starts[0] != 0:
        starts.insert(0, 0)
    bounds = starts + [len(diff)]
    return [diff[a:b].rstrip("\n") for a, b in zip(bounds, bounds[1:]) if diff[a:b].strip()]
