"""
recollect.diff

Textual diff between the current and proposed source of a call site.
"""
from __future__ import annotations

import difflib
from typing import List

from rich.syntax import Syntax


def unified_diff(old: str, new: str, *, context: int = 3, label: str = "") -> str:
    old_lines = old.splitlines(keepends=True)
    new_lines = new.splitlines(keepends=True)
    lines: List[str] = []
    for line in difflib.unified_diff(
        old_lines,
        new_lines,
        fromfile=f"a/{label}" if label else "current",
        tofile=f"b/{label}" if label else "proposed",
        n=context,
    ):
        lines.append(line if line.endswith("\n") else line + "\n")
    return "".join(lines)


def render_diff(old: str, new: str, *, context: int = 3, label: str = "") -> Syntax:
    text = unified_diff(old, new, context=context, label=label)
    return Syntax(text.rstrip("\n") or "(no changes)", "diff", theme="ansi_dark", word_wrap=True)
