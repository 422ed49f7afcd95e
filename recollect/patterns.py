"""
recollect.patterns

Default pattern generator: turns a captured value into candidate source
expressions that evaluate back to an equal value.
"""
from __future__ import annotations

import ast
import pprint
from dataclasses import dataclass
from typing import Any, Callable, List

from .errors import PatternError

PRETTY_WIDTH = 88


@dataclass(frozen=True)
class Pattern:
    expr: str

    @property
    def multiline(self) -> bool:
        return "\n" in self.expr

    def evaluate(self) -> Any:
        return ast.literal_eval(self.expr)


PatternGenerator = Callable[[Any], List[Pattern]]


def to_patterns(value: Any) -> List[Pattern]:
    compact = repr(value)
    if not _round_trips(compact, value):
        raise PatternError(
            f"cannot record a {type(value).__name__} value: {_shorten(compact)} has no literal form"
        )

    candidates = [Pattern(compact)]
    pretty = pprint.pformat(value, width=PRETTY_WIDTH, sort_dicts=False)
    if pretty != compact and _round_trips(pretty, value):
        candidates.append(Pattern(pretty))
    return candidates


def _round_trips(expr: str, value: Any) -> bool:
    try:
        parsed = ast.literal_eval(expr)
    except (ValueError, SyntaxError, TypeError, MemoryError, RecursionError):
        return False
    if type(parsed) is not type(value):
        return False
    try:
        return bool(parsed == value)
    except Exception:  # noqa: BLE001
        return False


def _shorten(text: str, limit: int = 60) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
