"""
recollect.assertion

Assertion data model, call-site description and decision encoding.
"""
from __future__ import annotations

import enum
import textwrap
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Tuple

from .config import Options, Target
from .patterns import Pattern, PatternGenerator, to_patterns

Stage = Literal["new", "update"]
ErrorKind = Literal["skipped", "rejected", "file_changed"]

INFER_WIDTH = 88


class Decision(str, enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    SKIP = "skip"
    NEXT = "next"
    PREV = "prev"

    @property
    def terminal(self) -> bool:
        return self not in (Decision.NEXT, Decision.PREV)


@dataclass(frozen=True)
class AssertionContext:
    file: str
    line: int
    test: str
    group: str


@dataclass(frozen=True)
class CallSite:
    """
    Location of one auto_assert call inside a parsed source file.

    `start` and `end` are byte offsets into the file. `prefix` and
    `suffix` hold the rest of the first and last touched lines so diffs
    can show whole lines.
    """

    start: int
    end: int
    source: str
    callee: str
    value: str
    expected: Optional[str]
    indent: int
    is_statement: bool
    prefix: str = ""
    suffix: str = ""

    def whole_lines(self, code: str) -> str:
        return f"{self.prefix}{code}{self.suffix}"


@dataclass(eq=False)
class Assertion:
    stage: Stage
    context: AssertionContext
    value_repr: str
    patterns: Tuple[Pattern, ...]
    options: Options = field(default_factory=Options)
    value: Any = field(default=None, repr=False)
    code: Optional[str] = None
    accepted: Optional[Pattern] = None

    @classmethod
    def build(
        cls,
        *,
        stage: Stage,
        value: Any,
        context: AssertionContext,
        options: Options | None = None,
        generator: PatternGenerator = to_patterns,
    ) -> "Assertion":
        return cls(
            stage=stage,
            context=context,
            value_repr=repr(value),
            patterns=tuple(generator(value)),
            options=options or Options(),
            value=value,
        )

    @property
    def group(self) -> str:
        return self.context.group

    def initial_index(self) -> int:
        if not self.patterns:
            return 0
        choice = self.options.default_pattern
        if choice == "first":
            return 0
        if choice == "last":
            return len(self.patterns) - 1
        compact = self.patterns[0].expr
        if len(compact) > INFER_WIDTH:
            for idx, pattern in enumerate(self.patterns):
                if pattern.multiline:
                    return idx
        return 0

    def to_code(self, site: CallSite, pattern: Pattern, target: Target | None = None) -> str:
        """
        Generate the replacement source for `site` using `pattern`.

        `auto_assert` keeps the call and records the pattern as its
        expected argument. `assert` turns the call into a plain assert
        statement, which is only possible when the call stands alone.
        """
        target = target or self.options.target
        expected = _indent_continuation(pattern.expr, site.indent + 4)
        if target == "assert" and site.is_statement:
            return f"assert {site.value} == {expected}"
        return f"{site.callee}({site.value}, {expected})"

    def accept(self, pattern: Pattern, code: str) -> None:
        self.accepted = pattern
        self.code = code

    def expected_value(self) -> Any:
        if self.accepted is None:
            raise ValueError("assertion has no accepted pattern")
        return self.accepted.evaluate()


@dataclass(frozen=True)
class PatchResult:
    assertion: Assertion
    error: Optional[ErrorKind] = None
    resolved: bool = True

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def passthrough(cls, assertion: Assertion) -> "PatchResult":
        return cls(assertion=assertion, error=None, resolved=False)


def _indent_continuation(expr: str, width: int) -> str:
    first, sep, rest = expr.partition("\n")
    if not sep:
        return expr
    return first + "\n" + textwrap.indent(rest, " " * width)
