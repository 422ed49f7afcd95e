"""
recollect.api

The `auto_assert` callable handed to tests.
"""
from __future__ import annotations

import sys
from typing import Any

from .assertion import Assertion, AssertionContext, PatchResult, Stage
from .config import Options
from .coordinator import Coordinator
from .errors import PatternError
from .patterns import PatternGenerator, to_patterns


class _Missing:
    def __repr__(self) -> str:
        return "<missing>"


MISSING: Any = _Missing()


class AutoAssert:
    """
    Record or check a runtime value.

        auto_assert(compute())              # new: prompts, then records
        auto_assert(compute(), [1, 2, 3])   # update: compares, prompts on mismatch

    Returns the value so it can be used further in the test.
    """

    def __init__(
        self,
        coordinator: Coordinator,
        *,
        test: str,
        group: str,
        options: Options | None = None,
        generator: PatternGenerator = to_patterns,
    ):
        self.coordinator = coordinator
        self.test = test
        self.group = group
        self.options = options or Options()
        self.generator = generator

    def __call__(self, value: Any, expected: Any = MISSING) -> Any:
        frame = sys._getframe(1)
        context = AssertionContext(
            file=frame.f_code.co_filename,
            line=frame.f_lineno,
            test=self.test,
            group=self.group,
        )
        del frame

        if expected is MISSING:
            assertion = self._build("new", value, context)
            return self._settle(self.coordinator.register(assertion), value, expected)

        try:
            assertion = self._build("update", value, context)
        except PatternError:
            if value == expected:
                return value
            raise

        result = self.coordinator.register(assertion)
        if result.resolved:
            return self._settle(result, value, expected)
        if value == expected:
            return value
        return self._settle(self.coordinator.request_patch(assertion), value, expected)

    def _build(self, stage: Stage, value: Any, context: AssertionContext) -> Assertion:
        return Assertion.build(
            stage=stage,
            value=value,
            context=context,
            options=self.options,
            generator=self.generator,
        )

    def _settle(self, result: PatchResult, value: Any, expected: Any) -> Any:
        assertion = result.assertion
        location = f"{assertion.context.file}:{assertion.context.line}"

        if result.ok:
            if assertion.accepted is None or assertion.expected_value() == value:
                return value
            raise AssertionError(f"No match present at {location}: {value!r}")

        if result.error == "skipped":
            return value

        if result.error == "file_changed":
            raise AssertionError(
                f"{assertion.context.file} changed while the run was in progress; "
                "run this test again to record the value"
            )

        if expected is MISSING:
            raise AssertionError(f"No expected value recorded at {location}; got {value!r}")
        if value == expected:
            return value
        raise AssertionError(f"{value!r} != {expected!r}")
