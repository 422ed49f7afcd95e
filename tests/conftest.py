from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from recollect.assertion import Assertion, AssertionContext, Stage
from recollect.config import Options

pytest_plugins = ["pytester"]


@pytest.fixture
def source_file(tmp_path: Path) -> Callable[..., Path]:
    def _write(body: str, name: str = "test_sample.py") -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(body).lstrip("\n"), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def make_assertion() -> Callable[..., Assertion]:
    def _build(
        path: Path,
        line: int,
        value: Any,
        *,
        stage: Stage = "new",
        group: str = "group-1",
        test: Optional[str] = None,
        options: Optional[Options] = None,
    ) -> Assertion:
        context = AssertionContext(
            file=str(path),
            line=line,
            test=test or f"{path.name}::line{line}",
            group=group,
        )
        return Assertion.build(
            stage=stage,
            value=value,
            context=context,
            options=options or Options(action="accept"),
        )

    return _build
