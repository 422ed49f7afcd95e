"""
recollect.prompter

Operator-facing decision channel. The coordinator calls exactly one
prompter at a time.
"""
from __future__ import annotations

import os
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Callable, ContextManager, Dict, Protocol

from rich.console import Console
from rich.prompt import Prompt
from rich.text import Text

from .assertion import Decision, Stage
from .diff import render_diff

_KEYS: Dict[str, Decision] = {
    "y": Decision.ACCEPT,
    "n": Decision.REJECT,
    "s": Decision.SKIP,
    "k": Decision.NEXT,
    "j": Decision.PREV,
}


@dataclass(frozen=True)
class PromptView:
    stage: Stage
    file: str
    line: int
    test: str
    original: str
    replacement: str
    pattern_index: int = 0
    pattern_count: int = 1
    diff_context: int = 3

    @property
    def location(self) -> str:
        try:
            path = os.path.relpath(self.file)
        except ValueError:
            path = self.file
        return f"{path}:{self.line}"


class Prompter(Protocol):
    def prompt(self, view: PromptView) -> Decision:
        ...


class FixedPrompter:
    """Answers every prompt with the same decision."""

    def __init__(self, decision: Decision):
        self.decision = decision
        self.seen: list[PromptView] = []

    def prompt(self, view: PromptView) -> Decision:
        self.seen.append(view)
        return self.decision


class TerminalPrompter:
    def __init__(
        self,
        console: Console | None = None,
        *,
        suspend: Callable[[], ContextManager[object]] | None = None,
    ):
        self.console = console or Console()
        self._suspend = suspend or nullcontext

    def prompt(self, view: PromptView) -> Decision:
        with self._suspend():
            self.console.print(self._header(view))
            self.console.print(
                render_diff(
                    view.original,
                    view.replacement,
                    context=view.diff_context,
                    label=view.location,
                )
            )
            choices = ["y", "n", "s"]
            if view.pattern_count > 1:
                choices += ["k", "j"]
            answer = Prompt.ask(
                self._question(view),
                console=self.console,
                choices=choices,
                default="y",
                show_default=True,
            )
        return _KEYS[answer]

    def _header(self, view: PromptView) -> Text:
        header = Text("\n")
        if view.stage == "new":
            header.append("New", style="green")
        else:
            header.append("Changed", style="yellow")
        header.append(" • auto_assert", style="bright_black")
        if view.pattern_count > 1:
            header.append(f" • pattern {view.pattern_index + 1} of {view.pattern_count}", style="bright_black")
        header.append("\n")
        header.append(view.location, style="bright_black")
        header.append(f"  {view.test}", style="bright_black")
        return header

    def _question(self, view: PromptView) -> Text:
        question = Text()
        if view.stage == "new":
            question.append("Accept ")
            question.append("new", style="green")
            question.append(" assertion?")
        else:
            question.append("Value has changed! ", style="yellow")
            question.append("Update to new value?")
        if view.pattern_count > 1:
            question.append(" (k/j cycles patterns)", style="bright_black")
        return question
