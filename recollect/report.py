"""
recollect.report

Run statistics and the end-of-run summary.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Dict, Iterable, List, Tuple

from rich.console import Console
from rich.text import Text

SUMMARY_ORDER = ("new", "updated", "rejected", "skipped")

_STYLES = {
    "new": "green",
    "updated": "green",
    "rejected": "red",
    "skipped": "yellow",
}

PREFIX = "[recollect] "


@dataclass
class RunStats:
    counter: int = 0
    new: int = 0
    updated: int = 0
    skipped: int = 0
    rejected: int = 0

    def increment(self, stat: str) -> None:
        setattr(self, stat, getattr(self, stat) + 1)

    @property
    def resolved(self) -> int:
        return self.new + self.updated + self.skipped + self.rejected

    def parts(self) -> List[Tuple[str, int]]:
        return [(stat, getattr(self, stat)) for stat in SUMMARY_ORDER if getattr(self, stat) != 0]

    def summary(self) -> str:
        return ", ".join(f"{count} {stat}" for stat, count in self.parts())

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class Reporter:
    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def print_summary(self, stats: RunStats) -> None:
        parts = stats.parts()
        if not parts:
            return
        line = Text("\n\n" + PREFIX)
        for idx, (stat, count) in enumerate(parts):
            if idx:
                line.append(", ")
            line.append(f"{count} {stat}", style=_STYLES[stat])
        self.console.print(line)

    def print_not_saved(self, files: Iterable[str]) -> None:
        paths = sorted(files)
        if not paths:
            return
        message = Text("\n" + PREFIX, style="red")
        message.append(
            "The following files could not be saved. Their content may have changed.\n\n",
            style="red",
        )
        for path in paths:
            message.append(f"  * {path}\n", style="red")
        message.append("\nYou may need to run these tests again.", style="red")
        self.console.print(message)
