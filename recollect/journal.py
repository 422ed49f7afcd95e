"""
recollect.journal

Append-only JSONL record of reconciliation decisions, one line per
resolved assertion plus a closing line with the run totals.
"""
from __future__ import annotations

import json
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .assertion import PatchResult


def now_ms() -> int:
    return int(time.time() * 1000)


class DecisionJournal:
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def record(self, entry_type: str, payload: Dict[str, Any]) -> None:
        entry = {"ts_ms": now_ms(), "type": entry_type, "payload": payload}
        line = json.dumps(entry, ensure_ascii=True, default=str)
        with self._lock:
            with self.path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")

    def resolved(self, result: PatchResult, *, stat: str, error: Optional[BaseException] = None) -> None:
        assertion = result.assertion
        ctx = assertion.context
        self.record(
            "assertion_resolved",
            {
                "file": ctx.file,
                "line": ctx.line,
                "test": ctx.test,
                "group": ctx.group,
                "stage": assertion.stage,
                "outcome": result.error or "ok",
                "stat": stat,
                "code": assertion.code,
                "error": str(error) if error is not None else None,
            },
        )

    def finished(self, stats: Dict[str, int], not_saved: Iterable[str], exit_status: Optional[int]) -> None:
        self.record(
            "run_finished",
            {"stats": stats, "not_saved": sorted(not_saved), "exit_status": exit_status},
        )


def read_journal(path: str | Path) -> List[Dict[str, Any]]:
    """Entries in write order. A torn last line (interrupted run) is dropped."""
    journal = Path(path)
    if not journal.exists():
        return []
    entries: List[Dict[str, Any]] = []
    for raw in journal.read_text(encoding="utf-8").splitlines():
        if not raw.strip():
            continue
        try:
            entries.append(json.loads(raw))
        except json.JSONDecodeError:
            continue
    return entries
