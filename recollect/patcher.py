"""
recollect.patcher

Patch staging store. Accepted edits are kept in memory per file and
written back in a single finalize pass. Every file is fingerprinted when
staging for it begins; a file that changes on disk afterwards is never
overwritten.
"""
from __future__ import annotations

import ast
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Literal, Optional, Set, Tuple

from .assertion import Assertion, CallSite, Decision, PatchResult
from .errors import CallSiteError, PatternError
from .io_utils import fingerprint, write_bytes_atomic
from .patterns import Pattern
from .prompter import Prompter, PromptView

logger = logging.getLogger(__name__)

FileStatus = Literal["pending", "committed", "conflicted"]


@dataclass(frozen=True)
class Replacement:
    seq: int
    start: int
    end: int
    text: bytes

    def overlaps(self, other: "Replacement") -> bool:
        return self.start < other.end and other.start < self.end


@dataclass
class StagedFile:
    path: str
    baseline: bytes
    fingerprint: str
    replacements: Dict[int, Replacement] = field(default_factory=dict)
    status: FileStatus = "pending"
    reported: bool = False
    _tree: Optional[ast.Module] = field(default=None, repr=False)
    _line_starts: Optional[List[int]] = field(default=None, repr=False)

    @classmethod
    def read(cls, path: str) -> "StagedFile":
        data = Path(path).read_bytes()
        return cls(path=path, baseline=data, fingerprint=fingerprint(data))

    def matches_disk(self) -> bool:
        try:
            current = Path(self.path).read_bytes()
        except OSError:
            return False
        return fingerprint(current) == self.fingerprint

    def stage(self, replacement: Replacement) -> None:
        self.replacements[replacement.seq] = replacement
        self.status = "pending"

    def conflict(self) -> None:
        self.status = "conflicted"
        self.replacements.clear()

    def mark_committed(self, data: bytes) -> None:
        self.baseline = data
        self.fingerprint = fingerprint(data)
        self.replacements.clear()
        self.status = "committed"
        self._tree = None
        self._line_starts = None

    def render(self) -> bytes:
        # Later sequence numbers win when two edits touch the same span.
        chosen: List[Replacement] = []
        for rep in sorted(self.replacements.values(), key=lambda r: r.seq, reverse=True):
            if any(rep.overlaps(kept) for kept in chosen):
                continue
            chosen.append(rep)

        data = self.baseline
        for rep in sorted(chosen, key=lambda r: r.start, reverse=True):
            data = data[: rep.start] + rep.text + data[rep.end :]
        return data

    def locate(self, line: int, callee: str) -> CallSite:
        tree = self._parse()
        statements = {
            id(node.value)
            for node in ast.walk(tree)
            if isinstance(node, ast.Expr) and isinstance(node.value, ast.Call)
        }

        best: Optional[ast.Call] = None
        for node in ast.walk(tree):
            if not isinstance(node, ast.Call) or not _is_callee(node.func, callee):
                continue
            end_line = node.end_lineno or node.lineno
            if not node.lineno <= line <= end_line:
                continue
            if best is None or _span(node) < _span(best):
                best = node

        if best is None:
            raise CallSiteError(f"no {callee}(...) call found at {self.path}:{line}")
        return self._call_site(best, is_statement=id(best) in statements)

    def _parse(self) -> ast.Module:
        if self._tree is None:
            try:
                self._tree = ast.parse(self.baseline, filename=self.path)
            except SyntaxError as exc:
                raise CallSiteError(f"cannot parse {self.path}: {exc}") from exc
        return self._tree

    def _offset(self, lineno: int, col: int) -> int:
        if self._line_starts is None:
            starts = [0]
            for idx, byte in enumerate(self.baseline):
                if byte == 0x0A:
                    starts.append(idx + 1)
            self._line_starts = starts
        return self._line_starts[lineno - 1] + col

    def _segment(self, node: ast.AST) -> Tuple[int, int, str]:
        start = self._offset(node.lineno, node.col_offset)
        end = self._offset(node.end_lineno, node.end_col_offset)
        return start, end, self.baseline[start:end].decode("utf-8")

    def _call_site(self, call: ast.Call, *, is_statement: bool) -> CallSite:
        value_node = call.args[0] if call.args else _keyword(call, "value")
        if value_node is None:
            raise CallSiteError(f"{self.path}:{call.lineno}: call has no value argument")
        expected_node = call.args[1] if len(call.args) > 1 else _keyword(call, "expected")

        start, end, source = self._segment(call)
        _, _, callee = self._segment(call.func)
        _, _, value = self._segment(value_node)
        expected = self._segment(expected_node)[2] if expected_node is not None else None

        line_start = self._offset(call.lineno, 0)
        line_end = self.baseline.find(b"\n", end)
        if line_end < 0:
            line_end = len(self.baseline)
        prefix = self.baseline[line_start:start].decode("utf-8")
        suffix = self.baseline[end:line_end].decode("utf-8").rstrip("\r")

        return CallSite(
            start=start,
            end=end,
            source=source,
            callee=callee,
            value=value,
            expected=expected,
            indent=len(prefix) - len(prefix.lstrip()),
            is_statement=is_statement,
            prefix=prefix,
            suffix=suffix,
        )


class PatchStore:
    def __init__(self, prompter: Prompter, *, dry_run: bool = False):
        self.prompter = prompter
        self.dry_run = dry_run
        self._files: Dict[str, StagedFile] = {}

    def staged(self, path: str) -> Optional[StagedFile]:
        return self._files.get(os.path.abspath(path))

    def patch(self, assertion: Assertion, seq: int) -> PatchResult:
        path = os.path.abspath(assertion.context.file)
        staged = self._files.get(path)
        if staged is None:
            staged = StagedFile.read(path)
            self._files[path] = staged
        if staged.status == "conflicted":
            return PatchResult(assertion, "file_changed")

        try:
            site = staged.locate(assertion.context.line, assertion.options.callee)
        except CallSiteError as exc:
            logger.warning("%s", exc)
            return PatchResult(assertion, "file_changed")

        decision, pattern, code = self._decide(assertion, site)
        if decision is Decision.REJECT:
            return PatchResult(assertion, "rejected")
        if decision is Decision.SKIP:
            return PatchResult(assertion, "skipped")

        if not staged.matches_disk():
            logger.warning("%s changed on disk after staging began; discarding its staged edits", path)
            staged.conflict()
            return PatchResult(assertion, "file_changed")

        staged.stage(Replacement(seq=seq, start=site.start, end=site.end, text=code.encode("utf-8")))
        assertion.accept(pattern, code)
        logger.debug("staged edit %d for %s:%d", seq, path, assertion.context.line)
        return PatchResult(assertion)

    def finalize(self) -> Set[str]:
        """
        Write every file holding staged edits. Returns the files that could
        not be saved; an empty set means everything was committed.
        """
        not_saved: Set[str] = set()
        for path, staged in self._files.items():
            if staged.status == "conflicted":
                if not staged.reported:
                    staged.reported = True
                    not_saved.add(path)
                continue
            if not staged.replacements:
                continue

            if not staged.matches_disk():
                logger.warning("%s changed on disk before commit; not saving", path)
                staged.conflict()
                staged.reported = True
                not_saved.add(path)
                continue

            data = staged.render()
            if self.dry_run:
                logger.info("dry run: not writing %d edit(s) to %s", len(staged.replacements), path)
                staged.mark_committed(staged.baseline)
                continue
            try:
                write_bytes_atomic(path, data)
            except OSError as exc:
                logger.warning("failed to write %s: %s", path, exc)
                staged.conflict()
                staged.reported = True
                not_saved.add(path)
                continue
            logger.info("saved %s", path)
            staged.mark_committed(data)
        return not_saved

    def _decide(self, assertion: Assertion, site: CallSite) -> Tuple[Decision, Pattern, str]:
        count = len(assertion.patterns)
        if count == 0:
            raise PatternError(f"no candidate pattern for {assertion.context.file}:{assertion.context.line}")

        index = assertion.initial_index()
        while True:
            pattern = assertion.patterns[index]
            code = assertion.to_code(site, pattern)
            decision = self._ask(assertion, site, code, index)
            if decision.terminal:
                return decision, pattern, code
            step = 1 if decision is Decision.NEXT else -1
            index = (index + step) % count

    def _ask(self, assertion: Assertion, site: CallSite, code: str, index: int) -> Decision:
        action = assertion.options.action
        if action == "accept":
            return Decision.ACCEPT
        if action == "reject":
            return Decision.REJECT

        ctx = assertion.context
        view = PromptView(
            stage=assertion.stage,
            file=ctx.file,
            line=ctx.line,
            test=ctx.test,
            original=site.whole_lines(site.source),
            replacement=site.whole_lines(code),
            pattern_index=index,
            pattern_count=len(assertion.patterns),
            diff_context=assertion.options.diff_context,
        )
        return Decision(self.prompter.prompt(view))


def _is_callee(func: ast.expr, callee: str) -> bool:
    if isinstance(func, ast.Name):
        return func.id == callee
    if isinstance(func, ast.Attribute):
        return func.attr == callee
    return False


def _keyword(call: ast.Call, name: str) -> Optional[ast.expr]:
    for kw in call.keywords:
        if kw.arg == name:
            return kw.value
    return None


def _span(node: ast.AST) -> Tuple[int, int]:
    return ((node.end_lineno or node.lineno) - node.lineno, (node.end_col_offset or 0) - node.col_offset)
