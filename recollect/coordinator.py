"""
recollect.coordinator

Single decision point for a test run.

Workers register assertions and block on a future. One coordinator thread
reads the inbox, picks the next eligible request, resolves it through the
patch store and replies. Requests are grouped (one group per test module):
once a request of group G resolves, only G's requests are eligible until
G finishes. Runner output is held back while a group is active so prompts
never interleave with test results.
"""
from __future__ import annotations

import logging
import os
import queue
import sys
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from .assertion import Assertion, PatchResult
from .config import RunConfig
from .errors import RecollectError
from .journal import DecisionJournal
from .patcher import PatchStore
from .report import Reporter, RunStats

logger = logging.getLogger(__name__)

OutputSink = Callable[..., None]


@dataclass(frozen=True)
class TestStarted:
    __test__ = False

    test_id: str


@dataclass(frozen=True)
class GroupFinished:
    group: str


@dataclass(frozen=True)
class SuiteFinished:
    pass


Event = Union[TestStarted, GroupFinished, SuiteFinished]


@dataclass
class PendingRequest:
    assertion: Assertion
    future: "Future[PatchResult]" = field(repr=False)
    seq: int = 0


@dataclass(frozen=True)
class _Enqueue:
    assertion: Assertion
    future: "Future[PatchResult]"


class _Rescan:
    pass


class _Stop:
    pass


def _stdout_sink(text: str, **_markup: Any) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


class Coordinator:
    def __init__(
        self,
        store: PatchStore,
        *,
        config: RunConfig | None = None,
        reporter: Reporter | None = None,
        output: OutputSink | None = None,
        journal: DecisionJournal | None = None,
    ):
        self.store = store
        self.config = config or RunConfig()
        self.reporter = reporter or Reporter()
        self.journal = journal
        self.stats = RunStats()
        self.not_saved: Set[str] = set()
        self.active_group: Optional[str] = None
        self.exit_status: Optional[int] = None

        self._output = output or _stdout_sink
        self._inbox: "queue.Queue[object]" = queue.Queue()
        self._pending: List[PendingRequest] = []
        self._finished_groups: Set[str] = set()
        self._next_seq = 1

        self._output_lock = threading.Lock()
        self._buffer: List[Tuple[str, Dict[str, Any]]] = []
        self._deciding = False

        self._state_lock = threading.Lock()
        self._closed = False
        self._finished = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        with self._state_lock:
            if self._thread is not None:
                return
            self._thread = threading.Thread(target=self._run, name="recollect-coordinator", daemon=True)
            self._thread.start()

    def join(self, timeout: float | None = None) -> bool:
        return self._finished.wait(timeout)

    def close(self, timeout: float | None = None) -> None:
        """
        Stop the coordinator without finalizing. Requests still waiting for
        a decision are failed as skipped.
        """
        with self._state_lock:
            if not self._closed:
                self._closed = True
                self._inbox.put(_Stop())
            thread = self._thread
        if thread is not None:
            thread.join(timeout)
        else:
            self._stop()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    @property
    def backlog(self) -> int:
        return len(self._pending) + self._inbox.qsize()

    # -- worker API ---------------------------------------------------------

    def register(self, assertion: Assertion) -> PatchResult:
        """
        New assertions always wait for a decision. Update assertions only
        wait when reconciliation is forced; otherwise the caller runs its
        own comparison and uses `request_patch` on mismatch.
        """
        if assertion.stage == "update" and not assertion.options.forced:
            return PatchResult.passthrough(assertion)
        return self._submit(assertion)

    def request_patch(self, assertion: Assertion) -> PatchResult:
        return self._submit(assertion)

    def _submit(self, assertion: Assertion) -> PatchResult:
        future: "Future[PatchResult]" = Future()
        with self._state_lock:
            if self._closed:
                ctx = assertion.context
                logger.warning("coordinator closed; cannot resolve %s:%d", ctx.file, ctx.line)
                raise RecollectError(
                    f"{ctx.file}:{ctx.line}: auto_assert ran after the run finished reconciling"
                )
            self._inbox.put(_Enqueue(assertion, future))
        return future.result()

    # -- runner API ---------------------------------------------------------

    def notify(self, event: Event) -> None:
        with self._state_lock:
            if self._closed:
                logger.debug("coordinator closed; ignoring %r", event)
                return
            if isinstance(event, SuiteFinished):
                self._closed = True
            self._inbox.put(event)

    def write(self, text: str, **markup: Any) -> None:
        with self._output_lock:
            if self.active_group is not None or self._deciding:
                self._buffer.append((text, markup))
                return
            self._output(text, **markup)

    # -- coordinator thread -------------------------------------------------

    def _run(self) -> None:
        while True:
            message = self._inbox.get()
            if isinstance(message, _Stop):
                self._stop()
                return
            if isinstance(message, SuiteFinished):
                self._finish()
                return

            try:
                self._handle(message)
                request = self._pop_eligible()
                if request is not None:
                    self._resolve(request)
            except Exception:  # noqa: BLE001
                logger.exception("coordinator failed while handling %r", message)
            if self._has_eligible():
                self._inbox.put(_Rescan())

    def _handle(self, message: object) -> None:
        if isinstance(message, _Enqueue):
            self._enqueue(message)
        elif isinstance(message, TestStarted):
            logger.debug("test started: %s", message.test_id)
        elif isinstance(message, GroupFinished):
            logger.debug("group finished: %s", message.group)
            self._finished_groups.add(message.group)
            self._release(message.group)

    def _enqueue(self, message: _Enqueue) -> None:
        request = PendingRequest(assertion=message.assertion, future=message.future, seq=self._next_seq)
        self._next_seq += 1
        self._pending.append(request)
        logger.debug(
            "queued #%d %s:%d (group=%s)",
            request.seq,
            request.assertion.context.file,
            request.assertion.context.line,
            request.assertion.group,
        )

    def _eligible(self, request: PendingRequest) -> bool:
        return self.active_group is None or request.assertion.group == self.active_group

    def _has_eligible(self) -> bool:
        return any(self._eligible(request) for request in self._pending)

    def _pop_eligible(self) -> Optional[PendingRequest]:
        if self.config.order == "newest_first":
            candidates = list(reversed(self._pending))
        else:
            candidates = list(self._pending)
        for request in candidates:
            if self._eligible(request):
                self._pending.remove(request)
                return request
        return None

    def _resolve(self, request: PendingRequest) -> None:
        assertion = request.assertion
        with self._output_lock:
            self._deciding = True
        self.stats.counter += 1

        error: Optional[Exception] = None
        result = PatchResult(assertion, "skipped")
        try:
            try:
                result = self.store.patch(assertion, request.seq)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "could not resolve %s:%d: %s",
                    assertion.context.file,
                    assertion.context.line,
                    exc,
                )
                error = exc
                result = PatchResult(assertion, "skipped")
            self._record(result, error=error)
        finally:
            # The worker always gets its reply, whatever failed above.
            with self._output_lock:
                self._deciding = False
                self.active_group = assertion.group
            if error is not None:
                request.future.set_exception(error)
            else:
                request.future.set_result(result)
        self._release(assertion.group)

    def _record(self, result: PatchResult, *, error: Optional[Exception] = None) -> None:
        assertion = result.assertion
        if result.ok:
            stat = "new" if assertion.stage == "new" else "updated"
        elif result.error == "file_changed":
            stat = "skipped"
            self.not_saved.add(os.path.abspath(assertion.context.file))
        else:
            stat = result.error or "skipped"
        self.stats.increment(stat)

        ctx = assertion.context
        logger.info("%s:%d %s -> %s", ctx.file, ctx.line, assertion.stage, result.error or "ok")
        self._journal(lambda journal: journal.resolved(result, stat=stat, error=error))

    def _journal(self, write: Callable[[DecisionJournal], None]) -> None:
        if self.journal is None:
            return
        try:
            write(self.journal)
        except OSError as exc:
            logger.warning("could not write journal %s: %s", self.journal.path, exc)

    def _release(self, group: str) -> None:
        if self.active_group is None:
            self._flush()
            return
        if self.active_group != group or group not in self._finished_groups:
            return
        if any(request.assertion.group == group for request in self._pending):
            return
        with self._output_lock:
            self.active_group = None
            self._flush_locked()

    def _flush(self) -> None:
        with self._output_lock:
            if self.active_group is None and not self._deciding:
                self._flush_locked()

    def _flush_locked(self) -> None:
        buffered, self._buffer = self._buffer, []
        for text, markup in buffered:
            try:
                self._output(text, **markup)
            except Exception:  # noqa: BLE001
                logger.exception("runner output failed; dropping %d chars", len(text))

    def _drain_inbox(self) -> None:
        while True:
            try:
                message = self._inbox.get_nowait()
            except queue.Empty:
                return
            if isinstance(message, _Enqueue):
                self._enqueue(message)

    def _abandon_pending(self) -> None:
        self._drain_inbox()
        abandoned, self._pending = self._pending, []
        for request in abandoned:
            logger.warning(
                "no decision for %s:%d; counting it as skipped",
                request.assertion.context.file,
                request.assertion.context.line,
            )
            self.stats.counter += 1
            result = PatchResult(request.assertion, "skipped")
            self._record(result)
            request.future.set_result(result)

    def _stop(self) -> None:
        try:
            self._abandon_pending()
            if self.stats.skipped > 0 or self.not_saved:
                self.exit_status = self.config.failure_status
            with self._output_lock:
                self.active_group = None
                self._flush_locked()
        finally:
            self._finished.set()

    def _finish(self) -> None:
        try:
            self._abandon_pending()
            self.not_saved |= self.store.finalize()
            if self.not_saved or self.stats.skipped > 0:
                self.exit_status = self.config.failure_status

            with self._output_lock:
                self.active_group = None
                self._flush_locked()

            self.reporter.print_summary(self.stats)
            self.reporter.print_not_saved(self.not_saved)
            self._journal(
                lambda journal: journal.finished(self.stats.to_dict(), self.not_saved, self.exit_status)
            )
        finally:
            self._finished.set()
