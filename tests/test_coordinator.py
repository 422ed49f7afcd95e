from __future__ import annotations

import io
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List

import pytest
from rich.console import Console

from recollect.assertion import Decision
from recollect.config import Options, RunConfig
from recollect.coordinator import Coordinator, GroupFinished, SuiteFinished, TestStarted
from recollect.errors import RecollectError
from recollect.journal import DecisionJournal, read_journal
from recollect.patcher import PatchStore
from recollect.prompter import FixedPrompter
from recollect.report import Reporter


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.005)


class Sink:
    def __init__(self):
        self.chunks: List[str] = []

    def __call__(self, text, **markup):
        self.chunks.append(text)


class RecordingStore(PatchStore):
    def __init__(self, prompter=None, **kwargs):
        super().__init__(prompter or FixedPrompter(Decision.ACCEPT), **kwargs)
        self.order: List[str] = []

    def patch(self, assertion, seq):
        self.order.append(assertion.context.test)
        return super().patch(assertion, seq)


class ProbePrompter:
    """Accepts everything and tracks how many prompts overlap."""

    def __init__(self):
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def prompt(self, view):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(0.002)
        with self._lock:
            self.active -= 1
        return Decision.ACCEPT


class GatePrompter:
    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def prompt(self, view):
        self.entered.set()
        self.release.wait(5)
        return Decision.ACCEPT


@pytest.fixture
def console_output():
    return io.StringIO()


@pytest.fixture
def build_coordinator(console_output):
    created: List[Coordinator] = []

    def _build(store=None, *, start=True, output=None, journal=None, **config) -> Coordinator:
        coordinator = Coordinator(
            store or RecordingStore(),
            config=RunConfig(**config),
            reporter=Reporter(Console(file=console_output, width=200)),
            output=output or Sink(),
            journal=journal,
        )
        if start:
            coordinator.start()
        created.append(coordinator)
        return coordinator

    yield _build
    for coordinator in created:
        coordinator.close(timeout=5)


def group_file(source_file, name: str, count: int):
    lines = ["def test_many(auto_assert):"] + [f"    auto_assert({idx})" for idx in range(count)]
    return source_file("\n".join(lines) + "\n", name=name)


def test_concurrent_requests_resolve_once_per_group(source_file, make_assertion, build_coordinator):
    probe = ProbePrompter()
    store = RecordingStore(probe)
    coordinator = build_coordinator(store)

    groups = {f"test_g{g}.py": group_file(source_file, f"test_g{g}.py", 4) for g in range(3)}
    assertions = [
        make_assertion(path, idx + 2, idx, group=name, test=f"{name}:{idx}", options=Options())
        for name, path in groups.items()
        for idx in range(4)
    ]

    with ThreadPoolExecutor(max_workers=len(assertions)) as pool:
        futures = {pool.submit(coordinator.register, a): a for a in assertions}
        finished = set()
        while len(finished) < len(groups):
            wait_for(
                lambda: coordinator.active_group is not None
                and coordinator.active_group not in finished
                and all(f.done() for f, a in futures.items() if a.group == coordinator.active_group)
            )
            group = coordinator.active_group
            finished.add(group)
            coordinator.notify(GroupFinished(group))
        results = [f.result(timeout=5) for f in futures]

    assert all(result.ok for result in results)
    assert len(store.order) == len(assertions) == len(set(store.order))
    assert probe.max_active == 1

    seen_groups = [test.split(":")[0] for test in store.order]
    runs = [g for idx, g in enumerate(seen_groups) if idx == 0 or seen_groups[idx - 1] != g]
    assert sorted(runs) == sorted(groups)

    coordinator.notify(SuiteFinished())
    assert coordinator.join(5)
    assert coordinator.stats.new == 12
    assert coordinator.stats.resolved == coordinator.stats.counter == 12
    assert coordinator.exit_status is None
    for path in groups.values():
        assert "    auto_assert(3, 3)\n" in path.read_text()


@pytest.mark.parametrize(
    ("order", "expected"),
    [("newest_first", ["W", "C", "A", "B"]), ("oldest_first", ["W", "A", "C", "B"])],
)
def test_active_group_drains_before_other_groups(source_file, make_assertion, build_coordinator, order, expected):
    store = RecordingStore()
    coordinator = build_coordinator(store, order=order)
    warm = group_file(source_file, "test_g0.py", 1)
    one = group_file(source_file, "test_g1.py", 2)
    two = group_file(source_file, "test_g2.py", 1)

    w = make_assertion(warm, 2, 0, group="g0", test="W")
    a = make_assertion(one, 2, 0, group="g1", test="A")
    b = make_assertion(two, 2, 0, group="g2", test="B")
    c = make_assertion(one, 3, 1, group="g1", test="C")

    with ThreadPoolExecutor(max_workers=4) as pool:
        assert pool.submit(coordinator.register, w).result(timeout=5).ok
        assert coordinator.active_group == "g0"

        futures = {}
        for count, item in enumerate((a, b, c), start=1):
            futures[item.context.test] = pool.submit(coordinator.register, item)
            wait_for(lambda: coordinator.backlog == count)

        coordinator.notify(GroupFinished("g0"))
        futures["A"].result(timeout=5)
        futures["C"].result(timeout=5)
        time.sleep(0.05)
        assert not futures["B"].done()
        assert coordinator.active_group == "g1"

        coordinator.notify(GroupFinished("g1"))
        futures["B"].result(timeout=5)

    assert store.order == expected
    wait_for(lambda: coordinator.active_group == "g2")


def test_active_group_resets_after_its_group_finishes(source_file, make_assertion, build_coordinator):
    coordinator = build_coordinator()
    path = group_file(source_file, "test_g1.py", 1)

    assert coordinator.register(make_assertion(path, 2, 0, group="g1")).ok
    assert coordinator.active_group == "g1"

    coordinator.notify(GroupFinished("other"))
    coordinator.notify(TestStarted("test_g1.py::test_many"))
    time.sleep(0.05)
    assert coordinator.active_group == "g1"

    coordinator.notify(GroupFinished("g1"))
    wait_for(lambda: coordinator.active_group is None)


def test_output_is_held_while_a_group_is_active(source_file, make_assertion, build_coordinator):
    sink = Sink()
    coordinator = build_coordinator(output=sink)
    path = group_file(source_file, "test_g1.py", 1)

    coordinator.write("before ")
    assert sink.chunks == ["before "]

    coordinator.register(make_assertion(path, 2, 0, group="g1"))
    coordinator.write("during ", bold=True)
    coordinator.write("still ")
    assert sink.chunks == ["before "]

    coordinator.notify(GroupFinished("g1"))
    wait_for(lambda: sink.chunks == ["before ", "during ", "still "])
    coordinator.write("after")
    assert sink.chunks[-1] == "after"


def test_output_is_held_during_a_prompt(source_file, make_assertion, build_coordinator):
    sink = Sink()
    gate = GatePrompter()
    coordinator = build_coordinator(RecordingStore(gate), output=sink)
    path = group_file(source_file, "test_g1.py", 1)

    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(coordinator.register, make_assertion(path, 2, 0, group="g1", options=Options()))
        assert gate.entered.wait(5)
        coordinator.write("progress")
        assert sink.chunks == []
        gate.release.set()
        assert future.result(timeout=5).ok

    coordinator.notify(SuiteFinished())
    assert coordinator.join(5)
    assert sink.chunks == ["progress"]


def test_accept_new_then_reject_update(source_file, make_assertion, build_coordinator):
    from recollect.api import AutoAssert

    class Scripted:
        def __init__(self, *decisions):
            self.decisions = list(decisions)

        def prompt(self, view):
            return self.decisions.pop(0)

    path = source_file(
        """
        def check_new(auto_assert):
            return auto_assert(2 + 2)


        def check_update(auto_assert):
            return auto_assert(2 + 3, 4)
        """,
        name="checks.py",
    )
    namespace: dict = {}
    exec(compile(path.read_text(), str(path), "exec"), namespace)

    coordinator = build_coordinator(PatchStore(Scripted(Decision.ACCEPT, Decision.REJECT)))
    auto = AutoAssert(coordinator, test="checks", group="checks.py", options=Options())

    assert namespace["check_new"](auto) == 4
    with pytest.raises(AssertionError, match="5 != 4"):
        namespace["check_update"](auto)

    assert coordinator.stats.new == 1
    assert coordinator.stats.rejected == 1

    coordinator.notify(SuiteFinished())
    assert coordinator.join(5)
    assert coordinator.exit_status is None
    text = path.read_text()
    assert "return auto_assert(2 + 2, 4)" in text
    assert "return auto_assert(2 + 3, 4)" in text


def test_external_edit_marks_file_not_saved(source_file, make_assertion, build_coordinator, console_output, tmp_path):
    journal = DecisionJournal(tmp_path / "journal" / "events.jsonl")
    coordinator = build_coordinator(failure_status=3, journal=journal)
    kept = group_file(source_file, "test_kept.py", 1)
    edited = group_file(source_file, "test_edited.py", 1)

    assert coordinator.register(make_assertion(kept, 2, 0, group="g1")).ok
    coordinator.notify(GroupFinished("g1"))
    assert coordinator.register(make_assertion(edited, 2, 0, group="g2")).ok
    edited.write_text(edited.read_text() + "# someone else\n")

    coordinator.notify(SuiteFinished())
    assert coordinator.join(5)

    assert coordinator.not_saved == {str(edited)}
    assert coordinator.exit_status == 3
    assert "auto_assert(0, 0)" in kept.read_text()
    assert "auto_assert(0, 0)" not in edited.read_text()

    output = console_output.getvalue()
    assert "[recollect] 2 new" in output
    assert "could not be saved" in output
    assert str(edited) in output
    assert "You may need to run these tests again." in output

    events = read_journal(tmp_path / "journal" / "events.jsonl")
    assert [event["type"] for event in events] == ["assertion_resolved", "assertion_resolved", "run_finished"]
    assert events[-1]["payload"]["exit_status"] == 3


def test_conflict_during_staging_counts_as_skipped(source_file, make_assertion, build_coordinator):
    coordinator = build_coordinator()
    path = group_file(source_file, "test_g1.py", 2)

    assert coordinator.register(make_assertion(path, 2, 0, group="g1")).ok
    path.write_text(path.read_text() + "# edited\n")
    result = coordinator.register(make_assertion(path, 3, 1, group="g1"))

    assert result.error == "file_changed"
    assert coordinator.stats.skipped == 1
    assert coordinator.not_saved == {str(path)}

    coordinator.notify(SuiteFinished())
    assert coordinator.join(5)
    assert coordinator.exit_status == 1


def test_update_registration_passes_through_unless_forced(source_file, make_assertion, build_coordinator):
    coordinator = build_coordinator()
    path = source_file("def test_x(auto_assert):\n    auto_assert(1 + 1, 2)\n")

    result = coordinator.register(make_assertion(path, 2, 2, stage="update"))
    assert result.ok and not result.resolved
    assert coordinator.stats.counter == 0

    forced = make_assertion(path, 2, 3, stage="update", options=Options(action="accept", force_update=True))
    result = coordinator.register(forced)
    assert result.ok and result.resolved
    assert coordinator.stats.updated == 1

    patched = coordinator.request_patch(make_assertion(path, 2, 4, stage="update"))
    assert patched.resolved
    assert coordinator.stats.updated == 2


def test_resolution_error_fails_only_that_request(source_file, make_assertion, build_coordinator, tmp_path):
    coordinator = build_coordinator()
    missing = tmp_path / "test_missing.py"
    path = group_file(source_file, "test_g1.py", 1)

    with pytest.raises(FileNotFoundError):
        coordinator.register(make_assertion(missing, 2, 0, group="g1"))
    assert coordinator.register(make_assertion(path, 2, 0, group="g1")).ok

    assert coordinator.stats.skipped == 1
    assert coordinator.stats.new == 1


def test_close_fails_pending_requests(source_file, make_assertion, build_coordinator):
    coordinator = build_coordinator(start=False)
    path = group_file(source_file, "test_g1.py", 1)

    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(coordinator.register, make_assertion(path, 2, 0))
        wait_for(lambda: coordinator.backlog == 1)
        coordinator.close()
        result = future.result(timeout=5)

    assert result.error == "skipped"
    assert coordinator.stats.skipped == 1
    assert coordinator.exit_status == 1
    assert coordinator.finished
    with pytest.raises(RecollectError, match="after the run finished"):
        coordinator.register(make_assertion(path, 2, 0))
    assert coordinator.stats.skipped == 1


def test_requests_blocked_by_group_are_failed_on_close(source_file, make_assertion, build_coordinator):
    coordinator = build_coordinator()
    first = group_file(source_file, "test_g1.py", 1)
    second = group_file(source_file, "test_g2.py", 1)

    assert coordinator.register(make_assertion(first, 2, 0, group="g1")).ok
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(coordinator.register, make_assertion(second, 2, 0, group="g2"))
        wait_for(lambda: coordinator.backlog == 1)
        coordinator.close(timeout=5)
        assert future.result(timeout=5).error == "skipped"

    assert coordinator.stats.new == 1
    assert coordinator.stats.skipped == 1


def test_suite_finished_with_nothing_to_do(build_coordinator, console_output):
    coordinator = build_coordinator()
    coordinator.notify(SuiteFinished())
    assert coordinator.join(5)
    assert coordinator.exit_status is None
    assert console_output.getvalue() == ""


def test_request_after_suite_finished_raises(source_file, make_assertion, build_coordinator):
    coordinator = build_coordinator()
    path = group_file(source_file, "test_g1.py", 1)
    coordinator.notify(SuiteFinished())
    assert coordinator.join(5)

    with pytest.raises(RecollectError):
        coordinator.register(make_assertion(path, 2, 0))
    with pytest.raises(RecollectError):
        coordinator.request_patch(make_assertion(path, 2, 1, stage="update"))
    assert coordinator.stats.counter == 0


def test_unwritable_journal_does_not_stop_the_coordinator(source_file, make_assertion, build_coordinator, tmp_path):
    target = tmp_path / "journal" / "events.jsonl"
    target.mkdir(parents=True)
    sink = Sink()
    coordinator = build_coordinator(journal=DecisionJournal(target), output=sink)
    path = group_file(source_file, "test_g1.py", 2)

    with ThreadPoolExecutor(max_workers=1) as pool:
        first = pool.submit(coordinator.register, make_assertion(path, 2, 0, group="g1"))
        assert first.result(timeout=5).ok
        coordinator.write("progress")
        second = pool.submit(coordinator.register, make_assertion(path, 3, 1, group="g1"))
        assert second.result(timeout=5).ok

    coordinator.notify(GroupFinished("g1"))
    wait_for(lambda: sink.chunks == ["progress"])
    coordinator.notify(SuiteFinished())
    assert coordinator.join(5)
    assert coordinator.stats.new == 2
    assert coordinator.exit_status is None
    assert "    auto_assert(1, 1)\n" in path.read_text()


def test_failing_output_sink_keeps_later_output(source_file, make_assertion, build_coordinator):
    class FlakySink(Sink):
        def __call__(self, text, **markup):
            if text == "boom":
                raise OSError("terminal went away")
            super().__call__(text, **markup)

    sink = FlakySink()
    coordinator = build_coordinator(output=sink)
    path = group_file(source_file, "test_g1.py", 2)

    assert coordinator.register(make_assertion(path, 2, 0, group="g1")).ok
    coordinator.write("boom")
    coordinator.write("after")
    coordinator.notify(GroupFinished("g1"))
    wait_for(lambda: sink.chunks == ["after"])

    assert coordinator.register(make_assertion(path, 3, 1, group="g1")).ok
    coordinator.notify(SuiteFinished())
    assert coordinator.join(5)
    assert coordinator.stats.new == 2
