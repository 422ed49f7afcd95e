"""
recollect.pytest_plugin

pytest integration: lifecycle events, terminal output routing, the
`auto_assert` fixture and the run exit status.
"""
from __future__ import annotations

from contextlib import contextmanager, nullcontext
from pathlib import Path
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional

import pytest
from rich.console import Console

from .api import AutoAssert
from .config import RunConfig, load_run_config, resolve_options
from .coordinator import Coordinator, GroupFinished, SuiteFinished, TestStarted
from .journal import DecisionJournal
from .patcher import PatchStore
from .prompter import TerminalPrompter
from .report import Reporter

DEFAULT_CONFIG_NAME = "recollect.yaml"

_COORDINATOR_KEY = pytest.StashKey[Coordinator]()


def group_id(item: pytest.Item) -> str:
    return str(item.path)


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("recollect", "auto_assert reconciliation")
    group.addoption(
        "--recollect-action",
        choices=("prompt", "accept", "reject"),
        default=None,
        help="how to resolve new or changed auto_assert values (default: prompt)",
    )
    group.addoption(
        "--recollect-force-update",
        action="store_true",
        default=None,
        help="reconcile update-stage assertions even when they pass",
    )
    group.addoption(
        "--recollect-dry-run",
        action="store_true",
        default=None,
        help="resolve assertions but never write test files",
    )
    group.addoption(
        "--recollect-config",
        default=None,
        metavar="PATH",
        help=f"YAML run config (default: {DEFAULT_CONFIG_NAME} in rootdir if present)",
    )
    parser.addini("recollect_config", "path to a recollect YAML run config", default="")


@pytest.hookimpl(trylast=True)
def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "recollect(**options): override auto_assert options for a module, class or test",
    )
    run_config = _load_config(config)

    console = Console()
    capman = config.pluginmanager.getplugin("capturemanager")
    prompter = TerminalPrompter(console, suspend=_capture_suspender(capman))
    store = PatchStore(prompter, dry_run=run_config.dry_run)
    journal = DecisionJournal(Path(config.rootpath, run_config.journal)) if run_config.journal else None

    reporter = config.pluginmanager.getplugin("terminalreporter")
    writer = getattr(reporter, "_tw", None)
    coordinator = Coordinator(
        store,
        config=run_config,
        reporter=Reporter(console),
        output=writer.write if writer is not None else None,
        journal=journal,
    )
    if writer is not None:
        # pytest has no hook for terminal output; route the writer through the coordinator.
        writer.write = coordinator.write
        config.add_cleanup(lambda: _restore_writer(writer))

    config.stash[_COORDINATOR_KEY] = coordinator
    config.pluginmanager.register(RecollectSession(coordinator), "recollect-session")
    config.add_cleanup(coordinator.close)
    coordinator.start()


class RecollectSession:
    def __init__(self, coordinator: Coordinator):
        self.coordinator = coordinator

    def pytest_runtest_logstart(self, nodeid: str, location: Any) -> None:
        self.coordinator.notify(TestStarted(nodeid))

    @pytest.hookimpl(hookwrapper=True)
    def pytest_runtest_protocol(self, item: pytest.Item, nextitem: Optional[pytest.Item]) -> Iterator[None]:
        yield
        group = group_id(item)
        if nextitem is None or group_id(nextitem) != group:
            self.coordinator.notify(GroupFinished(group))

    @pytest.hookimpl(tryfirst=True)
    def pytest_sessionfinish(self, session: pytest.Session, exitstatus: int) -> None:
        self.coordinator.notify(SuiteFinished())
        self.coordinator.join()
        status = self.coordinator.exit_status
        if status is not None and session.exitstatus == 0:
            session.exitstatus = status


@pytest.fixture
def auto_assert(request: pytest.FixtureRequest) -> AutoAssert:
    coordinator = request.config.stash[_COORDINATOR_KEY]
    layers: List[Dict[str, Any]] = [
        dict(marker.kwargs) for marker in reversed(list(request.node.iter_markers("recollect")))
    ]
    options = resolve_options(coordinator.config.options, layers)
    return AutoAssert(
        coordinator,
        test=request.node.nodeid,
        group=group_id(request.node),
        options=options,
    )


def _load_config(config: pytest.Config) -> RunConfig:
    raw_path = config.getoption("recollect_config") or config.getini("recollect_config")
    path: Optional[Path] = None
    if raw_path:
        path = Path(config.rootpath, raw_path)
    elif (config.rootpath / DEFAULT_CONFIG_NAME).exists():
        path = config.rootpath / DEFAULT_CONFIG_NAME

    overrides = {
        "action": config.getoption("recollect_action"),
        "force_update": config.getoption("recollect_force_update"),
        "dry_run": config.getoption("recollect_dry_run"),
    }
    return load_run_config(path, overrides=overrides)


def _capture_suspender(capman: Any) -> Callable[[], ContextManager[object]]:
    if capman is None or not capman.is_globally_capturing():
        return nullcontext

    @contextmanager
    def suspended() -> Iterator[None]:
        # stdin has to come back too, the prompt reads from it.
        capman.suspend_global_capture(in_=True)
        try:
            yield
        finally:
            capman.resume_global_capture()

    return suspended


def _restore_writer(writer: Any) -> None:
    if "write" in vars(writer):
        del writer.write
