import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from depwatch import create_app
from depwatch.collectors.base import BaseCollector, ToolOutput, ToolRunner
from depwatch.collectors.registry_client import ReleaseInfo
from depwatch.config import ScheduleConfig, Settings
from depwatch.errors import ProcessTimeout, ScanCancelled
from depwatch.models import Dependency, Vulnerability
from depwatch.service import MonitorService


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


class FakeCollector(BaseCollector):
    """
    Scriptable collector.

    inventory_errors / audit_errors: raised one per call, in order
    fail_with:                      raised by every phase
    gate:                           inventory blocks until set (honours cancel + deadline)
    """

    def __init__(self, ecosystem: str = "nodejs", deps=None, vulns=None):
        super().__init__()
        self._ecosystem = ecosystem
        self.deps: List[Dependency] = deps if deps is not None else [
            Dependency("lodash", "4.17.20", "4.17.21", versions_behind=1, last_updated_days=900),
            Dependency("express", "4.18.2", "4.18.2"),
        ]
        self.vulns: List[Vulnerability] = vulns if vulns is not None else [
            Vulnerability("lodash", "critical", "GHSA-35jh-r3h4-6jhm", "<4.17.21", cvss_score=9.1),
        ]
        self.inventory_errors: List[Exception] = []
        self.audit_errors: List[Exception] = []
        self.fail_with: Optional[Exception] = None
        self.gate: Optional[threading.Event] = None
        self.started = threading.Event()
        self.inventory_calls = 0
        self.audit_calls = 0

    @property
    def ecosystem(self) -> str:
        return self._ecosystem

    def _check_budget(self, runner: ToolRunner) -> None:
        if runner.cancel_event.is_set():
            raise ScanCancelled("cancelled")
        remaining = runner.remaining()
        if remaining is not None and remaining <= 0:
            raise ProcessTimeout("no time budget left")

    def _block(self, runner: ToolRunner) -> None:
        self.started.set()
        if self.gate is None:
            return
        while not self.gate.wait(0.01):
            self._check_budget(runner)

    def inventory(self, path, options, runner):
        self.inventory_calls += 1
        self._block(runner)
        if self.fail_with is not None:
            raise self.fail_with
        if self.inventory_errors:
            raise self.inventory_errors.pop(0)
        return list(self.deps)

    def audit(self, path, options, runner):
        self.audit_calls += 1
        if not options.check_outdated:
            self._block(runner)
        self._check_budget(runner)
        if self.fail_with is not None:
            raise self.fail_with
        if self.audit_errors:
            raise self.audit_errors.pop(0)
        return list(self.vulns)


class FakeRunner(ToolRunner):
    """Returns canned ToolOutput keyed by the command's first words."""

    def __init__(self, responses: Dict[Tuple[str, ...], ToolOutput]):
        super().__init__()
        self.responses = responses
        self.calls: List[List[str]] = []

    def run(self, cmd, cwd, ok_codes=(0,), allow_output_on_failure=False):
        self.calls.append(list(cmd))
        for prefix, out in self.responses.items():
            if tuple(cmd[:len(prefix)]) == prefix:
                if isinstance(out, Exception):
                    raise out
                return out
        raise AssertionError(f"unexpected command {cmd}")



class SlowPyPI:
    """PyPI stand-in that takes `delay` seconds per request, bounded by the request timeout."""

    timeout = 10

    def __init__(self, delay: float):
        self.delay = delay
        self.timeouts: List[Optional[float]] = []

    def pypi(self, name, timeout=None):
        self.timeouts.append(timeout)
        time.sleep(min(self.delay, timeout))
        return ReleaseInfo(name=name, latest="9.9.9", versions=["9.9.9"])

@pytest.fixture
def project_tree(tmp_path: Path) -> Dict[str, Path]:
    paths = {}
    for name in ("web", "api", "gosvc"):
        p = tmp_path / "projects" / name
        p.mkdir(parents=True)
        paths[name] = p
    (paths["api"] / "requirements.txt").write_text("flask==2.0.1\nrequests==2.25.0\n", encoding="utf-8")
    return paths


@pytest.fixture
def services_config(project_tree):
    return {
        "web": {"path": str(project_tree["web"]), "ecosystem": "nodejs", "enabled": True},
        "api": {"path": str(project_tree["api"]), "ecosystem": "python", "enabled": True},
        "gosvc": {"path": str(project_tree["gosvc"]), "ecosystem": "go", "enabled": True},
    }


@pytest.fixture
def make_settings(services_config):
    def _make(**overrides) -> Settings:
        values = dict(
            services=services_config,
            schedule=ScheduleConfig(full_scan=3600, security_scan=600),
            max_workers=2,
            queue_size=2,
            scan_timeout=5.0,
            max_retries=2,
            backoff_base=0.0,
            backoff_max=0.0,
            conflict_policy="reject",
            database_uri="sqlite://",
            registry_lookups=False,
            scheduler_enabled=False,
        )
        values.update(overrides)
        return Settings(**values)
    return _make


@pytest.fixture
def fake_collectors():
    return {
        "nodejs": FakeCollector("nodejs"),
        "python": FakeCollector("python", deps=[Dependency("flask", "2.0.1", "3.0.0", 5, 800)], vulns=[]),
        "go": FakeCollector("go", deps=[Dependency("golang.org/x/text", "v0.3.5", "v0.14.0", 9, 1000)], vulns=[]),
    }


@pytest.fixture
def make_monitor(make_settings, fake_collectors):
    created = []

    def _make(**overrides) -> MonitorService:
        monitor = MonitorService(make_settings(**overrides), collectors=fake_collectors)
        monitor.start(scheduler=False)
        created.append(monitor)
        return monitor

    yield _make

    for monitor in created:
        for collector in fake_collectors.values():
            if getattr(collector, "gate", None) is not None:
                collector.gate.set()
        monitor.shutdown(wait=True)


@pytest.fixture
def monitor(make_monitor) -> MonitorService:
    return make_monitor()


@pytest.fixture
def client(monitor):
    app = create_app(service=monitor, start_background=False)
    app.config["TESTING"] = True
    return app.test_client()
