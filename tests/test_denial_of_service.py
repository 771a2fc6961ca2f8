import threading
from urllib.parse import urlsplit

import pytest

import resource_consumption_audit
from config import Scope
from conftest import FakeProbe, Reply, make_config
from credentials import TokenCache
from findings import HIGH, INFO, MEDIUM
from resource_consumption_audit import application_flood, check_denial_of_service, resource_exhaustion


class TimedProbe(FakeProbe):
    """Answers in 10ms; the root page slows to 500ms after ``slow_after`` hits."""

    def __init__(self, config, target, slow_after=None):
        super().__init__(config, target)
        self.slow_after = slow_after
        self.root_hits = 0
        self._hits_lock = threading.Lock()

    def request(self, method, url, **kwargs):
        res = super().request(method, url, **kwargs)
        if not res.ok:
            return res
        res.elapsed = 0.01
        if urlsplit(res.url).path == "/":
            with self._hits_lock:
                self.root_hits += 1
                hits = self.root_hits
            if self.slow_after is not None and hits > self.slow_after:
                res.elapsed = 0.5
        return res


@pytest.fixture(autouse=True)
def no_pauses(monkeypatch):
    monkeypatch.setattr(resource_consumption_audit, "FLOOD_PAUSE", 0)
    monkeypatch.setattr(resource_consumption_audit, "RECOVERY_WAIT", 0)


@pytest.fixture
def dos_config():
    return make_config(scope=Scope(test_dos=True), dos_max_concurrent=5)


@pytest.fixture
def home(target):
    target.route("/", Reply(200, "<html>home</html>"))
    return target


def _run(config, target, **kwargs):
    probe = TimedProbe(config, target, **kwargs)
    return check_denial_of_service(config, probe, TokenCache(config, probe)), probe


def test_healthy_target_only_reports_recovery(dos_config, home):
    findings, _ = _run(dos_config, home)
    assert [(f.severity, f.title) for f in findings] == [(INFO, "Target Recovered After Stress Tests")]
    assert len(home.hits("/")) >= 5 + dos_config.dos_max_concurrent


def test_degraded_target_reports_slowdown_and_slow_recovery(dos_config, home):
    findings, _ = _run(dos_config, home, slow_after=5)
    titles = {f.title: f.severity for f in findings}
    assert titles["Severe Performance Degradation"] == HIGH
    assert titles["Slow Recovery After Load"] == MEDIUM


def test_excluded_api_is_never_flooded(home):
    config = make_config(scope=Scope(exclude_paths=("/api/*",), test_dos=True), dos_max_concurrent=5)
    findings, _ = _run(config, home)
    assert all(f.severity == INFO for f in findings)
    assert not any(f.category == "Denial of Service" for f in findings)
    assert {r.path for r in home.requests} == {"/"}


def test_flood_skips_out_of_scope_paths(home):
    config = make_config(scope=Scope(exclude_paths=("/api/*",), test_dos=True), dos_max_concurrent=5)
    probe = TimedProbe(config, home)
    assert application_flood(config, probe, baseline=0.01) == []
    assert resource_exhaustion(config, probe) == []
    assert {r.path for r in home.requests} == {"/"}


def test_unmeasured_baseline_skips_recovery(target):
    config = make_config(scope=Scope(exclude_paths=("/",), test_dos=True), dos_max_concurrent=5)
    findings, _ = _run(config, target)
    assert findings == []
    assert "/" not in {r.path for r in target.requests}
