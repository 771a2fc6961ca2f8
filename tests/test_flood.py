import threading
import time
from unittest.mock import MagicMock

import pytest

from conftest import FakeProbe, Reply, make_config
from findings import CRITICAL, HIGH, INFO, MEDIUM
from flood import LoadStats, RecoveryResult, degradation_findings, fan_out, flood, recovery_finding, slowloris
from probe_client import ProbeResult


def _ok(elapsed=0.01, status=200):
    return ProbeResult(kind="ok", method="GET", url="http://sut.test/", status=status, elapsed=elapsed)


def test_fan_out_never_exceeds_concurrency():
    def task(i):
        time.sleep(0.02)
        return _ok()

    stats = fan_out(task, 40, 5)
    assert stats.total == 40
    assert stats.successes == 40
    assert 1 <= stats.peak_in_flight <= 5


def test_fan_out_reaches_concurrency_when_tasks_overlap():
    barrier = threading.Barrier(4, timeout=5)

    def task(i):
        barrier.wait()
        return _ok()

    stats = fan_out(task, 4, 4)
    assert stats.peak_in_flight == 4


def test_fan_out_settles_failing_tasks():
    def task(i):
        if i % 2:
            raise RuntimeError("socket closed")
        return _ok()

    stats = fan_out(task, 10, 3)
    assert stats.total == 10
    assert stats.errors == 5
    assert stats.successes == 5


def test_fan_out_rejects_zero_concurrency():
    with pytest.raises(ValueError):
        fan_out(lambda i: _ok(), 1, 0)


def test_flood_counts_every_request(probe, target):
    target.route("/", Reply(200, "home"))
    stats = flood(probe, "http://sut.test/", 25, 5)
    assert stats.total == 25
    assert len(target.hits("/")) == 25
    assert stats.peak_in_flight <= 5


def test_degradation_on_error_rate():
    stats = LoadStats()
    for _ in range(8):
        stats.record(_ok())
    for _ in range(2):
        stats.record(ProbeResult(kind="error", method="GET", url="u", error="refused"))
    findings = degradation_findings("http://sut.test/", stats, baseline=0.01)
    assert findings
    assert all(f.category == "Denial of Service" for f in findings)


def test_no_degradation_when_healthy():
    stats = LoadStats()
    for _ in range(10):
        stats.record(_ok(0.02))
    assert degradation_findings("http://sut.test/", stats, baseline=0.01) == []


def test_recovery_findings():
    assert recovery_finding("/", RecoveryResult(recovered=True, baseline=0.01, current=0.015)).severity == INFO
    slow = recovery_finding("/", RecoveryResult(recovered=False, baseline=0.01, current=0.5))
    assert slow.severity == MEDIUM
    assert slow.title == "Slow Recovery After Load"


def test_complete_denial_when_nothing_succeeds():
    stats = LoadStats()
    for _ in range(5):
        stats.record(ProbeResult(kind="error", method="GET", url="u", error="refused"))
    findings = degradation_findings("http://sut.test/", stats, baseline=0.01)
    assert [(f.severity, f.title) for f in findings] == [(CRITICAL, "Complete Service Denial")]


def test_severe_slowdown_against_baseline():
    stats = LoadStats()
    for _ in range(10):
        stats.record(_ok(0.5))
    findings = degradation_findings("http://sut.test/", stats, baseline=0.01)
    assert [(f.severity, f.title) for f in findings] == [(HIGH, "Severe Performance Degradation")]


def test_skipped_requests_count_nowhere():
    stats = LoadStats()
    for _ in range(5):
        stats.record(ProbeResult(kind="skipped", method="GET", url="u", error="excluded by scope"))
    assert stats.total == 0
    assert stats.errors == 0
    assert stats.skipped == 5
    assert degradation_findings("http://sut.test/api/x", stats, baseline=0.01) == []


def test_flood_of_excluded_path_reports_nothing(target):
    client = FakeProbe(make_config(), target)
    stats = flood(client, "http://sut.test/api/health", 10, 5)
    assert stats.total == 0
    assert target.requests == []
    assert degradation_findings("http://sut.test/api/health", stats, baseline=0.01) == []


# ----------------------- held connections ----------------------------#
class SocketProbe(FakeProbe):
    """Partial connections are mocks; every second one is refused when ``refuse_odd``."""

    def __init__(self, config, target, refuse_odd=False, barrier=None):
        super().__init__(config, target)
        self.refuse_odd = refuse_odd
        self.barrier = barrier
        self.opened = []
        self._lock = threading.Lock()

    def open_partial(self, host, port, use_tls=False, timeout=5.0):
        if self.barrier:
            self.barrier.wait()
        with self._lock:
            n = len(self.opened)
            sock = MagicMock(name=f"sock{n}")
            self.opened.append(sock)
        if self.refuse_odd and n % 2:
            raise ConnectionRefusedError("busy")
        return sock


def test_hold_open_opens_connections_concurrently(target):
    client = SocketProbe(make_config(dos_max_concurrent=4), target, barrier=threading.Barrier(4, timeout=5))
    with client.hold_open(4) as held:
        assert len(held) == 4
    assert all(s.close.call_count == 1 for s in held)


def test_hold_open_releases_sockets_when_body_raises(target):
    client = SocketProbe(make_config(), target, refuse_odd=True)
    with pytest.raises(RuntimeError):
        with client.hold_open(6) as held:
            assert len(held) == 3
            raise RuntimeError("interrupted")
    assert all(s.close.call_count == 1 for s in held)


def test_slowloris_served_target(target):
    target.route("/", Reply(200, "home"))
    client = SocketProbe(make_config(), target)
    assert slowloris(client, holdouts=3, wait=0) == []
    assert all(s.close.called for s in client.opened)


def test_slowloris_starved_target(target):
    target.route("/", Reply(503, "Service Unavailable"))
    client = SocketProbe(make_config(), target)
    findings = slowloris(client, holdouts=3, wait=0)
    assert [(f.severity, f.title) for f in findings] == [(HIGH, "Vulnerable to Slowloris")]
    assert findings[0].details["held_connections"] == 3


def test_slowloris_releases_sockets_when_check_raises(target, monkeypatch):
    client = SocketProbe(make_config(), target)

    def broken(*args, **kwargs):
        raise RuntimeError("client crashed")

    monkeypatch.setattr(client, "get", broken)
    with pytest.raises(RuntimeError):
        slowloris(client, holdouts=3, wait=0)
    assert len(client.opened) == 3
    assert all(s.close.call_count == 1 for s in client.opened)
