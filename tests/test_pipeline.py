import logging
from unittest.mock import MagicMock

import pytest

from config import Scope
from conftest import FakeProbe, FakeTarget, Reply, make_config
from findings import CRITICAL, HIGH, INFO, LOW, Finding
from pipeline import PHASES, Phase, execute

HOME = Reply(200, "<!DOCTYPE html><html><body><h1>Portail</h1></body></html>", {"Content-Type": "text/html"})


def _run(target, **config_overrides):
    config = make_config(**config_overrides)
    probe = FakeProbe(config, target)
    run = execute(config, probe=probe)
    return run, probe


def test_phase_order():
    names = [p.name for p in PHASES]
    assert names[0] == "Reconnaissance"
    assert names.index("Authentication") < names.index("Authorization") < names.index("Injection")
    assert names.index("Business logic") < names.index("Denial of service") < names.index("Data exposure")
    assert names[-1] == "Security misconfiguration"
    assert len(names) == 14


def test_failing_check_does_not_stop_the_run(config, probe, caplog):
    def broken(config, probe, credentials):
        raise RuntimeError("parser exploded")

    def good(config, probe, credentials):
        return [Finding(title="Still here", severity=LOW, category="Test")]

    phases = [Phase("One", [("broken", broken), ("good", good)]), Phase("Two", [("good again", good)])]
    with caplog.at_level(logging.WARNING):
        run = execute(config, probe=probe, phases=phases)

    assert [f.title for f in run.findings] == ["Still here", "Still here"]
    assert len(run.failures) == 1
    assert run.failures[0].check == "broken"
    assert "parser exploded" in caplog.text
    assert run.finished_at is not None


def test_check_returning_garbage_counts_as_failure(config, probe):
    phases = [Phase("One", [("bad", lambda c, p, t: ["not a finding"])])]
    run = execute(config, probe=probe, phases=phases)
    assert run.total == 0
    assert len(run.failures) == 1


def test_disabled_phase_is_skipped(probe):
    config = make_config(scope=Scope(test_injections=False))
    called = []
    phases = [Phase("Injection", [("x", lambda c, p, t: called.append(1) or [])], lambda s: s.test_injections)]
    run = execute(config, probe=probe, phases=phases)
    assert called == []
    assert run.phases_skipped == ["Injection"]


def test_injected_probe_is_left_open(config, probe):
    close = probe.close
    probe.close = MagicMock()
    execute(config, probe=probe, phases=[])
    probe.close.assert_not_called()
    probe.close = close
    assert probe.requests_sent == 0


# ----------------------- full runs against the fake target ----------------------------#
@pytest.fixture
def quiet_target():
    target = FakeTarget()
    target.route("/", HOME)
    return target


def test_full_run_reports_missing_hsts_once(quiet_target):
    run, _ = _run(quiet_target)
    hsts = [f for f in run.findings if "HSTS" in f.title]
    assert len(hsts) == 1
    assert hsts[0].severity == HIGH
    assert hsts[0].title == "Missing Security Header: HSTS"


def test_full_run_finds_sql_injection(quiet_target):
    def search(req):
        if "'" in req.query.get("search", ""):
            return Reply(500, "You have an error in your SQL syntax; check the manual")
        return Reply(200, [])

    quiet_target.route("/api/etablissements", search)
    run, _ = _run(quiet_target)
    sqli = [f for f in run.findings if f.category == "SQL Injection"]
    assert [f.endpoint for f in sqli] == ["/etablissements"]
    assert sqli[0].severity == CRITICAL
    assert sqli[0].cwe == "CWE-89"


def test_full_run_finds_missing_brute_force_protection(quiet_target):
    quiet_target.route("/api/auth/signin", Reply(401, {"error": "invalid credentials"}))
    run, _ = _run(quiet_target)
    brute = [f for f in run.findings if f.category == "Brute Force"]
    assert len(brute) == 1
    assert brute[0].severity == HIGH


def test_full_run_skips_dos_and_counts_consistently(quiet_target):
    run, probe = _run(quiet_target)
    skipped = [f for f in run.findings if f.title == "DoS Tests Skipped"]
    assert len(skipped) == 1 and skipped[0].severity == INFO
    counts = run.severity_counts()
    assert sum(counts.values()) == len(run.findings) == run.total
    assert run.requests_sent == probe.requests_sent > 0
    assert run.duration >= 0
