import pytest

from findings import CRITICAL, HIGH, INFO, LOW, MEDIUM, Finding, FindingCollector, count_by_severity, severity_for_cvss


@pytest.mark.parametrize(
    "severity, cvss",
    [(CRITICAL, 9.0), (CRITICAL, 10.0), (HIGH, 7.0), (HIGH, 8.9), (MEDIUM, 4.0), (MEDIUM, 6.9), (LOW, 0.1), (LOW, 3.9), (INFO, 0.0)],
)
def test_band_edges_accepted(severity, cvss):
    finding = Finding(title="t", severity=severity, category="c", cvss=cvss)
    assert finding.cvss == cvss


@pytest.mark.parametrize("severity, cvss", [(HIGH, 6.5), (CRITICAL, 8.9), (MEDIUM, 7.0), (LOW, 0.0), (INFO, 0.1)])
def test_out_of_band_cvss_rejected(severity, cvss):
    with pytest.raises(ValueError):
        Finding(title="t", severity=severity, category="c", cvss=cvss)


def test_unknown_severity_rejected():
    with pytest.raises(ValueError):
        Finding(title="t", severity="URGENT", category="c")


def test_defaults_and_normalisation():
    finding = Finding(title="t", severity="medium", category="c", method="post")
    assert finding.severity == MEDIUM
    assert finding.cvss == 5.3
    assert finding.method == "POST"
    assert finding.endpoint == "N/A"


def test_finding_is_immutable():
    finding = Finding(title="t", severity=LOW, category="c")
    with pytest.raises(Exception):
        finding.title = "changed"


def test_long_evidence_clipped():
    finding = Finding(title="t", severity=LOW, category="c", evidence="x" * 2000)
    assert len(finding.evidence) <= 503


def test_severity_for_cvss():
    assert severity_for_cvss(9.8) == CRITICAL
    assert severity_for_cvss(7.5) == HIGH
    assert severity_for_cvss(5.3) == MEDIUM
    assert severity_for_cvss(3.1) == LOW
    assert severity_for_cvss(0.0) == INFO


def test_collector_counts_match_list():
    collector = FindingCollector()
    collector.add(Finding(title="a", severity=HIGH, category="c"))
    collector.extend([
        Finding(title="b", severity=HIGH, category="c"),
        Finding(title="c", severity=INFO, category="c"),
    ])
    counts = collector.severity_counts()
    assert counts[HIGH] == 2
    assert counts[INFO] == 1
    assert counts[CRITICAL] == 0
    assert sum(counts.values()) == len(collector) == 3
    assert count_by_severity(collector.snapshot()) == counts


def test_collector_keeps_duplicates():
    collector = FindingCollector()
    same = dict(title="Missing header", severity=LOW, category="c", endpoint="/")
    collector.extend([Finding(**same), Finding(**same)])
    assert len(collector) == 2
