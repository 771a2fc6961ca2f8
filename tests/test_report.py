import json

import pytest

from conftest import make_config
from findings import CRITICAL, HIGH, INFO, LOW, MEDIUM, SEVERITY_ORDER, Finding
from pipeline import AuditRun
from report_utils import (
    CSV_SUMMARY,
    HTML_REPORT,
    JSON_REPORT,
    MARKDOWN_REPORT,
    ReportGenerator,
    counts_from_csv,
    counts_from_html,
    counts_from_json,
    verify_report_set,
)


def _run(findings):
    run = AuditRun(config=make_config())
    run.collector.extend(findings)
    run.requests_sent = 42
    return run


@pytest.fixture
def sample_run():
    return _run([
        Finding(title="SQL Injection in /etablissements", severity=CRITICAL, category="SQL Injection", cvss=9.8, cwe="CWE-89"),
        Finding(title="Missing Security Header: HSTS", severity=HIGH, category="Missing Security Header", cvss=7.4),
        Finding(title="Missing Security Header: HSTS", severity=HIGH, category="Missing Security Header", cvss=7.4),
        Finding(title="CSRF <form> without token", severity=MEDIUM, category="CSRF", evidence="<script>alert(1)</script>"),
        Finding(title="Server header", severity=LOW, category="Information Disclosure Header"),
        Finding(title="DoS Tests Skipped", severity=INFO, category="DoS Testing"),
    ])


def test_three_views_agree(sample_run):
    gen = ReportGenerator(sample_run)
    expected = {CRITICAL: 1, HIGH: 2, MEDIUM: 1, LOW: 1, INFO: 1, "TOTAL": 6}
    assert counts_from_json(gen.generate_json()) == expected
    assert counts_from_html(gen.generate_html()) == expected
    assert counts_from_csv(gen.generate_csv()) == expected


def test_empty_run_reports_zero_everywhere():
    gen = ReportGenerator(_run([]))
    expected = {sev: 0 for sev in SEVERITY_ORDER}
    expected["TOTAL"] = 0
    assert counts_from_json(gen.generate_json()) == expected
    assert counts_from_html(gen.generate_html()) == expected
    assert counts_from_csv(gen.generate_csv()) == expected
    assert "No security issues were detected" in gen.generate_markdown()


def test_record_layout(sample_run):
    record = json.loads(ReportGenerator(sample_run).generate_json())
    assert record["metadata"]["target"] == "http://sut.test"
    assert record["metadata"]["requests_sent"] == 42
    assert record["summary"]["totalFindings"] == len(record["findings"]) == 6
    assert record["findings"][0]["severity"] == CRITICAL


def test_counts_frozen_at_construction(sample_run):
    gen = ReportGenerator(sample_run)
    sample_run.collector.add(Finding(title="late", severity=CRITICAL, category="x"))
    assert counts_from_json(gen.generate_json())["TOTAL"] == 6
    assert counts_from_html(gen.generate_html())["TOTAL"] == 6


def test_html_escapes_finding_text(sample_run):
    html = ReportGenerator(sample_run).generate_html()
    assert "<script>alert(1)</script>" not in html
    assert "&lt;script&gt;" in html
    assert 'id="critical-section"' in html


def test_markdown_groups_by_severity(sample_run):
    md = ReportGenerator(sample_run).generate_markdown()
    assert md.index("## CRITICAL (1)") < md.index("## HIGH (2)") < md.index("## INFO (1)")
    assert "| HIGH | 2 |" in md


def test_save_all_and_verify(sample_run, tmp_path):
    paths = ReportGenerator(sample_run).save_all(tmp_path / "out")
    assert set(paths) == {JSON_REPORT, HTML_REPORT, MARKDOWN_REPORT, CSV_SUMMARY}
    assert all(p.exists() for p in paths.values())
    counts = verify_report_set(paths)
    assert counts["TOTAL"] == 6


def test_verify_detects_tampered_report(sample_run, tmp_path):
    paths = ReportGenerator(sample_run).save_all(tmp_path)
    csv_path = paths[CSV_SUMMARY]
    lines = csv_path.read_text(encoding="utf-8").splitlines()
    csv_path.write_text("\n".join(lines[:-1]) + "\n", encoding="utf-8")
    with pytest.raises(RuntimeError):
        verify_report_set(paths)
