########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""
Report rendering.

One :class:`ReportGenerator` renders a finished :class:`pipeline.AuditRun`
as a JSON record, an HTML document, a Markdown document and a CSV table.
The finding list and the severity counts are captured once, when the
generator is built, so all four files describe exactly the same state.
The ``counts_from_*`` readers parse the written files back; the CLI uses
them to refuse a report set whose totals disagree.
"""
from __future__ import annotations

import csv
import html
import io
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Union

from bs4 import BeautifulSoup

from findings import CRITICAL, HIGH, INFO, LOW, MEDIUM, SEVERITY_ORDER, Finding, count_by_severity

logger = logging.getLogger(__name__)

JSON_REPORT = "audit-report.json"
HTML_REPORT = "audit-report.html"
MARKDOWN_REPORT = "audit-report.md"
CSV_SUMMARY = "audit-summary.csv"

CSV_COLUMNS = ["severity", "cvss", "title", "category", "method", "endpoint", "cwe", "owasp"]

SEVERITY_META = [
    (CRITICAL, "#d32f2f", "Immediate compromise of data or accounts"),
    (HIGH, "#ffa000", "Exploitable weakness with significant impact"),
    (MEDIUM, "#ffc107", "Weakness that needs specific conditions"),
    (LOW, "#2196f3", "Hardening gap or minor disclosure"),
    (INFO, "#777", "Informational observation"),
]

SEVERITY_STYLES = {
    CRITICAL: "border-left: 4px solid #d32f2f; background-color: #ffebee;",
    HIGH: "border-left: 4px solid #ffa000; background-color: #fff8e1;",
    MEDIUM: "border-left: 4px solid #ffc107; background-color: #fffde7;",
    LOW: "border-left: 4px solid #2196f3; background-color: #e3f2fd;",
    INFO: "border-left: 4px solid #777; background-color: #f0f0f0;",
}


def _esc(value: Any) -> str:
    return html.escape("N/A" if value is None or value == "" else str(value))


class ReportGenerator:
    def __init__(self, run) -> None:
        self.run = run
        self.config = run.config
        self.findings: List[Finding] = sorted(run.findings, key=lambda f: f.rank)
        self.counts: Dict[str, int] = count_by_severity(self.findings)
        self.total = len(self.findings)
        self.timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    def grouped(self) -> Dict[str, List[Finding]]:
        groups: Dict[str, List[Finding]] = {sev: [] for sev in SEVERITY_ORDER}
        for finding in self.findings:
            groups[finding.severity].append(finding)
        return groups

    # ----------------------- JSON ----------------------------#
    def to_record(self) -> Dict[str, Any]:
        run = self.run
        return {
            "metadata": {
                "title": f"{self.config.auditor} Security Audit Report",
                "target": self.config.target,
                "api_base": self.config.api_base,
                "started": run.started_at.isoformat(timespec="seconds"),
                "finished": run.finished_at.isoformat(timespec="seconds") if run.finished_at else None,
                "duration": f"{run.duration:.2f}s",
                "requests_sent": run.requests_sent,
                "requests_failed": run.requests_failed,
                "check_failures": [f"{f.phase}/{f.check}: {f.error}" for f in run.failures],
                "auditor": self.config.auditor,
            },
            "summary": {
                "totalFindings": self.total,
                **{sev.lower(): self.counts[sev] for sev in SEVERITY_ORDER},
            },
            "findings": [f.to_dict() for f in self.findings],
        }

    def generate_json(self) -> str:
        return json.dumps(self.to_record(), indent=2, default=str)

    # ----------------------- Markdown ----------------------------#
    def generate_markdown(self) -> str:
        run = self.run
        md = [f"# {self.config.auditor} Security Audit Report\n"]
        md.append(f"- Target: {self.config.target}")
        md.append(f"- Timestamp: {self.timestamp}")
        md.append(f"- Duration: {run.duration:.2f}s")
        md.append(f"- Requests: {run.requests_sent} sent, {run.requests_failed} failed")
        md.append(f"- Total findings: {self.total}\n")

        md.append("## Summary\n")
        md.append("| Severity | Count |")
        md.append("|---|---:|")
        for sev in SEVERITY_ORDER:
            md.append(f"| {sev} | {self.counts[sev]} |")
        md.append("")

        if not self.findings:
            md.append("No security issues were detected.\n")
            return "\n".join(md)

        for sev, items in self.grouped().items():
            if not items:
                continue
            md.append(f"## {sev} ({len(items)})\n")
            for idx, f in enumerate(items, 1):
                md.append(f"### {idx}. {f.title}")
                md.append(f"- **Category**: {f.category}")
                md.append(f"- **Endpoint**: `{f.method} {f.endpoint}`")
                if f.parameter:
                    md.append(f"- **Parameter**: `{f.parameter}`")
                md.append(f"- **CVSS**: {f.cvss}  **CWE**: {f.cwe or 'N/A'}  **OWASP**: {f.owasp or 'N/A'}")
                if f.description:
                    md.append(f"\n{f.description}")
                if f.evidence:
                    md.append(f"\n```\n{f.evidence}\n```")
                md.append(f"\n**Remediation:** {f.remediation or 'N/A'}\n")
        return "\n".join(md)

    # ----------------------- CSV ----------------------------#
    def generate_csv(self) -> str:
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(CSV_COLUMNS)
        for f in self.findings:
            writer.writerow([f.severity, f.cvss, f.title, f.category, f.method, f.endpoint, f.cwe or "", f.owasp or ""])
        return buf.getvalue()

    # ----------------------- HTML ----------------------------#
    def _finding_html(self, idx: int, f: Finding) -> str:
        extra = ""
        if f.parameter:
            extra += f"<p><strong>Parameter:</strong> <code>{_esc(f.parameter)}</code></p>"
        if f.payload:
            extra += f"<div class=\"body\"><h5>Payload</h5><pre>{_esc(f.payload)}</pre></div>"
        if f.evidence:
            extra += f"<div class=\"body\"><h5>Evidence</h5><pre>{_esc(f.evidence)}</pre></div>"
        return f"""
            <div class="finding" data-severity="{f.severity}" style="{SEVERITY_STYLES[f.severity]} margin-bottom: 20px; padding: 15px; border-radius: 4px;">
                <h3 style="margin-top: 0;">Finding {idx}: {_esc(f.title)}</h3>
                <div class="meta" style="margin-bottom: 15px;">
                    <p><strong>Description:</strong> {_esc(f.description)}</p>
                    <p><strong>Endpoint:</strong> <code>{_esc(f.method)} {_esc(f.endpoint)}</code></p>
                    <p><strong>Category:</strong> {_esc(f.category)}</p>
                    <p><strong>CVSS:</strong> {f.cvss} &nbsp; <strong>CWE:</strong> {_esc(f.cwe)} &nbsp; <strong>OWASP:</strong> {_esc(f.owasp)}</p>
                    {extra}
                </div>
                <div class="remediation">
                    <strong>Remediation:</strong> {_esc(f.remediation)}
                </div>
                <div style="text-align: right; margin-top: 10px;">
                    <a href="#report-nav" style="color:#555;text-decoration:none;">- Back to index</a>
                </div>
            </div>
            """

    def _severity_section(self, severity: str, items: List[Finding]) -> str:
        body = "".join(self._finding_html(i, f) for i, f in enumerate(items, 1))
        return f"""
        <div class="severity-section">
             <h2 id="{severity.lower()}-section"
                style="color: #333; margin-top: 30px; padding-bottom: 5px; border-bottom: 1px solid #eee;">
                {severity} Risk Findings ({len(items)})
             </h2>
            {body}
        </div>
        """

    def _summary_table(self) -> str:
        row_tpl = (
            '<tr class="severity-row" data-severity="{sev}">'
            '  <td style="padding:6px 12px;color:{color};">'
            '    <a href="#{anchor}-section" style="color:inherit;text-decoration:none;font-weight:600;">{sev}</a>'
            '  </td>'
            '  <td class="count" style="padding:6px 12px;text-align:right;">{cnt}</td>'
            '  <td style="padding:6px 12px;">{desc}</td>'
            '</tr>'
        )
        out = (
            '<div class="summary">'
            '<h2 style="margin-top:30px;">Audit Summary</h2>'
            '<table style="border-collapse:collapse;font-family:Arial, sans-serif;font-size:14px;">'
            '<thead><tr>'
            '  <th style="text-align:left;padding:6px 12px;">Severity</th>'
            '  <th style="text-align:right;padding:6px 12px;">Count</th>'
            '  <th style="text-align:left;padding:6px 12px;">Description</th>'
            '</tr></thead><tbody>'
        )
        for sev, color, desc in SEVERITY_META:
            out += row_tpl.format(color=color, anchor=sev.lower(), sev=sev, cnt=self.counts[sev], desc=desc)
        out += (
            '</tbody><tfoot><tr>'
            '  <td style="padding:6px 12px;font-weight:600;">Total</td>'
            f'  <td id="total-findings" style="padding:6px 12px;text-align:right;">{self.total}</td>'
            '  <td></td>'
            '</tr></tfoot></table></div>'
        )
        return out

    def _html_head(self) -> str:
        return f"""
        <head>
            <title>Security Audit Report - {_esc(self.config.target)}</title>
            <meta charset="UTF-8">
            <meta name="viewport" content="width=device-width, initial-scale=1.0">
            <style>
                body {{
                    font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif;
                    line-height: 1.6;
                    color: #333;
                    max-width: 1200px;
                    margin: 0 auto;
                    padding: 20px;
                }}
                h1, h2, h3, h4, h5 {{
                    color: #2c3e50;
                }}
                h1 {{
                    border-bottom: 2px solid #eee;
                    padding-bottom: 10px;
                }}
                pre {{
                    background-color: #f5f5f5;
                    padding: 10px;
                    border-radius: 4px;
                    overflow-x: auto;
                    font-family: Consolas, Monaco, 'Andale Mono', monospace;
                    white-space: pre-wrap;
                    margin: 5px 0;
                }}
                code {{
                    background: #f3f4f6;
                    padding: 2px 6px;
                    border-radius: 4px;
                }}
                .remediation {{
                    background: white;
                    padding: 10px;
                    border-radius: 4px;
                    box-shadow: 0 1px 3px rgba(0,0,0,0.1);
                }}
                .no-findings {{
                    background-color: #e8f5e9;
                    padding: 20px;
                    border-radius: 4px;
                    text-align: center;
                }}
            </style>
        </head>
        """

    def _html_header(self) -> str:
        run = self.run
        return f"""
        <header style="margin-bottom: 30px;">
            <h1 style="margin-bottom: 5px;">{_esc(self.config.auditor)} Security Audit Report</h1>
            <div class="report-meta" style="color: #666;">
                <p><strong>Target:</strong> {_esc(self.config.target)}</p>
                <p><strong>Timestamp:</strong> {self.timestamp}</p>
                <p><strong>Duration:</strong> {run.duration:.2f}s</p>
                <p><strong>Requests:</strong> {run.requests_sent} sent, {run.requests_failed} failed</p>
            </div>
        </header>
        """

    def generate_html(self) -> str:
        if self.findings:
            sections = "".join(
                self._severity_section(sev, items) for sev, items in self.grouped().items() if items
            )
            body = f"""
            <div class="findings">
                <h2 style="color: #333; border-bottom: 1px solid #eee; padding-bottom: 5px;">Detailed Findings</h2>
                {sections}
            </div>"""
        else:
            body = """
            <div class="no-findings">
                <h2>No Security Issues Found</h2>
                <p>The audit completed but no security issues were detected.</p>
            </div>"""
        return f"""<!DOCTYPE html>
        <html>
        {self._html_head()}
        <body>
            <a id="report-nav"></a>
            {self._html_header()}
            {self._summary_table()}
            {body}
        </body>
        </html>
        """

    # ----------------------- files ----------------------------#
    def save_all(self, output_dir: Union[str, Path]) -> Dict[str, Path]:
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        rendered = {
            JSON_REPORT: self.generate_json(),
            HTML_REPORT: self.generate_html(),
            MARKDOWN_REPORT: self.generate_markdown(),
            CSV_SUMMARY: self.generate_csv(),
        }
        paths: Dict[str, Path] = {}
        for name, content in rendered.items():
            path = out / name
            path.write_text(content, encoding="utf-8")
            logger.info("Report written: %s", path)
            paths[name] = path
        return paths


# ----------------------- read-back ----------------------------#
def counts_from_json(text: str) -> Dict[str, int]:
    summary = json.loads(text)["summary"]
    counts = {sev: int(summary[sev.lower()]) for sev in SEVERITY_ORDER}
    counts["TOTAL"] = int(summary["totalFindings"])
    return counts


def counts_from_html(text: str) -> Dict[str, int]:
    soup = BeautifulSoup(text, "html.parser")
    counts = {sev: 0 for sev in SEVERITY_ORDER}
    for row in soup.select("tr.severity-row"):
        counts[row["data-severity"]] = int(row.select_one("td.count").get_text(strip=True))
    total = soup.find(id="total-findings")
    counts["TOTAL"] = int(total.get_text(strip=True)) if total else 0
    return counts


def counts_from_csv(text: str) -> Dict[str, int]:
    counts = {sev: 0 for sev in SEVERITY_ORDER}
    rows = list(csv.DictReader(io.StringIO(text)))
    for row in rows:
        counts[row["severity"]] += 1
    counts["TOTAL"] = len(rows)
    return counts


def verify_report_set(paths: Dict[str, Path]) -> Dict[str, int]:
    """Parse the written reports back and return the common counts; raise on any mismatch."""
    readers = {
        JSON_REPORT: counts_from_json,
        HTML_REPORT: counts_from_html,
        CSV_SUMMARY: counts_from_csv,
    }
    seen = {name: reader(paths[name].read_text(encoding="utf-8")) for name, reader in readers.items()}
    reference = seen[JSON_REPORT]
    for name, counts in seen.items():
        if counts != reference:
            raise RuntimeError(f"Report counts differ: {name} {counts} vs {JSON_REPORT} {reference}")
        if sum(counts[sev] for sev in SEVERITY_ORDER) != counts["TOTAL"]:
            raise RuntimeError(f"Severity counts in {name} do not add up to the total")
    return reference
