########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""Injection checks (phase 8): SQL, NoSQL, XSS, OS command, SSTI and CRLF."""
from __future__ import annotations

import logging
from typing import List, Optional, Tuple

from config import AuditConfig
from credentials import TokenCache
from findings import CRITICAL, HIGH, INFO, MEDIUM, Finding
from heuristics import (
    COMMAND_OUTPUT_PATTERNS,
    SQL_ERROR_PATTERNS,
    find_dom_sinks,
    find_stored,
    has_script_marker,
    is_reflected,
    match_patterns,
    parse_cookies,
    record_list,
    timing_probe,
)
from payloads import (
    COMMAND_PAYLOADS,
    CRLF_PAYLOADS,
    DOM_PAYLOADS,
    NOSQL_PAYLOADS,
    SQL_PAYLOADS,
    SQL_TIME_PAYLOADS,
    SSTI_PAYLOADS,
    XSS_PAYLOADS,
    top,
)
from probe_client import ProbeClient, ProbeResult

logger = logging.getLogger(__name__)

# (method, api path, field)
SQL_INJECTION_POINTS: List[Tuple[str, str, str]] = [
    ("GET", "/etablissements", "search"),
    ("POST", "/auth/signin", "email"),
    ("GET", "/reclamations", "communeId"),
    ("GET", "/users", "email"),
]
NOSQL_INJECTION_POINTS: List[Tuple[str, str, str]] = [("POST", "/auth/signin", "email"), ("GET", "/users", "email")]
XSS_REFLECTION_POINTS: List[Tuple[str, str]] = [("/api/etablissements", "search"), ("/search", "q"), ("/recherche", "q")]
COMMAND_INJECTION_POINTS: List[Tuple[str, str]] = [("/upload", "filename"), ("/export", "format"), ("/convert", "type")]
SSTI_POINTS: List[Tuple[str, str]] = [("/templates/render", "content"), ("/emails/preview", "body")]
SSTI_PRODUCT = "49"
NOSQL_RESULT_FLOOR = 50


def _inject(probe: ProbeClient, method: str, path: str, field_name: str, value: str, **kwargs) -> ProbeResult:
    extra = {"password": "test"} if method == "POST" and field_name == "email" else None
    return probe.send_field(method, path, field_name, value, extra=extra, **kwargs)


# ----------------------- SQL ----------------------------#
def check_sql_injection(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    """Error-based: one finding per injection point, first matching payload wins."""
    findings: List[Finding] = []
    for method, path, field_name in SQL_INJECTION_POINTS:
        for payload in top(SQL_PAYLOADS, config.aggressive, 15):
            res = _inject(probe, method, path, field_name, payload)
            hit = match_patterns(res.text, SQL_ERROR_PATTERNS) if res.ok else None
            if not hit:
                continue
            findings.append(Finding(
                title=f"SQL Injection in {path}",
                severity=CRITICAL,
                category="SQL Injection",
                description=f"Database error signature '{hit}' in the response",
                endpoint=path,
                method=method,
                parameter=field_name,
                payload=payload,
                evidence=res.snippet(300),
                remediation="Use parameterised queries; never build SQL from request input",
                cvss=9.8,
                cwe="CWE-89",
                owasp="A03:2021",
            ))
            break
    return findings


def check_blind_sql_injection(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    slow_timeout = max(config.timeout, 15.0)
    for method, path, field_name in SQL_INJECTION_POINTS:
        for payload in top(SQL_TIME_PAYLOADS, config.aggressive, 3):
            verdict = timing_probe(
                lambda: _inject(probe, method, path, field_name, "1"),
                lambda p=payload: _inject(probe, method, path, field_name, p, timeout=slow_timeout),
            )
            if not verdict.positive:
                continue
            findings.append(Finding(
                title=f"Time-Based Blind SQL Injection in {path}",
                severity=CRITICAL,
                category="Blind SQL Injection",
                description=f"Sleep payload delayed the response by {verdict.delta:.1f}s",
                endpoint=path,
                method=method,
                parameter=field_name,
                payload=payload,
                remediation="Use parameterised queries; never build SQL from request input",
                cvss=9.3,
                cwe="CWE-89",
                owasp="A03:2021",
                details={"baseline_s": round(verdict.baseline, 3), "payload_s": round(verdict.payload_elapsed, 3)},
            ))
            break
    return findings


# ----------------------- NoSQL ----------------------------#
def check_nosql_injection(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for method, path, field_name in NOSQL_INJECTION_POINTS:
        for payload in top(NOSQL_PAYLOADS, config.aggressive, 10):
            res = _inject(probe, method, path, field_name, payload)
            rows = record_list(res.json()) if res.success else None
            if rows is None or len(rows) <= NOSQL_RESULT_FLOOR:
                continue
            findings.append(Finding(
                title=f"NoSQL Operator Injection in {path}",
                severity=HIGH,
                category="NoSQL Injection",
                description=f"Operator payload bypassed the filter ({len(rows)} records)",
                endpoint=path,
                method=method,
                parameter=field_name,
                payload=payload,
                remediation="Reject query operators in scalar inputs",
                cvss=8.6,
                cwe="CWE-943",
                owasp="A03:2021",
            ))
            break
    return findings


# ----------------------- XSS ----------------------------#
def check_reflected_xss(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path, field_name in XSS_REFLECTION_POINTS:
        for payload in top(XSS_PAYLOADS, config.aggressive, 6):
            res = probe.get(path, params={field_name: payload})
            if not (res.ok and is_reflected(payload, res.text) and has_script_marker(res.text)):
                continue
            findings.append(Finding(
                title=f"Reflected XSS in {path}",
                severity=MEDIUM,
                category="Reflected XSS",
                description="Script payload echoed without encoding",
                endpoint=path,
                method="GET",
                parameter=field_name,
                payload=payload,
                evidence=res.snippet(200),
                remediation="Encode output for its HTML context",
                cvss=6.1,
                cwe="CWE-79",
                owasp="A03:2021",
            ))
            break
    return findings


def _created_id(res: ProbeResult) -> Optional[int]:
    data = res.json()
    if isinstance(data, dict):
        inner = data.get("data") if isinstance(data.get("data"), dict) else data
        rid = inner.get("id")
        return rid if isinstance(rid, int) else None
    return None


def check_stored_xss(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    headers = credentials.auth_headers("citoyen")
    if not headers:
        return []
    path = config.endpoint("reclamations", "list")
    for payload in top(XSS_PAYLOADS, config.aggressive, 4):
        res = probe.post(path, api=True, headers=headers, json={
            "titre": payload,
            "description": payload,
            "categorie": "INFRASTRUCTURE",
            "communeId": 1,
            "latitude": 33.5731,
            "longitude": -7.5898,
        })
        if res.status not in (200, 201):
            continue
        rid = _created_id(res)
        read_path = config.endpoint("reclamations", "get", id=rid) if rid is not None else path
        back = probe.get(read_path, api=True, headers=headers)
        if back.ok and find_stored(payload, back.text):
            return [Finding(
                title="Stored XSS in Complaints",
                severity=HIGH,
                category="Stored XSS",
                description="Script payload persisted and served back unencoded",
                endpoint=read_path,
                method="POST",
                parameter="titre/description",
                payload=payload,
                evidence=back.snippet(200),
                remediation="Sanitise on input and encode on output",
                cvss=8.0,
                cwe="CWE-79",
                owasp="A03:2021",
            )]
    return []


def check_dom_xss(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    for payload in DOM_PAYLOADS:
        res = probe.get(config.target + "/" + payload)
        if not res.success or "html" not in res.header("Content-Type").lower():
            continue
        sinks = find_dom_sinks(res.text)
        if sinks:
            return [Finding(
                title="Client Script Feeds URL Data into a DOM Sink",
                severity=INFO,
                category="DOM XSS Potential",
                description="Inline script reads location data and writes through: " + ", ".join(sinks),
                endpoint="/",
                method="GET",
                payload=payload,
                remediation="Use textContent and avoid innerHTML or document.write with URL data",
                cvss=0.0,
                cwe="CWE-79",
                owasp="A03:2021",
            )]
    return []


# ----------------------- OS command ----------------------------#
def check_command_injection(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path, field_name in COMMAND_INJECTION_POINTS:
        for payload in COMMAND_PAYLOADS:
            res = probe.send_field("POST", path, field_name, payload)
            if res.status == 404:
                break
            hit = match_patterns(res.text, COMMAND_OUTPUT_PATTERNS) if res.ok else None
            if not hit:
                continue
            findings.append(Finding(
                title=f"OS Command Injection in {path}",
                severity=CRITICAL,
                category="Command Injection",
                description=f"Command output '{hit}' in the response",
                endpoint=path,
                method="POST",
                parameter=field_name,
                payload=payload,
                evidence=res.snippet(200),
                remediation="Never pass request data to a shell; use argument vectors",
                cvss=9.8,
                cwe="CWE-78",
                owasp="A03:2021",
            ))
            break
    return findings


# ----------------------- SSTI ----------------------------#
def check_ssti(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    """``7*7`` evaluated to 49 where a neutral value does not produce it."""
    findings: List[Finding] = []
    for path, field_name in SSTI_POINTS:
        baseline = probe.send_field("POST", path, field_name, "secaudit")
        if baseline.status == 404:
            continue
        for payload in SSTI_PAYLOADS:
            res = probe.send_field("POST", path, field_name, payload)
            if not res.ok or SSTI_PRODUCT not in res.text or SSTI_PRODUCT in baseline.text:
                continue
            findings.append(Finding(
                title=f"Server-Side Template Injection in {path}",
                severity=CRITICAL,
                category="SSTI",
                description=f"Template expression {payload} was evaluated",
                endpoint=path,
                method="POST",
                parameter=field_name,
                payload=payload,
                evidence=res.snippet(200),
                remediation="Render user content as data, never as a template",
                cvss=9.0,
                cwe="CWE-94",
                owasp="A03:2021",
            ))
            break
    return findings


# ----------------------- CRLF ----------------------------#
def check_header_injection(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    for payload in CRLF_PAYLOADS:
        res = probe.get("/redirect", api=True, params={"url": payload}, allow_redirects=False)
        if not res.ok:
            continue
        injected_cookie = any(c.name == "admin" for c in parse_cookies(res.set_cookies))
        if injected_cookie or res.header("X-Injected"):
            return [Finding(
                title="HTTP Response Header Injection",
                severity=HIGH,
                category="Header Injection",
                description="CR/LF in a parameter produced an attacker-controlled header",
                endpoint="/redirect",
                method="GET",
                parameter="url",
                payload=payload,
                remediation="Strip CR and LF from values written into headers",
                cvss=7.5,
                cwe="CWE-113",
                owasp="A03:2021",
            )]
    return []


INJECTION_CHECKS = [
    ("SQL injection (error based)", check_sql_injection),
    ("SQL injection (time based)", check_blind_sql_injection),
    ("NoSQL injection", check_nosql_injection),
    ("Reflected XSS", check_reflected_xss),
    ("Stored XSS", check_stored_xss),
    ("DOM XSS", check_dom_xss),
    ("Command injection", check_command_injection),
    ("Template injection", check_ssti),
    ("Header injection", check_header_injection),
]
