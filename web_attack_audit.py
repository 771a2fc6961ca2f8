########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""OWASP Top 10 web application attacks (phase 4)."""
from __future__ import annotations

import logging
from typing import List
from urllib.parse import quote

from auth_audit import check_jwt_tampering, check_session_fixation
from config import AuditConfig
from credentials import TokenCache
from findings import CRITICAL, HIGH, INFO, MEDIUM, Finding
from heuristics import (
    FILE_DISCLOSURE_PATTERNS,
    SSRF_INDICATORS,
    STACK_TRACE_PATTERNS,
    classify_cors,
    decode_jwt,
    frame_protected,
    match_patterns,
    owner_email,
    owner_id,
    sensitive_get_fields,
)
from injection_audit import check_blind_sql_injection, check_nosql_injection, check_reflected_xss, check_sql_injection
from payloads import (
    DEBUG_ENDPOINTS,
    PATH_TRAVERSAL_PAYLOADS,
    SSRF_PAYLOADS,
    top,
)
from probe_client import ProbeClient

logger = logging.getLogger(__name__)

SENSITIVE_ENDPOINTS = [
    "/api/users",
    "/api/users/me",
    "/api/users/1",
    "/api/reclamations/1",
    "/api/stats/global",
    "/api/logs",
    "/api/admin",
    "/api/admin/users",
    "/api/config",
    "/api/system/settings",
    "/dashboard/admin",
    "/dashboard/gouverneur",
]

ADMIN_ACTIONS = [
    ("PATCH", "/reclamations/1/decision", {"decision": "ACCEPTEE", "motif": "audit"}),
    ("POST", "/reclamations/1/affecter", {"autoriteId": 1}),
    ("PATCH", "/evenements/1/valider", {"decision": "PUBLIEE"}),
    ("GET", "/users", None),
    ("DELETE", "/users/999999", None),
    ("GET", "/stats/global", None),
    ("GET", "/system/settings", None),
]

EVIL_ORIGIN = "https://evil-attacker.com"


# ----------------------- A01 Broken Access Control ----------------------------#
def check_broken_access_control(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path in SENSITIVE_ENDPOINTS:
        res = probe.get(path, allow_redirects=False)
        if res.status == 200 and res.has_data() and "<form" not in res.lower_text:
            findings.append(Finding(
                title=f"Unauthenticated Access to {path}",
                severity=CRITICAL,
                category="Broken Access Control",
                description=f"{path} returns data without any credentials",
                endpoint=path,
                method="GET",
                evidence=res.snippet(200),
                remediation="Enforce the authentication middleware on every non-public route",
                cvss=9.1,
                cwe="CWE-287",
                owasp="A01:2021",
            ))

    token = credentials.get_token("citoyen")
    if not token:
        return findings
    auth = {"Authorization": f"Bearer {token}"}
    for method, path, body in ADMIN_ACTIONS:
        res = probe.request(method, path, api=True, json=body, headers=auth)
        if res.status in (200, 201):
            findings.append(Finding(
                title=f"Citizen Role Reaches Admin Function: {method} {path}",
                severity=CRITICAL,
                category="Vertical Privilege Escalation",
                description="A CITOYEN token executes an administrative operation",
                endpoint=path,
                method=method,
                evidence=res.snippet(200),
                remediation="Check the caller's role server-side on every privileged operation",
                cvss=9.8,
                cwe="CWE-269",
                owasp="A01:2021",
            ))

    me = config.credential("citoyen")
    for rec_id in range(1, 21):
        res = probe.get(f"/reclamations/{rec_id}", api=True, headers=auth)
        if not res.success:
            continue
        owner = owner_email(res.json())
        if owner and me and owner != me.email:
            findings.append(Finding(
                title=f"Access to Another User's Complaint #{rec_id}",
                severity=HIGH,
                category="Horizontal Privilege Escalation",
                description="A citizen can read a complaint owned by somebody else",
                endpoint=f"/reclamations/{rec_id}",
                method="GET",
                evidence=f"owner={owner} caller={me.email}",
                remediation="Filter resources by the authenticated owner on the server",
                cvss=7.5,
                cwe="CWE-639",
                owasp="A01:2021",
            ))
            break
    return findings


# ----------------------- A02 Cryptographic Failures ----------------------------#
def check_cryptographic_failures(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    if not config.is_https:
        findings.append(Finding(
            title="Application Served Over Plain HTTP",
            severity=HIGH,
            category="Cryptographic Failures",
            description="The target URL uses http://, traffic including credentials is unencrypted",
            endpoint=config.target,
            remediation="Serve the application over HTTPS only and redirect HTTP to HTTPS",
            cvss=7.4,
            cwe="CWE-319",
            owasp="A02:2021",
        ))
    res = probe.get("/login")
    if res.success and "html" in res.header("Content-Type").lower():
        for action, name in sensitive_get_fields(res.text):
            findings.append(Finding(
                title=f"Sensitive Field '{name}' Submitted via GET",
                severity=MEDIUM,
                category="Cryptographic Failures",
                description=f"Form {action or '/login'} sends a secret in the query string",
                endpoint=action or "/login",
                method="GET",
                parameter=name,
                remediation="Submit forms carrying secrets with POST",
                cvss=5.3,
                cwe="CWE-598",
                owasp="A02:2021",
            ))
    token = credentials.get_token("citoyen")
    decoded = decode_jwt(token) if token else None
    if decoded:
        findings.append(Finding(
            title="JWT Claims Readable by Client",
            severity=INFO,
            category="JWT Analysis",
            description="Token carries: " + ", ".join(sorted(decoded.payload)),
            endpoint=config.endpoint("auth", "login"),
            method="POST",
            evidence=f"alg={decoded.header.get('alg')}",
            remediation="Keep JWT payloads free of sensitive data and sign with a strong secret",
            cvss=0.0,
            cwe="CWE-327",
            owasp="A02:2021",
        ))
    return findings


# ----------------------- A03 Injection ----------------------------#
A03_CHECKS = (check_sql_injection, check_blind_sql_injection, check_nosql_injection, check_reflected_xss)


def check_injection(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    """Runs the injection phase's SQL, NoSQL and XSS checks only while that phase is switched off."""
    if config.scope.test_injections:
        logger.info("A03 Injection: covered by the Injection phase")
        return []
    findings: List[Finding] = []
    for check in A03_CHECKS:
        findings += check(config, probe, credentials)
    return findings


# ----------------------- A05 Security Misconfiguration ----------------------------#
def check_security_misconfig(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    res = probe.get(config.api_base, headers={"Origin": EVIL_ORIGIN})
    verdict = classify_cors(EVIL_ORIGIN, res.headers) if res.ok else None
    if verdict:
        findings.append(Finding(
            title=verdict.title,
            severity=verdict.severity,
            category="CORS Misconfiguration",
            description=f"API answered Origin {EVIL_ORIGIN} with Access-Control-Allow-Origin: {verdict.allow_origin}",
            endpoint=config.api_base,
            method="GET",
            evidence=f"ACAO={verdict.allow_origin} ACAC={verdict.allow_credentials}",
            remediation="Allow-list trusted origins explicitly",
            cvss=verdict.cvss,
            cwe="CWE-942",
            owasp="A05:2021",
        ))

    probes = [
        probe.get("/nonexistent-endpoint-999999", api=True),
        probe.post("/auth/signin", api=True, data="{not-json", headers={"Content-Type": "application/json"}),
    ]
    for res in probes:
        hit = match_patterns(res.text, STACK_TRACE_PATTERNS) if res.ok else None
        if hit:
            findings.append(Finding(
                title="Verbose Error Message",
                severity=MEDIUM,
                category="Verbose Error Messages",
                description=f"Error response leaks internals ('{hit}')",
                endpoint=res.url,
                method=res.method,
                evidence=res.snippet(300),
                remediation="Return generic error bodies in production and log details server-side",
                cvss=5.3,
                cwe="CWE-209",
                owasp="A05:2021",
            ))
            break

    for path in DEBUG_ENDPOINTS:
        res = probe.get(path)
        if res.success and res.has_data() and "<!doctype" not in res.lower_text[:50]:
            findings.append(Finding(
                title=f"Debug Endpoint Reachable: {path}",
                severity=MEDIUM,
                category="Security Misconfiguration",
                description="A debugging or introspection endpoint answers in production",
                endpoint=path,
                method="GET",
                evidence=res.snippet(200),
                remediation="Disable debug routes in production builds",
                cvss=5.3,
                cwe="CWE-489",
                owasp="A05:2021",
            ))
    return findings


# ----------------------- A07 Auth & Session Failures ----------------------------#
def check_auth_failures(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    if config.scope.test_authentication:
        logger.info("A07 Auth failures: covered by the Authentication phase")
        return []
    return check_session_fixation(config, probe, credentials) + check_jwt_tampering(config, probe, credentials)


# ----------------------- A10 SSRF ----------------------------#
SSRF_TARGETS = [("/upload", "url"), ("/import", "sourceUrl"), ("/webhook", "callbackUrl"), ("/proxy", "targetUrl"), ("/fetch", "url")]


def check_ssrf(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    headers = credentials.auth_headers("citoyen")
    for path, field_name in SSRF_TARGETS:
        for payload in top(SSRF_PAYLOADS, config.aggressive, 6):
            res = probe.send_field("POST", path, field_name, payload, headers=headers)
            if res.status == 404:
                break
            if not res.ok:
                continue
            hit = match_patterns(res.text, SSRF_INDICATORS)
            if hit:
                findings.append(Finding(
                    title=f"Server-Side Request Forgery in {path}",
                    severity=CRITICAL,
                    category="Server-Side Request Forgery",
                    description=f"Internal resource content ('{hit}') returned for {payload}",
                    endpoint=path,
                    method="POST",
                    parameter=field_name,
                    payload=payload,
                    evidence=res.snippet(200),
                    remediation="Resolve and allow-list outbound destinations; block link-local and private ranges",
                    cvss=9.9,
                    cwe="CWE-918",
                    owasp="A10:2021",
                ))
                break
    return findings


# ----------------------- CSRF ----------------------------#
STATE_CHANGING = [
    ("POST", "/reclamations"),
    ("POST", "/evaluations"),
    ("PATCH", "/users/me"),
    ("PATCH", "/users/me/password"),
]


def check_csrf(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    token = credentials.get_token("citoyen")
    if not token:
        return []
    findings: List[Finding] = []
    headers = {"Authorization": f"Bearer {token}", "Origin": EVIL_ORIGIN, "Referer": EVIL_ORIGIN + "/attack"}
    body = {"titre": "csrf-audit", "description": "csrf-audit", "categorie": "INFRASTRUCTURE", "communeId": 1}
    for method, path in STATE_CHANGING:
        res = probe.request(method, path, api=True, json=body, headers=headers)
        if res.status in (200, 201):
            findings.append(Finding(
                title=f"Cross-Origin State Change Accepted on {path}",
                severity=HIGH,
                category="CSRF Vulnerability",
                description=f"{method} {path} succeeded with Origin {EVIL_ORIGIN}",
                endpoint=path,
                method=method,
                remediation="Validate Origin/Referer on state-changing requests or require anti-CSRF tokens",
                cvss=8.1,
                cwe="CWE-352",
                owasp="A01:2021",
            ))
    return findings


# ----------------------- IDOR ----------------------------#
IDOR_RESOURCES = ["/reclamations", "/users", "/evaluations", "/documents", "/evenements"]


def check_idor(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    token = credentials.get_token("citoyen")
    if not token:
        return []
    findings: List[Finding] = []
    headers = {"Authorization": f"Bearer {token}"}
    me = probe.get(config.endpoint("auth", "me"), api=True, headers=headers).json() or {}
    my_id = me.get("id") if isinstance(me, dict) else None
    for base in IDOR_RESOURCES:
        for rid in range(1, 11):
            res = probe.get(f"{base}/{rid}", api=True, headers=headers)
            if not res.success:
                continue
            owner = owner_id(res.json())
            if owner is not None and owner != my_id:
                findings.append(Finding(
                    title=f"IDOR on {base}/{rid}",
                    severity=HIGH,
                    category="IDOR",
                    description="Object owned by another user is returned for a guessed identifier",
                    endpoint=f"{base}/{rid}",
                    method="GET",
                    evidence=f"owner={owner} caller={my_id}",
                    remediation="Authorise every object lookup against the caller",
                    cvss=7.5,
                    cwe="CWE-639",
                    owasp="A01:2021",
                ))
                break
    return findings


# ----------------------- Path traversal ----------------------------#
FILE_ENDPOINTS = ["/api/files", "/api/download", "/uploads", "/static", "/api/export", "/api/attachment"]


def check_path_traversal(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for endpoint in FILE_ENDPOINTS:
        for payload in top(PATH_TRAVERSAL_PAYLOADS, config.aggressive, 5):
            res = probe.get(f"{endpoint}/{quote(payload, safe='')}")
            hit = match_patterns(res.text, FILE_DISCLOSURE_PATTERNS) if res.ok else None
            if hit:
                findings.append(Finding(
                    title=f"Path Traversal via {endpoint}",
                    severity=CRITICAL,
                    category="Path Traversal",
                    description=f"System file content ('{hit}') returned",
                    endpoint=f"{endpoint}/{payload}",
                    method="GET",
                    payload=payload,
                    evidence=res.snippet(100),
                    remediation="Resolve paths against a fixed root and reject traversal sequences",
                    cvss=9.3,
                    cwe="CWE-22",
                    owasp="A01:2021",
                ))
                break
    return findings


# ----------------------- Clickjacking ----------------------------#
def check_clickjacking(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    res = probe.get("/")
    if not res.ok or frame_protected(res.headers):
        return []
    return [Finding(
        title="Page Can Be Framed (Clickjacking)",
        severity=MEDIUM,
        category="Clickjacking",
        description="Neither X-Frame-Options nor a CSP frame-ancestors directive is set",
        endpoint="/",
        method="GET",
        remediation="Send X-Frame-Options: DENY or Content-Security-Policy: frame-ancestors 'none'",
        cvss=6.1,
        cwe="CWE-1021",
        owasp="A05:2021",
    )]


WEB_ATTACK_CHECKS = [
    ("A01:2021 Broken Access Control", check_broken_access_control),
    ("A02:2021 Cryptographic Failures", check_cryptographic_failures),
    ("A03:2021 Injection", check_injection),
    ("A05:2021 Security Misconfiguration", check_security_misconfig),
    ("A07:2021 Auth & Session Failures", check_auth_failures),
    ("A10:2021 SSRF", check_ssrf),
    ("CSRF", check_csrf),
    ("IDOR", check_idor),
    ("Path Traversal / LFI", check_path_traversal),
    ("Clickjacking", check_clickjacking),
]
