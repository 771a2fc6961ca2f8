########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""
Security misconfiguration checks (phase 14).

Response headers of the root page, CORS on the API base, HTTP methods,
directory indexes and vendor default accounts. This is the only phase that
reports a missing ``Strict-Transport-Security`` header; the crypto phase
only grades HSTS when it is present.
"""
from __future__ import annotations

import logging
from typing import List

from config import AuditConfig
from credentials import TokenCache, extract_token
from findings import CRITICAL, LOW, MEDIUM, Finding
from heuristics import INFO_LEAK_HEADERS, classify_cors, looks_like_directory_listing, missing_security_headers
from payloads import DEFAULT_CREDENTIALS, DIRECTORY_PATHS
from probe_client import ProbeClient

logger = logging.getLogger(__name__)

TRACE_METHODS = ("TRACE", "TRACK")
HOSTILE_ORIGINS = ["https://evil.com", "https://attacker.com", "https://malicious-site.com", "null"]
EXTRA_DIRECTORIES = ["/documents/", "/data/", "/temp/", "/tmp/"]


# ----------------------- default credentials ----------------------------#
def check_default_credentials(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    login = config.endpoint("auth", "login")
    for email, password in DEFAULT_CREDENTIALS:
        res = probe.post(login, api=True, json={"email": email, "password": password})
        if res.status == 404:
            logger.debug("Login endpoint %s not found; default credential check stopped", login)
            break
        if res.status == 200 and extract_token(res.json(), res.headers):
            findings.append(Finding(
                title=f"Default Credentials Accepted: {email}",
                severity=CRITICAL,
                category="Default Credentials",
                description="A well-known default account logs in with its default password",
                endpoint=login,
                method="POST",
                parameter="email",
                evidence=f"{email} / ***",
                remediation="Remove default accounts or force a password change on first login",
                cvss=9.8,
                cwe="CWE-798",
                owasp="A07:2021",
            ))
    return findings


# ----------------------- HTTP methods ----------------------------#
def check_http_methods(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    res = probe.options("/")
    allow = (res.header("Allow") or res.header("Access-Control-Allow-Methods")).upper()
    for method in TRACE_METHODS:
        if method in allow:
            findings.append(Finding(
                title=f"HTTP {method} Method Advertised",
                severity=MEDIUM,
                category="Dangerous HTTP Method",
                description=f"OPTIONS lists {method}, usable for cross-site tracing",
                endpoint="/",
                method="OPTIONS",
                evidence=allow,
                remediation="Disable unneeded HTTP methods at the web server",
                cvss=5.3,
                cwe="CWE-650",
                owasp="A05:2021",
            ))

    marker = "X-Secaudit-Trace"
    res = probe.request("TRACE", "/", headers={marker: "secaudit"})
    if res.status == 200 and marker.lower() in res.lower_text:
        findings.append(Finding(
            title="HTTP TRACE Method Enabled",
            severity=MEDIUM,
            category="Dangerous HTTP Method",
            description="TRACE echoes request headers back, exposing them to cross-site tracing",
            endpoint="/",
            method="TRACE",
            evidence=res.snippet(120),
            remediation="Disable TRACE at the web server",
            cvss=6.5,
            cwe="CWE-650",
            owasp="A05:2021",
        ))
    return findings


def check_directory_listing(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path in DIRECTORY_PATHS + EXTRA_DIRECTORIES:
        res = probe.get(path)
        if res.status == 200 and looks_like_directory_listing(res.text):
            findings.append(Finding(
                title=f"Directory Listing Enabled: {path}",
                severity=MEDIUM,
                category="Directory Listing",
                description="The directory index is browsable",
                endpoint=path,
                method="GET",
                evidence=res.snippet(120),
                remediation="Disable autoindex / directory browsing",
                cvss=5.3,
                cwe="CWE-548",
                owasp="A05:2021",
            ))
    return findings


# ----------------------- headers ----------------------------#
def check_security_headers(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    res = probe.get("/")
    if not res.ok:
        logger.info("Root page unreachable (%s); header check skipped", res.error or res.kind)
        return []
    findings: List[Finding] = []
    for rule in missing_security_headers(res.headers):
        findings.append(Finding(
            title=f"Missing Security Header: {rule.label}",
            severity=rule.severity,
            category="Missing Security Header",
            description=f"{rule.header} is not sent on the root page",
            endpoint="/",
            method="GET",
            parameter=rule.header,
            remediation=rule.remediation,
            cvss=rule.cvss,
            cwe="CWE-693",
            owasp="A05:2021",
        ))
    for name in INFO_LEAK_HEADERS:
        value = res.header(name)
        if value:
            findings.append(Finding(
                title=f"Information Disclosure Header: {name}",
                severity=LOW,
                category="Information Disclosure Header",
                description=f"{name} reveals the technology stack",
                endpoint="/",
                method="GET",
                parameter=name,
                evidence=value,
                remediation="Remove or blank the header at the proxy",
                cvss=3.1,
                cwe="CWE-200",
                owasp="A05:2021",
            ))
    return findings


def check_cors(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    for origin in HOSTILE_ORIGINS:
        res = probe.get(config.api_base, headers={"Origin": origin})
        verdict = classify_cors(origin, res.headers) if res.ok else None
        if not verdict:
            continue
        return [Finding(
            title=verdict.title,
            severity=verdict.severity,
            category="CORS Misconfiguration",
            description=f"Origin {origin} was answered with Access-Control-Allow-Origin: {verdict.allow_origin}",
            endpoint=config.api_base,
            method="GET",
            evidence=f"ACAO={verdict.allow_origin} ACAC={verdict.allow_credentials}",
            remediation="Validate Origin against an explicit allow-list",
            cvss=verdict.cvss,
            cwe="CWE-942",
            owasp="A05:2021",
        )]
    return []


MISCONFIGURATION_CHECKS = [
    ("Default credentials", check_default_credentials),
    ("HTTP methods", check_http_methods),
    ("Directory listing", check_directory_listing),
    ("Security headers", check_security_headers),
    ("CORS", check_cors),
]
