########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""Data exposure checks (phase 13): files, errors and secrets served to anyone."""
from __future__ import annotations

import logging
from typing import List

from config import AuditConfig
from credentials import TokenCache
from findings import CRITICAL, HIGH, MEDIUM, Finding
from heuristics import API_KEY_PATTERNS, GIT_MARKERS, STACK_TRACE_PATTERNS, looks_like_directory_listing, match_patterns
from payloads import BACKUP_FILES, ENV_ENDPOINTS, GIT_PATHS, SENSITIVE_FILES, SOURCE_PATHS
from probe_client import ProbeClient, ProbeResult

logger = logging.getLogger(__name__)

CRITICAL_FILE_MARKERS = (".env", "secret", "credential", ".sql", "id_rsa", ".htpasswd")
ERROR_TRIGGERS = [
    "/api/undefined-endpoint-12345",
    "/api/users/not-a-number",
    "/api/reclamations/99999999",
    "/api/test?id[]=1",
    "/api/users?email[$ne]=",
]
KEY_PAGES = ["/", "/login", "/dashboard"]
SOURCE_MARKERS = ("export ", "import ", "require(", "function ", "const ", '"mappings"', '"sourcesContent"')
ENV_VARIABLES = (
    "DATABASE_URL",
    "DB_PASSWORD",
    "JWT_SECRET",
    "NEXTAUTH_SECRET",
    "API_KEY",
    "SECRET_KEY",
    "AWS_ACCESS_KEY",
    "AWS_SECRET",
    "STRIPE_SECRET",
    "SMTP_PASSWORD",
    "REDIS_URL",
    "MONGODB_URI",
)


def _served(res: ProbeResult) -> bool:
    """A real file, not the application's catch-all HTML page."""
    if res.status != 200 or not res.text.strip():
        return False
    return not res.lower_text.lstrip().startswith(("<!doctype html", "<html"))


# ----------------------- files ----------------------------#
def check_sensitive_files(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path in SENSITIVE_FILES:
        res = probe.get(path, allow_redirects=False)
        if not _served(res):
            continue
        critical = any(m in path for m in CRITICAL_FILE_MARKERS)
        findings.append(Finding(
            title=f"Sensitive File Accessible: {path}",
            severity=CRITICAL if critical else HIGH,
            category="Sensitive File Exposure",
            description=f"{path} is served publicly ({len(res.text)} bytes)",
            endpoint=path,
            method="GET",
            evidence=res.snippet(100),
            remediation="Deny access to configuration and dot files in the web server",
            cvss=9.0 if critical else 7.0,
            cwe="CWE-538",
            owasp="A05:2021",
        ))
    return findings


def check_backup_files(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path in BACKUP_FILES:
        res = probe.get(path, allow_redirects=False)
        if not _served(res):
            continue
        findings.append(Finding(
            title=f"Backup File Accessible: {path}",
            severity=CRITICAL,
            category="Backup File Exposure",
            description="A backup copy can be downloaded without authentication",
            endpoint=path,
            method="GET",
            evidence=res.snippet(80),
            remediation="Remove backups from the web root",
            cvss=9.0,
            cwe="CWE-530",
            owasp="A05:2021",
        ))
    for path in ("/backup/", "/backups/", "/old/", "/archive/"):
        res = probe.get(path, allow_redirects=False)
        if res.status == 200 and looks_like_directory_listing(res.text):
            findings.append(Finding(
                title=f"Backup Directory Listed: {path}",
                severity=CRITICAL,
                category="Backup File Exposure",
                description="A backup directory index is publicly browsable",
                endpoint=path,
                method="GET",
                evidence=res.snippet(120),
                remediation="Remove the directory and disable autoindex",
                cvss=9.0,
                cwe="CWE-530",
                owasp="A05:2021",
            ))
    return findings


def check_git_exposure(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path in GIT_PATHS:
        res = probe.get(path, allow_redirects=False)
        if res.status != 200 or not any(m in res.text for m in GIT_MARKERS):
            continue
        findings.append(Finding(
            title=f"Git Repository Exposed: {path}",
            severity=CRITICAL,
            category="Git Repository Exposure",
            description="Repository metadata is served; the full source can be reconstructed",
            endpoint=path,
            method="GET",
            evidence=res.snippet(100),
            remediation="Block /.git at the web server and deploy build artefacts only",
            cvss=9.0,
            cwe="CWE-527",
            owasp="A05:2021",
        ))
    return findings


def check_source_disclosure(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path in SOURCE_PATHS:
        res = probe.get(path, allow_redirects=False)
        if not _served(res) or not any(m in res.text for m in SOURCE_MARKERS):
            continue
        is_map = path.endswith(".map")
        findings.append(Finding(
            title=f"{'Source Map' if is_map else 'Source Code'} Exposed: {path}",
            severity=HIGH,
            category="Source Code Disclosure",
            description="Original application source can be downloaded",
            endpoint=path,
            method="GET",
            evidence=res.snippet(200),
            remediation="Do not publish source maps or server sources in production",
            cvss=7.5,
            cwe="CWE-540",
            owasp="A05:2021",
        ))
    return findings


# ----------------------- errors and secrets ----------------------------#
def check_error_disclosure(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path in ERROR_TRIGGERS:
        res = probe.get(path)
        if not res.ok:
            continue
        hit = match_patterns(res.text, STACK_TRACE_PATTERNS)
        if hit:
            findings.append(Finding(
                title=f"Internal Details in Error Response: {path}",
                severity=MEDIUM,
                category="Error Disclosure",
                description=f"The error body reveals internals ({hit})",
                endpoint=path,
                method="GET",
                evidence=res.snippet(200),
                remediation="Return generic error bodies and log details server-side",
                cvss=5.3,
                cwe="CWE-209",
                owasp="A05:2021",
            ))
    return findings


def check_api_key_leakage(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for page in KEY_PAGES:
        res = probe.get(page)
        if not res.success:
            continue
        for name, rx in API_KEY_PATTERNS.items():
            matches = rx.findall(res.text)
            if not matches:
                continue
            findings.append(Finding(
                title=f"{name} Found in {page}",
                severity=CRITICAL,
                category="API Key Leakage",
                description=f"{len(matches)} {name} value(s) embedded in the page source",
                endpoint=page,
                method="GET",
                evidence=matches[0][:12] + "...",
                remediation="Keep keys server-side and rotate the exposed ones",
                cvss=9.0,
                cwe="CWE-312",
                owasp="A02:2021",
            ))
    return findings


def check_env_leakage(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path in ENV_ENDPOINTS + ["/api/info", "/api/system/info", "/__env__", "/phpinfo.php"]:
        res = probe.get(path, allow_redirects=False)
        if res.status != 200:
            continue
        leaked = [v for v in ENV_VARIABLES if v in res.text]
        if leaked:
            logger.warning("Environment variables exposed at %s: %s", path, ", ".join(leaked))
            findings.append(Finding(
                title=f"Environment Variables Exposed: {path}",
                severity=CRITICAL,
                category="Environment Variables Leakage",
                description=f"Debug output reveals {', '.join(leaked)}",
                endpoint=path,
                method="GET",
                evidence=", ".join(leaked),
                remediation="Disable debug and environment endpoints in production and rotate secrets",
                cvss=9.5,
                cwe="CWE-215",
                owasp="A05:2021",
            ))
    return findings


EXPOSURE_CHECKS = [
    ("Sensitive files", check_sensitive_files),
    ("Error disclosure", check_error_disclosure),
    ("API keys in pages", check_api_key_leakage),
    ("Source code disclosure", check_source_disclosure),
    ("Backup files", check_backup_files),
    ("Git metadata", check_git_exposure),
    ("Environment and debug output", check_env_leakage),
]
