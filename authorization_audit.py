########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""Authorization checks (phase 7): role boundaries seen from a citizen account."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from config import AuditConfig
from credentials import TokenCache
from findings import CRITICAL, HIGH, MEDIUM, Finding
from heuristics import owner_email, record_list
from payloads import HIDDEN_PATHS
from probe_client import ProbeClient

logger = logging.getLogger(__name__)

# (method, path relative to the target, body)
ADMIN_OPERATIONS: List[Tuple[str, str, Optional[Dict[str, Any]]]] = [
    ("PATCH", "/api/reclamations/1/decision", {"decision": "ACCEPTEE"}),
    ("POST", "/api/reclamations/1/affecter", {"autoriteId": 1}),
    ("PATCH", "/api/evenements/1/valider", {"decision": "PUBLIEE"}),
    ("GET", "/api/users", None),
    ("DELETE", "/api/users/1", None),
    ("GET", "/api/stats/global", None),
]

SYSTEM_FUNCTIONS: List[Tuple[str, str]] = [
    ("POST", "/api/system/backup"),
    ("POST", "/api/system/restore"),
    ("PATCH", "/api/system/settings"),
    ("DELETE", "/api/logs/clear"),
    ("DELETE", "/api/users/bulk-delete"),
    ("POST", "/api/database/migrate"),
]

ADMIN_PAGES = ["/dashboard/admin", "/dashboard/gouverneur", "/admin", "/backoffice"]
DENIAL_WORDS = ("unauthorized", "forbidden", "acces-refuse", "access denied", "login", "connexion")
CRITICAL_PATH_MARKERS = (".git", ".env", ".sql")


def _citizen_headers(credentials: TokenCache) -> Dict[str, str]:
    headers = credentials.auth_headers("citoyen")
    if not headers:
        logger.info("No citoyen token available; authorization checks need it")
    return headers


# ----------------------- vertical ----------------------------#
def check_vertical_escalation(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    headers = _citizen_headers(credentials)
    if not headers:
        return []
    findings: List[Finding] = []
    for method, path, body in ADMIN_OPERATIONS:
        if method == "DELETE" and not config.aggressive:
            path = "/api/users/999999"
        res = probe.request(method, path, headers=headers, json=body)
        if res.status in (200, 201):
            findings.append(Finding(
                title=f"CITOYEN Reaches {method} {path}",
                severity=CRITICAL,
                category="Vertical Privilege Escalation",
                description="An administrator-only operation succeeded with a citizen token",
                endpoint=path,
                method=method,
                evidence=res.snippet(150),
                remediation="Authorise by role in the route handler, not only in the UI",
                cvss=9.8,
                cwe="CWE-269",
                owasp="A01:2021",
            ))
    return findings


# ----------------------- horizontal ----------------------------#
def check_horizontal_escalation(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    headers = _citizen_headers(credentials)
    if not headers:
        return []
    me = config.credential("citoyen")
    findings: List[Finding] = []
    foreign: List[int] = []
    for rid in range(1, 11):
        path = config.endpoint("reclamations", "get", id=rid)
        res = probe.get(path, api=True, headers=headers)
        owner = owner_email(res.json()) if res.success else None
        if owner and me and owner != me.email:
            foreign.append(rid)
            findings.append(Finding(
                title=f"Complaint #{rid} of Another User Readable",
                severity=HIGH,
                category="Horizontal Privilege Escalation",
                description="Complaint detail is served regardless of ownership",
                endpoint=path,
                method="GET",
                evidence=f"owner={owner}",
                remediation="Scope queries by the authenticated user id",
                cvss=7.5,
                cwe="CWE-639",
                owasp="A01:2021",
            ))
    for rid in foreign[:2]:
        path = config.endpoint("reclamations", "get", id=rid)
        res = probe.patch(path, api=True, headers=headers, json={"titre": "secaudit horizontal probe"})
        if res.success:
            findings.append(Finding(
                title=f"Complaint #{rid} of Another User Modifiable",
                severity=CRITICAL,
                category="Horizontal Privilege Escalation",
                description="Another user's complaint accepted a modification from the citizen token",
                endpoint=path,
                method="PATCH",
                remediation="Check ownership before every update",
                cvss=9.1,
                cwe="CWE-639",
                owasp="A01:2021",
            ))
    return findings


# ----------------------- RBAC ----------------------------#
def check_rbac_bypass(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    headers = _citizen_headers(credentials)
    if not headers:
        return []
    findings: List[Finding] = []
    me_path = config.endpoint("auth", "me")
    res = probe.patch(me_path, api=True, headers=headers, json={"role": "SUPER_ADMIN"})
    data = res.json()
    if res.success and isinstance(data, dict) and data.get("role") == "SUPER_ADMIN":
        findings.append(Finding(
            title="Self-Promotion to SUPER_ADMIN Succeeded",
            severity=CRITICAL,
            category="RBAC Bypass",
            description="A user can change their own role through the profile endpoint",
            endpoint=me_path,
            method="PATCH",
            payload='{"role": "SUPER_ADMIN"}',
            remediation="Make the role field immutable from user-facing endpoints",
            cvss=9.9,
            cwe="CWE-269",
            owasp="A01:2021",
        ))

    for path in ADMIN_PAGES:
        res = probe.get(path, headers=headers, allow_redirects=False)
        if res.status == 200 and not any(w in res.lower_text for w in DENIAL_WORDS):
            findings.append(Finding(
                title=f"CITOYEN Opens Admin Page {path}",
                severity=HIGH,
                category="RBAC Bypass",
                description="An administration page renders for a citizen session",
                endpoint=path,
                method="GET",
                remediation="Guard admin pages with a server-side role check",
                cvss=8.0,
                cwe="CWE-269",
                owasp="A01:2021",
            ))
    return findings


# ----------------------- function level ----------------------------#
def check_function_level_access(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    headers = _citizen_headers(credentials)
    if not headers:
        return []
    findings: List[Finding] = []
    for method, path in SYSTEM_FUNCTIONS:
        if method == "DELETE" and not config.aggressive:
            logger.debug("%s %s skipped outside aggressive mode", method, path)
            continue
        res = probe.request(method, path, headers=headers, json={})
        if res.status in (200, 201):
            findings.append(Finding(
                title=f"Sensitive Function Reachable: {method} {path}",
                severity=CRITICAL,
                category="Function Level Access Control",
                description="A system maintenance function runs for a citizen token",
                endpoint=path,
                method=method,
                remediation="Restrict system functions to super administrators",
                cvss=9.5,
                cwe="CWE-269",
                owasp="A01:2021",
            ))
    return findings


# ----------------------- parameter tampering ----------------------------#
def check_parameter_tampering(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    headers = _citizen_headers(credentials)
    if not headers:
        return []
    me = config.credential("citoyen")
    findings: List[Finding] = []
    path = config.endpoint("reclamations", "list")
    res = probe.get(path, api=True, headers=headers, params={"userId": 1})
    rows = record_list(res.json()) if res.success else None
    if rows and me and any(owner_email(r) not in (None, me.email) for r in rows):
        findings.append(Finding(
            title="userId Parameter Exposes Other Users' Complaints",
            severity=HIGH,
            category="Parameter Tampering",
            description="The server trusts a client-supplied userId filter",
            endpoint=path,
            method="GET",
            parameter="userId",
            remediation="Derive the user from the token and ignore client userId",
            cvss=7.5,
            cwe="CWE-639",
            owasp="A01:2021",
        ))

    res = probe.post(path, api=True, headers=headers,
                     json={"titre": "secaudit", "description": "secaudit", "role": "ADMIN", "statut": "ACCEPTEE"})
    data = res.json()
    if res.status == 201 and isinstance(data, dict) and data.get("statut") == "ACCEPTEE":
        findings.append(Finding(
            title="Complaint Status Settable by Client",
            severity=HIGH,
            category="Parameter Tampering",
            description="A new complaint was created directly in ACCEPTEE state",
            endpoint=path,
            method="POST",
            parameter="statut",
            remediation="Ignore workflow fields on creation",
            cvss=7.0,
            cwe="CWE-915",
            owasp="A04:2021",
        ))
    return findings


# ----------------------- forced browsing ----------------------------#
def check_forced_browsing(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path in HIDDEN_PATHS:
        res = probe.get(path, allow_redirects=False)
        if res.status != 200 or not res.text.strip():
            continue
        critical = any(m in path for m in CRITICAL_PATH_MARKERS)
        findings.append(Finding(
            title=f"Hidden Path Accessible: {path}",
            severity=CRITICAL if critical else MEDIUM,
            category="Forced Browsing",
            description="An unlinked resource answers without authentication",
            endpoint=path,
            method="GET",
            evidence=res.snippet(120),
            remediation="Remove the resource or require authentication for it",
            cvss=9.1 if critical else 5.0,
            cwe="CWE-425",
            owasp="A01:2021",
        ))
    return findings


AUTHORIZATION_CHECKS = [
    ("Vertical privilege escalation", check_vertical_escalation),
    ("Horizontal privilege escalation", check_horizontal_escalation),
    ("RBAC bypass", check_rbac_bypass),
    ("Function level access control", check_function_level_access),
    ("Parameter tampering", check_parameter_tampering),
    ("Forced browsing", check_forced_browsing),
]
