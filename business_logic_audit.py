########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""
Business logic checks (phase 11).

These probe the platform's workflows rather than a single vulnerability
class: who may read which complaint, who may change its status, whether a
citizen can register straight into an admin role, and whether bulk or
concurrent use of an operation is limited at all.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional, Tuple

from config import AuditConfig
from credentials import TokenCache
from findings import CRITICAL, HIGH, INFO, MEDIUM, Finding
from flood import fan_out
from heuristics import exposed_fields, record_list, responses_differ
from probe_client import ProbeClient, ProbeResult

logger = logging.getLogger(__name__)

# path template, kind, ids
IDOR_TARGETS: List[Tuple[str, str, Tuple[int, ...]]] = [
    ("/api/users/{id}", "user", (1, 2, 3, 999)),
    ("/api/user/{id}/profile", "user", (1, 2, 3)),
    ("/api/reclamations/{id}", "reclamation", (1, 2, 3, 10, 100)),
    ("/api/etablissements/{id}", "etablissement", (1, 2, 3)),
    ("/api/evaluations/{id}", "evaluation", (1, 2, 3)),
    ("/api/notifications/{id}", "notification", (1, 2, 3, 100)),
    ("/api/user/{id}/notifications", "notification", (1, 2, 3)),
    ("/api/documents/{id}", "document", (1, 2, 3)),
    ("/api/admin/users/{id}", "user", (1, 2, 3)),
]
USER_FIELDS = ("email", "motDePasse", "password", "telephone")
SEQUENTIAL_PREFIXES = ("/api/reclamations/", "/api/evaluations/")

ESCALATION_FIELDS: List[Dict[str, Any]] = [
    {"role": "SUPER_ADMIN"},
    {"role": "ADMIN"},
    {"isAdmin": True},
    {"permissions": ["*"]},
]
ADMIN_ENDPOINTS = [
    "/api/admin/users",
    "/api/admin/settings",
    "/api/super-admin",
    "/api/admin/backups",
    "/api/admin/audit",
    "/super-admin",
    "/gouverneur",
    "/delegation",
]

RATE_LIMIT_VOLUME = 50
RACE_VOLUME = 10
RACE_ENDPOINTS = ["/api/user/notifications/markAllRead", "/api/evaluations"]
UPLOAD_ENDPOINTS = ["/api/upload", "/api/media/upload", "/api/reclamations/upload"]
INVALID_VALUES: List[Tuple[str, Dict[str, Any]]] = [
    ("/api/evaluations", {"etablissementId": 1, "noteGlobale": -5}),
    ("/api/evaluations", {"etablissementId": 1, "noteGlobale": 100}),
    ("/api/evaluations", {"etablissementId": 1, "noteGlobale": 2147483648}),
    ("/api/etablissements", {"nom": "secaudit", "capacite": -100}),
]
ENUMERATION_EMAILS = ("admin@medaction.ma", "superadmin@medaction.ma", "nonexistent999@example.com")


def _unique_email(tag: str) -> str:
    return f"secaudit.{tag}.{int(time.time() * 1000)}@example.com"


def _is_admin_record(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    user = data.get("user") if isinstance(data.get("user"), dict) else data
    return user.get("role") in ("SUPER_ADMIN", "ADMIN") or user.get("isAdmin") is True


# ----------------------- IDOR ----------------------------#
def check_idor(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    """Object access by guessed id, without any session."""
    findings: List[Finding] = []
    for template, kind, ids in IDOR_TARGETS:
        for oid in ids:
            path = template.replace("{id}", str(oid))
            res = probe.get(path)
            if res.status == 404:
                break
            if not res.success:
                continue
            data = res.json()
            if kind == "user":
                leaked = exposed_fields(data, USER_FIELDS)
                if not leaked:
                    continue
                findings.append(Finding(
                    title=f"IDOR - User Data Exposure: {template}",
                    severity=HIGH,
                    category="Business Logic",
                    description=f"{path} returns another user's data without authorization",
                    endpoint=path,
                    method="GET",
                    evidence=", ".join(leaked),
                    remediation="Ensure users can only read their own records",
                    cvss=8.6,
                    cwe="CWE-639",
                    owasp="A01:2021",
                ))
                break
            if kind == "notification" and data:
                findings.append(Finding(
                    title=f"IDOR - Notification Access: {template}",
                    severity=MEDIUM,
                    category="Business Logic",
                    description=f"{path} returns notifications without checking ownership",
                    endpoint=path,
                    method="GET",
                    evidence=res.snippet(120),
                    remediation="Verify the owner before returning notifications",
                    cvss=6.5,
                    cwe="CWE-639",
                    owasp="A01:2021",
                ))
                break

    for prefix in SEQUENTIAL_PREFIXES:
        reachable = [i for i in range(1, 6) if probe.get(f"{prefix}{i}").success]
        if len(reachable) == 5:
            findings.append(Finding(
                title=f"Sequential ID Enumeration: {prefix}",
                severity=MEDIUM,
                category="Business Logic",
                description="Every id from 1 to 5 resolves without authentication",
                endpoint=prefix,
                method="GET",
                remediation="Use non-guessable identifiers and always check authorization",
                cvss=6.5,
                cwe="CWE-639",
                owasp="A01:2021",
            ))
    return findings


# ----------------------- privilege escalation ----------------------------#
def check_privilege_escalation(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    register = config.endpoint("auth", "register")
    for extra in ESCALATION_FIELDS:
        body = dict(extra, email=_unique_email("role"), password="Test123!Secaudit", nom="Audit", prenom="Sec")
        res = probe.post(register, api=True, json=body)
        if res.status in (200, 201) and _is_admin_record(res.json()):
            findings.append(Finding(
                title="Privilege Escalation via Registration",
                severity=CRITICAL,
                category="Business Logic",
                description="Registration honours a client-supplied privilege field",
                endpoint=register,
                method="POST",
                payload=str(extra),
                remediation="Set role and permissions server-side; never bind them from the request",
                cvss=9.8,
                cwe="CWE-269",
                owasp="A01:2021",
            ))
            break

    # no session at all: any 200 here means the route is not guarded
    me = config.endpoint("auth", "me")
    for extra in ESCALATION_FIELDS:
        res = probe.put(me, api=True, json=extra)
        if res.status == 200 and res.has_data():
            findings.append(Finding(
                title="Privilege Escalation via Profile Update",
                severity=CRITICAL,
                category="Business Logic",
                description="Profile update accepted a privilege field without a session",
                endpoint=me,
                method="PUT",
                payload=str(extra),
                remediation="Authenticate profile updates and strip privileged fields",
                cvss=9.8,
                cwe="CWE-269",
                owasp="A01:2021",
            ))
            break
    return findings


def check_unauthenticated_admin(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path in ADMIN_ENDPOINTS:
        res = probe.get(path, allow_redirects=False)
        data = res.json()
        if res.status != 200 or not isinstance(data, (list, dict)) or not data:
            continue
        if isinstance(data, dict) and data.get("error"):
            continue
        findings.append(Finding(
            title=f"Unauthenticated Admin Access: {path}",
            severity=CRITICAL,
            category="Business Logic",
            description=f"Admin endpoint {path} answers with data and no session",
            endpoint=path,
            method="GET",
            evidence=res.snippet(150),
            remediation="Require authentication and an admin role on every admin route",
            cvss=9.1,
            cwe="CWE-306",
            owasp="A01:2021",
        ))
    return findings


# ----------------------- mass assignment / workflow ----------------------------#
def check_mass_assignment(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    register = config.endpoint("auth", "register")
    body = {
        "email": _unique_email("mass"),
        "password": "Test123!Secaudit",
        "nom": "Audit",
        "prenom": "Sec",
        "id": 1,
        "createdAt": "2020-01-01",
        "isActive": True,
        "isEmailVerifie": True,
        "isSuperAdmin": True,
        "balance": 999999,
    }
    res = probe.post(register, api=True, json=body)
    user = res.json()
    if res.status in (200, 201) and isinstance(user, dict):
        user = user.get("user") if isinstance(user.get("user"), dict) else user
        accepted = [k for k in ("isEmailVerifie", "isSuperAdmin", "balance") if user.get(k) == body[k]]
        if user.get("id") == 1:
            accepted.append("id")
        if accepted:
            findings.append(Finding(
                title="Mass Assignment on Registration",
                severity=HIGH,
                category="Business Logic",
                description="Registration stored fields the client must not control",
                endpoint=register,
                method="POST",
                evidence=", ".join(accepted),
                remediation="Bind request bodies through an allowlist of fields",
                cvss=7.5,
                cwe="CWE-915",
                owasp="API3:2023",
            ))

    headers = credentials.auth_headers("citoyen")
    path = config.endpoint("reclamations", "list")
    res = probe.post(path, api=True, headers=headers, json={
        "titre": "secaudit mass assignment",
        "description": "secaudit",
        "statut": "RESOLU",
        "priorite": "CRITIQUE",
        "userId": 1,
    })
    data = res.json()
    if res.status in (200, 201) and isinstance(data, dict) and (data.get("statut") == "RESOLU" or data.get("priorite") == "CRITIQUE"):
        findings.append(Finding(
            title="Mass Assignment in Complaint Creation",
            severity=MEDIUM,
            category="Business Logic",
            description="A complaint was created with a client-chosen status or priority",
            endpoint=path,
            method="POST",
            remediation="Set status and priority server-side on creation",
            cvss=5.4,
            cwe="CWE-915",
            owasp="API3:2023",
        ))
    return findings


def check_workflow_bypass(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    path = config.endpoint("reclamations", "list")
    res = probe.post(path, api=True, json={"titre": "secaudit", "description": "workflow bypass"})
    if res.status == 201:
        findings.append(Finding(
            title="Complaint Created Without a Verified Session",
            severity=MEDIUM,
            category="Business Logic",
            description="A complaint was accepted without any authenticated, verified account",
            endpoint=path,
            method="POST",
            remediation="Require a verified account before accepting complaints",
            cvss=4.3,
            cwe="CWE-287",
            owasp="A04:2021",
        ))

    headers = credentials.auth_headers("citoyen")
    target = config.endpoint("reclamations", "get", id=1)
    for status in ("RESOLU", "REJETE", "EN_COURS"):
        res = probe.put(target, api=True, headers=headers, json={"statut": status})
        if res.status == 200:
            findings.append(Finding(
                title="Complaint Status Manipulation",
                severity=MEDIUM,
                category="Business Logic",
                description=f"A citizen moved complaint #1 to {status} directly",
                endpoint=target,
                method="PUT",
                payload=f'{{"statut": "{status}"}}',
                remediation="Allow status transitions only through the decision workflow",
                cvss=6.5,
                cwe="CWE-841",
                owasp="A04:2021",
            ))
            break

    res = probe.put(config.endpoint("etablissements", "get", id=1), api=True, headers=headers,
                    json={"nom": "secaudit workflow probe"})
    if res.status == 200:
        findings.append(Finding(
            title="Establishment Modifiable by Citizen",
            severity=HIGH,
            category="Business Logic",
            description="Establishment data accepted an update from a citizen token",
            endpoint=config.endpoint("etablissements", "get", id=1),
            method="PUT",
            remediation="Restrict establishment updates to administrators",
            cvss=8.1,
            cwe="CWE-639",
            owasp="A01:2021",
        ))
    return findings


# ----------------------- rate limiting / races ----------------------------#
def _rate_limit_targets(config: AuditConfig) -> List[Tuple[str, str, Optional[Dict[str, Any]], bool]]:
    return [
        ("POST", config.endpoint("auth", "login"), {"email": "test@test.com", "password": "wrong"}, True),
        ("POST", config.endpoint("auth", "forgot_password"), {"email": "test@test.com"}, True),
        ("GET", "/search", None, False),
        ("GET", config.endpoint("reclamations", "list"), None, False),
    ]


def check_rate_limiting(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for method, path, body, is_auth in _rate_limit_targets(config):
        first = probe.request(method, path, api=True, json=body)
        if not first.ok or first.status == 404:
            continue
        accepted = 1 if first.status != 429 else 0
        limited = first.status == 429
        start = time.perf_counter()
        for _ in range(RATE_LIMIT_VOLUME - 1):
            if limited:
                break
            res = probe.request(method, path, api=True, json=body)
            if res.status == 429:
                limited = True
            elif res.ok:
                accepted += 1
        duration = time.perf_counter() - start
        logger.info("Rate limit %s %s: %d/%d accepted, limited=%s", method, path, accepted, RATE_LIMIT_VOLUME, limited)
        if limited or accepted < RATE_LIMIT_VOLUME * 0.9:
            continue
        findings.append(Finding(
            title=f"No Rate Limiting: {path}",
            severity=HIGH if is_auth else MEDIUM,
            category="Missing Rate Limiting",
            description=f"{accepted}/{RATE_LIMIT_VOLUME} requests accepted in {duration:.1f}s with no 429",
            endpoint=path,
            method=method,
            remediation="Throttle per IP and per account on authentication flows and expensive reads",
            cvss=7.5 if is_auth else 5.3,
            cwe="CWE-770",
            owasp="API4:2023",
        ))
    return findings


def check_race_conditions(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    headers = credentials.auth_headers("citoyen")
    findings: List[Finding] = []
    for path in RACE_ENDPOINTS:
        def send(_: int, path: str = path) -> ProbeResult:
            return probe.post(path, headers=headers, json={}, throttle=False)

        stats = fan_out(send, RACE_VOLUME, min(RACE_VOLUME, config.threads), desc=f"Race {path}")
        accepted = sum(1 for s in stats.statuses if 0 < s < 400)
        if accepted == RACE_VOLUME:
            findings.append(Finding(
                title=f"Potential Race Condition: {path}",
                severity=INFO,
                category="Business Logic",
                description=f"All {RACE_VOLUME} simultaneous requests were accepted; check locking",
                endpoint=path,
                method="POST",
                remediation="Use transactions or row locks for operations that must happen once",
                cvss=0.0,
                cwe="CWE-362",
                details=stats.as_dict(),
            ))
    return findings


# ----------------------- values / uploads / enumeration ----------------------------#
def check_numeric_manipulation(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    headers = credentials.auth_headers("citoyen")
    findings: List[Finding] = []
    for path, body in INVALID_VALUES:
        res = probe.post(path, headers=headers, json=body)
        if res.status in (200, 201):
            findings.append(Finding(
                title=f"Invalid Numeric Value Accepted: {path}",
                severity=MEDIUM,
                category="Business Logic",
                description=f"Out-of-range value stored: {body}",
                endpoint=path,
                method="POST",
                payload=str(body),
                remediation="Validate numeric ranges server-side",
                cvss=4.3,
                cwe="CWE-20",
                owasp="A04:2021",
            ))
    return findings


def check_upload_endpoints(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path in UPLOAD_ENDPOINTS:
        res = probe.post(path, data={}, headers={"Content-Type": "multipart/form-data"})
        if not res.ok or res.status == 404:
            continue
        logger.info("Upload endpoint found: %s (HTTP %s)", path, res.status)
        findings.append(Finding(
            title=f"File Upload Endpoint Found: {path}",
            severity=INFO,
            category="Business Logic",
            description="Confirm type, size and content validation for uploaded files",
            endpoint=path,
            method="POST",
            remediation="Validate uploads strictly and store them outside the web root",
            cvss=0.0,
            cwe="CWE-434",
        ))
    return findings


def _enumeration_probe(probe: ProbeClient, path: str, body_for) -> List[ProbeResult]:
    return [probe.post(path, api=True, json=body_for(email)) for email in ENUMERATION_EMAILS]


def check_user_enumeration(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    flows = [
        ("Login", config.endpoint("auth", "login"), lambda e: {"email": e, "password": "wrongpassword"}),
        ("Password Reset", config.endpoint("auth", "forgot_password"), lambda e: {"email": e}),
    ]
    for label, path, body_for in flows:
        results = _enumeration_probe(probe, path, body_for)
        if not all(r.ok for r in results) or results[-1].status == 404:
            continue
        missing = results[-1]
        if any(responses_differ(r, missing) for r in results[:-1]):
            findings.append(Finding(
                title=f"User Enumeration via {label}",
                severity=MEDIUM,
                category="Business Logic",
                description=f"{label} answers differently for existing and unknown accounts",
                endpoint=path,
                method="POST",
                remediation="Return one generic response whether or not the account exists",
                cvss=5.3,
                cwe="CWE-204",
                owasp="A07:2021",
            ))
    return findings


def check_cross_user_listing(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    path = config.endpoint("reclamations", "list")
    res = probe.get(path, api=True, params={"all": "true"})
    rows = record_list(res.json()) if res.success else None
    if not rows:
        return []
    owners = {r.get("userId") for r in rows if isinstance(r, dict) and r.get("userId") is not None}
    if len(owners) < 2:
        return []
    return [Finding(
        title="Cross-User Complaint Listing",
        severity=MEDIUM,
        category="Business Logic",
        description=f"?all=true returns complaints of {len(owners)} different users",
        endpoint=path,
        method="GET",
        parameter="all",
        remediation="Filter complaint listings by the authenticated user",
        cvss=6.5,
        cwe="CWE-639",
        owasp="A01:2021",
    )]


BUSINESS_LOGIC_CHECKS = [
    ("IDOR and sequential ids", check_idor),
    ("Privilege escalation", check_privilege_escalation),
    ("Unauthenticated admin access", check_unauthenticated_admin),
    ("Mass assignment", check_mass_assignment),
    ("Workflow bypass", check_workflow_bypass),
    ("Rate limiting", check_rate_limiting),
    ("Race conditions", check_race_conditions),
    ("Numeric manipulation", check_numeric_manipulation),
    ("Upload endpoints", check_upload_endpoints),
    ("User enumeration", check_user_enumeration),
    ("Cross-user listings", check_cross_user_listing),
]
