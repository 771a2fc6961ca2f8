########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""OWASP API Security Top 10 (2023) checks, phase 5."""
from __future__ import annotations

import logging
from typing import Any, Dict, List

from config import AuditConfig
from credentials import TokenCache
from findings import CRITICAL, HIGH, MEDIUM, Finding
from flood import fan_out
from heuristics import (
    SPOOFABLE_IP_HEADERS,
    SSRF_INDICATORS,
    STACK_TRACE_PATTERNS,
    exposed_fields,
    forge_expired,
    match_patterns,
    owner_email,
    rate_limit_bypassed,
    record_list,
    spoofed_ip,
)
from payloads import ADMIN_API_PATHS, SSRF_PAYLOADS, top
from probe_client import ProbeClient, ProbeResult

logger = logging.getLogger(__name__)

# signed with a throwaway secret, exp in 2018
STATIC_EXPIRED_JWT = (
    "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9."
    "eyJzdWIiOiIxMjM0NTY3ODkwIiwibmFtZSI6IkpvaG4gRG9lIiwiaWF0IjoxNTE2MjM5MDIyLCJleHAiOjE1MTYyMzkwMjJ9."
    "4Adcj0MhtYR7bXYxG2TtfO4bNFh9Vj4HYmg7kOpB2B8"
)

SENSITIVE_RESPONSE_FIELDS = (
    "password",
    "passwordHash",
    "motDePasse",
    "resetToken",
    "resetPasswordToken",
    "verificationToken",
    "refreshToken",
    "twoFactorSecret",
    "apiKey",
    "secret",
    "salt",
)

MASS_ASSIGNMENT_PAYLOADS: List[Dict[str, Any]] = [
    {"role": "ADMIN"},
    {"role": "SUPER_ADMIN"},
    {"isAdmin": True},
    {"admin": True},
    {"isEmailVerifie": True},
    {"isActive": True},
    {"permissions": ["*"]},
    {"balance": 1000000},
]

FUZZ_VALUES: List[str] = [
    "",
    " ",
    "null",
    "undefined",
    "{}",
    "[]",
    "<script>alert(1)</script>",
    "${7*7}",
    "{{7*7}}",
    "%00",
    "-1",
    "0",
    "999999999",
    "1.7976931348623157e+308",
    "'OR'1'='1",
    "A" * 10000,
]

FUZZ_TARGETS = [("/etablissements", "secteur"), ("/reclamations", "communeId"), ("/users", "role")]

OLD_API_PREFIXES = ["/api/v0", "/api/v1", "/api/v2", "/api/beta", "/api/old", "/api/legacy", "/api/internal", "/api/test"]

DEBUG_SECRETS = ("DATABASE_URL", "JWT_SECRET", "API_KEY", "NEXTAUTH_SECRET", "password")


# ----------------------- API1 BOLA ----------------------------#
def check_bola(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    token = credentials.get_token("citoyen")
    if not token:
        logger.info("BOLA: no citoyen token, skipped")
        return []
    findings: List[Finding] = []
    headers = {"Authorization": f"Bearer {token}"}
    me = config.credential("citoyen")

    for rid in range(1, 11):
        path = config.endpoint("reclamations", "get", id=rid)
        res = probe.get(path, api=True, headers=headers)
        if not res.success:
            continue
        owner = owner_email(res.json())
        if owner and me and owner != me.email:
            findings.append(Finding(
                title=f"Read Access to Complaint #{rid} of Another User",
                severity=CRITICAL,
                category="BOLA",
                description="The object-level check is missing on complaint reads",
                endpoint=path,
                method="GET",
                evidence=f"owner={owner}",
                remediation="Check ownership of every object fetched by identifier",
                cvss=9.1,
                cwe="CWE-639",
                owasp="API1:2023",
            ))
            upd = probe.patch(path, api=True, headers=headers, json={"description": "secaudit BOLA probe"})
            if upd.success:
                findings.append(Finding(
                    title=f"Unauthorised Modification of Complaint #{rid}",
                    severity=CRITICAL,
                    category="BOLA",
                    description="Another user's complaint accepted a PATCH from the citizen token",
                    endpoint=path,
                    method="PATCH",
                    remediation="Enforce ownership on write operations",
                    cvss=9.8,
                    cwe="CWE-639",
                    owasp="API1:2023",
                ))
            if config.aggressive:
                rm = probe.delete(path, api=True, headers=headers)
                if rm.success:
                    findings.append(Finding(
                        title=f"Unauthorised Deletion of Complaint #{rid}",
                        severity=CRITICAL,
                        category="BOLA",
                        description="Another user's complaint was deleted with the citizen token",
                        endpoint=path,
                        method="DELETE",
                        remediation="Enforce ownership on delete operations",
                        cvss=9.8,
                        cwe="CWE-639",
                        owasp="API1:2023",
                    ))
            break

    for uid in range(1, 6):
        path = config.endpoint("users", "get", id=uid)
        res = probe.get(path, api=True, headers=headers)
        data = res.json()
        if res.success and isinstance(data, dict) and data.get("email") and (not me or data.get("email") != me.email):
            findings.append(Finding(
                title=f"Access to User Profile #{uid}",
                severity=HIGH,
                category="BOLA",
                description="A citizen can read other users' profiles",
                endpoint=path,
                method="GET",
                evidence=f"email={data.get('email')}",
                remediation="Restrict profile reads to the owner and administrators",
                cvss=7.5,
                cwe="CWE-639",
                owasp="API1:2023",
            ))
            break
    return findings


# ----------------------- API2 Broken Authentication ----------------------------#
def check_expired_token(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    own = credentials.get_token("citoyen")
    expired = (forge_expired(own) if own else None) or STATIC_EXPIRED_JWT
    res = probe.get(config.endpoint("auth", "me"), api=True, headers={"Authorization": f"Bearer {expired}"})
    if not (res.success and res.has_data()):
        return []
    return [Finding(
        title="Expired JWT Accepted",
        severity=HIGH,
        category="Broken Authentication",
        description="A token whose exp claim lies in the past is still honoured",
        endpoint=config.endpoint("auth", "me"),
        method="GET",
        payload=expired[:30] + "...",
        remediation="Validate the exp claim on every request",
        cvss=8.1,
        cwe="CWE-287",
        owasp="API2:2023",
    )]


# ----------------------- API3 Object Property Level ----------------------------#
def check_excessive_data_exposure(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    headers = credentials.auth_headers("citoyen")
    findings: List[Finding] = []
    seen: set = set()
    for path in (config.endpoint("auth", "me"), config.endpoint("users", "list"), config.endpoint("reclamations", "list")):
        res = probe.get(path, api=True, headers=headers)
        if not res.success:
            continue
        for name in exposed_fields(res.json(), SENSITIVE_RESPONSE_FIELDS):
            if name in seen:
                continue
            seen.add(name)
            findings.append(Finding(
                title=f"Sensitive Field '{name}' Exposed in API Response",
                severity=HIGH,
                category="Excessive Data Exposure",
                description=f"{path} serialises the internal field '{name}'",
                endpoint=path,
                method="GET",
                parameter=name,
                remediation="Serialise responses through an explicit allow-list of fields",
                cvss=7.5,
                cwe="CWE-213",
                owasp="API3:2023",
            ))
    return findings


def check_mass_assignment(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    headers = credentials.auth_headers("citoyen")
    if not headers:
        return []
    findings: List[Finding] = []
    path = config.endpoint("auth", "me")
    for payload in MASS_ASSIGNMENT_PAYLOADS:
        res = probe.patch(path, api=True, headers=headers, json=dict({"nom": "Test"}, **payload))
        data = res.json()
        if not (res.success and isinstance(data, dict)):
            continue
        body = data.get("user") if isinstance(data.get("user"), dict) else data
        for key, value in payload.items():
            if body.get(key) == value:
                findings.append(Finding(
                    title=f"Privileged Field '{key}' Writable by User",
                    severity=CRITICAL,
                    category="Mass Assignment",
                    description=f"PATCH {path} set '{key}' to {value!r}",
                    endpoint=path,
                    method="PATCH",
                    parameter=key,
                    payload=str(payload),
                    remediation="Bind request bodies to an allow-list of editable fields",
                    cvss=9.1,
                    cwe="CWE-915",
                    owasp="API3:2023",
                ))

    res = probe.patch(path, api=True, headers=headers, json={"id": 1, "createdAt": "2000-01-01T00:00:00.000Z"})
    data = res.json()
    if res.success and isinstance(data, dict) and str(data.get("createdAt", "")).startswith("2000-01-01"):
        findings.append(Finding(
            title="Read-Only Fields Modifiable",
            severity=HIGH,
            category="Mass Assignment",
            description="createdAt was overwritten through the profile endpoint",
            endpoint=path,
            method="PATCH",
            parameter="createdAt",
            remediation="Ignore server-managed fields in update payloads",
            cvss=8.0,
            cwe="CWE-915",
            owasp="API3:2023",
        ))
    return findings


# ----------------------- API4 Resource Consumption ----------------------------#
def check_resource_limits(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    path = config.endpoint("etablissements", "list")
    res = probe.get(path, api=True, params={"limit": 100000, "pageSize": 100000})
    rows = record_list(res.json()) if res.success else None
    if rows is not None and len(rows) > 1000:
        findings.append(Finding(
            title="No Pagination Limit",
            severity=MEDIUM,
            category="Unrestricted Resource Consumption",
            description=f"limit=100000 returned {len(rows)} records in one response",
            endpoint=path,
            method="GET",
            parameter="limit",
            remediation="Cap page sizes server-side",
            cvss=5.3,
            cwe="CWE-770",
            owasp="API4:2023",
        ))

    size = 5 * 1024 * 1024 if config.aggressive else 1024 * 1024
    body = {"titre": "secaudit", "description": "A" * size, "categorie": "AUTRE", "communeId": 1}
    res = probe.post(config.endpoint("reclamations", "list"), api=True, json=body, headers=credentials.auth_headers("citoyen"))
    if res.status in (200, 201):
        findings.append(Finding(
            title="Very Large Payload Accepted",
            severity=MEDIUM,
            category="Unrestricted Resource Consumption",
            description=f"A {size // 1024} KB JSON body was accepted",
            endpoint=config.endpoint("reclamations", "list"),
            method="POST",
            remediation="Limit request body size at the proxy and in the body parser",
            cvss=6.5,
            cwe="CWE-770",
            owasp="API4:2023",
        ))
    return findings


# ----------------------- API5 Function Level Authorization ----------------------------#
def check_function_level_authorization(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    token = credentials.get_token("citoyen")
    if not token:
        return []
    findings: List[Finding] = []
    for path in ADMIN_API_PATHS:
        res = probe.get(path, api=True, headers={"Authorization": f"Bearer {token}"})
        if res.success and res.has_data():
            findings.append(Finding(
                title=f"Citizen Can Call Admin Function: {path}",
                severity=CRITICAL,
                category="Broken Function Level Authorization",
                description="An administrative API answers a CITOYEN token",
                endpoint=path,
                method="GET",
                evidence=res.snippet(200),
                remediation="Deny administrative routes by default and allow them per role",
                cvss=9.8,
                cwe="CWE-269",
                owasp="API5:2023",
            ))
    return findings


# ----------------------- API6 Business Flows ----------------------------#
def check_business_flows(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    headers = credentials.auth_headers("citoyen")
    if not headers:
        return []
    findings: List[Finding] = []
    path = "/evaluations"

    def create(i: int) -> ProbeResult:
        return probe.post(path, api=True, headers=headers, throttle=False,
                          json={"etablissementId": 1, "noteGlobale": 5, "commentaire": f"secaudit bulk {i}"})

    count = 50
    stats = fan_out(create, count, config.threads, desc="Bulk evaluations")
    created = sum(1 for s in stats.statuses if s == 201)
    if created > count // 2:
        findings.append(Finding(
            title="No Rate Limiting on Evaluation Creation",
            severity=MEDIUM,
            category="Bulk Operation Abuse",
            description=f"{created}/{count} concurrent evaluations were created",
            endpoint=path,
            method="POST",
            remediation="Limit evaluations per user and per day",
            cvss=6.5,
            cwe="CWE-799",
            owasp="API6:2023",
            details=stats.as_dict(),
        ))
    if created >= 2:
        findings.append(Finding(
            title="Same Establishment Rated Multiple Times",
            severity=HIGH,
            category="Vote Manipulation",
            description="Several evaluations from one user for one establishment were accepted",
            endpoint=path,
            method="POST",
            remediation="Enforce a unique (user, establishment) constraint",
            cvss=7.1,
            cwe="CWE-840",
            owasp="API6:2023",
        ))
    return findings


# ----------------------- API7 SSRF ----------------------------#
API_SSRF_TARGETS = [("/upload", "url"), ("/etablissements/import", "url"), ("/users/me/photo", "photoUrl")]


def check_api_ssrf(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    headers = credentials.auth_headers("citoyen")
    findings: List[Finding] = []
    for path, field_name in API_SSRF_TARGETS:
        for payload in top(SSRF_PAYLOADS, config.aggressive, 4):
            res = probe.send_field("POST", path, field_name, payload, headers=headers)
            if res.status == 404:
                break
            hit = match_patterns(res.text, SSRF_INDICATORS) if res.ok else None
            if hit:
                findings.append(Finding(
                    title=f"SSRF in {path}",
                    severity=CRITICAL,
                    category="Server-Side Request Forgery",
                    description=f"Internal content ('{hit}') fetched for {payload}",
                    endpoint=path,
                    method="POST",
                    parameter=field_name,
                    payload=payload,
                    evidence=res.snippet(200),
                    remediation="Allow-list outbound hosts and schemes",
                    cvss=9.9,
                    cwe="CWE-918",
                    owasp="API7:2023",
                ))
                break
    return findings


# ----------------------- API8 Misconfiguration ----------------------------#
def check_api_misconfiguration(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    res = probe.post("/graphql", api=True, json={"query": "{ __schema { types { name } } }"})
    data = res.json()
    schema = (data.get("data") or data).get("__schema") if isinstance(data, dict) else None
    if res.success and isinstance(schema, dict):
        findings.append(Finding(
            title="GraphQL Introspection Enabled",
            severity=MEDIUM,
            category="GraphQL Introspection",
            description=f"Schema exposes {len(schema.get('types') or [])} types",
            endpoint="/graphql",
            method="POST",
            remediation="Disable introspection in production",
            cvss=5.3,
            cwe="CWE-16",
            owasp="API8:2023",
        ))

    for path in ("/debug", "/version", "/config", "/env", "/phpinfo"):
        res = probe.get(path, api=True)
        if not res.success:
            continue
        leaked = [s for s in DEBUG_SECRETS if s in res.text]
        if leaked:
            findings.append(Finding(
                title=f"Debug Endpoint {path} Exposes Secrets",
                severity=CRITICAL,
                category="Debug Endpoint Exposed",
                description="Configuration values are readable: " + ", ".join(leaked),
                endpoint=path,
                method="GET",
                evidence=res.snippet(200),
                remediation="Remove or protect debug endpoints in production",
                cvss=9.1,
                cwe="CWE-215",
                owasp="API8:2023",
            ))
    return findings


# ----------------------- API9 Inventory ----------------------------#
def check_api_inventory(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    current = probe.get(config.endpoint("etablissements", "list"), api=True)
    for prefix in OLD_API_PREFIXES:
        res = probe.get(f"{prefix}/etablissements")
        if res.success and res.has_data() and res.text != current.text:
            findings.append(Finding(
                title=f"Undocumented API Version Reachable: {prefix}",
                severity=MEDIUM,
                category="Improper Inventory Management",
                description=f"{prefix} answers alongside the current API",
                endpoint=f"{prefix}/etablissements",
                method="GET",
                evidence=res.snippet(150),
                remediation="Retire old API versions or apply the same controls to them",
                cvss=5.3,
                cwe="CWE-1059",
                owasp="API9:2023",
            ))
    return findings


# ----------------------- Fuzzing ----------------------------#
def check_parameter_fuzzing(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    values = FUZZ_VALUES if config.aggressive else FUZZ_VALUES[:10]
    for path, param in FUZZ_TARGETS:
        for value in values:
            res = probe.get(path, api=True, params={param: value})
            if not res.ok:
                continue
            hit = match_patterns(res.text, STACK_TRACE_PATTERNS)
            if res.status >= 500 or hit:
                findings.append(Finding(
                    title=f"Fuzzed Input Triggers Error in {path}",
                    severity=MEDIUM,
                    category="API Fuzzing - Error",
                    description=f"HTTP {res.status}" + (f", leaked '{hit}'" if hit else ""),
                    endpoint=path,
                    method="GET",
                    parameter=param,
                    payload=value[:50],
                    evidence=res.snippet(200),
                    remediation="Validate query parameters against a schema before use",
                    cvss=5.0,
                    cwe="CWE-20",
                    owasp="API8:2023",
                ))
                break
    return findings


# ----------------------- Rate limit bypass ----------------------------#
RATE_LIMIT_ATTEMPTS = 20


def _failed_logins(config: AuditConfig, probe: ProbeClient, header: str = "") -> List[int]:
    statuses = []
    for i in range(RATE_LIMIT_ATTEMPTS):
        headers = {header: spoofed_ip(i)} if header else None
        res = probe.post(config.endpoint("auth", "login"), api=True, headers=headers,
                         json={"email": "ratelimit-probe@example.com", "password": f"wrong{i}"})
        statuses.append(res.status)
    return statuses


def check_rate_limit_bypass(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    """Only meaningful once the login route is seen throttling plain attempts."""
    plain = _failed_logins(config, probe)
    if 429 not in plain:
        logger.info("Rate limit bypass: login never answered 429, nothing to bypass")
        return []
    findings: List[Finding] = []
    for header in SPOOFABLE_IP_HEADERS:
        statuses = _failed_logins(config, probe, header)
        if rate_limit_bypassed(statuses):
            findings.append(Finding(
                title=f"Rate Limit Bypass via {header}",
                severity=HIGH,
                category="Rate Limit Bypass",
                description=f"Rotating {header} lifted the login throttle",
                endpoint=config.endpoint("auth", "login"),
                method="POST",
                parameter=header,
                remediation="Key rate limits on the socket address or a trusted proxy header only",
                cvss=7.5,
                cwe="CWE-307",
                owasp="API4:2023",
                details={"attempts": len(statuses), "not_limited": sum(1 for s in statuses if s and s != 429)},
            ))
    return findings


API_CHECKS = [
    ("API1:2023 BOLA", check_bola),
    ("API2:2023 Broken Authentication", check_expired_token),
    ("API3:2023 Excessive Data Exposure", check_excessive_data_exposure),
    ("API3:2023 Mass Assignment", check_mass_assignment),
    ("API4:2023 Resource Consumption", check_resource_limits),
    ("API5:2023 Function Level Authorization", check_function_level_authorization),
    ("API6:2023 Business Flows", check_business_flows),
    ("API7:2023 SSRF", check_api_ssrf),
    ("API8:2023 Misconfiguration", check_api_misconfiguration),
    ("API9:2023 Inventory", check_api_inventory),
    ("Parameter fuzzing", check_parameter_fuzzing),
    ("Rate limit bypass", check_rate_limit_bypass),
]
