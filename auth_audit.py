########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""Authentication checks (phase 6).

JWT handling, password policy, brute force protection, account enumeration,
password reset abuse, alternate login routes, session fixation and
credential leakage in profile responses.
"""
from __future__ import annotations

import logging
import time
import uuid
from typing import List

from config import AuditConfig
from credentials import TokenCache, extract_token
from findings import CRITICAL, HIGH, LOW, MEDIUM, Finding
from heuristics import decode_jwt, forge_none_alg, forge_payload, responses_differ, sensitive_claims, session_cookie_pair
from payloads import WEAK_PASSWORDS
from probe_client import ProbeClient

logger = logging.getLogger(__name__)

BRUTE_FORCE_ATTEMPTS = 20
BRUTE_FORCE_TOLERANCE = 2
RESET_ATTEMPTS = 10

ALTERNATE_LOGIN_ROUTES = ["/auth/signin-legacy", "/auth/mobile-login", "/api/v1/auth/signin", "/auth/sso/callback"]
CREDENTIAL_FIELDS = ("password", "motDePasse", "passwordHash", "hash")


def _me_path(config: AuditConfig) -> str:
    return config.endpoint("auth", "me")


# ----------------------- JWT ----------------------------#
def check_jwt_none_algorithm(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    """Replay the citizen token with ``alg: none`` and an empty signature."""
    token = credentials.get_token("citoyen")
    forged = forge_none_alg(token) if token else None
    if not forged:
        return []
    res = probe.get(_me_path(config), api=True, headers={"Authorization": f"Bearer {forged}"})
    if not res.success:
        logger.debug("alg:none token rejected with HTTP %s", res.status)
        return []
    return [Finding(
        title="JWT With alg:none Accepted",
        severity=CRITICAL,
        category="JWT None Algorithm",
        description="The API accepted an unsigned token declaring alg=none",
        endpoint=_me_path(config),
        method="GET",
        payload=forged[:60] + "...",
        evidence=f"HTTP {res.status}",
        remediation="Pin the expected signing algorithm and reject 'none'",
        cvss=9.8,
        cwe="CWE-347",
        owasp="A07:2021",
    )]


def check_jwt_tampering(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    """Swap in an ADMIN role claim and keep the original signature."""
    token = credentials.get_token("citoyen")
    tampered = forge_payload(token, {"role": "ADMIN", "email": "hacker@evil.com"}) if token else None
    if not tampered:
        return []
    res = probe.get(_me_path(config), api=True, headers={"Authorization": f"Bearer {tampered}"})
    if not res.success:
        logger.debug("Tampered token rejected with HTTP %s", res.status)
        return []
    return [Finding(
        title="Modified JWT Accepted",
        severity=CRITICAL,
        category="JWT Tampering",
        description="A token whose payload was altered after signing was honoured",
        endpoint=_me_path(config),
        method="GET",
        payload=tampered[:60] + "...",
        evidence=f"HTTP {res.status}",
        remediation="Verify the JWT signature on every request",
        cvss=9.8,
        cwe="CWE-347",
        owasp="A07:2021",
    )]


def check_jwt_sensitive_claims(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    token = credentials.get_token("citoyen")
    decoded = decode_jwt(token) if token else None
    if not decoded:
        return []
    return [
        Finding(
            title=f"Sensitive Data in JWT: {claim}",
            severity=HIGH,
            category="JWT Sensitive Data",
            description=f"The token payload carries '{claim}' in clear base64",
            endpoint=config.endpoint("auth", "login"),
            method="POST",
            parameter=claim,
            remediation="Keep secrets out of JWT claims; tokens are only encoded, not encrypted",
            cvss=7.5,
            cwe="CWE-312",
            owasp="A02:2021",
        )
        for claim in sensitive_claims(decoded.payload)
    ]


# ----------------------- password policy ----------------------------#
def check_password_policy(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    path = config.endpoint("auth", "register")
    for weak in WEAK_PASSWORDS:
        res = probe.post(path, api=True, json={
            "nom": "Audit",
            "prenom": "Secaudit",
            "email": f"secaudit-{uuid.uuid4().hex[:12]}@example.com",
            "password": weak,
            "motDePasse": weak,
            "confirmPassword": weak,
            "telephone": "0600000000",
        })
        if res.status in (200, 201):
            return [Finding(
                title=f"Weak Password Accepted: {weak}",
                severity=MEDIUM,
                category="Weak Password Policy",
                description="Registration accepts trivially guessable passwords",
                endpoint=path,
                method="POST",
                payload=weak,
                remediation="Require length, complexity and a breached-password check",
                cvss=5.0,
                cwe="CWE-521",
                owasp="A07:2021",
            )]
    return []


# ----------------------- brute force ----------------------------#
def check_brute_force(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    """Twenty wrong passwords in a row; no 429 means no lockout or throttle."""
    path = config.endpoint("auth", "login")
    cred = config.credential("citoyen")
    email = cred.email if cred else "test@example.com"
    answered = 0
    for i in range(BRUTE_FORCE_ATTEMPTS):
        res = probe.post(path, api=True, json={"email": email, "password": f"WrongPassword{i}!"})
        if res.status == 429:
            logger.info("Brute force: throttled after %d attempts", answered)
            break
        if res.ok and res.status != 404:
            answered += 1
        if config.attempt_delay:
            time.sleep(config.attempt_delay)
    if answered < BRUTE_FORCE_ATTEMPTS - BRUTE_FORCE_TOLERANCE:
        return []
    return [Finding(
        title="No Brute Force Protection on Login",
        severity=HIGH,
        category="Brute Force",
        description=f"{answered} consecutive failed logins were processed without throttling",
        endpoint=path,
        method="POST",
        parameter="password",
        remediation="Add per-account lockout and per-IP rate limiting on the login route",
        cvss=7.5,
        cwe="CWE-307",
        owasp="A07:2021",
        details={"attempts": BRUTE_FORCE_ATTEMPTS, "not_throttled": answered},
    )]


# ----------------------- enumeration ----------------------------#
def check_account_enumeration(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    cred = config.credential("citoyen")
    if cred is None:
        return []
    path = config.endpoint("auth", "login")
    missing = probe.post(path, api=True, json={"email": "nonexistent_user_12345@example.com", "password": "WrongPassword123!"})
    existing = probe.post(path, api=True, json={"email": cred.email, "password": "WrongPassword123!"})
    if not responses_differ(existing, missing):
        return []
    return [Finding(
        title="Account Enumeration via Login Errors",
        severity=LOW,
        category="Account Enumeration",
        description="Login answers differ for existing and unknown accounts",
        endpoint=path,
        method="POST",
        evidence=f"existing={existing.status}:{existing.snippet(80)} | unknown={missing.status}:{missing.snippet(80)}",
        remediation="Return one generic error for every failed login",
        cvss=3.7,
        cwe="CWE-203",
        owasp="A07:2021",
    )]


# ----------------------- password reset ----------------------------#
def check_password_reset_flood(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    path = config.endpoint("auth", "forgot_password")
    cred = config.credential("citoyen")
    email = cred.email if cred else "test@example.com"
    accepted = 0
    for _ in range(RESET_ATTEMPTS):
        res = probe.post(path, api=True, json={"email": email})
        if res.status == 429:
            break
        if res.ok and res.status not in (404, 405):
            accepted += 1
    if accepted < RESET_ATTEMPTS - 2:
        return []
    return [Finding(
        title="No Rate Limiting on Password Reset",
        severity=MEDIUM,
        category="Password Reset Flood",
        description=f"{accepted} reset requests accepted back to back",
        endpoint=path,
        method="POST",
        remediation="Limit reset requests per account and per IP",
        cvss=5.0,
        cwe="CWE-770",
        owasp="A07:2021",
    )]


# ----------------------- alternate login ----------------------------#
def check_alternate_login_bypass(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    cred = config.credential("citoyen")
    if cred is None:
        return []
    findings: List[Finding] = []
    for path in ALTERNATE_LOGIN_ROUTES:
        res = probe.post(path, json={"email": cred.email, "password": cred.password})
        if res.success and extract_token(res.json(), res.headers):
            findings.append(Finding(
                title=f"Second Factor Bypass via {path}",
                severity=CRITICAL,
                category="2FA Bypass",
                description="An alternate login route issues a token without the full login flow",
                endpoint=path,
                method="POST",
                remediation="Route every login through the same verified flow",
                cvss=9.1,
                cwe="CWE-287",
                owasp="A07:2021",
            ))
    return findings


# ----------------------- session fixation ----------------------------#
def check_session_fixation(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    cred = config.credential("citoyen")
    if cred is None:
        return []
    initial = session_cookie_pair(probe.get("/").set_cookies)
    if not initial:
        return []
    path = config.endpoint("auth", "login")
    login = probe.post(path, api=True, json={"email": cred.email, "password": cred.password}, headers={"Cookie": initial})
    after = session_cookie_pair(login.set_cookies)
    if not login.success or (after and after != initial):
        return []
    return [Finding(
        title="Session ID Not Regenerated After Login",
        severity=MEDIUM,
        category="Session Fixation",
        description="The pre-login session identifier stays valid after authentication",
        endpoint=path,
        method="POST",
        evidence=initial[:60],
        remediation="Issue a fresh session identifier on every privilege change",
        cvss=6.5,
        cwe="CWE-384",
        owasp="A07:2021",
    )]


# ----------------------- credential storage ----------------------------#
def check_credential_exposure(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    headers = credentials.auth_headers("citoyen")
    if not headers:
        return []
    res = probe.get(_me_path(config), api=True, headers=headers)
    data = res.json()
    if not (res.success and isinstance(data, dict)):
        return []
    return [
        Finding(
            title=f"Credential Exposed: {name}",
            severity=CRITICAL,
            category="Credential Exposure",
            description="The profile response contains the password or its hash",
            endpoint=_me_path(config),
            method="GET",
            parameter=name,
            remediation="Never serialise password material",
            cvss=9.0,
            cwe="CWE-312",
            owasp="A02:2021",
        )
        for name in CREDENTIAL_FIELDS
        if data.get(name) is not None
    ]


AUTH_CHECKS = [
    ("JWT alg:none", check_jwt_none_algorithm),
    ("JWT tampering", check_jwt_tampering),
    ("JWT sensitive claims", check_jwt_sensitive_claims),
    ("Password policy", check_password_policy),
    ("Brute force protection", check_brute_force),
    ("Account enumeration", check_account_enumeration),
    ("Password reset flood", check_password_reset_flood),
    ("Alternate login / 2FA bypass", check_alternate_login_bypass),
    ("Session fixation", check_session_fixation),
    ("Credential storage", check_credential_exposure),
]
