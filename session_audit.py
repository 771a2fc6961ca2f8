########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""Session management checks (phase 10)."""
from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import List, Optional

from auth_audit import check_session_fixation
from config import AuditConfig
from credentials import TokenCache
from findings import HIGH, INFO, LOW, MEDIUM, Finding
from heuristics import decode_jwt, find_forms, form_has_csrf_token, is_session_cookie, parse_cookies
from probe_client import ProbeClient

logger = logging.getLogger(__name__)

MIN_SESSION_VALUE_LENGTH = 32
MAX_COOKIE_AGE = 30 * 86400
LONG_SESSION_HOURS = 24
EXCESSIVE_SESSION_HOURS = 24 * 7

SESSION_INFO_PATH = "/api/auth/session"
SESSION_LIST_PATHS = ["/api/user/sessions", "/api/auth/sessions", "/api/me/sessions", "/profil/securite"]
REFRESH_PATHS = ["/api/auth/refresh", "/api/auth/token/refresh", "/api/auth/mobile/refresh"]
SESSION_IN_URL = re.compile(r"(?:[?&](?:session[_-]?id|sid|token|jsessionid|phpsessid)=|;jsessionid=)", re.I)
HREF = re.compile(r"""href=["']([^"']+)["']""", re.I)
CROSS_ORIGIN = "https://evil.com"


def _session_cookies(probe: ProbeClient) -> list:
    cookies = []
    for path in ("/", SESSION_INFO_PATH):
        res = probe.get(path)
        cookies.extend(c for c in parse_cookies(res.set_cookies) if is_session_cookie(c.name))
    return cookies


# ----------------------- cookies ----------------------------#
def check_session_cookies(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for cookie in _session_cookies(probe):
        logger.debug("Session cookie %s: %s", cookie.name, cookie)
        if not cookie.httponly:
            findings.append(Finding(
                title=f"Session Cookie Missing HttpOnly: {cookie.name}",
                severity=MEDIUM,
                category="Session Management",
                description="Script running in the page can read the session cookie",
                endpoint="/",
                parameter=cookie.name,
                remediation="Set HttpOnly on session cookies",
                cvss=5.4,
                cwe="CWE-1004",
                owasp="A07:2021",
            ))
        if (cookie.samesite or "").lower() not in ("lax", "strict"):
            findings.append(Finding(
                title=f"Session Cookie Weak SameSite: {cookie.name}",
                severity=MEDIUM,
                category="Session Management",
                description=f"SameSite={cookie.samesite or 'unset'} lets cross-site requests carry the session",
                endpoint="/",
                parameter=cookie.name,
                remediation="Use SameSite=Lax or Strict",
                cvss=6.1,
                cwe="CWE-1275",
                owasp="A07:2021",
            ))
        if cookie.max_age is not None and cookie.max_age > MAX_COOKIE_AGE:
            findings.append(Finding(
                title=f"Long-Lived Session Cookie: {cookie.name}",
                severity=LOW,
                category="Session Management",
                description=f"Max-Age={cookie.max_age}s exceeds 30 days",
                endpoint="/",
                parameter=cookie.name,
                remediation="Shorten session cookie lifetime",
                cvss=3.1,
                cwe="CWE-613",
                owasp="A07:2021",
            ))
        if cookie.value and len(cookie.value) < MIN_SESSION_VALUE_LENGTH:
            findings.append(Finding(
                title=f"Short Session Token: {cookie.name}",
                severity=MEDIUM,
                category="Session Management",
                description=f"Session value is {len(cookie.value)} characters long",
                endpoint="/",
                parameter=cookie.name,
                remediation="Use session identifiers of at least 128 random bits",
                cvss=5.3,
                cwe="CWE-330",
                owasp="A07:2021",
            ))
    return findings


# ----------------------- lifetime ----------------------------#
def _lifetime_hours(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> Optional[float]:
    res = probe.get(SESSION_INFO_PATH)
    data = res.json()
    if res.success and isinstance(data, dict) and data.get("expires"):
        try:
            expires = datetime.fromisoformat(str(data["expires"]).replace("Z", "+00:00"))
        except ValueError:
            expires = None
        if expires is not None:
            if expires.tzinfo is None:
                expires = expires.replace(tzinfo=timezone.utc)
            return (expires - datetime.now(timezone.utc)).total_seconds() / 3600
    token = credentials.get_token("citoyen")
    decoded = decode_jwt(token) if token else None
    if decoded and isinstance(decoded.payload.get("exp"), (int, float)) and isinstance(decoded.payload.get("iat"), (int, float)):
        return (decoded.payload["exp"] - decoded.payload["iat"]) / 3600
    return None


def check_session_lifetime(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    hours = _lifetime_hours(config, probe, credentials)
    if hours is None or hours <= LONG_SESSION_HOURS:
        return []
    excessive = hours > EXCESSIVE_SESSION_HOURS
    return [Finding(
        title="Excessive Session Lifetime" if excessive else "Long Session Lifetime",
        severity=MEDIUM,
        category="Session Management",
        description=f"Sessions stay valid for about {hours:.0f} hours",
        endpoint=SESSION_INFO_PATH,
        method="GET",
        remediation="Expire idle sessions within hours and absolute sessions within a day",
        cvss=6.5 if excessive else 4.3,
        cwe="CWE-613",
        owasp="A07:2021",
    )]


def check_concurrent_sessions(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    for path in SESSION_LIST_PATHS:
        res = probe.get(path, headers=credentials.auth_headers("citoyen"))
        if res.success and res.has_data():
            logger.info("Session management endpoint found: %s", path)
            return []
    return [Finding(
        title="Concurrent Session Policy Not Visible",
        severity=INFO,
        category="Session Management",
        description="No endpoint lists or revokes active sessions; concurrent logins appear unlimited",
        endpoint=SESSION_LIST_PATHS[0],
        remediation="Let users see and revoke active sessions, and cap concurrent sessions",
        cvss=0.0,
        cwe="CWE-613",
    )]


def check_logout_invalidation(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    cookies = _session_cookies(probe)
    if not cookies:
        logger.debug("Logout invalidation: no session cookie to test")
        return []
    pair = f"{cookies[0].name}={cookies[0].value}"
    probe.post(config.endpoint("auth", "logout"), api=True, json={}, headers={"Cookie": pair})
    after = probe.get(SESSION_INFO_PATH, headers={"Cookie": pair})
    data = after.json()
    if not (after.success and isinstance(data, dict) and data.get("user")):
        return []
    return [Finding(
        title="Session Not Invalidated on Logout",
        severity=MEDIUM,
        category="Session Management",
        description="The session cookie still resolves to a user after signout",
        endpoint=config.endpoint("auth", "logout"),
        method="POST",
        remediation="Destroy the server-side session on logout",
        cvss=6.5,
        cwe="CWE-613",
        owasp="A07:2021",
    )]


# ----------------------- CSRF ----------------------------#
def check_csrf_protection(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path in ("/", "/login"):
        res = probe.get(path)
        if not res.success or "html" not in res.header("Content-Type").lower():
            continue
        unprotected = [f for f in find_forms(res.text) if f["method"] == "post" and not form_has_csrf_token(f)]
        if unprotected and not res.header("X-CSRF-Token"):
            findings.append(Finding(
                title=f"No CSRF Token in Forms on {path}",
                severity=MEDIUM,
                category="Session Management",
                description=f"{len(unprotected)} POST form(s) carry no anti-CSRF token",
                endpoint=path,
                method="GET",
                remediation="Add per-session CSRF tokens to state-changing forms",
                cvss=5.4,
                cwe="CWE-352",
                owasp="A01:2021",
            ))

    for method, path, body in (("POST", "/reclamations", {"titre": "Test"}), ("PUT", "/users/me", {"nom": "Test"})):
        res = probe.request(method, path, api=True, json=body, headers={"Origin": CROSS_ORIGIN})
        if res.status in (200, 201):
            findings.append(Finding(
                title=f"Cross-Origin Request Accepted: {method} {path}",
                severity=MEDIUM,
                category="Session Management",
                description=f"{method} from Origin {CROSS_ORIGIN} succeeded without a CSRF token",
                endpoint=path,
                method=method,
                remediation="Validate the Origin header and require CSRF tokens",
                cvss=6.5,
                cwe="CWE-352",
                owasp="A01:2021",
            ))
    return findings


# ----------------------- tokens ----------------------------#
def check_refresh_rotation(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    for path in REFRESH_PATHS:
        res = probe.post(path, json={"refreshToken": "invalid_token_test"})
        if not res.ok or res.status == 404:
            continue
        logger.info("Refresh endpoint found: %s (HTTP %s)", path, res.status)
        data = res.json()
        if isinstance(data, dict) and data.get("accessToken") and not data.get("refreshToken"):
            return [Finding(
                title="No Refresh Token Rotation",
                severity=MEDIUM,
                category="Session Management",
                description=f"{path} issues access tokens without rotating the refresh token",
                endpoint=path,
                method="POST",
                remediation="Issue a new refresh token on every refresh and revoke the old one",
                cvss=5.3,
                cwe="CWE-613",
                owasp="A07:2021",
            )]
    return []


def check_session_in_url(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    res = probe.get("/", allow_redirects=False)
    if not res.ok:
        return []
    urls = [res.header("Location")] + HREF.findall(res.text)
    hit = next((u for u in urls if u and SESSION_IN_URL.search(u)), None)
    if not hit:
        return []
    return [Finding(
        title="Session ID Exposed in URL",
        severity=HIGH,
        category="Session Management",
        description="A session identifier travels in the URL and leaks through logs and Referer",
        endpoint=hit,
        method="GET",
        remediation="Carry session identifiers in cookies only",
        cvss=7.5,
        cwe="CWE-598",
        owasp="A07:2021",
    )]


SESSION_CHECKS = [
    ("Session cookie attributes", check_session_cookies),
    ("Session fixation", check_session_fixation),
    ("Session lifetime", check_session_lifetime),
    ("Concurrent sessions", check_concurrent_sessions),
    ("Logout invalidation", check_logout_invalidation),
    ("CSRF protection", check_csrf_protection),
    ("Refresh token rotation", check_refresh_rotation),
    ("Session ID in URL", check_session_in_url),
]
