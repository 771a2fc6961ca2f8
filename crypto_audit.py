########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""Transport and data protection checks (phase 9)."""
from __future__ import annotations

import logging
import ssl
import time
from typing import List

from config import AuditConfig
from credentials import TokenCache
from findings import CRITICAL, HIGH, INFO, LOW, MEDIUM, Finding
from heuristics import SENSITIVE_DATA_PATTERNS, hsts_max_age, parse_cookies, session_cookie_pair, session_ids_predictable
from probe_client import ProbeClient

logger = logging.getLogger(__name__)

DEPRECATED_PROTOCOLS = ("TLSv1", "TLSv1.1")
WEAK_CIPHER_MARKERS = ("RC4", "DES", "NULL", "EXPORT", "MD5", "anon", "ADH", "AECDH")
MIN_CIPHER_BITS = 128
EXPIRY_WARNING_DAYS = 30
HSTS_MIN_AGE = 31536000

# OpenSSL X509_V_ERR_* codes
CERT_EXPIRED = 10
SELF_SIGNED_CODES = (18, 19)
HOSTNAME_MISMATCH = 62

DATA_ENDPOINTS = ("/api/users", "/api/etablissements", "/api/reclamations", "/api/users/me")
ENTROPY_SAMPLES = 5


# ----------------------- transport ----------------------------#
def check_https_enforced(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    if config.is_https:
        return []
    return [Finding(
        title="No HTTPS: Traffic Sent in Clear Text",
        severity=CRITICAL,
        category="Cryptography",
        description="Credentials, tokens and personal data cross the network unencrypted",
        endpoint=config.target,
        remediation="Terminate TLS for every route and redirect plain HTTP",
        cvss=9.1,
        cwe="CWE-311",
        owasp="A02:2021",
    )]


def check_tls_configuration(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    if not config.is_https:
        return []
    findings: List[Finding] = []
    endpoint = f"{config.host}:{config.port}"
    for version in DEPRECATED_PROTOCOLS:
        if probe.supports_protocol(version):
            findings.append(Finding(
                title=f"Deprecated TLS Version Accepted: {version}",
                severity=HIGH,
                category="Cryptography",
                description=f"The server completes a {version} handshake",
                endpoint=endpoint,
                method="TLS",
                remediation="Allow TLS 1.2 and TLS 1.3 only",
                cvss=7.5,
                cwe="CWE-326",
                owasp="A02:2021",
            ))
    info = probe.inspect_tls()
    if info is None:
        logger.warning("TLS inspection failed for %s", endpoint)
        return findings
    logger.info("TLS %s negotiated with %s (%s bits)", info.protocol, info.cipher, info.cipher_bits)
    cipher = info.cipher or ""
    if any(m in cipher for m in WEAK_CIPHER_MARKERS) or (info.cipher_bits and info.cipher_bits < MIN_CIPHER_BITS):
        findings.append(Finding(
            title=f"Weak Cipher Suite: {cipher}",
            severity=HIGH,
            category="Cryptography",
            description=f"Negotiated cipher {cipher} ({info.cipher_bits} bits)",
            endpoint=endpoint,
            method="TLS",
            remediation="Restrict cipher suites to AEAD ciphers with forward secrecy",
            cvss=7.5,
            cwe="CWE-327",
            owasp="A02:2021",
        ))
    return findings


def check_certificate(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    if not config.is_https:
        return []
    info = probe.inspect_tls()
    if info is None:
        return []
    endpoint = f"{config.host}:{config.port}"
    findings: List[Finding] = []
    if info.verify_code == CERT_EXPIRED:
        findings.append(Finding(
            title="TLS Certificate Expired",
            severity=HIGH,
            category="Cryptography",
            description=info.verify_error or "certificate has expired",
            endpoint=endpoint,
            method="TLS",
            remediation="Renew the certificate and automate renewal",
            cvss=8.1,
            cwe="CWE-295",
            owasp="A02:2021",
        ))
    elif info.verify_code in SELF_SIGNED_CODES:
        findings.append(Finding(
            title="Self-Signed Certificate",
            severity=MEDIUM,
            category="Cryptography",
            description=info.verify_error or "self-signed certificate in chain",
            endpoint=endpoint,
            method="TLS",
            remediation="Use a certificate issued by a public CA",
            cvss=5.3,
            cwe="CWE-295",
            owasp="A02:2021",
        ))
    elif info.verify_code == HOSTNAME_MISMATCH:
        findings.append(Finding(
            title="Certificate Hostname Mismatch",
            severity=MEDIUM,
            category="Cryptography",
            description=info.verify_error or f"certificate does not cover {config.host}",
            endpoint=endpoint,
            method="TLS",
            remediation="Issue a certificate whose SAN covers the served hostname",
            cvss=5.3,
            cwe="CWE-295",
            owasp="A02:2021",
        ))

    if info.not_after:
        days_left = (ssl.cert_time_to_seconds(info.not_after) - time.time()) / 86400
        if 0 <= days_left < EXPIRY_WARNING_DAYS:
            findings.append(Finding(
                title="TLS Certificate Expiring Soon",
                severity=MEDIUM,
                category="Cryptography",
                description=f"Certificate expires in {int(days_left)} days ({info.not_after})",
                endpoint=endpoint,
                method="TLS",
                remediation="Renew the certificate before it lapses",
                cvss=4.0,
                cwe="CWE-295",
                owasp="A02:2021",
            ))
    return findings


def check_transport_headers(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    """Quality of HSTS when it is sent, plus certificate-pinning era headers."""
    res = probe.get("/")
    if not res.ok:
        return []
    findings: List[Finding] = []
    hsts = res.header("Strict-Transport-Security")
    if hsts:
        if "includesubdomains" not in hsts.lower():
            findings.append(Finding(
                title="HSTS Missing includeSubDomains",
                severity=LOW,
                category="Cryptography",
                description="Subdomains can still be reached over plain HTTP",
                endpoint="/",
                method="GET",
                evidence=hsts,
                remediation="Add includeSubDomains to Strict-Transport-Security",
                cvss=3.0,
                cwe="CWE-311",
                owasp="A02:2021",
            ))
        age = hsts_max_age(hsts)
        if age is not None and age < HSTS_MIN_AGE:
            findings.append(Finding(
                title="HSTS max-age Too Short",
                severity=LOW,
                category="Cryptography",
                description=f"max-age={age}s is below one year",
                endpoint="/",
                method="GET",
                evidence=hsts,
                remediation="Set max-age to at least 31536000",
                cvss=2.0,
                cwe="CWE-311",
                owasp="A02:2021",
            ))
    if res.header("Public-Key-Pins"):
        findings.append(Finding(
            title="Public-Key-Pins Header Present",
            severity=INFO,
            category="Cryptography",
            description="HPKP is deprecated and can lock users out after a key rotation",
            endpoint="/",
            method="GET",
            cvss=0.0,
            cwe="CWE-295",
        ))
    if config.is_https and not res.header("Expect-CT"):
        findings.append(Finding(
            title="Expect-CT Header Not Sent",
            severity=INFO,
            category="Cryptography",
            description="Certificate Transparency enforcement is not requested",
            endpoint="/",
            method="GET",
            cvss=0.0,
            cwe="CWE-295",
        ))
    return findings


def check_cookie_transport(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    res = probe.get("/")
    findings: List[Finding] = []
    for cookie in parse_cookies(res.set_cookies):
        if cookie.secure:
            continue
        findings.append(Finding(
            title=f"Cookie Missing Secure Flag: {cookie.name}",
            severity=MEDIUM,
            category="Cryptography",
            description="The cookie may be sent over an unencrypted connection",
            endpoint="/",
            method="GET",
            parameter=cookie.name,
            remediation="Set the Secure attribute on every cookie",
            cvss=4.3,
            cwe="CWE-614",
            owasp="A02:2021",
        ))
    return findings


# ----------------------- data at rest / in responses ----------------------------#
def check_sensitive_data_exposure(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    headers = credentials.auth_headers("citoyen")
    for path in DATA_ENDPOINTS:
        res = probe.get(path, headers=headers)
        if not res.success:
            continue
        for label, rx in SENSITIVE_DATA_PATTERNS.items():
            m = rx.search(res.text)
            if not m:
                continue
            is_password = label == "password field"
            findings.append(Finding(
                title=f"Sensitive Data Exposure: {label}",
                severity=CRITICAL if is_password else HIGH,
                category="Cryptography",
                description=f"{path} returns a {label} in clear text",
                endpoint=path,
                method="GET",
                evidence=m.group(0)[:80],
                remediation="Remove secrets from responses and encrypt sensitive data at rest",
                cvss=9.1 if is_password else 7.5,
                cwe="CWE-312",
                owasp="A02:2021",
            ))
    return findings


def check_token_entropy(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    samples = []
    for _ in range(ENTROPY_SAMPLES):
        pair = session_cookie_pair(probe.get("/").set_cookies)
        if pair:
            samples.append(pair.split("=", 1)[1])
    if len(samples) < 2:
        logger.debug("Entropy: %d session identifiers collected, not enough to judge", len(samples))
        return []
    reason = session_ids_predictable(samples)
    if not reason:
        return []
    return [Finding(
        title="Predictable Session Identifiers",
        severity=CRITICAL,
        category="Cryptography",
        description=f"Session identifiers look guessable: {reason}",
        endpoint="/",
        method="GET",
        evidence=", ".join(s[:24] for s in samples[:3]),
        remediation="Generate identifiers from a CSPRNG with at least 128 bits of entropy",
        cvss=9.1,
        cwe="CWE-330",
        owasp="A02:2021",
    )]


CRYPTO_CHECKS = [
    ("HTTPS enforcement", check_https_enforced),
    ("TLS protocol and cipher", check_tls_configuration),
    ("Certificate validity", check_certificate),
    ("Transport security headers", check_transport_headers),
    ("Cookie transport flags", check_cookie_transport),
    ("Sensitive data in responses", check_sensitive_data_exposure),
    ("Identifier entropy", check_token_entropy),
]
