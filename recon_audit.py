########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""Reconnaissance, network and fingerprinting checks (phases 1 to 3)."""
from __future__ import annotations

import logging
import re
from typing import List

from config import AuditConfig
from credentials import TokenCache
from findings import HIGH, INFO, LOW, MEDIUM, Finding
from heuristics import html_comments, meta_generator
from payloads import CLEARTEXT_PORTS, COMMON_PORTS, DATASTORE_PORTS, SERVICE_PORTS
from probe_client import ProbeClient

logger = logging.getLogger(__name__)

FRAMEWORK_MARKERS = {
    "Next.js": ("__NEXT_DATA__", "/_next/static", "x-nextjs"),
    "React": ("data-reactroot", "react-dom"),
    "Express": ("x-powered-by: express",),
    "Nuxt": ("__NUXT__",),
    "Angular": ("ng-version",),
    "WordPress": ("wp-content", "wp-includes"),
    "Django": ("csrfmiddlewaretoken",),
    "Laravel": ("laravel_session",),
}

SENSITIVE_ROBOTS = re.compile(r"(admin|backup|config|dashboard|private|secret|internal|\.env|\.git|api/)", re.I)
SENSITIVE_COMMENT = re.compile(r"(password|passwd|secret|api[_-]?key|token|todo|fixme|debug|internal)", re.I)

# version strings considered outdated (product -> minimum maintained major.minor)
OUTDATED = {
    "nginx": (1, 20),
    "apache": (2, 4),
    "express": (4, 17),
    "php": (8, 1),
    "next.js": (13, 0),
    "openssl": (3, 0),
}
VERSION_RX = re.compile(r"(nginx|apache|express|php|next\.js|openssl)[/ ]v?(\d+)\.(\d+)", re.I)


def _fingerprint(text: str, headers) -> List[str]:
    blob = (text or "")[:200000] + "\n" + "\n".join(f"{k.lower()}: {v.lower()}" for k, v in headers.items())
    return [name for name, markers in FRAMEWORK_MARKERS.items() if any(m.lower() in blob.lower() for m in markers)]


# ----------------------- Phase 1 ----------------------------#
def check_technology_fingerprint(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    res = probe.get("/")
    if not res.ok:
        logger.warning("Target root not reachable: %s", res.error or res.kind)
        return []
    stack = _fingerprint(res.text, res.headers)
    generator = meta_generator(res.text) if "html" in res.header("Content-Type").lower() else None
    if generator:
        stack.append(generator)
    server = res.header("Server")
    powered = res.header("X-Powered-By")
    return [Finding(
        title="Technology Stack Identified",
        severity=INFO,
        category="Reconnaissance",
        description="Technologies inferred from the landing page: " + (", ".join(stack) or "none recognised"),
        endpoint="/",
        method="GET",
        evidence=f"Server={server or '-'} X-Powered-By={powered or '-'} status={res.status}",
        cvss=0.0,
        details={"technologies": stack, "server": server, "x_powered_by": powered},
    )]


def check_robots_and_sitemap(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    res = probe.get("/robots.txt")
    if res.success and "disallow" in res.lower_text:
        paths = [line.split(":", 1)[1].strip() for line in res.text.splitlines() if line.lower().startswith("disallow:")]
        interesting = [p for p in paths if SENSITIVE_ROBOTS.search(p)]
        if interesting:
            findings.append(Finding(
                title="Sensitive Paths Disclosed in robots.txt",
                severity=LOW,
                category="Information Disclosure",
                description=f"robots.txt lists {len(interesting)} path(s) that hint at restricted areas",
                endpoint="/robots.txt",
                method="GET",
                evidence=", ".join(interesting[:15]),
                remediation="Do not rely on robots.txt to hide sensitive areas; protect them with authentication",
                cvss=3.1,
                cwe="CWE-200",
                owasp="A01:2021",
            ))
    sitemap = probe.get("/sitemap.xml")
    if sitemap.success and "<urlset" in sitemap.lower_text:
        urls = re.findall(r"<loc>([^<]+)</loc>", sitemap.text)
        private = [u for u in urls if SENSITIVE_ROBOTS.search(u)]
        if private:
            findings.append(Finding(
                title="Restricted Pages Listed in sitemap.xml",
                severity=LOW,
                category="Information Disclosure",
                description=f"sitemap.xml advertises {len(private)} restricted-looking URL(s)",
                endpoint="/sitemap.xml",
                method="GET",
                evidence=", ".join(private[:10]),
                remediation="Remove private or administrative URLs from the sitemap",
                cvss=2.6,
                cwe="CWE-200",
            ))
    return findings


def check_html_comments(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    findings: List[Finding] = []
    for path in ("/", "/login"):
        res = probe.get(path)
        if not res.success or "html" not in res.header("Content-Type").lower():
            continue
        leaks = [c for c in html_comments(res.text) if SENSITIVE_COMMENT.search(c)]
        if leaks:
            findings.append(Finding(
                title=f"Sensitive HTML Comments on {path}",
                severity=LOW,
                category="Information Disclosure",
                description=f"{len(leaks)} HTML comment(s) mention credentials or development notes",
                endpoint=path,
                method="GET",
                evidence=" | ".join(leaks[:3]),
                remediation="Strip developer comments from production builds",
                cvss=3.7,
                cwe="CWE-615",
            ))
    return findings


# ----------------------- Phase 2 ----------------------------#
def check_open_ports(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    host = config.host
    findings: List[Finding] = []
    open_ports = [p for p in COMMON_PORTS if p != config.port and probe.tcp_connect(host, p)]
    logger.info("Open ports on %s: %s", host, open_ports or "none")
    for port in open_ports:
        service = SERVICE_PORTS.get(port, "unknown")
        if port in DATASTORE_PORTS:
            findings.append(Finding(
                title=f"Datastore Port Exposed: {service} ({port})",
                severity=HIGH,
                category="Network Exposure",
                description=f"{service} accepts TCP connections from the audit host",
                endpoint=f"{host}:{port}",
                method="TCP",
                remediation="Bind datastores to private interfaces and firewall them from public networks",
                cvss=7.5,
                cwe="CWE-284",
                owasp="A05:2021",
            ))
        elif port in CLEARTEXT_PORTS:
            findings.append(Finding(
                title=f"Cleartext Service Exposed: {service} ({port})",
                severity=MEDIUM,
                category="Network Exposure",
                description=f"{service} transmits credentials without encryption",
                endpoint=f"{host}:{port}",
                method="TCP",
                remediation="Disable the service or replace it with an encrypted alternative",
                cvss=5.9,
                cwe="CWE-319",
            ))
        else:
            findings.append(Finding(
                title=f"Open Port: {service} ({port})",
                severity=INFO,
                category="Network Exposure",
                description=f"Port {port} is reachable",
                endpoint=f"{host}:{port}",
                method="TCP",
                cvss=0.0,
            ))
    return findings


# ----------------------- Phase 3 ----------------------------#
def check_version_disclosure(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    res = probe.get("/")
    if not res.ok:
        return []
    findings: List[Finding] = []
    banner = " ".join(v for v in (res.header("Server"), res.header("X-Powered-By")) if v)
    for m in VERSION_RX.finditer(banner):
        product, major, minor = m.group(1).lower(), int(m.group(2)), int(m.group(3))
        findings.append(Finding(
            title=f"Software Version Disclosed: {m.group(0)}",
            severity=LOW,
            category="Information Disclosure",
            description="Exact product version is advertised in response headers",
            endpoint="/",
            method="GET",
            evidence=banner,
            remediation="Suppress version details in Server and X-Powered-By headers",
            cvss=3.1,
            cwe="CWE-200",
            owasp="A05:2021",
        ))
        floor = OUTDATED.get(product)
        if floor and (major, minor) < floor:
            findings.append(Finding(
                title=f"Outdated Component: {m.group(0)}",
                severity=MEDIUM,
                category="Vulnerable Components",
                description=f"{product} {major}.{minor} is older than the maintained {floor[0]}.{floor[1]} line",
                endpoint="/",
                method="GET",
                evidence=banner,
                remediation="Upgrade the component to a supported release",
                cvss=5.6,
                cwe="CWE-1104",
                owasp="A06:2021",
            ))
    return findings


RECON_CHECKS = [
    ("Technology fingerprint", check_technology_fingerprint),
    ("robots.txt / sitemap.xml", check_robots_and_sitemap),
    ("HTML comments", check_html_comments),
]
NETWORK_CHECKS = [("Common port scan", check_open_ports)]
FINGERPRINT_CHECKS = [("Version disclosure", check_version_disclosure)]
