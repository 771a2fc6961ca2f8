########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""
Availability and stress tests (phase 12).

Everything here is destructive and runs only when ``scope.test_dos`` is set.
The phase is one check so that the baseline is taken before the first
flood and recovery is measured after the last one.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from config import AuditConfig
from credentials import TokenCache
from findings import HIGH, MEDIUM, Finding
from flood import (
    degradation_findings,
    dos_skipped_finding,
    fan_out,
    flood,
    measure_baseline,
    recovery_finding,
    slowloris,
    verify_recovery,
)
from payloads import REDOS_PAYLOADS
from probe_client import OK, TIMEOUT, ProbeClient, ProbeResult

logger = logging.getLogger(__name__)

FLOOD_PATHS = ["/", "/api/etablissements", "/api/search?q=test"]
FLOOD_PAUSE = 2.0
RECOVERY_WAIT = 5.0

PAYLOAD_SIZES: List[Tuple[int, str]] = [(1024 * 1024, "1MB"), (10 * 1024 * 1024, "10MB")]
AGGRESSIVE_PAYLOAD_SIZES: List[Tuple[int, str]] = [(50 * 1024 * 1024, "50MB")]
PAYLOAD_PATHS = ["/api/reclamations", "/api/upload", "/api/auth/register"]
PAYLOAD_REJECTED = (400, 404, 413, 431)

REDOS_PATH = "/api/search"
REDOS_THRESHOLD = 3.0
REDOS_TIMEOUT = 5.0

EXHAUSTION_PATH = "/api/etablissements"
EXHAUSTION_VOLUME = 500
EXHAUSTION_FAILURE_RATIO = 0.5
CONNECTION_VOLUME = 200
CONNECTION_ERROR_RATIO = 0.2
DB_HEAVY_PATHS = ["/api/etablissements?limit=1000", "/api/evenements?all=true", "/api/reclamations?all=true"]

BOMB_PATH = "/api/reclamations"
BOMB_THRESHOLD = 5.0
HASH_PATH = "/api/search"
HASH_KEYS = 1000
HASH_THRESHOLD = 3.0


def _nested(depth: int) -> Any:
    node: Any = "value"
    for _ in range(depth):
        node = {"nested": node}
    return node


def json_bombs() -> List[Tuple[str, Any]]:
    return [
        ("deep nesting", _nested(100)),
        ("wide object", {f"key{i}": f"value{i}" for i in range(1000)}),
        ("array bomb", {"items": [{"data": "x" * 100}] * 10000}),
    ]


def collision_payload(keys: int = HASH_KEYS) -> Dict[str, int]:
    return {"x" * (i % 50) + str(i): i for i in range(keys)}


def _in_scope(config: AuditConfig, paths: List[str]) -> List[str]:
    kept = [p for p in paths if not config.scope.is_excluded(urlsplit(p).path)]
    for path in paths:
        if path not in kept:
            logger.info("DoS target %s is out of scope, skipped", path)
    return kept


# ----------------------- individual tests ----------------------------#
def application_flood(config: AuditConfig, probe: ProbeClient, baseline: Optional[float]) -> List[Finding]:
    findings: List[Finding] = []
    budget = config.dos_max_concurrent
    for path in _in_scope(config, FLOOD_PATHS):
        url = config.url(path)
        logger.info("Flooding %s with %d requests (concurrency %d)", url, budget, budget)
        stats = flood(probe, url, budget, budget, timeout=10.0)
        findings.extend(degradation_findings(url, stats, baseline))
        time.sleep(FLOOD_PAUSE)
    return findings


def large_payloads(config: AuditConfig, probe: ProbeClient) -> List[Finding]:
    findings: List[Finding] = []
    sizes = PAYLOAD_SIZES + (AGGRESSIVE_PAYLOAD_SIZES if config.aggressive else [])
    for path in PAYLOAD_PATHS:
        for size, label in sizes:
            body = {"description": "A" * size}
            res = probe.post(path, json=body, timeout=30.0, throttle=False)
            logger.debug("Large payload %s to %s: %s %s", label, path, res.kind, res.status)
            if res.status == 404:
                break
            if res.kind == OK and res.status not in PAYLOAD_REJECTED:
                findings.append(Finding(
                    title=f"Large Payload Accepted: {path}",
                    severity=MEDIUM,
                    category="Denial of Service",
                    description=f"A {label} request body was accepted (HTTP {res.status})",
                    endpoint=path,
                    method="POST",
                    remediation="Cap request body size at the proxy and in the framework (e.g. 1MB)",
                    cvss=5.3,
                    cwe="CWE-400",
                    owasp="API4:2023",
                ))
                break
    return findings


def redos(config: AuditConfig, probe: ProbeClient) -> List[Finding]:
    for value in REDOS_PAYLOADS:
        res = probe.get(REDOS_PATH, params={"q": value}, timeout=REDOS_TIMEOUT, throttle=False)
        if res.elapsed <= REDOS_THRESHOLD:
            continue
        return [Finding(
            title="ReDoS Vulnerability Detected",
            severity=HIGH,
            category="Denial of Service",
            description=f"Search took {res.elapsed:.1f}s for a crafted input",
            endpoint=REDOS_PATH,
            method="GET",
            parameter="q",
            payload=value,
            evidence=res.error or f"HTTP {res.status}",
            remediation="Avoid nested quantifiers, bound input length, or use a linear-time regex engine",
            cvss=7.5,
            cwe="CWE-1333",
            owasp="API4:2023",
        )]
    return []


def resource_exhaustion(config: AuditConfig, probe: ProbeClient) -> List[Finding]:
    if not _in_scope(config, [EXHAUSTION_PATH]):
        return []

    def send(i: int) -> ProbeResult:
        return probe.get(EXHAUSTION_PATH, params={"page": i}, throttle=False)

    stats = fan_out(send, EXHAUSTION_VOLUME, config.dos_max_concurrent, desc="Resource exhaustion")
    failures = stats.statuses.count(0)
    logger.info("Resource exhaustion: %d/%d requests got no answer", failures, stats.total)
    if not stats.total or failures <= stats.total * EXHAUSTION_FAILURE_RATIO:
        return []
    return [Finding(
        title="Resource Exhaustion Under Rapid Requests",
        severity=MEDIUM,
        category="Denial of Service",
        description=f"{failures}/{stats.total} requests received no response",
        endpoint=EXHAUSTION_PATH,
        method="GET",
        remediation="Raise file descriptor limits and queue excess requests",
        cvss=5.3,
        cwe="CWE-400",
        owasp="API4:2023",
        details=stats.as_dict(),
    )]


def connection_exhaustion(config: AuditConfig, probe: ProbeClient) -> List[Finding]:
    paths = _in_scope(config, DB_HEAVY_PATHS)
    if not paths:
        return []

    def send(i: int) -> ProbeResult:
        return probe.get(paths[i % len(paths)], throttle=False)

    stats = fan_out(send, CONNECTION_VOLUME, config.dos_max_concurrent, desc="Connection exhaustion")
    refused = stats.statuses.count(0) - stats.timeouts
    logger.info("Connection exhaustion: %d refused, %d timeouts", refused, stats.timeouts)
    if not stats.total or refused <= stats.total * CONNECTION_ERROR_RATIO:
        return []
    return [Finding(
        title="Connection Pool Exhaustion",
        severity=HIGH,
        category="Denial of Service",
        description=f"{refused}/{stats.total} requests failed to connect under load",
        endpoint=", ".join(paths),
        method="GET",
        remediation="Size database and HTTP connection pools and recycle idle connections",
        cvss=7.5,
        cwe="CWE-400",
        owasp="API4:2023",
        details=stats.as_dict(),
    )]


def data_bombs(config: AuditConfig, probe: ProbeClient) -> List[Finding]:
    findings: List[Finding] = []
    for name, body in json_bombs():
        res = probe.post(BOMB_PATH, json=body, timeout=10.0, throttle=False)
        slow = res.elapsed > BOMB_THRESHOLD
        if slow and (res.kind == TIMEOUT or res.status not in (400, 413)):
            findings.append(Finding(
                title=f"JSON Bomb Processed: {name}",
                severity=MEDIUM,
                category="Denial of Service",
                description=f"The server spent {res.elapsed:.1f}s on a {name} document",
                endpoint=BOMB_PATH,
                method="POST",
                remediation="Limit JSON depth, key count and array length before parsing",
                cvss=5.3,
                cwe="CWE-400",
                owasp="API4:2023",
            ))
    return findings


def hash_collision(config: AuditConfig, probe: ProbeClient) -> List[Finding]:
    res = probe.post(HASH_PATH, json=collision_payload(), timeout=10.0, throttle=False)
    if res.elapsed <= HASH_THRESHOLD:
        return []
    return [Finding(
        title="Potential Hash Collision Vulnerability",
        severity=MEDIUM,
        category="Denial of Service",
        description=f"A body with {HASH_KEYS} keys took {res.elapsed:.1f}s",
        endpoint=HASH_PATH,
        method="POST",
        remediation="Limit the number of keys per object and use randomized hash seeds",
        cvss=5.3,
        cwe="CWE-407",
        owasp="API4:2023",
    )]


# ----------------------- phase entry ----------------------------#
def _guarded(name: str, fn: Callable[[], List[Finding]]) -> List[Finding]:
    try:
        return fn()
    except Exception as exc:
        logger.debug("DoS test %s failed", name, exc_info=True)
        logger.warning("DoS test %s failed: %s", name, exc)
        return []


def check_denial_of_service(config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> List[Finding]:
    if not config.scope.test_dos:
        logger.info("DoS tests disabled; no traffic sent")
        return [dos_skipped_finding()]

    logger.warning("DoS tests enabled against %s", config.target)
    root = config.url("/")
    baseline = measure_baseline(probe, root)
    logger.info("Baseline latency: %s", f"{baseline * 1000:.0f}ms" if baseline else "no answer")

    findings: List[Finding] = []
    findings += _guarded("flood", lambda: application_flood(config, probe, baseline))
    findings += _guarded("slowloris", lambda: slowloris(probe))
    findings += _guarded("large payloads", lambda: large_payloads(config, probe))
    findings += _guarded("redos", lambda: redos(config, probe))
    findings += _guarded("resource exhaustion", lambda: resource_exhaustion(config, probe))
    findings += _guarded("connection exhaustion", lambda: connection_exhaustion(config, probe))
    findings += _guarded("json bombs", lambda: data_bombs(config, probe))
    findings += _guarded("hash collision", lambda: hash_collision(config, probe))

    if baseline is None:
        logger.warning("No baseline for %s; recovery not measured", root)
    else:
        findings.append(recovery_finding(root, verify_recovery(probe, root, baseline, wait=RECOVERY_WAIT)))
    return findings


DOS_CHECKS = [
    ("Denial of service and stress", check_denial_of_service),
]
