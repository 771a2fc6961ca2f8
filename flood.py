########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""Bounded-concurrency fan-out and the availability primitives built on it."""
from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from tqdm import tqdm

from findings import CRITICAL, HIGH, INFO, MEDIUM, Finding
from probe_client import OK, SKIPPED, TIMEOUT, ProbeClient, ProbeResult

logger = logging.getLogger(__name__)

ERROR_RATE_LIMIT = 0.10
SLOWDOWN_FACTOR = 10.0
RECOVERY_FACTOR = 2.0


# ----------------------- LoadStats ----------------------------#
@dataclass
class LoadStats:
    total: int = 0
    successes: int = 0
    errors: int = 0
    timeouts: int = 0
    latencies: List[float] = field(default_factory=list)
    peak_in_flight: int = 0
    skipped: int = 0
    statuses: List[int] = field(default_factory=list)

    @property
    def avg(self) -> float:
        return sum(self.latencies) / len(self.latencies) if self.latencies else 0.0

    @property
    def min(self) -> float:
        return min(self.latencies) if self.latencies else 0.0

    @property
    def max(self) -> float:
        return max(self.latencies) if self.latencies else 0.0

    @property
    def error_rate(self) -> float:
        return (self.errors + self.timeouts) / self.total if self.total else 0.0

    def record(self, result: ProbeResult) -> None:
        """Tally one result; out-of-scope requests were never sent and count nowhere."""
        if result.kind == SKIPPED:
            self.skipped += 1
            return
        self.total += 1
        self.statuses.append(result.status)
        if result.kind == TIMEOUT:
            self.timeouts += 1
        elif result.kind != OK or result.status >= 500:
            self.errors += 1
        else:
            self.successes += 1
            self.latencies.append(result.elapsed)

    def as_dict(self) -> dict:
        return {
            "total": self.total,
            "successes": self.successes,
            "errors": self.errors,
            "timeouts": self.timeouts,
            "avg_ms": round(self.avg * 1000, 1),
            "min_ms": round(self.min * 1000, 1),
            "max_ms": round(self.max * 1000, 1),
            "error_rate": round(self.error_rate, 3),
            "peak_in_flight": self.peak_in_flight,
            "skipped": self.skipped,
        }


# ----------------------- fan_out ----------------------------#
def fan_out(
    task: Callable[[int], ProbeResult],
    count: int,
    concurrency: int,
    *,
    desc: str = "Concurrent requests",
    show_progress: bool = False,
) -> LoadStats:
    """Run ``task(i)`` for i in range(count), never more than ``concurrency`` at once.

    Every future is settled before the aggregated stats are returned.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")
    stats = LoadStats()
    lock = threading.Lock()
    in_flight = 0

    def guarded(i: int) -> ProbeResult:
        nonlocal in_flight
        with lock:
            in_flight += 1
            if in_flight > stats.peak_in_flight:
                stats.peak_in_flight = in_flight
        try:
            return task(i)
        finally:
            with lock:
                in_flight -= 1

    with concurrent.futures.ThreadPoolExecutor(max_workers=concurrency) as ex:
        futures = [ex.submit(guarded, i) for i in range(count)]
        bar = tqdm(total=len(futures), desc=desc, unit="req", leave=False) if show_progress else None
        for fut in concurrent.futures.as_completed(futures):
            try:
                result = fut.result()
            except Exception as exc:
                logger.debug("Fan-out task failed: %s", exc)
                result = ProbeResult(kind="error", method="", url="", error=str(exc))
            with lock:
                stats.record(result)
            if bar:
                bar.update(1)
        if bar:
            bar.close()
    return stats


# ----------------------- baseline / flood ----------------------------#
def measure_baseline(probe: ProbeClient, url: str, samples: int = 5) -> Optional[float]:
    times = []
    for _ in range(samples):
        res = probe.get(url, throttle=False)
        if res.ok:
            times.append(res.elapsed)
    if not times:
        return None
    return sum(times) / len(times)


def flood(probe: ProbeClient, url: str, count: int, concurrency: int, *, method: str = "GET", timeout: float = 10.0, show_progress: bool = False, **kwargs: Any) -> LoadStats:
    def send(_: int) -> ProbeResult:
        return probe.request(method, url, timeout=timeout, throttle=False, **kwargs)

    stats = fan_out(send, count, concurrency, desc=f"Flood {url}", show_progress=show_progress)
    logger.info("Flood %s: %s", url, stats.as_dict())
    return stats


def degradation_findings(url: str, stats: LoadStats, baseline: Optional[float]) -> List[Finding]:
    if not stats.total:
        logger.info("No request was sent to %s; nothing to grade", url)
        return []
    findings: List[Finding] = []
    evidence = str(stats.as_dict())
    if stats.successes == 0:
        findings.append(Finding(
            title="Complete Service Denial",
            severity=CRITICAL,
            category="Denial of Service",
            description=f"No request out of {stats.total} concurrent requests succeeded",
            endpoint=url,
            method="GET",
            evidence=evidence,
            remediation="Add rate limiting, connection limits and autoscaling in front of the application",
            cvss=9.1,
            cwe="CWE-400",
            owasp="A05:2021",
            details=stats.as_dict(),
        ))
        return findings
    if stats.error_rate > ERROR_RATE_LIMIT:
        findings.append(Finding(
            title="Application Unstable Under Load",
            severity=MEDIUM,
            category="Denial of Service",
            description=f"{stats.error_rate:.0%} of {stats.total} concurrent requests failed",
            endpoint=url,
            method="GET",
            evidence=evidence,
            remediation="Size worker pools and queue limits; shed load gracefully with 429/503",
            cvss=5.3,
            cwe="CWE-400",
            owasp="A05:2021",
            details=stats.as_dict(),
        ))
    if baseline and stats.avg > baseline * SLOWDOWN_FACTOR:
        findings.append(Finding(
            title="Severe Performance Degradation",
            severity=HIGH,
            category="Denial of Service",
            description=f"Average latency {stats.avg * 1000:.0f}ms under load vs {baseline * 1000:.0f}ms baseline",
            endpoint=url,
            method="GET",
            evidence=evidence,
            remediation="Profile the endpoint under load, add caching and request throttling",
            cvss=7.5,
            cwe="CWE-400",
            owasp="A05:2021",
            details=dict(stats.as_dict(), baseline_ms=round(baseline * 1000, 1)),
        ))
    return findings


# ----------------------- slowloris ----------------------------#
def slowloris(probe: ProbeClient, holdouts: int = 50, wait: float = 5.0, check_timeout: float = 10.0) -> List[Finding]:
    """Hold partial requests open, then see whether a normal request is still served."""
    url = probe.config.url("/")
    if probe.config.scope.is_excluded("/"):
        logger.info("Slowloris: / is out of scope, skipped")
        return []
    with probe.hold_open(holdouts) as held:
        if not held:
            logger.info("Slowloris: no partial connection could be opened")
            return []
        logger.info("Slowloris: %d partial connections held, waiting %.0fs", len(held), wait)
        time.sleep(wait)
        res = probe.get(url, timeout=check_timeout, throttle=False)
        opened = len(held)
    if res.ok and res.status < 500:
        logger.info("Slowloris: target still answered (HTTP %s in %.2fs)", res.status, res.elapsed)
        return []
    return [Finding(
        title="Vulnerable to Slowloris",
        severity=HIGH,
        category="Denial of Service",
        description=f"Target stopped answering while {opened} partial connections were held open",
        endpoint=url,
        method="GET",
        evidence=res.error or f"HTTP {res.status}",
        remediation="Set header/read timeouts and per-IP connection limits on the reverse proxy",
        cvss=7.5,
        cwe="CWE-400",
        owasp="A05:2021",
        details={"held_connections": opened, "probe_kind": res.kind},
    )]


# ----------------------- recovery ----------------------------#
@dataclass
class RecoveryResult:
    recovered: bool
    baseline: Optional[float]
    current: Optional[float]


def verify_recovery(probe: ProbeClient, url: str, baseline: Optional[float], wait: float = 5.0, samples: int = 5) -> RecoveryResult:
    time.sleep(wait)
    current = measure_baseline(probe, url, samples)
    if current is None:
        recovered = False
    elif not baseline:
        recovered = True
    else:
        recovered = current < baseline * RECOVERY_FACTOR
    if recovered:
        logger.info("Target recovered: %.0fms (baseline %s)", (current or 0) * 1000, f"{baseline * 1000:.0f}ms" if baseline else "n/a")
    else:
        logger.warning("Target has not recovered: current=%s baseline=%s", current, baseline)
    return RecoveryResult(recovered, baseline, current)


def recovery_finding(url: str, result: RecoveryResult) -> Finding:
    if result.recovered:
        return Finding(
            title="Target Recovered After Stress Tests",
            severity=INFO,
            category="DoS Testing",
            description="Latency returned within twice the pre-test baseline",
            endpoint=url,
            cvss=0.0,
            details={"baseline": result.baseline, "current": result.current},
        )
    return Finding(
        title="Slow Recovery After Load",
        severity=MEDIUM,
        category="Denial of Service",
        description="Latency did not return within twice the pre-test baseline after stress tests",
        endpoint=url,
        remediation="Check for leaked connections, unbounded queues and missing timeouts",
        cvss=5.3,
        cwe="CWE-400",
        details={"baseline": result.baseline, "current": result.current},
    )


def dos_skipped_finding() -> Finding:
    return Finding(
        title="DoS Tests Skipped",
        severity=INFO,
        category="DoS Testing",
        description="Destructive availability tests are disabled (scope.testDoS=false)",
        remediation="Enable with --enable-dos or TEST_DOS=true on an isolated environment",
        cvss=0.0,
    )
