########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""
Phase pipeline.

Phases run strictly in the order of :data:`PHASES`; the checks of a phase
run one after another. A check is any callable
``(config, probe, credentials) -> List[Finding]``. Whatever a check raises
is logged and counted, never propagated: the run always reaches the end.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm

from api_audit import API_CHECKS
from auth_audit import AUTH_CHECKS
from authorization_audit import AUTHORIZATION_CHECKS
from business_logic_audit import BUSINESS_LOGIC_CHECKS
from config import AuditConfig, Scope
from credentials import TokenCache
from crypto_audit import CRYPTO_CHECKS
from exposure_audit import EXPOSURE_CHECKS
from findings import Finding, FindingCollector
from injection_audit import INJECTION_CHECKS
from misconfiguration_audit import MISCONFIGURATION_CHECKS
from probe_client import ProbeClient
from recon_audit import FINGERPRINT_CHECKS, NETWORK_CHECKS, RECON_CHECKS
from resource_consumption_audit import DOS_CHECKS
from session_audit import SESSION_CHECKS
from web_attack_audit import WEB_ATTACK_CHECKS

logger = logging.getLogger(__name__)

Check = Callable[[AuditConfig, ProbeClient, TokenCache], List[Finding]]


# ----------------------- Phase ----------------------------#
@dataclass(frozen=True)
class Phase:
    name: str
    checks: Sequence[Tuple[str, Check]]
    enabled: Callable[[Scope], bool] = lambda scope: True


def _always(scope: Scope) -> bool:
    return True


PHASES: Tuple[Phase, ...] = (
    Phase("Reconnaissance", RECON_CHECKS, _always),
    Phase("Network", NETWORK_CHECKS, _always),
    Phase("Vulnerability fingerprint", FINGERPRINT_CHECKS, _always),
    Phase("Web attacks", WEB_ATTACK_CHECKS, _always),
    Phase("API security", API_CHECKS, _always),
    Phase("Authentication", AUTH_CHECKS, lambda s: s.test_authentication),
    Phase("Authorization", AUTHORIZATION_CHECKS, lambda s: s.test_authorization),
    Phase("Injection", INJECTION_CHECKS, lambda s: s.test_injections),
    Phase("Cryptography", CRYPTO_CHECKS, _always),
    Phase("Session management", SESSION_CHECKS, _always),
    Phase("Business logic", BUSINESS_LOGIC_CHECKS, lambda s: s.test_business_logic),
    # gates itself on scope.test_dos so the skip is reported
    Phase("Denial of service", DOS_CHECKS, _always),
    Phase("Data exposure", EXPOSURE_CHECKS, _always),
    Phase("Security misconfiguration", MISCONFIGURATION_CHECKS, _always),
)


# ----------------------- AuditRun ----------------------------#
@dataclass
class CheckFailure:
    phase: str
    check: str
    error: str


@dataclass
class AuditRun:
    """Everything one run produced; handed to the reporter once finished."""

    config: AuditConfig
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    collector: FindingCollector = field(default_factory=FindingCollector)
    requests_sent: int = 0
    requests_failed: int = 0
    failures: List[CheckFailure] = field(default_factory=list)
    phase_seconds: Dict[str, float] = field(default_factory=dict)
    phases_skipped: List[str] = field(default_factory=list)

    @property
    def findings(self) -> List[Finding]:
        return self.collector.snapshot()

    def severity_counts(self) -> Dict[str, int]:
        return self.collector.severity_counts()

    @property
    def total(self) -> int:
        return len(self.collector)

    @property
    def duration(self) -> float:
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()


# ----------------------- execution ----------------------------#
def run_check(name: str, check: Check, config: AuditConfig, probe: ProbeClient, credentials: TokenCache) -> Tuple[List[Finding], Optional[str]]:
    """Run one check; an exception becomes an empty result plus the error text."""
    try:
        result = check(config, probe, credentials) or []
        findings = list(result)
        bad = [f for f in findings if not isinstance(f, Finding)]
        if bad:
            raise TypeError(f"check returned {type(bad[0]).__name__} instead of Finding")
        return findings, None
    except Exception as exc:
        logger.debug("Check %s failed", name, exc_info=True)
        logger.warning("Check %s failed: %s", name, exc)
        return [], f"{type(exc).__name__}: {exc}"


def execute(
    config: AuditConfig,
    *,
    probe: Optional[ProbeClient] = None,
    credentials: Optional[TokenCache] = None,
    phases: Sequence[Phase] = PHASES,
    show_progress: bool = False,
) -> AuditRun:
    own_probe = probe is None
    probe = probe or ProbeClient(config)
    credentials = credentials or TokenCache(config, probe)
    run = AuditRun(config=config)
    logger.info("Audit of %s started (%d phases)", config.target, len(phases))

    try:
        bar = tqdm(total=len(phases), desc="Phases", unit="phase", leave=False, disable=not show_progress)
        for index, phase in enumerate(phases, 1):
            bar.set_postfix_str(phase.name)
            if not phase.enabled(config.scope):
                logger.info("[%d/%d] %s: disabled by scope", index, len(phases), phase.name)
                run.phases_skipped.append(phase.name)
                bar.update(1)
                continue

            logger.info("[%d/%d] %s", index, len(phases), phase.name)
            phase_start = time.perf_counter()
            before = len(run.collector)
            for name, check in phase.checks:
                logger.debug("Running check: %s", name)
                findings, error = run_check(name, check, config, probe, credentials)
                if error:
                    run.failures.append(CheckFailure(phase.name, name, error))
                run.collector.extend(findings)
            run.phase_seconds[phase.name] = round(time.perf_counter() - phase_start, 2)
            added = len(run.collector) - before
            if show_progress:
                tqdm.write(f"  {phase.name}: {added} finding(s) in {run.phase_seconds[phase.name]}s")
            logger.info("%s finished: %d finding(s)", phase.name, added)
            bar.update(1)
        bar.close()
    finally:
        run.finished_at = datetime.now()
        run.requests_sent = probe.requests_sent
        run.requests_failed = probe.requests_failed
        if own_probe:
            probe.close()

    logger.info(
        "Audit finished in %.1fs: %d findings, %d requests (%d failed), %d check failure(s)",
        run.duration, run.total, run.requests_sent, run.requests_failed, len(run.failures),
    )
    return run
