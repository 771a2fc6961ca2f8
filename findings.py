########################################################
# SECAUDIT - Security Audit Engine                     #
# Licensed under the MIT License                       #
# Author: Perry Mertens pamsniffer@gmail.com (C) 2025  #
########################################################
"""Finding model, severity bands and the thread-safe finding collector."""
from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

CRITICAL = "CRITICAL"
HIGH = "HIGH"
MEDIUM = "MEDIUM"
LOW = "LOW"
INFO = "INFO"

SEVERITY_ORDER: Tuple[str, ...] = (CRITICAL, HIGH, MEDIUM, LOW, INFO)

# inclusive CVSS ranges per tier
CVSS_BANDS: Dict[str, Tuple[float, float]] = {
    CRITICAL: (9.0, 10.0),
    HIGH: (7.0, 8.9),
    MEDIUM: (4.0, 6.9),
    LOW: (0.1, 3.9),
    INFO: (0.0, 0.0),
}

DEFAULT_CVSS: Dict[str, float] = {
    CRITICAL: 9.1,
    HIGH: 7.5,
    MEDIUM: 5.3,
    LOW: 3.1,
    INFO: 0.0,
}


def cvss_in_band(severity: str, cvss: float) -> bool:
    low, high = CVSS_BANDS[severity]
    return low <= round(float(cvss), 1) <= high


def severity_for_cvss(cvss: float) -> str:
    score = round(float(cvss), 1)
    for sev in SEVERITY_ORDER:
        low, high = CVSS_BANDS[sev]
        if low <= score <= high:
            return sev
    raise ValueError(f"CVSS score out of range: {cvss}")


def _clip(value: Any, limit: int = 500) -> Optional[str]:
    if value is None:
        return None
    text = value if isinstance(value, str) else str(value)
    return text if len(text) <= limit else text[:limit] + "..."


# ----------------------- Finding ----------------------------#
@dataclass(frozen=True)
class Finding:
    """One reported issue.

    Instances are immutable. Construction fails with ``ValueError`` when the
    severity is unknown or the CVSS score falls outside the severity band.
    """

    title: str
    severity: str
    category: str
    description: str = ""
    endpoint: str = "N/A"
    method: str = "N/A"
    parameter: Optional[str] = None
    payload: Optional[str] = None
    evidence: Optional[str] = None
    remediation: str = ""
    cvss: Optional[float] = None
    cwe: Optional[str] = None
    owasp: Optional[str] = None
    details: Mapping[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat(timespec="seconds") + "Z")

    def __post_init__(self) -> None:
        sev = (self.severity or "").strip().upper()
        if sev not in CVSS_BANDS:
            raise ValueError(f"unknown severity: {self.severity!r}")
        object.__setattr__(self, "severity", sev)
        if not self.title:
            raise ValueError("finding title is required")

        score = DEFAULT_CVSS[sev] if self.cvss is None else round(float(self.cvss), 1)
        if not cvss_in_band(sev, score):
            low, high = CVSS_BANDS[sev]
            raise ValueError(f"CVSS {score} outside {sev} band {low}-{high} for {self.title!r}")
        object.__setattr__(self, "cvss", score)

        object.__setattr__(self, "method", (self.method or "N/A").upper())
        object.__setattr__(self, "payload", _clip(self.payload, 300))
        object.__setattr__(self, "evidence", _clip(self.evidence, 500))
        object.__setattr__(self, "details", MappingProxyType(dict(self.details or {})))

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER.index(self.severity)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
            "category": self.category,
            "endpoint": self.endpoint,
            "method": self.method,
            "parameter": self.parameter,
            "payload": self.payload,
            "evidence": self.evidence,
            "remediation": self.remediation,
            "cvss": self.cvss,
            "cwe": self.cwe,
            "owasp": self.owasp,
            "details": dict(self.details),
            "timestamp": self.timestamp,
        }


def count_by_severity(findings: Iterable[Finding]) -> Dict[str, int]:
    tally = Counter(f.severity for f in findings)
    return {sev: tally.get(sev, 0) for sev in SEVERITY_ORDER}


# ----------------------- FindingCollector ----------------------------#
class FindingCollector:
    """Append-only finding list with running per-severity counts.

    No deduplication: two checks reporting the same defect class produce two
    entries. Appends from worker threads are serialized by a lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: List[Finding] = []
        self._counts: Counter = Counter()

    def add(self, finding: Finding) -> None:
        if not isinstance(finding, Finding):
            raise TypeError(f"expected Finding, got {type(finding).__name__}")
        with self._lock:
            self._items.append(finding)
            self._counts[finding.severity] += 1

    def extend(self, findings: Iterable[Finding]) -> int:
        added = 0
        for f in findings or ():
            self.add(f)
            added += 1
        return added

    def snapshot(self) -> List[Finding]:
        with self._lock:
            return list(self._items)

    def severity_counts(self) -> Dict[str, int]:
        with self._lock:
            return {sev: self._counts.get(sev, 0) for sev in SEVERITY_ORDER}

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __iter__(self):
        return iter(self.snapshot())
