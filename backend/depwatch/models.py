# depwatch/models.py
"""
Data structures that flow through the scan pipeline.

    Collector → CollectorOutcome → (orchestrator) → ScanResult
                                                     ├── MetricsRegistry.ingest()
                                                     └── ResultStore.publish()

Findings (Dependency / Vulnerability) are keyed by package name + service.
There is no fingerprinting or dedup hashing here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

SEVERITIES = ("critical", "high", "medium", "low")

SEVERITY_ALIASES = {
    "critical": "critical",
    "high": "high",
    "important": "high",
    "medium": "medium",
    "moderate": "medium",
    "low": "low",
    "info": "low",
    "informational": "low",
    "none": "low",
    "negligible": "low",
}

# ScanResult.status
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_PARTIAL = "partial"

# ScanJob.status
JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"
JOB_TIMED_OUT = "timed_out"
JOB_CANCELLED = "cancelled"

JOB_TERMINAL = (JOB_COMPLETED, JOB_FAILED, JOB_TIMED_OUT, JOB_CANCELLED)

CHECK_OUTDATED = "outdated"
CHECK_VULNERABILITIES = "vulnerabilities"


def now_utc() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def clamp_cvss(score: Any) -> Optional[float]:
    if score is None or isinstance(score, bool):
        return None
    try:
        value = float(score)
    except (TypeError, ValueError):
        return None
    if value != value:  # NaN
        return None
    return round(max(0.0, min(10.0, value)), 1)


def severity_from_cvss(score: Optional[float]) -> str:
    """CVSS v3 qualitative bands."""
    if score is None:
        return "medium"
    if score >= 9.0:
        return "critical"
    if score >= 7.0:
        return "high"
    if score >= 4.0:
        return "medium"
    return "low"


def coerce_severity(raw: Any, cvss_score: Optional[float] = None) -> str:
    """
    Map whatever a tool reports to one of SEVERITIES. Never returns None.

    Known labels and aliases map directly ("moderate" → medium, "info" → low).
    Anything else falls back to the CVSS band, or "medium" with no score.
    """
    label = str(raw or "").strip().lower()
    if label in SEVERITY_ALIASES:
        return SEVERITY_ALIASES[label]
    return severity_from_cvss(clamp_cvss(cvss_score))


def _non_negative(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


@dataclass
class Dependency:
    package_name: str
    current_version: str
    latest_version: str = ""
    versions_behind: int = 0
    last_updated_days: int = 0

    def __post_init__(self):
        self.versions_behind = _non_negative(self.versions_behind)
        self.last_updated_days = _non_negative(self.last_updated_days)
        if not self.latest_version:
            self.latest_version = self.current_version

    @property
    def is_outdated(self) -> bool:
        return self.versions_behind > 0 or (
            bool(self.latest_version) and self.latest_version != self.current_version
        )

    def to_dict(self) -> dict:
        return {
            "package": self.package_name,
            "current_version": self.current_version,
            "latest_version": self.latest_version,
            "versions_behind": self.versions_behind,
            "last_updated_days": self.last_updated_days,
            "outdated": self.is_outdated,
        }


@dataclass
class Vulnerability:
    package_name: str
    severity: str
    advisory_id: str
    affected_version_range: str = ""
    cvss_score: Optional[float] = None
    title: str = ""
    url: str = ""

    def __post_init__(self):
        self.cvss_score = clamp_cvss(self.cvss_score)
        self.severity = coerce_severity(self.severity, self.cvss_score)

    def to_dict(self) -> dict:
        return {
            "package": self.package_name,
            "severity": self.severity,
            "cvss_score": self.cvss_score,
            "advisory_id": self.advisory_id,
            "affected_version_range": self.affected_version_range,
            "title": self.title,
            "url": self.url,
        }


@dataclass
class ScanError:
    kind: str           # CollectorUnavailable, ParseError, ProcessTimeout, ProcessFailure, ...
    message: str
    retryable: bool = False

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "retryable": self.retryable}


@dataclass
class ScanOptions:
    """
    Per-scan knobs passed to a collector.

    check_outdated:        inventory + latest-version lookups
    check_vulnerabilities: run the ecosystem's audit tool
    timeout:               wall-clock budget for each subprocess (seconds)
    registry_lookups:      query package registries for release metadata
    extra:                 ecosystem-specific options (e.g. requirements file)
    """
    check_outdated: bool = True
    check_vulnerabilities: bool = True
    timeout: float = 300.0
    registry_lookups: bool = True
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def checks(self) -> List[str]:
        out = []
        if self.check_outdated:
            out.append(CHECK_OUTDATED)
        if self.check_vulnerabilities:
            out.append(CHECK_VULNERABILITIES)
        return out

    @classmethod
    def security_only(cls, **kwargs) -> "ScanOptions":
        return cls(check_outdated=False, check_vulnerabilities=True, **kwargs)


@dataclass
class CollectorOutcome:
    """What a collector hands back. Always returned, never raised."""
    ecosystem: str
    dependencies: List[Dependency] = field(default_factory=list)
    vulnerabilities: List[Vulnerability] = field(default_factory=list)
    errors: List[ScanError] = field(default_factory=list)
    checks_run: List[str] = field(default_factory=list)
    checks_failed: List[str] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def status(self) -> str:
        if not self.checks_failed:
            return STATUS_COMPLETED
        if len(self.checks_failed) < len(self.checks_run):
            return STATUS_PARTIAL
        return STATUS_FAILED

    @property
    def retryable(self) -> bool:
        """True if every error is transient (worth another attempt)."""
        return bool(self.errors) and all(e.retryable for e in self.errors)


@dataclass
class ScanResult:
    service_name: str
    ecosystem: str
    started_at: datetime
    duration: float = 0.0
    dependencies: List[Dependency] = field(default_factory=list)
    vulnerabilities: List[Vulnerability] = field(default_factory=list)
    errors: List[ScanError] = field(default_factory=list)
    status: str = STATUS_COMPLETED
    checks: List[str] = field(default_factory=list)
    checks_failed: List[str] = field(default_factory=list)
    job_id: Optional[str] = None
    sequence: int = 0
    stale: bool = False
    last_error: Optional[str] = None

    @property
    def outdated_count(self) -> int:
        return sum(1 for d in self.dependencies if d.is_outdated)

    @property
    def is_good(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_PARTIAL)

    @property
    def checks_succeeded(self) -> List[str]:
        return [c for c in self.checks if c not in self.checks_failed]

    def severity_counts(self) -> Dict[str, int]:
        counts = {s: 0 for s in SEVERITIES}
        for v in self.vulnerabilities:
            counts[v.severity] += 1
        return counts

    def to_envelope(self) -> dict:
        """API response envelope for scan endpoints."""
        return {
            "service": self.service_name,
            "language": self.ecosystem,
            "scan_time": self.started_at.isoformat(),
            "duration": round(self.duration, 3),
            "summary": {
                "total_packages": len(self.dependencies),
                "outdated_count": self.outdated_count,
                "vulnerability_count": len(self.vulnerabilities),
                "by_severity": self.severity_counts(),
            },
            "dependencies": [d.to_dict() for d in self.dependencies],
            "vulnerabilities": [v.to_dict() for v in self.vulnerabilities],
            "errors": [e.to_dict() for e in self.errors],
            "status": self.status,
            "checks": list(self.checks),
            "checks_failed": list(self.checks_failed),
            "job_id": self.job_id,
            "stale": self.stale,
            "last_error": self.last_error,
        }
