# depwatch/metrics.py
"""
Metrics Registry / Exporter.

A custom prometheus_client collector on a private CollectorRegistry. It
exposes one immutable snapshot per service, derived from the latest
ScanResult.

    ingest(result)  builds the new snapshot off-lock, then swaps it in under
                    the lock. collect() copies the snapshot map under the
                    same lock, so a scrape sees a service's series entirely
                    before or entirely after an update, never a mix.

Replacing the whole snapshot also prunes stale series. A package that was
upgraded away or removed has no row in the new snapshot, so its label
combination disappears. Cardinality stays bounded by "current dependencies
across current services".

Exported series (names and labels are fixed, dashboards depend on them):
    dependency_current_version_info{service, language, package, version}            1
    dependency_latest_version_info{service, language, package, latest_version}      1
    dependency_versions_behind_total{service, language, package}
    dependency_last_updated_days{service, language, package}
    dependency_vulnerabilities_total{service, language, package, severity}
    service_dependency_count_total{service, language}
    dependency_scan_duration_seconds{service, language}
    dependency_scan_stale{service, language}
    dependency_scan_errors_total{service, language, error_type}                      counter
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass, replace
from typing import Dict, Iterator, Optional, Tuple

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from prometheus_client.registry import Collector

from depwatch.models import CHECK_OUTDATED, ScanResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceSnapshot:
    service: str
    language: str
    # (package, version)
    current_versions: Tuple[Tuple[str, str], ...] = ()
    # (package, latest_version)
    latest_versions: Tuple[Tuple[str, str], ...] = ()
    # (package, n)
    versions_behind: Tuple[Tuple[str, int], ...] = ()
    last_updated_days: Tuple[Tuple[str, int], ...] = ()
    # (package, severity, count)
    vulnerabilities: Tuple[Tuple[str, str, int], ...] = ()
    dependency_count: Optional[int] = None
    duration: float = 0.0
    stale: bool = False

    def series_count(self) -> int:
        n = (len(self.current_versions) + len(self.latest_versions)
             + len(self.versions_behind) + len(self.last_updated_days)
             + len(self.vulnerabilities) + 2)
        if self.dependency_count is not None:
            n += 1
        return n


def build_snapshot(result: ScanResult) -> ServiceSnapshot:
    """Derive a service's full series set from one result."""
    if not result.is_good and not result.dependencies and not result.vulnerabilities:
        # Failed with nothing to show: only duration/errors are meaningful
        return ServiceSnapshot(
            service=result.service_name,
            language=result.ecosystem,
            duration=result.duration,
            stale=result.stale,
        )

    # One series per package; if a manifest lists a package twice, last wins
    deps = {d.package_name: d for d in result.dependencies}
    vuln_counts = Counter((v.package_name, v.severity) for v in result.vulnerabilities)
    # No inventory yet (first security-only scan): the count is unknown, not zero
    has_inventory = bool(deps) or CHECK_OUTDATED in result.checks_succeeded

    return ServiceSnapshot(
        service=result.service_name,
        language=result.ecosystem,
        current_versions=tuple((n, d.current_version) for n, d in sorted(deps.items())),
        latest_versions=tuple((n, d.latest_version) for n, d in sorted(deps.items())),
        versions_behind=tuple((n, d.versions_behind) for n, d in sorted(deps.items())),
        last_updated_days=tuple((n, d.last_updated_days) for n, d in sorted(deps.items())),
        vulnerabilities=tuple(
            (pkg, sev, count) for (pkg, sev), count in sorted(vuln_counts.items())
        ),
        dependency_count=len(deps) if has_inventory else None,
        duration=result.duration,
        stale=result.stale,
    )


class MetricsRegistry(Collector):
    """
    Concurrency-safe metric state for all services.

    Single writer per service (the orchestrator, under the service's
    exclusivity), any number of concurrent scrapes.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshots: Dict[str, ServiceSnapshot] = {}
        # (key, service, language, error_type) → count; monotonic, survives re-scans
        self._errors: Dict[Tuple[str, str, str, str], int] = {}
        self.registry = CollectorRegistry(auto_describe=False)
        self.registry.register(self)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def ingest(self, result: ScanResult, stale: bool = False, key: Optional[str] = None) -> None:
        """
        Replace the series stored under key (default result.service_name) with
        ones derived from result.

        stale=True means the scan failed and readers are being served the
        previous result. Dependency and vulnerability series are kept; only
        the duration, the stale flag and the error counters change.
        """
        key = key or result.service_name
        fresh = None if stale else build_snapshot(result)
        error_kinds = Counter(e.kind for e in result.errors)

        with self._lock:
            if stale:
                previous = self._snapshots.get(key)
                if previous is not None:
                    fresh = replace(previous, duration=result.duration, stale=True)
                else:
                    fresh = build_snapshot(result)
            # One series set per label pair: an older scan exported under the
            # same service and language labels (another ad-hoc path) is replaced
            for other in [k for k, s in self._snapshots.items()
                          if k != key and (s.service, s.language) == (fresh.service, fresh.language)]:
                del self._snapshots[other]
            self._snapshots[key] = fresh
            for kind, count in error_kinds.items():
                err_key = (key, result.service_name, result.ecosystem, kind)
                self._errors[err_key] = self._errors.get(err_key, 0) + count

        logger.debug(
            f"Metrics for {key} replaced: {fresh.series_count()} series"
            f"{' (stale)' if stale else ''}"
        )

    def forget(self, key: str) -> None:
        """Drop every series of a key (a service removed from the registry)."""
        with self._lock:
            self._snapshots.pop(key, None)
            for err_key in [k for k in self._errors if k[0] == key]:
                del self._errors[err_key]

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def snapshot(self, key: str) -> Optional[ServiceSnapshot]:
        with self._lock:
            return self._snapshots.get(key)

    def series_count(self, key: str) -> int:
        snap = self.snapshot(key)
        return snap.series_count() if snap else 0

    def describe(self):
        return []

    def collect(self) -> Iterator:
        with self._lock:
            snapshots = list(self._snapshots.values())
            errors = dict(self._errors)

        current = GaugeMetricFamily(
            "dependency_current_version_info",
            "Installed version of a dependency (value is always 1)",
            labels=["service", "language", "package", "version"],
        )
        latest = GaugeMetricFamily(
            "dependency_latest_version_info",
            "Latest published version of a dependency (value is always 1)",
            labels=["service", "language", "package", "latest_version"],
        )
        behind = GaugeMetricFamily(
            "dependency_versions_behind_total",
            "Number of releases between the installed and the latest version",
            labels=["service", "language", "package"],
        )
        age = GaugeMetricFamily(
            "dependency_last_updated_days",
            "Days since the installed version was published",
            labels=["service", "language", "package"],
        )
        vulns = GaugeMetricFamily(
            "dependency_vulnerabilities_total",
            "Known vulnerabilities per package and severity in the latest scan",
            labels=["service", "language", "package", "severity"],
        )
        dep_count = GaugeMetricFamily(
            "service_dependency_count_total",
            "Number of dependencies in the latest scan",
            labels=["service", "language"],
        )
        duration = GaugeMetricFamily(
            "dependency_scan_duration_seconds",
            "Wall-clock duration of the latest scan",
            labels=["service", "language"],
        )
        stale = GaugeMetricFamily(
            "dependency_scan_stale",
            "1 if the latest scan failed and the previous result is being served",
            labels=["service", "language"],
        )
        # CounterMetricFamily appends _total on exposition
        scan_errors = CounterMetricFamily(
            "dependency_scan_errors",
            "Scan errors by kind",
            labels=["service", "language", "error_type"],
        )

        for snap in snapshots:
            svc, lang = snap.service, snap.language
            for pkg, version in snap.current_versions:
                current.add_metric([svc, lang, pkg, version], 1)
            for pkg, version in snap.latest_versions:
                latest.add_metric([svc, lang, pkg, version], 1)
            for pkg, n in snap.versions_behind:
                behind.add_metric([svc, lang, pkg], n)
            for pkg, days in snap.last_updated_days:
                age.add_metric([svc, lang, pkg], days)
            for pkg, severity, count in snap.vulnerabilities:
                vulns.add_metric([svc, lang, pkg, severity], count)
            if snap.dependency_count is not None:
                dep_count.add_metric([svc, lang], snap.dependency_count)
            duration.add_metric([svc, lang], snap.duration)
            stale.add_metric([svc, lang], 1 if snap.stale else 0)

        totals: Counter = Counter()
        for (_, svc, lang, kind), count in errors.items():
            totals[(svc, lang, kind)] += count
        for (svc, lang, kind), count in sorted(totals.items()):
            scan_errors.add_metric([svc, lang, kind], count)

        yield current
        yield latest
        yield behind
        yield age
        yield vulns
        yield dep_count
        yield duration
        yield stale
        yield scan_errors

    def render(self) -> Tuple[bytes, str]:
        """Prometheus text exposition for GET /metrics."""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
