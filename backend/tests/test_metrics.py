import threading
from datetime import datetime, timezone

from depwatch.metrics import MetricsRegistry, build_snapshot
from depwatch.models import Dependency, ScanError, ScanResult, Vulnerability


def _result(deps=None, vulns=None, status="completed", errors=None, service="web", duration=1.5):
    return ScanResult(
        service_name=service,
        ecosystem="nodejs",
        started_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        duration=duration,
        dependencies=deps or [],
        vulnerabilities=vulns or [],
        errors=errors or [],
        status=status,
        checks=["outdated", "vulnerabilities"],
    )


def _samples(metrics: MetricsRegistry, name: str):
    out = []
    for family in metrics.registry.collect():
        for sample in family.samples:
            if sample.name == name:
                out.append((sample.labels, sample.value))
    return out


def _series_for(metrics: MetricsRegistry, service: str):
    return sorted(
        (sample.name, tuple(sorted(sample.labels.items())))
        for family in metrics.registry.collect()
        for sample in family.samples
        if sample.labels.get("service") == service
    )


def test_render_exposes_expected_names():
    metrics = MetricsRegistry()
    metrics.ingest(_result(
        deps=[Dependency("lodash", "4.17.20", "4.17.21", 1, 900)],
        vulns=[Vulnerability("lodash", "high", "GHSA-1", cvss_score=7.5)],
        errors=[ScanError("ProcessFailure", "npm audit exited 1", True)],
        status="partial",
    ))

    body, content_type = metrics.render()
    text = body.decode()

    assert content_type.startswith("text/plain")
    for name in (
        "dependency_current_version_info",
        "dependency_latest_version_info",
        "dependency_versions_behind_total",
        "dependency_vulnerabilities_total",
        "service_dependency_count_total",
        "dependency_scan_duration_seconds",
        "dependency_scan_errors_total",
        "dependency_last_updated_days",
        "dependency_scan_stale",
    ):
        assert name in text
    assert metrics.registry.get_sample_value(
        "dependency_current_version_info",
        {"service": "web", "language": "nodejs", "package": "lodash", "version": "4.17.20"},
    ) == 1.0
    assert metrics.registry.get_sample_value(
        "dependency_scan_errors_total",
        {"service": "web", "language": "nodejs", "error_type": "ProcessFailure"},
    ) == 1.0


def test_rescan_keeps_cardinality():
    metrics = MetricsRegistry()
    deps = [Dependency("a", "1.0.0", "1.1.0", 1), Dependency("b", "2.0.0")]

    metrics.ingest(_result(deps=deps))
    first = _series_for(metrics, "web")
    metrics.ingest(_result(deps=deps, duration=3.0))
    second = _series_for(metrics, "web")

    assert first == second


def test_removed_package_is_pruned():
    metrics = MetricsRegistry()
    metrics.ingest(_result(deps=[Dependency("a", "1.0.0"), Dependency("b", "2.0.0")]))
    metrics.ingest(_result(deps=[Dependency("a", "1.0.1")]))

    current = _samples(metrics, "dependency_current_version_info")
    assert [(s["package"], s["version"]) for s, _ in current] == [("a", "1.0.1")]
    assert _samples(metrics, "service_dependency_count_total")[0][1] == 1


def test_single_critical_counts_once():
    metrics = MetricsRegistry()
    metrics.ingest(_result(
        deps=[Dependency("lodash", "4.17.20")],
        vulns=[Vulnerability("lodash", "critical", "GHSA-35jh", cvss_score=9.8)],
    ))

    rows = _samples(metrics, "dependency_vulnerabilities_total")
    assert rows == [({"service": "web", "language": "nodejs", "package": "lodash", "severity": "critical"}, 1.0)]


def test_stale_ingest_keeps_series_and_counts_errors():
    metrics = MetricsRegistry()
    metrics.ingest(_result(deps=[Dependency("a", "1.0.0")]))

    failed = _result(status="failed", errors=[ScanError("ParseError", "bad json")], duration=9.0)
    metrics.ingest(failed, stale=True)
    metrics.ingest(failed, stale=True)

    assert len(_samples(metrics, "dependency_current_version_info")) == 1
    assert _samples(metrics, "dependency_scan_stale")[0][1] == 1
    assert _samples(metrics, "dependency_scan_duration_seconds")[0][1] == 9.0
    errors = _samples(metrics, "dependency_scan_errors_total")
    assert errors == [({"service": "web", "language": "nodejs", "error_type": "ParseError"}, 2.0)]


def test_forget_drops_service():
    metrics = MetricsRegistry()
    metrics.ingest(_result(deps=[Dependency("a", "1.0.0")], errors=[ScanError("ProcessFailure", "x", True)]))
    metrics.ingest(_result(deps=[Dependency("b", "1.0.0")], service="api"))

    metrics.forget("web")

    assert _series_for(metrics, "web") == []
    assert _series_for(metrics, "api") != []


def test_failed_scan_without_history_has_no_dependency_series():
    snap = build_snapshot(_result(status="failed", errors=[ScanError("CollectorUnavailable", "npm missing")]))
    assert snap.current_versions == ()
    assert snap.dependency_count is None


def test_scrape_never_sees_mixed_snapshot():
    metrics = MetricsRegistry()
    old = _result(deps=[Dependency(f"old{i}", "1.0.0") for i in range(20)])
    new = _result(deps=[Dependency(f"new{i}", "1.0.0") for i in range(20)])
    metrics.ingest(old)

    stop = threading.Event()

    def writer():
        while not stop.is_set():
            metrics.ingest(new)
            metrics.ingest(old)

    t = threading.Thread(target=writer)
    t.start()
    try:
        for _ in range(200):
            packages = {s["package"] for s, _ in _samples(metrics, "dependency_current_version_info")}
            prefixes = {p.rstrip("0123456789") for p in packages}
            assert len(packages) == 20
            assert len(prefixes) == 1
    finally:
        stop.set()
        t.join()


def test_first_security_only_scan_has_no_dependency_count():
    metrics = MetricsRegistry()
    result = _result(vulns=[Vulnerability("lodash", "high", "GHSA-1")])
    result.checks = ["vulnerabilities"]

    metrics.ingest(result)

    assert metrics.snapshot("web").dependency_count is None
    assert _samples(metrics, "service_dependency_count_total") == []
    assert metrics.registry.get_sample_value(
        "dependency_vulnerabilities_total",
        {"service": "web", "language": "nodejs", "package": "lodash", "severity": "high"},
    ) == 1.0


def test_one_series_set_per_service_label():
    metrics = MetricsRegistry()
    failure = [ScanError("ProcessFailure", "npm audit exited 1", True)]
    metrics.ingest(
        _result(deps=[Dependency("a", "1.0.0")], errors=failure, status="partial", service="adhoc"),
        key="custom:/srv/one",
    )
    metrics.ingest(
        _result(deps=[Dependency("b", "1.0.0")], errors=failure, status="partial", service="adhoc"),
        key="custom:/srv/two",
    )

    assert metrics.snapshot("custom:/srv/one") is None
    assert len(_samples(metrics, "dependency_scan_duration_seconds")) == 1
    assert [labels["package"] for labels, _ in _samples(metrics, "dependency_current_version_info")] == ["b"]
    # Error counts stay cumulative across both paths under the shared labels
    assert metrics.registry.get_sample_value(
        "dependency_scan_errors_total",
        {"service": "adhoc", "language": "nodejs", "error_type": "ProcessFailure"},
    ) == 2.0


def test_forget_only_drops_errors_of_that_key():
    metrics = MetricsRegistry()
    failure = [ScanError("ProcessTimeout", "slow", True)]
    metrics.ingest(_result(errors=failure, status="failed"))
    metrics.ingest(_result(errors=failure, status="failed", service="api"))

    metrics.forget("web")

    errors = _samples(metrics, "dependency_scan_errors_total")
    assert [labels["service"] for labels, _ in errors] == ["api"]
