from datetime import datetime, timezone

import pytest

from depwatch.models import (
    CollectorOutcome,
    Dependency,
    ScanError,
    ScanResult,
    Vulnerability,
    coerce_severity,
)


@pytest.mark.parametrize("raw,score,expected", [
    ("CRITICAL", None, "critical"),
    ("moderate", None, "medium"),
    ("important", None, "high"),
    ("info", None, "low"),
    ("none", 9.9, "low"),
    ("unknown", 9.0, "critical"),
    ("", 7.0, "high"),
    (None, 4.0, "medium"),
    (None, 3.9, "low"),
    (None, None, "medium"),
    ("weird", "not-a-number", "medium"),
])
def test_coerce_severity(raw, score, expected):
    assert coerce_severity(raw, score) == expected


def test_vulnerability_clamps_score():
    assert Vulnerability("a", None, "X-1", cvss_score=14).cvss_score == 10.0
    assert Vulnerability("a", None, "X-1", cvss_score=14).severity == "critical"
    assert Vulnerability("a", "low", "X-1", cvss_score=-3).cvss_score == 0.0
    assert Vulnerability("a", "low", "X-1", cvss_score="n/a").cvss_score is None


def test_dependency_clamps_and_defaults():
    dep = Dependency("a", "1.0.0", versions_behind=-2, last_updated_days=None)
    assert dep.versions_behind == 0
    assert dep.last_updated_days == 0
    assert dep.latest_version == "1.0.0"
    assert dep.is_outdated is False
    assert Dependency("a", "1.0.0", "1.1.0").is_outdated is True


def test_collector_outcome_status():
    outcome = CollectorOutcome("go", checks_run=["outdated", "vulnerabilities"])
    assert outcome.status == "completed"

    outcome.checks_failed = ["vulnerabilities"]
    outcome.errors = [ScanError("ProcessTimeout", "slow", True)]
    assert outcome.status == "partial"
    assert outcome.retryable is True

    outcome.checks_failed = ["outdated", "vulnerabilities"]
    outcome.errors.append(ScanError("ParseError", "bad", False))
    assert outcome.status == "failed"
    assert outcome.retryable is False


def test_envelope_summary():
    result = ScanResult(
        service_name="web",
        ecosystem="nodejs",
        started_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
        duration=1.23456,
        dependencies=[Dependency("a", "1.0.0", "2.0.0", 3), Dependency("b", "1.0.0")],
        vulnerabilities=[Vulnerability("a", "high", "GHSA-x"), Vulnerability("a", "moderate", "GHSA-y")],
        checks=["outdated", "vulnerabilities"],
    )

    env = result.to_envelope()

    assert env["service"] == "web"
    assert env["language"] == "nodejs"
    assert env["duration"] == 1.235
    assert env["summary"] == {
        "total_packages": 2,
        "outdated_count": 1,
        "vulnerability_count": 2,
        "by_severity": {"critical": 0, "high": 1, "medium": 1, "low": 0},
    }
    assert env["stale"] is False
