import json
import threading

from prometheus_client.parser import text_string_to_metric_families

from conftest import wait_for
from depwatch.errors import ParseError


def _sample(text, name, labels):
    for family in text_string_to_metric_families(text):
        for sample in family.samples:
            if sample.name == name and sample.labels == labels:
                return sample.value
    return None


def test_health(client):
    resp = client.get("/")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["ready"] is True
    assert body["services"] == 3


def test_not_ready_returns_503(client, monitor):
    monitor._ready.clear()
    assert client.get("/").status_code == 503
    resp = client.get("/services")
    assert resp.status_code == 503
    assert resp.get_json()["error"] == "NotReady"


def test_list_services(client):
    client.post("/scan/web")
    resp = client.get("/services")

    assert resp.status_code == 200
    services = {s["name"]: s for s in resp.get_json()}
    assert set(services) == {"web", "api", "gosvc"}
    assert services["web"]["last_scan"]["status"] == "completed"
    assert services["api"]["last_scan"] is None


def test_sync_scan_returns_envelope(client):
    resp = client.post("/scan/web")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["service"] == "web"
    assert body["language"] == "nodejs"
    assert body["summary"]["total_packages"] == 2
    assert body["summary"]["outdated_count"] == 1
    assert body["summary"]["vulnerability_count"] == 1
    assert body["status"] == "completed"


def test_async_scan_returns_201_and_job(client):
    resp = client.post("/scan/web?mode=async")

    assert resp.status_code == 201
    body = resp.get_json()
    assert body["coalesced"] is False

    job_id = body["job_id"]
    assert wait_for(lambda: client.get(f"/jobs/{job_id}").get_json()["status"] == "completed")


def test_unknown_service_is_404(client):
    resp = client.post("/scan/payments")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "ServiceNotFound"
    assert client.get("/results/payments").status_code == 404


def test_bad_mode_is_400(client):
    assert client.post("/scan/web?mode=later").status_code == 400


def test_concurrent_sync_scan_is_409(client, fake_collectors):
    node = fake_collectors["nodejs"]
    node.gate = threading.Event()

    first = client.post("/scan/web?mode=async").get_json()
    assert node.started.wait(5)

    resp = client.post("/scan/web")
    assert resp.status_code == 409
    body = resp.get_json()
    assert body["error"] == "ConcurrencyConflict"
    assert body["job_id"] == first["job_id"]

    again = client.post("/scan/web?mode=async").get_json()
    assert again["coalesced"] is True
    assert again["job_id"] == first["job_id"]
    node.gate.set()


def test_failed_scan_without_history_is_500(client, fake_collectors):
    fake_collectors["nodejs"].fail_with = ParseError("garbage")

    resp = client.post("/scan/web")

    assert resp.status_code == 500
    body = resp.get_json()
    assert body["error"] == "ScanFailed"
    assert "ParseError" in body["detail"]


def test_failed_scan_with_history_serves_stale(client, fake_collectors):
    client.post("/scan/web")
    fake_collectors["nodejs"].fail_with = ParseError("garbage")

    resp = client.post("/scan/web")

    assert resp.status_code == 200
    body = resp.get_json()
    assert body["stale"] is True
    assert "ParseError" in body["last_error"]
    assert client.get("/results/web").get_json()["stale"] is True


def test_results_before_first_scan_is_404(client):
    resp = client.get("/results/web")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "ResultNotFound"


def test_vulnerabilities_filters(client):
    client.post("/scan/all")

    resp = client.get("/vulnerabilities?severity=critical")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["count"] == 1
    assert body["vulnerabilities"][0]["service"] == "web"

    assert client.get("/vulnerabilities?severity=high").get_json()["count"] == 0
    assert client.get("/vulnerabilities?service=api").get_json()["count"] == 0


def test_invalid_severity_is_400(client):
    resp = client.get("/vulnerabilities?severity=urgent")
    assert resp.status_code == 400
    assert "urgent" in resp.get_json()["detail"]


def test_scan_all_sync_and_async(client):
    resp = client.post("/scan/all")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "completed"
    assert set(body["results"]) == {"web", "api", "gosvc"}

    resp = client.post("/scan/all?mode=async")
    assert resp.status_code == 201
    assert set(resp.get_json()["jobs"]) == {"web", "api", "gosvc"}


def test_custom_scan(client, project_tree):
    resp = client.post("/scan/custom", json={
        "service_name": "adhoc",
        "ecosystem": "nodejs",
        "project_path": str(project_tree["web"]),
    })
    assert resp.status_code == 200
    assert resp.get_json()["service"] == "adhoc"


def test_custom_scan_validation(client, tmp_path):
    assert client.post("/scan/custom", json={"ecosystem": "nodejs"}).status_code == 400
    assert client.post("/scan/custom", json={
        "ecosystem": "cobol", "project_path": str(tmp_path),
    }).status_code == 400
    assert client.post("/scan/custom", json={
        "ecosystem": "nodejs", "project_path": str(tmp_path / "missing"),
    }).status_code == 400
    resp = client.post("/scan/custom", data="not json", content_type="application/json")
    assert resp.status_code == 400


def test_custom_scan_rejects_registered_service_name(client, project_tree):
    resp = client.post("/scan/custom", json={
        "service_name": "web",
        "ecosystem": "nodejs",
        "project_path": str(project_tree["gosvc"]),
    })

    assert resp.status_code == 400
    assert resp.get_json()["error"] == "BadRequest"


def test_async_custom_scan_is_coalesced(client, fake_collectors, project_tree):
    node = fake_collectors["nodejs"]
    node.gate = threading.Event()
    body = {"service_name": "adhoc", "ecosystem": "nodejs", "project_path": str(project_tree["web"])}

    first = client.post("/scan/custom?mode=async", json=body)
    assert first.status_code == 201
    assert first.get_json()["coalesced"] is False
    assert node.started.wait(5)

    again = client.post("/scan/custom?mode=async", json=body).get_json()
    assert again["coalesced"] is True
    assert again["job_id"] == first.get_json()["job_id"]
    node.gate.set()


def test_metrics_endpoint(client):
    client.post("/scan/web")
    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert resp.headers["Content-Type"].startswith("text/plain")
    text = resp.get_data(as_text=True)
    assert _sample(text, "dependency_vulnerabilities_total", {
        "service": "web", "language": "nodejs", "package": "lodash", "severity": "critical",
    }) == 1.0
    assert _sample(text, "service_dependency_count_total", {"service": "web", "language": "nodejs"}) == 2.0


def test_job_endpoints(client, fake_collectors):
    assert client.get("/jobs/doesnotexist").status_code == 404
    assert client.delete("/jobs/doesnotexist").status_code == 404

    node = fake_collectors["nodejs"]
    node.gate = threading.Event()
    job_id = client.post("/scan/web?mode=async").get_json()["job_id"]
    assert node.started.wait(5)

    assert client.delete(f"/jobs/{job_id}").status_code == 200
    assert wait_for(lambda: client.get(f"/jobs/{job_id}").get_json()["status"] == "cancelled")

    jobs = client.get("/jobs?service=web").get_json()
    assert [j["id"] for j in jobs] == [job_id]
    assert client.get("/jobs?limit=abc").status_code == 400


def test_admin_reload(client, monitor, tmp_path, project_tree):
    client.post("/scan/gosvc")
    config = tmp_path / "depwatch.json"
    config.write_text(json.dumps({"services": {
        "web": {"path": str(project_tree["web"]), "ecosystem": "nodejs"},
    }}), encoding="utf-8")
    monitor.settings.config_path = config

    resp = client.post("/admin/reload")

    assert resp.status_code == 200
    assert [s["name"] for s in resp.get_json()["services"]] == ["web"]
    assert client.post("/scan/gosvc").status_code == 404
    assert monitor.metrics.snapshot("gosvc") is None


def test_admin_reload_keeps_registry_on_error(client, monitor, tmp_path):
    config = tmp_path / "depwatch.json"
    config.write_text(json.dumps({"services": {
        "web": {"path": str(tmp_path / "gone"), "ecosystem": "nodejs"},
    }}), encoding="utf-8")
    monitor.settings.config_path = config

    resp = client.post("/admin/reload")

    assert resp.status_code == 400
    assert len(monitor.registry) == 3


def test_unknown_route_is_json_404(client):
    resp = client.get("/nope")
    assert resp.status_code == 404
    assert resp.get_json()["error"] == "NotFound"
