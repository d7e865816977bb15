# =============================================================================
# File: depwatch/api/routes.py
# Description: Scan, result, job and metrics routes.
#   Scans run on the orchestrator's worker pool. mode=sync blocks the
#   request until the scan finishes; mode=async returns 201 with the job id
#   and the client polls GET /jobs/<id>.
#
# Status codes:
#   200 ok, 201 async job accepted, 400 malformed request,
#   404 unknown service/job, 409 scan already running,
#   500 scan failed with nothing to serve, 503 not ready / queue full
# =============================================================================

from __future__ import annotations

import logging

from flask import Blueprint, Response, current_app, jsonify, request

from depwatch.errors import (
    BadRequest,
    ConfigError,
    NotReady,
    QueueFull,
    ResultNotFound,
    ScanFailed,
    ServiceNotFound,
)
from depwatch.models import SEVERITIES, ScanResult

logger = logging.getLogger(__name__)

api_bp = Blueprint("api", __name__)

SCAN_MODES = ("sync", "async")
MAX_JOB_LIST = 500


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _monitor(require_ready: bool = True):
    monitor = current_app.extensions.get("depwatch")
    if monitor is None or (require_ready and not monitor.ready):
        raise NotReady()
    return monitor


def _mode(body: dict) -> str:
    mode = (request.args.get("mode") or body.get("mode") or "sync").strip().lower()
    if mode not in SCAN_MODES:
        raise BadRequest(f"mode must be one of {', '.join(SCAN_MODES)}, got {mode!r}")
    return mode


def _body() -> dict:
    if not request.data:
        return {}
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise BadRequest("request body must be a JSON object")
    return body


def _options(body: dict):
    options = body.get("options")
    if options is not None and not isinstance(options, dict):
        raise BadRequest("options must be an object")
    return options


def _job_accepted(job, coalesced: bool):
    return jsonify({
        "job_id": job.id,
        "status": job.status,
        "coalesced": coalesced,
    }), 201


def _scan_response(result: ScanResult):
    """Envelope for a finished sync scan. A failure with nothing stale to serve is a 500."""
    envelope = result.to_envelope()
    if result.is_good or result.stale:
        return jsonify(envelope), 200
    err = ScanFailed(
        "; ".join(f"{e.kind}: {e.message}" for e in result.errors) or "scan failed"
    )
    body = err.to_dict()
    body["result"] = envelope
    return jsonify(body), err.status_code


def _severity_filter(raw: str):
    wanted = {s.strip().lower() for s in raw.split(",") if s.strip()}
    unknown = wanted - set(SEVERITIES)
    if unknown:
        raise BadRequest(
            f"invalid severity {', '.join(sorted(unknown))} "
            f"(expected one of {', '.join(SEVERITIES)})"
        )
    return wanted


# ---------------------------------------------------------------------------
# Health & metrics
# ---------------------------------------------------------------------------

@api_bp.get("/")
def health():
    monitor = current_app.extensions.get("depwatch")
    if monitor is None:
        return jsonify(status="starting", ready=False, services=0, scheduler="stopped"), 503
    body = monitor.health()
    return jsonify(body), 200 if body["ready"] else 503


@api_bp.get("/metrics")
def metrics():
    monitor = _monitor(require_ready=False)
    payload, content_type = monitor.metrics.render()
    return Response(payload, status=200, headers={"Content-Type": content_type})


# ---------------------------------------------------------------------------
# Services & results
# ---------------------------------------------------------------------------

@api_bp.get("/services")
def list_services():
    monitor = _monitor()
    latest = monitor.orchestrator.all_latest()

    out = []
    for desc in monitor.registry.list():
        item = desc.to_dict()
        result = latest.get(desc.name)
        item["last_scan"] = None if result is None else {
            "status": result.status,
            "scan_time": result.started_at.isoformat(),
            "stale": result.stale,
            "job_id": result.job_id,
        }
        item["in_flight_job"] = monitor.orchestrator.in_flight(desc.name)
        out.append(item)

    return jsonify(out), 200


@api_bp.get("/results/<service>")
def get_result(service: str):
    monitor = _monitor()
    monitor.registry.get(service)  # 404 for unknown services

    result = monitor.orchestrator.latest(service)
    if result is None:
        raise ResultNotFound(f"service '{service}' has not been scanned yet")
    return jsonify(result.to_envelope()), 200


@api_bp.get("/vulnerabilities")
def list_vulnerabilities():
    monitor = _monitor()

    severities = _severity_filter(request.args.get("severity", ""))
    service = (request.args.get("service") or "").strip()
    if service and service not in monitor.registry:
        raise ServiceNotFound(f"service '{service}' is not registered")

    rank = {s: i for i, s in enumerate(SEVERITIES)}
    rows = []
    for name, result in sorted(monitor.orchestrator.all_latest().items()):
        if service and name != service:
            continue
        for vuln in result.vulnerabilities:
            if severities and vuln.severity not in severities:
                continue
            row = vuln.to_dict()
            row["service"] = result.service_name
            row["language"] = result.ecosystem
            row["stale"] = result.stale
            rows.append(row)

    rows.sort(key=lambda r: (rank[r["severity"]], r["service"], r["package"]))
    return jsonify({"count": len(rows), "vulnerabilities": rows}), 200


# ---------------------------------------------------------------------------
# Scans
# ---------------------------------------------------------------------------

# Static rules (/scan/all, /scan/custom) win over /scan/<service> in Werkzeug
@api_bp.post("/scan/all")
def scan_all():
    monitor = _monitor()
    body = _body()
    mode = _mode(body)
    options = _options(body)

    if mode == "sync":
        batch = monitor.orchestrator.scan_all(options=options)
        return jsonify(batch.to_dict()), 200

    jobs = {}
    for desc in monitor.registry.enabled():
        try:
            job, coalesced = monitor.orchestrator.submit(desc.name, options=options)
            jobs[desc.name] = {"job_id": job.id, "status": job.status, "coalesced": coalesced}
        except QueueFull as e:
            jobs[desc.name] = e.to_dict()
    return jsonify({"jobs": jobs}), 201


@api_bp.post("/scan/custom")
def scan_custom():
    monitor = _monitor()
    body = _body()
    mode = _mode(body)

    project_path = body.get("project_path") or body.get("path")
    ecosystem = body.get("ecosystem") or body.get("language")
    if not project_path:
        raise BadRequest("project_path is required")
    if not ecosystem:
        raise BadRequest("ecosystem is required")
    service_name = body.get("service_name")
    if service_name is not None and not isinstance(service_name, str):
        raise BadRequest("service_name must be a string")

    if mode == "async":
        job, coalesced = monitor.orchestrator.scan_custom(
            project_path, ecosystem, options=_options(body),
            service_name=service_name, wait=False,
        )
        return _job_accepted(job, coalesced=coalesced)

    result = monitor.orchestrator.scan_custom(
        project_path, ecosystem, options=_options(body), service_name=service_name,
    )
    return _scan_response(result)


@api_bp.post("/scan/<service>")
def scan_service(service: str):
    monitor = _monitor()
    body = _body()
    mode = _mode(body)
    options = _options(body)

    if mode == "async":
        job, coalesced = monitor.orchestrator.submit(service, options=options)
        return _job_accepted(job, coalesced)

    result = monitor.orchestrator.scan_service(service, wait=True, options=options)
    return _scan_response(result)


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

@api_bp.get("/jobs")
def list_jobs():
    monitor = _monitor()
    try:
        limit = int(request.args.get("limit", 50))
    except ValueError:
        raise BadRequest("limit must be an integer")
    limit = max(1, min(limit, MAX_JOB_LIST))
    service = (request.args.get("service") or "").strip() or None
    jobs = monitor.orchestrator.list_jobs(service_name=service, limit=limit)
    return jsonify([j.to_dict() for j in jobs]), 200


@api_bp.get("/jobs/<job_id>")
def get_job(job_id: str):
    monitor = _monitor()
    return jsonify(monitor.orchestrator.get_job(job_id).to_dict()), 200


@api_bp.delete("/jobs/<job_id>")
def cancel_job(job_id: str):
    monitor = _monitor()
    job = monitor.orchestrator.cancel(job_id)
    return jsonify(job.to_dict()), 200


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@api_bp.post("/admin/reload")
def reload_registry():
    monitor = _monitor()
    try:
        registry = monitor.reload_registry()
    except ConfigError as e:
        logger.warning(f"Registry reload rejected: {e.detail}")
        raise BadRequest(f"reload rejected, previous registry kept: {e.detail}")
    return jsonify({"services": [d.to_dict() for d in registry.list()]}), 200
