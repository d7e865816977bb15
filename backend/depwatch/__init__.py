# depwatch/__init__.py
"""
App factory.

    - Settings from DEPWATCH_* env vars + the JSON file in DEPWATCH_CONFIG
    - CORS origins read from CORS_ORIGINS env var
    - Production-appropriate logging levels (DEPWATCH_LOG_LEVEL overrides)
    - Gunicorn-safe scheduler guard (SCHEDULER_ENABLED)
    - JSON error bodies {"error", "detail"} everywhere; tracebacks stay in the log
"""

from __future__ import annotations

import logging
import os
import re
import traceback
from typing import Optional

from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from depwatch.api import api_bp
from depwatch.config import Settings
from depwatch.errors import DepwatchError
from depwatch.service import MonitorService

__version__ = "1.0.0"

error_logger = logging.getLogger("depwatch.errors")


def _is_production() -> bool:
    """Detect production by checking CORS_ORIGINS for https."""
    return os.getenv("CORS_ORIGINS", "").startswith("https://")


def configure_logging(is_prod: Optional[bool] = None) -> None:
    if is_prod is None:
        is_prod = _is_production()

    level = logging.INFO if is_prod else logging.DEBUG
    override = (os.getenv("DEPWATCH_LOG_LEVEL") or "").strip().upper()
    if override:
        level = getattr(logging, override, level)

    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S" if is_prod else "%H:%M:%S",
    )

    # Werkzeug logs every request
    logging.getLogger("werkzeug").setLevel(logging.INFO)
    # Quieten noisy libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[MonitorService] = None,
    start_background: bool = True,
) -> Flask:
    app = Flask(__name__)

    is_prod = _is_production()

    # ── Logging ──────────────────────────────────────────────────────
    configure_logging(is_prod)
    app.logger.setLevel(logging.INFO if is_prod else logging.DEBUG)

    # ── CORS ────────────────────────────────────────────────────────
    cors_env = os.getenv("CORS_ORIGINS")
    if cors_env:
        cors_origins = [o.strip() for o in cors_env.split(",") if o.strip()]
    else:
        cors_origins = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            re.compile(r"http://192\.168\.\d+\.\d+:3000"),
        ]

    CORS(app, resources={
        r"/*": {
            "origins": cors_origins,
            "allow_headers": ["Content-Type"],
            "methods": ["GET", "POST", "DELETE", "OPTIONS"],
        }
    })

    # ── Monitor ─────────────────────────────────────────────────────
    # ConfigError here is fatal: refuse to start with a bad registry
    if service is None:
        service = MonitorService(settings or Settings.from_env())
    app.extensions["depwatch"] = service

    # ── Blueprints ───────────────────────────────────────────────────
    app.register_blueprint(api_bp)

    # ── Global Error Handlers ────────────────────────────────────────
    # Return clean JSON for all errors: never expose tracebacks to users.

    @app.errorhandler(DepwatchError)
    def depwatch_error(e: DepwatchError):
        if e.status_code >= 500:
            error_logger.warning("%s: %s", e.error_type, e.detail)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(400)
    def bad_request(e):
        return jsonify({
            "error": "BadRequest",
            "detail": str(e.description) if hasattr(e, "description") else "The request was malformed or invalid.",
        }), 400

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({
            "error": "NotFound",
            "detail": "The requested resource was not found.",
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({
            "error": "MethodNotAllowed",
            "detail": "This HTTP method is not allowed for this endpoint.",
        }), 405

    @app.errorhandler(500)
    def internal_error(e):
        error_logger.error(
            "500 Internal Server Error:\n%s", traceback.format_exc()
        )
        return jsonify({
            "error": "InternalServerError",
            "detail": "An unexpected error occurred. Please try again later.",
        }), 500

    @app.errorhandler(Exception)
    def catch_all(e):
        """Catch-all for any unhandled exception: never leak tracebacks."""
        if isinstance(e, HTTPException):
            return jsonify({
                "error": type(e).__name__,
                "detail": e.description,
            }), e.code
        error_logger.error(
            "Unhandled exception: %s\n%s", str(e), traceback.format_exc()
        )
        return jsonify({
            "error": "InternalServerError",
            "detail": "An unexpected error occurred. Please try again later.",
        }), 500

    # ─────────────────────────────────────────────────────────────────

    # ── Background Scheduler ─────────────────────────────────────────
    # Under Gunicorn with several workers set SCHEDULER_ENABLED=true on
    # exactly one of them (or use --preload).
    if start_background:
        service.start()

    return app


__all__ = ["create_app", "configure_logging", "__version__"]
