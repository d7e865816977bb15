# depwatch/errors.py
"""
Error taxonomy for the dependency monitor.

Every error the API can surface derives from DepwatchError and carries the
HTTP status code and a human-readable detail. The Flask error handler in
depwatch/__init__.py turns these into {"error": <class name>, "detail": ...}.

Collector errors are different: they are raised inside a collector and caught
at the collector boundary (BaseCollector.run), where they become ScanError
records on the result. They never reach the orchestrator as exceptions.
"""

from __future__ import annotations

from typing import Optional


class DepwatchError(Exception):
    status_code: int = 500
    default_detail: str = "An unexpected error occurred."

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    @property
    def error_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {"error": self.error_type, "detail": self.detail}


class ConfigError(DepwatchError):
    """Bad registry entry or schedule. Fatal at startup."""
    status_code = 500
    default_detail = "Invalid configuration."


class BadRequest(DepwatchError):
    status_code = 400
    default_detail = "The request was malformed or invalid."


class ServiceNotFound(DepwatchError):
    status_code = 404
    default_detail = "Unknown service."


class JobNotFound(DepwatchError):
    status_code = 404
    default_detail = "Unknown scan job."


class ResultNotFound(DepwatchError):
    """Service is registered but has not been scanned yet."""
    status_code = 404
    default_detail = "No scan result available yet."


class ConcurrencyConflict(DepwatchError):
    """A scan for the same target is already running."""
    status_code = 409
    default_detail = "A scan for this service is already running."

    def __init__(self, detail: Optional[str] = None, job_id: Optional[str] = None):
        super().__init__(detail)
        self.job_id = job_id

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.job_id:
            body["job_id"] = self.job_id
        return body


class QueueFull(DepwatchError):
    status_code = 503
    default_detail = "The scan queue is full. Try again later."


class NotReady(DepwatchError):
    status_code = 503
    default_detail = "The service is starting up."


class ScanFailed(DepwatchError):
    status_code = 500
    default_detail = "The scan failed."


# ---------------------------------------------------------------------------
# Collector errors: never propagate past BaseCollector.run()
# ---------------------------------------------------------------------------

class CollectorError(Exception):
    """Base for classified collector failures."""

    kind: str = "ProcessFailure"
    retryable: bool = False

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class CollectorUnavailable(CollectorError):
    """Tool binary is not on PATH. Permanent."""
    kind = "CollectorUnavailable"
    retryable = False


class ParseError(CollectorError):
    """Tool ran but its output could not be parsed. Permanent."""
    kind = "ParseError"
    retryable = False


class ProcessTimeout(CollectorError):
    """Tool exceeded its wall-clock budget and was killed. Transient."""
    kind = "ProcessTimeout"
    retryable = True


class ProcessFailure(CollectorError):
    """Nonzero exit with no usable output. Transient."""
    kind = "ProcessFailure"
    retryable = True


class ScanCancelled(CollectorError):
    kind = "Cancelled"
    retryable = False
