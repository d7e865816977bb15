# depwatch/orchestrator.py
"""
Scan Orchestrator: runs collectors for services and publishes the results.

Key rules:
- EXCLUSIVITY: at most one scan in flight per key (service name, or
  custom:<realpath> for ad-hoc scans). The in-flight map is the lock; it is
  guarded by a single mutex and the entry is removed in `finally`, so a
  crash, timeout or cancellation never leaves a key locked.
- DUPLICATES: a second synchronous request for a busy key is rejected with
  ConcurrencyConflict (policy "reject") or waits for the running scan
  (policy "coalesce"). Asynchronous requests always get the running job back.
- BACKPRESSURE: a ThreadPoolExecutor with max_workers threads behind an
  admission semaphore of max_workers + queue_size slots. No free slot
  means QueueFull, nothing is queued.
- DEADLINE: one wall-clock budget per job. Every subprocess (and every
  retry backoff) only gets what is left of it.
- RETRIES: only transient failures (ProcessTimeout, ProcessFailure), with
  exponential backoff. Permanent failures are reported on the first attempt.
- ORDERING: the result is published (result store + metrics) while the key
  is still held, so per-service results land in completion order.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait as wait_futures
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from depwatch.collectors.base import BaseCollector, ToolRunner
from depwatch.collectors.generic import GenericCollector
from depwatch.config import Settings
from depwatch.errors import BadRequest, ConcurrencyConflict, QueueFull
from depwatch.metrics import MetricsRegistry
from depwatch.models import (
    CHECK_OUTDATED,
    CHECK_VULNERABILITIES,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_RUNNING,
    JOB_TIMED_OUT,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PARTIAL,
    CollectorOutcome,
    ScanError,
    ScanOptions,
    ScanResult,
    now_utc,
)
from depwatch.registry import ServiceRegistry
from depwatch.store import JobStore, ResultStore, ScanJob

logger = logging.getLogger(__name__)

TRIGGER_MANUAL = "manual"
TRIGGER_SCHEDULED = "scheduled"
TRIGGER_CUSTOM = "custom"


@dataclass
class InFlight:
    key: str
    job_id: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    future: Any = None


@dataclass
class BatchResult:
    results: Dict[str, ScanResult] = field(default_factory=dict)
    status: str = STATUS_COMPLETED

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "results": {name: r.to_envelope() for name, r in sorted(self.results.items())},
        }


def batch_status(results: List[ScanResult]) -> str:
    """completed if every service is good, failed if none is, partial otherwise."""
    if not results:
        return STATUS_COMPLETED
    statuses = {r.status for r in results}
    if statuses == {STATUS_COMPLETED}:
        return STATUS_COMPLETED
    if statuses == {STATUS_FAILED}:
        return STATUS_FAILED
    return STATUS_PARTIAL


def merge_uncovered(result: ScanResult, previous: Optional[ScanResult]) -> ScanResult:
    """
    Carry over sections this scan did not (successfully) refresh.

    A security-only scan has no inventory and a partial scan is missing one
    phase. Without this, publishing it would wipe the other half of the
    service's findings and metrics.
    """
    if previous is None or not result.is_good:
        return result
    refreshed = set(result.checks_succeeded)
    if CHECK_OUTDATED not in refreshed and not result.dependencies:
        result.dependencies = list(previous.dependencies)
    if CHECK_VULNERABILITIES not in refreshed and not result.vulnerabilities:
        result.vulnerabilities = list(previous.vulnerabilities)
    return result


class ScanOrchestrator:

    def __init__(
        self,
        registry: ServiceRegistry,
        collectors: Dict[str, BaseCollector],
        job_store: JobStore,
        result_store: ResultStore,
        metrics: MetricsRegistry,
        settings: Settings,
        generic: Optional[GenericCollector] = None,
    ):
        self.registry = registry
        self.collectors = collectors
        self.generic = generic or GenericCollector(collectors)
        self.jobs = job_store
        self.results = result_store
        self.metrics = metrics
        self.settings = settings

        self._lock = threading.Lock()
        self._inflight: Dict[str, InFlight] = {}
        self._slots = threading.BoundedSemaphore(settings.max_workers + settings.queue_size)
        self._executor = ThreadPoolExecutor(
            max_workers=settings.max_workers,
            thread_name_prefix="depwatch-scan",
        )
        self._closed = False

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def replace_registry(self, registry: ServiceRegistry) -> None:
        with self._lock:
            self.registry = registry

    def _descriptor(self, name: str):
        with self._lock:
            registry = self.registry
        return registry.get(name)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def scan_service(
        self,
        name: str,
        wait: bool = True,
        options: Union[ScanOptions, Dict[str, Any], None] = None,
        trigger: str = TRIGGER_MANUAL,
    ) -> Union[ScanResult, ScanJob]:
        """
        Scan one registered service.

        wait=True blocks and returns the ScanResult (subject to the
        conflict policy). wait=False behaves like submit() and returns
        the ScanJob.
        """
        if not wait:
            job, _ = self.submit(name, trigger=trigger, options=options)
            return job

        desc = self._descriptor(name)
        collector = self._collector_for(desc.ecosystem)
        entry, coalesced = self._admit(
            desc.name, desc.name, desc.ecosystem, desc.path, collector, options, trigger,
        )
        return self._await(entry, coalesced)

    def submit(
        self,
        name: str,
        trigger: str = TRIGGER_MANUAL,
        options: Union[ScanOptions, Dict[str, Any], None] = None,
    ) -> Tuple[ScanJob, bool]:
        """Queue a scan and return (job, coalesced) without waiting."""
        desc = self._descriptor(name)
        collector = self._collector_for(desc.ecosystem)
        entry, coalesced = self._admit(
            desc.name, desc.name, desc.ecosystem, desc.path, collector, options, trigger,
        )
        return self.jobs.get(entry.job_id), coalesced

    def scan_all(self, options: Union[ScanOptions, Dict[str, Any], None] = None) -> BatchResult:
        """
        Scan every enabled service concurrently and wait for all of them.

        One service failing (or the queue filling up) never aborts the
        others. A service that is already being scanned is joined, not
        rejected.
        """
        with self._lock:
            services = self.registry.enabled()

        pending: Dict[str, InFlight] = {}
        batch = BatchResult()

        for desc in services:
            try:
                collector = self._collector_for(desc.ecosystem)
                entry, _ = self._admit(
                    desc.name, desc.name, desc.ecosystem, desc.path, collector,
                    options, TRIGGER_MANUAL,
                )
                pending[desc.name] = entry
            except QueueFull as e:
                logger.warning(f"scan_all: {desc.name} not admitted: {e.detail}")
                batch.results[desc.name] = self._failed_result(
                    desc.name, desc.ecosystem, ScanError(kind="QueueFull", message=e.detail),
                )

        wait_futures([e.future for e in pending.values()])

        for name, entry in pending.items():
            try:
                batch.results[name] = entry.future.result()
            except Exception as e:
                logger.error(f"scan_all: {name} crashed: {e}")
                desc = next(d for d in services if d.name == name)
                batch.results[name] = self._failed_result(
                    name, desc.ecosystem, ScanError(kind="ProcessFailure", message=str(e)),
                )

        batch.status = batch_status(list(batch.results.values()))
        logger.info(
            f"scan_all finished: {len(batch.results)} service(s), status={batch.status}"
        )
        return batch

    def scan_custom(
        self,
        path,
        ecosystem,
        options: Union[ScanOptions, Dict[str, Any], None] = None,
        service_name: Optional[str] = None,
        wait: bool = True,
    ) -> Union[ScanResult, Tuple[ScanJob, bool]]:
        """
        Ad-hoc scan of an unregistered project. Keyed by its real path.

        service_name only labels the result; it may not be a registered
        service's name, whose results and series it would shadow. With
        wait=False, returns (job, coalesced) like submit().
        """
        project, collector = self.generic.resolve(path, ecosystem)
        key = f"custom:{os.path.realpath(project)}"
        label = (service_name or "").strip() or key
        if label in self.registry:
            raise BadRequest(f"service_name '{label}' belongs to a registered service")
        entry, coalesced = self._admit(
            key, label, collector.ecosystem, project, collector, options, TRIGGER_CUSTOM,
        )
        if not wait:
            return self.jobs.get(entry.job_id), coalesced
        return self._await(entry, coalesced)

    def cancel(self, job_id: str) -> ScanJob:
        """
        Cancel a queued or running job. Running tools are killed. Terminal
        jobs are returned unchanged.
        """
        job = self.jobs.get(job_id)
        if job.is_terminal:
            return job

        with self._lock:
            entry = next((e for e in self._inflight.values() if e.job_id == job_id), None)
        if entry is not None:
            entry.cancel_event.set()
            logger.info(f"Cancellation requested for job {job_id} ({job.service_name})")

        if job.status == JOB_RUNNING:
            # The worker records the final state once the tool is killed
            return self.jobs.get(job_id)
        return self.jobs.transition(job_id, JOB_CANCELLED, error="cancelled by request")

    def get_job(self, job_id: str) -> ScanJob:
        return self.jobs.get(job_id)

    def list_jobs(self, service_name: Optional[str] = None, limit: int = 50) -> List[ScanJob]:
        return self.jobs.list(service_name=service_name, limit=limit)

    def latest(self, name: str) -> Optional[ScanResult]:
        return self.results.latest(name)

    def all_latest(self) -> Dict[str, ScanResult]:
        return self.results.all()

    def in_flight(self, key: str) -> Optional[str]:
        """Job id of the scan currently holding `key`, if any."""
        with self._lock:
            entry = self._inflight.get(key)
            return entry.job_id if entry else None

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work. wait=False also cancels everything in flight."""
        with self._lock:
            self._closed = True
            entries = list(self._inflight.values())
        if not wait:
            for entry in entries:
                entry.cancel_event.set()
                # A queued job whose worker will never run is settled here
                if entry.future is not None and entry.future.cancel():
                    self.jobs.transition(entry.job_id, JOB_CANCELLED, error="cancelled at shutdown")
                    self._release(entry)
        self._executor.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("Scan orchestrator stopped")

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _collector_for(self, ecosystem: str) -> BaseCollector:
        collector = self.collectors.get(ecosystem)
        if collector is None:
            raise BadRequest(f"no collector registered for ecosystem '{ecosystem}'")
        return collector

    def _options(self, options: Union[ScanOptions, Dict[str, Any], None]) -> ScanOptions:
        if isinstance(options, ScanOptions):
            return options
        raw = dict(options or {})
        known = ("check_outdated", "check_vulnerabilities")
        for name in known:
            if name in raw and not isinstance(raw[name], bool):
                raise BadRequest(f"options.{name} must be true or false")
        extra = {k: v for k, v in raw.items() if k not in known}
        return ScanOptions(
            check_outdated=raw.get("check_outdated", True),
            check_vulnerabilities=raw.get("check_vulnerabilities", True),
            timeout=self.settings.scan_timeout,
            registry_lookups=self.settings.registry_lookups,
            extra=extra,
        )

    def _admit(
        self,
        key: str,
        label: str,
        ecosystem: str,
        path: Path,
        collector: BaseCollector,
        options,
        trigger: str,
    ) -> Tuple[InFlight, bool]:
        """
        Claim `key` and hand the scan to the pool, or return the scan that
        already holds it. Returns (entry, coalesced).
        """
        opts = self._options(options)
        if not opts.checks:
            raise BadRequest("at least one of check_outdated / check_vulnerabilities must be true")

        with self._lock:
            if self._closed:
                raise QueueFull("the orchestrator is shutting down")

            existing = self._inflight.get(key)
            if existing is not None:
                return existing, True

            if not self._slots.acquire(blocking=False):
                raise QueueFull(
                    f"all {self.settings.max_workers + self.settings.queue_size} scan slots are busy"
                )
            try:
                job = self.jobs.create(label, trigger)
                entry = InFlight(key=key, job_id=job.id)
                self._inflight[key] = entry
                entry.future = self._executor.submit(
                    self._execute, entry, label, ecosystem, path, collector, opts,
                )
            except Exception:
                self._inflight.pop(key, None)
                self._slots.release()
                raise

        return entry, False

    def _await(self, entry: InFlight, coalesced: bool) -> ScanResult:
        if coalesced:
            if self.settings.conflict_policy != "coalesce":
                raise ConcurrencyConflict(
                    f"a scan for '{entry.key}' is already running", job_id=entry.job_id,
                )
            logger.info(f"Joining in-flight job {entry.job_id} for {entry.key}")
        return entry.future.result()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _execute(
        self,
        entry: InFlight,
        label: str,
        ecosystem: str,
        path: Path,
        collector: BaseCollector,
        options: ScanOptions,
    ) -> ScanResult:
        deadline = time.monotonic() + self.settings.scan_timeout
        started_at = now_utc()
        try:
            if entry.cancel_event.is_set():
                self.jobs.transition(entry.job_id, JOB_CANCELLED, error="cancelled before start")
                return self._failed_result(
                    label, ecosystem, ScanError(kind="Cancelled", message="cancelled before start"),
                    job_id=entry.job_id,
                )

            self.jobs.transition(entry.job_id, JOB_RUNNING)
            outcome = self._run_with_retries(entry, label, path, collector, options, deadline)
            job_status = self._job_status(entry, outcome, deadline)

            result = ScanResult(
                service_name=label,
                ecosystem=ecosystem,
                started_at=started_at,
                duration=round((now_utc() - started_at).total_seconds(), 3),
                dependencies=outcome.dependencies,
                vulnerabilities=outcome.vulnerabilities,
                errors=outcome.errors,
                status=outcome.status,
                checks=list(outcome.checks_run),
                checks_failed=list(outcome.checks_failed),
                job_id=entry.job_id,
            )

            if job_status == JOB_CANCELLED:
                # Not published: a cancelled scan says nothing about the project
                self.jobs.transition(entry.job_id, JOB_CANCELLED, error="cancelled by request")
                return result

            served = self._publish(entry.key, result)
            error = "; ".join(f"{e.kind}: {e.message}" for e in result.errors) or None
            self.jobs.transition(entry.job_id, job_status, error=error)
            return served

        except Exception as e:
            logger.exception(f"Job {entry.job_id} for {label} crashed")
            self.jobs.transition(entry.job_id, JOB_FAILED, error=f"{type(e).__name__}: {e}")
            raise

        finally:
            self._release(entry)

    def _release(self, entry: InFlight) -> None:
        """Free the pool slot first, then the key."""
        self._slots.release()
        with self._lock:
            if self._inflight.get(entry.key) is entry:
                del self._inflight[entry.key]

    def _run_with_retries(
        self,
        entry: InFlight,
        label: str,
        path: Path,
        collector: BaseCollector,
        options: ScanOptions,
        deadline: float,
    ) -> CollectorOutcome:
        attempt = 0
        while True:
            runner = ToolRunner(deadline=deadline, cancel_event=entry.cancel_event)
            outcome = collector.run(path, options, runner)

            if outcome.status == STATUS_COMPLETED or not outcome.retryable:
                return outcome
            if entry.cancel_event.is_set() or attempt >= self.settings.max_retries:
                return outcome

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return outcome

            delay = min(
                self.settings.backoff_base * (2 ** attempt),
                self.settings.backoff_max,
                remaining,
            )
            kinds = ", ".join(sorted({e.kind for e in outcome.errors}))
            logger.warning(
                f"Scan of {label} hit {kinds}; retry {attempt + 1}/{self.settings.max_retries} "
                f"in {delay:.1f}s (job {entry.job_id})"
            )
            if delay > 0 and entry.cancel_event.wait(delay):
                return outcome
            attempt += 1

    @staticmethod
    def _job_status(entry: InFlight, outcome: CollectorOutcome, deadline: float) -> str:
        if entry.cancel_event.is_set():
            return JOB_CANCELLED
        if outcome.status == STATUS_FAILED:
            if time.monotonic() >= deadline or any(e.kind == "ProcessTimeout" for e in outcome.errors):
                return JOB_TIMED_OUT
            return JOB_FAILED
        return JOB_COMPLETED

    def _publish(self, key: str, result: ScanResult) -> ScanResult:
        previous = self.results.last_good(key)
        result = merge_uncovered(result, previous)
        served = self.results.publish(key, result)
        self.metrics.ingest(result, stale=served.stale, key=key)
        logger.info(
            f"Published {key}: status={result.status} deps={len(result.dependencies)} "
            f"vulns={len(result.vulnerabilities)} seq={result.sequence}"
            f"{' (serving stale)' if served.stale else ''}"
        )
        return served

    @staticmethod
    def _failed_result(
        name: str, ecosystem: str, error: ScanError, job_id: Optional[str] = None,
    ) -> ScanResult:
        return ScanResult(
            service_name=name,
            ecosystem=ecosystem,
            started_at=now_utc(),
            errors=[error],
            status=STATUS_FAILED,
            job_id=job_id,
        )
