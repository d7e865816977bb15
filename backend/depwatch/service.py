# depwatch/service.py
"""
MonitorService: builds every component from Settings and owns their lifecycle.

    settings → ServiceRegistry ─┐
               collectors ──────┼→ ScanOrchestrator → ScanScheduler
               JobStore ────────┤
               ResultStore ─────┤
               MetricsRegistry ─┘

Both the Flask app and the CLI go through this class, so there is exactly
one place that knows how the pieces fit.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from depwatch.collectors import build_collectors
from depwatch.collectors.base import BaseCollector
from depwatch.collectors.registry_client import PackageRegistryClient
from depwatch.config import Settings, load_config_file, parse_services
from depwatch.metrics import MetricsRegistry
from depwatch.orchestrator import ScanOrchestrator
from depwatch.registry import ServiceRegistry
from depwatch.scheduler import ScanScheduler
from depwatch.store import JobStore, ResultStore

logger = logging.getLogger(__name__)


class MonitorService:

    def __init__(
        self,
        settings: Settings,
        collectors: Optional[Dict[str, BaseCollector]] = None,
    ):
        self.settings = settings
        self.registry = ServiceRegistry.load(settings.services)

        if collectors is None:
            client = PackageRegistryClient() if settings.registry_lookups else None
            collectors = build_collectors(registry_client=client)
        self.collectors = collectors

        self.jobs = JobStore(settings.database_uri)
        self.results = ResultStore()
        self.metrics = MetricsRegistry()
        self.orchestrator = ScanOrchestrator(
            registry=self.registry,
            collectors=self.collectors,
            job_store=self.jobs,
            result_store=self.results,
            metrics=self.metrics,
            settings=settings,
        )
        self.scheduler = ScanScheduler(self.orchestrator, settings.schedule)

        self._ready = threading.Event()
        self._reload_lock = threading.Lock()

    @property
    def ready(self) -> bool:
        return self._ready.is_set()

    def start(self, scheduler: Optional[bool] = None) -> None:
        recovered = self.jobs.recover_interrupted()
        if recovered:
            logger.info(f"Recovered {recovered} interrupted job(s) from a previous run")

        run_scheduler = self.settings.scheduler_enabled if scheduler is None else scheduler
        if run_scheduler:
            self.scheduler.start()
        else:
            logger.info("Scheduler disabled")

        self._ready.set()
        logger.info(f"depwatch ready: {len(self.registry)} service(s) registered")

    def shutdown(self, wait: bool = True) -> None:
        self._ready.clear()
        self.scheduler.shutdown()
        self.orchestrator.shutdown(wait=wait)
        self.jobs.close()

    def reload_registry(self) -> ServiceRegistry:
        """
        Re-read the config file and swap the registry atomically.

        The new mapping is validated in full before anything changes. On
        ConfigError the running registry stays in place. Results and
        metric series of services that disappeared are dropped.
        """
        with self._reload_lock:
            if self.settings.config_path is None:
                services = self.settings.services
            else:
                services = parse_services(load_config_file(self.settings.config_path))
            new_registry = ServiceRegistry.load(services)

            removed = set(self.registry.names()) - set(new_registry.names())
            self.orchestrator.replace_registry(new_registry)
            self.registry = new_registry
            self.settings.services = services

            for name in removed:
                self.results.forget(name)
                self.metrics.forget(name)

        logger.info(
            f"Registry reloaded: {len(new_registry)} service(s)"
            + (f", removed {', '.join(sorted(removed))}" if removed else "")
        )
        return new_registry

    def health(self) -> dict:
        return {
            "status": "ok" if self.ready else "starting",
            "ready": self.ready,
            "services": len(self.registry),
            "scheduler": "running" if self.scheduler.running else "stopped",
        }
