# depwatch/scheduler.py
"""
Background Scheduler for periodic scans
────────────────────────────────────────
Uses APScheduler with two recurring jobs:

    full_scan      every enabled service, all checks
    security_scan  security_services (default: every enabled service),
                   vulnerability check only

A schedule is an int (seconds between runs) or a 5-field crontab string.

Ticks only submit work and never wait for it. A service that already has a
scan in flight is skipped; a full queue drops the rest of the tick. Both
are logged and the scheduler keeps going.
"""
from __future__ import annotations

import logging
from typing import Any, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from depwatch.config import ScheduleConfig
from depwatch.errors import ConfigError, DepwatchError, QueueFull
from depwatch.models import ScanOptions
from depwatch.orchestrator import TRIGGER_SCHEDULED, ScanOrchestrator

logger = logging.getLogger(__name__)


def build_trigger(value: Any, label: str):
    """IntervalTrigger for a number of seconds, CronTrigger for a crontab string."""
    if isinstance(value, bool):
        raise ConfigError(f"schedule '{label}': expected seconds or a crontab string")
    if isinstance(value, (int, float)):
        if value <= 0:
            raise ConfigError(f"schedule '{label}': interval must be > 0 seconds")
        return IntervalTrigger(seconds=int(value))
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.isdigit():
            return build_trigger(int(text), label)
        try:
            return CronTrigger.from_crontab(text, timezone="UTC")
        except ValueError as e:
            raise ConfigError(f"schedule '{label}': invalid crontab {text!r}: {e}")
    raise ConfigError(f"schedule '{label}': expected seconds or a crontab string")


class ScanScheduler:

    def __init__(self, orchestrator: ScanOrchestrator, schedule: ScheduleConfig):
        self.orchestrator = orchestrator
        self.schedule = schedule
        # Validate up front so a bad schedule fails startup, not the first tick
        self._full_trigger = build_trigger(schedule.full_scan, "full_scan")
        self._security_trigger = build_trigger(schedule.security_scan, "security_scan")
        self._scheduler: Optional[BackgroundScheduler] = None

    @property
    def running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running)

    def start(self) -> None:
        if self.running:
            return
        scheduler = BackgroundScheduler(daemon=True, timezone="UTC")
        scheduler.add_job(
            func=self.run_full_tick,
            trigger=self._full_trigger,
            id="depwatch_full_scan",
            name="Full dependency scan",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            func=self.run_security_tick,
            trigger=self._security_trigger,
            id="depwatch_security_scan",
            name="Security scan",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            f"Scheduler started (full_scan={self.schedule.full_scan!r}, "
            f"security_scan={self.schedule.security_scan!r})"
        )

    def shutdown(self) -> None:
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        self._scheduler = None

    # ------------------------------------------------------------------
    # Ticks
    # ------------------------------------------------------------------

    def run_full_tick(self) -> List[str]:
        """Submit a full scan for every enabled service. Returns the job ids submitted."""
        names = [d.name for d in self.orchestrator.registry.enabled()]
        return self._tick("full_scan", names, options=None)

    def run_security_tick(self) -> List[str]:
        enabled = [d.name for d in self.orchestrator.registry.enabled()]
        if self.schedule.security_services:
            wanted = set(self.schedule.security_services)
            names = [n for n in enabled if n in wanted]
        else:
            names = enabled
        options = ScanOptions.security_only(
            timeout=self.orchestrator.settings.scan_timeout,
            registry_lookups=self.orchestrator.settings.registry_lookups,
        )
        return self._tick("security_scan", names, options=options)

    def _tick(self, label: str, names: List[str], options) -> List[str]:
        submitted: List[str] = []
        for name in names:
            running = self.orchestrator.in_flight(name)
            if running:
                logger.info(f"{label}: skipping {name}, job {running} still in flight")
                continue
            try:
                job, coalesced = self.orchestrator.submit(
                    name, trigger=TRIGGER_SCHEDULED, options=options,
                )
            except QueueFull as e:
                logger.warning(
                    f"{label}: queue full, dropping the rest of this tick "
                    f"({len(names) - len(submitted)} service(s)): {e.detail}"
                )
                break
            except DepwatchError as e:
                logger.error(f"{label}: could not submit {name}: {e.detail}")
                continue
            except Exception as e:
                logger.error(f"{label}: unexpected error submitting {name}: {e}")
                continue

            if coalesced:
                logger.info(f"{label}: skipping {name}, job {job.id} started meanwhile")
                continue
            submitted.append(job.id)

        if submitted:
            logger.info(f"{label}: submitted {len(submitted)} job(s)")
        return submitted
