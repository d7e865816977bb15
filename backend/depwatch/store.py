# depwatch/store.py
"""
Persistence for scan jobs and the latest scan result per service.

JobStore:     ScanJob rows in SQLAlchemy. The job history outlives the
              process when DEPWATCH_DATABASE_URI points at a file or server.
              The default is an in-memory SQLite database.
ResultStore:  The single "current" ScanResult per service (latest wins),
              with the stale-but-available fallback. Prior results are not
              kept; only their metrics live on in the time series.

Only the orchestrator writes to either store.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import Column, DateTime, String, create_engine, select
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from depwatch.errors import JobNotFound
from depwatch.models import (
    JOB_CANCELLED,
    JOB_QUEUED,
    JOB_RUNNING,
    JOB_TERMINAL,
    ScanResult,
)

logger = logging.getLogger(__name__)

Base = declarative_base()

# Legal ScanJob transitions. Terminal states have no way out.
TRANSITIONS = {
    JOB_QUEUED: {JOB_RUNNING, JOB_CANCELLED},
    JOB_RUNNING: set(JOB_TERMINAL),
}


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() + "Z" if dt else None


class ScanJob(Base):
    __tablename__ = "scan_job"

    id = Column(String(32), primary_key=True)
    service_name = Column(String(255), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=JOB_QUEUED)
    trigger = Column(String(20), nullable=False, default="manual")  # manual, scheduled, custom

    scheduled_at = Column(DateTime, nullable=False, default=now_utc)
    started_at = Column(DateTime, nullable=True)
    ended_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=now_utc, onupdate=now_utc)

    error = Column(String(500), nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in JOB_TERMINAL

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "service": self.service_name,
            "status": self.status,
            "trigger": self.trigger,
            "scheduled_at": _iso(self.scheduled_at),
            "started_at": _iso(self.started_at),
            "ended_at": _iso(self.ended_at),
            "error": self.error,
        }


class JobStore:

    def __init__(self, database_uri: str = "sqlite://"):
        kwargs = {}
        if database_uri.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_uri in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, or each thread would get its own empty DB
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_uri, **kwargs)
        self._session = sessionmaker(bind=self.engine, expire_on_commit=False)
        # SQLite connections are not safe to share between threads without this
        self._lock = threading.Lock()
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def create(self, service_name: str, trigger: str = "manual") -> ScanJob:
        job = ScanJob(
            id=uuid.uuid4().hex,
            service_name=service_name,
            status=JOB_QUEUED,
            trigger=trigger,
            scheduled_at=now_utc(),
        )
        with self._lock, self._session() as session:
            session.add(job)
            session.commit()
        logger.info(f"Job {job.id} queued for {service_name} ({trigger})")
        return job

    def get(self, job_id: str) -> ScanJob:
        with self._lock, self._session() as session:
            job = session.get(ScanJob, job_id)
        if job is None:
            raise JobNotFound(f"scan job '{job_id}' not found")
        return job

    def list(self, service_name: Optional[str] = None, limit: int = 50) -> List[ScanJob]:
        stmt = select(ScanJob).order_by(ScanJob.scheduled_at.desc()).limit(limit)
        if service_name:
            stmt = stmt.where(ScanJob.service_name == service_name)
        with self._lock, self._session() as session:
            return list(session.scalars(stmt).all())

    def transition(self, job_id: str, status: str, error: Optional[str] = None) -> ScanJob:
        """
        Move a job to `status`. Illegal transitions are logged and ignored,
        so a late timeout can't overwrite a cancellation (or vice versa).
        """
        with self._lock, self._session() as session:
            job = session.get(ScanJob, job_id)
            if job is None:
                raise JobNotFound(f"scan job '{job_id}' not found")

            if job.status == status:
                return job
            allowed = TRANSITIONS.get(job.status, set())
            if status not in allowed:
                logger.warning(f"Job {job_id}: ignoring transition {job.status} -> {status}")
                return job

            job.status = status
            if status == JOB_RUNNING:
                job.started_at = now_utc()
            if status in JOB_TERMINAL:
                job.ended_at = now_utc()
            if error:
                job.error = error[:500]
            session.commit()

        logger.info(f"Job {job_id} ({job.service_name}) -> {status}")
        return job

    def recover_interrupted(self) -> int:
        """Cancel jobs left queued/running by a previous process."""
        with self._lock, self._session() as session:
            stale = session.scalars(
                select(ScanJob).where(ScanJob.status.in_([JOB_QUEUED, JOB_RUNNING]))
            ).all()
            for job in stale:
                job.status = JOB_CANCELLED
                job.ended_at = now_utc()
                job.error = "interrupted by restart"
            session.commit()
        if stale:
            logger.warning(f"Marked {len(stale)} interrupted job(s) as cancelled")
        return len(stale)


class ResultStore:
    """
    Current ScanResult per key (service name, or custom:<path>).

    publish() stamps each result with a store-wide increasing sequence
    number. Callers publish while holding the service's exclusivity, so
    readers see a service's results in completion order.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._current: Dict[str, ScanResult] = {}
        self._good: Dict[str, ScanResult] = {}
        self._sequence = 0

    def publish(self, key: str, result: ScanResult) -> ScanResult:
        """Store a result; return what readers will now see for `key`."""
        with self._lock:
            self._sequence += 1
            result.sequence = self._sequence

            if result.is_good:
                self._good[key] = result
                self._current[key] = result
                return result

            previous = self._good.get(key)
            if previous is None:
                self._current[key] = result
                return result

            summary = "; ".join(f"{e.kind}: {e.message}" for e in result.errors) or result.status
            served = dataclasses.replace(
                previous,
                stale=True,
                last_error=summary[:500],
                job_id=result.job_id,
                sequence=result.sequence,
            )
            self._current[key] = served

        logger.warning(
            f"Scan of {key} failed; serving stale result from {previous.started_at.isoformat()}"
        )
        return served

    def latest(self, key: str) -> Optional[ScanResult]:
        with self._lock:
            return self._current.get(key)

    def last_good(self, key: str) -> Optional[ScanResult]:
        with self._lock:
            return self._good.get(key)

    def all(self) -> Dict[str, ScanResult]:
        with self._lock:
            return dict(self._current)

    def forget(self, key: str) -> None:
        with self._lock:
            self._current.pop(key, None)
            self._good.pop(key, None)
