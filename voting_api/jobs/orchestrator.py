# voting_api/jobs/orchestrator.py
"""
Job orchestrator - runs the voting engine on fixed cadences.

Every job goes through one execution wrapper, whether APScheduler fires
it or an admin triggers it by name:

- a per-job non-blocking lock: a tick that finds the previous run still
  going is skipped, never queued
- the handler runs inside an app context
- failures are recorded on the job and logged, never raised to the caller
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from flask import current_app
from sqlalchemy import func, text

from voting_api.common.errors import JobNotFound
from voting_api.extensions import db
from voting_api.models.campaign import Campaign

log = logging.getLogger(__name__)

EXTENSION_KEY = "job_orchestrator"


@dataclass
class JobInfo:
    name: str
    handler: Callable[[], Any]
    trigger: BaseTrigger
    description: str = ""

    last_run: Optional[datetime] = None
    last_status: Optional[str] = None      # success|error|skipped
    last_duration: Optional[float] = None
    last_error: Optional[str] = None
    last_result: Any = None
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0

    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def running(self) -> bool:
        return self.lock.locked()

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "cadence": str(self.trigger),
            "running": self.running,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_status": self.last_status,
            "last_duration": self.last_duration,
            "last_error": self.last_error,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "skipped_count": self.skipped_count,
        }


class JobOrchestrator:
    def __init__(self, app, timezone: Optional[str] = None):
        self.app = app
        self.timezone = timezone or app.config.get("VOTING_SCHEDULER_TIMEZONE", "UTC")
        self.scheduler: Optional[BackgroundScheduler] = None
        self._jobs: dict[str, JobInfo] = {}

    # ---------- registry ----------

    def register(self, name: str, handler: Callable[[], Any], trigger: BaseTrigger, description: str = "") -> JobInfo:
        job = JobInfo(name=name, handler=handler, trigger=trigger, description=description)
        self._jobs[name] = job
        if self.scheduler is not None:
            self._schedule(job)
        return job

    def get(self, name: str) -> JobInfo:
        job = self._jobs.get(name)
        if not job:
            raise JobNotFound(name)
        return job

    @property
    def names(self) -> list[str]:
        return list(self._jobs)

    # ---------- execution ----------

    def run_now(self, name: str) -> dict:
        self.get(name)
        return self._execute(name, "manual")

    def _execute(self, name: str, source: str = "scheduled") -> dict:
        job = self.get(name)
        if not job.lock.acquire(blocking=False):
            job.skipped_count += 1
            job.last_status = "skipped"
            log.warning("job %s still running, %s tick skipped", name, source)
            return {"job": name, "status": "skipped", "source": source}

        started = time.monotonic()
        job.last_run = datetime.utcnow()
        log.info("job %s started (%s)", name, source)
        try:
            with self.app.app_context():
                result = job.handler()
        except Exception as e:
            job.last_duration = round(time.monotonic() - started, 3)
            job.last_status = "error"
            job.last_error = str(e)
            job.error_count += 1
            log.exception("job %s failed after %.3fs", name, job.last_duration)
            return {"job": name, "status": "error", "source": source, "error": str(e),
                    "duration": job.last_duration}
        finally:
            job.lock.release()

        job.last_duration = round(time.monotonic() - started, 3)
        job.last_status = "success"
        job.last_error = None
        job.last_result = result
        job.success_count += 1
        log.info("job %s finished in %.3fs", name, job.last_duration)
        return {"job": name, "status": "success", "source": source, "result": result,
                "duration": job.last_duration}

    # ---------- scheduler ----------

    def _schedule(self, job: JobInfo) -> None:
        self.scheduler.add_job(
            self._execute,
            trigger=job.trigger,
            args=[job.name, "scheduled"],
            id=job.name,
            name=job.description or job.name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def start(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            return
        self.scheduler = BackgroundScheduler(timezone=self.timezone)
        for job in self._jobs.values():
            self._schedule(job)
        self.scheduler.start()
        log.info("scheduler started with %s jobs (%s)", len(self._jobs), self.timezone)

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            log.info("scheduler stopped")
        self.scheduler = None

    def status(self) -> dict:
        running = bool(self.scheduler and self.scheduler.running)
        jobs = []
        for job in self._jobs.values():
            row = job.to_dict()
            sj = self.scheduler.get_job(job.name) if running else None
            row["next_run"] = sj.next_run_time.isoformat() if sj and sj.next_run_time else None
            jobs.append(row)
        return {"scheduler_running": running, "timezone": self.timezone, "jobs": jobs}

    # ---------- health ----------

    def health_check(self, now: Optional[datetime] = None) -> dict:
        """Store reachability plus the expired-but-unprocessed backlog. Needs an app context."""
        now = now or datetime.utcnow()
        threshold = int(current_app.config.get("VOTING_HEALTH_EXPIRED_BACKLOG", 5))
        try:
            db.session.execute(text("SELECT 1"))
        except Exception as e:
            db.session.rollback()
            log.error("health check: store unreachable: %s", e)
            return {"healthy": False, "database": "unreachable", "error": str(e), "checked_at": now.isoformat()}

        active = (
            db.session.query(func.count(Campaign.id)).filter(Campaign.status == "active").scalar() or 0
        )
        expired = (
            db.session.query(func.count(Campaign.id))
            .filter(Campaign.status == "active", Campaign.end_date < now)
            .scalar()
            or 0
        )
        failing = [j.name for j in self._jobs.values() if j.last_status == "error"]
        healthy = expired < threshold
        if not healthy:
            log.warning("health check: %s expired campaigns waiting to be processed", expired)
        return {
            "healthy": healthy,
            "database": "ok",
            "active_campaigns": active,
            "expired_unprocessed": expired,
            "backlog_threshold": threshold,
            "failing_jobs": failing,
            "scheduler_running": bool(self.scheduler and self.scheduler.running),
            "checked_at": now.isoformat(),
        }


# ---------- standard job set ----------

def register_standard_jobs(orchestrator: JobOrchestrator) -> JobOrchestrator:
    from voting_api.services.engine import current_engine

    tz = orchestrator.timezone
    jobs = [
        ("promotion-check", lambda: current_engine().check_promotions(),
         CronTrigger(hour=0, minute=0, timezone=tz), "Daily tenure check for auto promotions"),
        ("demotion-check", lambda: current_engine().check_demotions(),
         CronTrigger(hour=0, minute=0, timezone=tz), "Daily lateness check for auto demotions"),
        ("monthly-reset", lambda: current_engine().scheduled_period_reset(tz=tz),
         CronTrigger(day=1, hour=0, minute=0, timezone=tz), "Attendance period reset at 00:00 on day 1"),
        ("process-expired-campaigns", lambda: current_engine().process_expired(),
         CronTrigger(minute=0, timezone=tz), "Hourly close of expired campaigns"),
        ("execute-position-changes", lambda: current_engine().execute_position_changes(),
         CronTrigger(minute=0, timezone=tz), "Hourly execution of due position changes"),
        ("urgent-check", lambda: current_engine().urgent_check(),
         IntervalTrigger(minutes=30, timezone=tz), "Lateness recheck every 30 minutes"),
        ("deliver-notifications", lambda: current_engine().deliver_notifications(),
         IntervalTrigger(minutes=5, timezone=tz), "Outbox delivery every 5 minutes"),
        ("health-check", lambda: orchestrator.health_check(),
         CronTrigger(hour=12, minute=0, timezone=tz), "Daily store and backlog check"),
    ]
    for name, handler, trigger, description in jobs:
        orchestrator.register(name, handler, trigger, description)
    return orchestrator


def init_jobs(app) -> JobOrchestrator:
    orchestrator = register_standard_jobs(JobOrchestrator(app))
    app.extensions[EXTENSION_KEY] = orchestrator
    if app.config.get("VOTING_SCHEDULER_ENABLED"):
        orchestrator.start()
    return orchestrator


def current_orchestrator() -> JobOrchestrator:
    return current_app.extensions[EXTENSION_KEY]
