"""
Decision Governance Engine
Scheduler Service.

Thread-based runner for the background sweeps. Jobs are plain functions
registered by name with ``@register_job``; each has a ScheduledJob row that
keeps its interval, enabled flag and run history.

Architecture:
    - register_job: decorator filling the in-process registry
    - SchedulerService: persistence, manual trigger, enable/disable
    - start(): daemon thread polling every SCHEDULER_POLL_SECONDS and
      running whichever enabled job is due
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Callable

from flask import Flask, has_app_context

from decision_governance.models import db
from decision_governance.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("health_sweep")
        def health_sweep(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Lightweight scheduler service.

    Jobs are executed within the Flask app context.
    """

    _app: Flask | None = None
    _running: bool = False
    _thread: threading.Thread | None = None
    _stop: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Bind the scheduler to an app; the loop starts only when SCHEDULER_ENABLED."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))
        if app.config.get("SCHEDULER_ENABLED"):
            cls.ensure_jobs_registered()
            cls.start()

    @classmethod
    def _context(cls):
        return nullcontext() if has_app_context() else cls._app.app_context()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        if not cls._app:
            return []

        created = []
        with cls._context():
            interval = cls._app.config.get("SWEEP_INTERVAL_SECONDS", 21600)
            for name, fn in _job_registry.items():
                if ScheduledJob.query.filter_by(job_name=name).first() is None:
                    job = ScheduledJob(
                        job_name=name,
                        description=(fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0],
                        interval_seconds=interval,
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        with cls._context():
            try:
                result = fn(cls._app)
            except Exception as exc:
                db.session.rollback()
                status = "failed"
                error = str(exc)
                logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})

            duration_ms = int((time.monotonic() - start) * 1000)

            try:
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
            except Exception:
                db.session.rollback()
                logger.exception("Failed to update job record for %s", job_name,
                                 extra={"job_name": job_name})

        logger.info("Job %s finished: %s", job_name, status,
                    extra={"job_name": job_name, "duration_ms": duration_ms})
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def run_due_jobs(cls, now: datetime | None = None) -> list[dict]:
        """Run every enabled job whose interval has elapsed."""
        now = now or datetime.now(timezone.utc)
        with cls._context():
            due = [
                job.job_name
                for job in ScheduledJob.query.order_by(ScheduledJob.job_name).all()
                if job.job_name in _job_registry and job.is_due(now)
            ]
        return [cls.run_job(name) for name in due]

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "registered": True,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job_record:
            return job_record.to_dict()
        return None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()

    # ── Background loop ───────────────────────────────────────────────────

    @classmethod
    def start(cls) -> None:
        """Start the polling daemon thread (idempotent)."""
        if cls._running or not cls._app:
            return
        cls._stop = threading.Event()
        cls._running = True
        cls._thread = threading.Thread(target=cls._loop, name="dg-scheduler", daemon=True)
        cls._thread.start()
        logger.info("Scheduler loop started (poll every %ss)",
                    cls._app.config.get("SCHEDULER_POLL_SECONDS", 60))

    @classmethod
    def stop(cls, timeout: float = 5.0) -> None:
        if not cls._running:
            return
        cls._stop.set()
        if cls._thread is not None:
            cls._thread.join(timeout)
        cls._running = False
        cls._thread = None
        logger.info("Scheduler loop stopped")

    @classmethod
    def _loop(cls) -> None:
        poll = cls._app.config.get("SCHEDULER_POLL_SECONDS", 60)
        while not cls._stop.is_set():
            try:
                with cls._app.app_context():
                    cls.run_due_jobs()
            except Exception:
                logger.exception("Scheduler poll failed")
            cls._stop.wait(poll)
