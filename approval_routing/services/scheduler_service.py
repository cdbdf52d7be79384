"""
Approval Routing Engine
Scheduler Service.

Lightweight background job scheduler: a job registry populated by a
decorator, persisted run history in ScheduledJob, and an optional daemon
thread that runs every registered job on a fixed interval.

Architecture:
    - SchedulerService: manages job registration, execution and the interval thread
    - Jobs are stored in the ScheduledJob model for persistence
    - Jobs can always be triggered on demand (CLI / API) regardless of the thread
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from flask import Flask

from approval_routing.models import db
from approval_routing.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("approval_escalation_sweep")
        def sweep(app):
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

    Jobs are executed within a Flask app context. The interval thread is
    started only when the application enables it (APPROVAL_SWEEP_ENABLED).
    """

    _app: Flask | None = None
    _thread: threading.Thread | None = None
    _stop_event: threading.Event | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        # Importing the jobs module registers them
        from approval_routing.services import scheduled_jobs  # noqa: F401

        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def ensure_job_record(cls, job_name: str) -> ScheduledJob:
        """Return the DB record for a registered job, creating it if missing.

        Must be called inside an app context.
        """
        job = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job is None:
            fn = _job_registry[job_name]
            interval = cls._app.config.get("APPROVAL_SWEEP_INTERVAL_SECONDS", 900) if cls._app else 900
            job = ScheduledJob(
                job_name=job_name,
                description=(fn.__doc__ or f"Scheduled job: {job_name}").strip().splitlines()[0],
                schedule_type="interval",
                schedule_config={"seconds": interval},
                status="active",
                is_enabled=True,
                run_count=0,
                error_count=0,
            )
            db.session.add(job)
            db.session.commit()
        return job

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

        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc)

        duration_ms = int((time.monotonic() - start) * 1000)

        # Update DB record
        try:
            with cls._app.app_context():
                job_record = cls.ensure_job_record(job_name)
                job_record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name)

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        """Get status of a specific job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if job_record:
            return job_record.to_dict()
        return None

    # ── Interval thread ──────────────────────────────────────────────────

    @classmethod
    def start(cls, interval_seconds: int) -> bool:
        """Start the daemon thread that runs every registered job each interval.

        Returns False when the thread is already running.
        """
        if cls._thread is not None and cls._thread.is_alive():
            return False
        cls._stop_event = threading.Event()
        cls._thread = threading.Thread(
            target=cls._loop,
            args=(interval_seconds, cls._stop_event),
            name="approval-scheduler",
            daemon=True,
        )
        cls._thread.start()
        logger.info("Scheduler thread started (interval=%ss)", interval_seconds)
        return True

    @classmethod
    def stop(cls, timeout: float = 5.0) -> None:
        if cls._stop_event is not None:
            cls._stop_event.set()
        if cls._thread is not None:
            cls._thread.join(timeout)
        cls._thread = None
        cls._stop_event = None

    @classmethod
    def is_running(cls) -> bool:
        return cls._thread is not None and cls._thread.is_alive()

    @classmethod
    def _loop(cls, interval_seconds: int, stop_event: threading.Event) -> None:
        while not stop_event.wait(interval_seconds):
            for name in list(_job_registry):
                cls.run_job(name)
