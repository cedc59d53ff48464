"""
Clinical Privilege Approvals
Scheduler Service.

Named jobs (plain functions taking the Flask app) registered with
``@register_job`` and executed by ``SchedulerService.run_job``. Each job has
a ``ScheduledJob`` row carrying its pause switch and run history.

Triggers:
    - ``ScheduledEscalationRunner`` (in-process timer, opt-in via config)
    - ``GET|POST /api/v1/cron/escalation`` and ``POST /api/v1/jobs/<name>/run``
    - ``flask run-job <name>``

Run statuses:
    success   job returned normally
    skipped   job paused, or the job reported ``{"skipped": True, ...}``
    failed    job raised; the exception is logged, never propagated
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from flask import Flask
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from privileges.models import db
from privileges.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 24 * 60


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class JobSpec:
    name: str
    fn: Callable[[Flask], Any]
    description: str
    interval_minutes: int | None = None
    # config key overriding interval_minutes, e.g. ESCALATION_INTERVAL_MINUTES
    interval_config_key: str | None = None

    def interval_for(self, config) -> int:
        if self.interval_config_key and config.get(self.interval_config_key) is not None:
            return max(1, int(float(config[self.interval_config_key])))
        return self.interval_minutes or DEFAULT_INTERVAL_MINUTES


_job_registry: dict[str, JobSpec] = {}


def register_job(name: str, *, interval_minutes: int | None = None,
                 interval_config_key: str | None = None):
    """Register a job function under ``name``.

    The first docstring line becomes the job description.

        @register_job("escalation_sweep", interval_config_key="ESCALATION_INTERVAL_MINUTES")
        def escalation_sweep(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        doc = (fn.__doc__ or f"Scheduled job: {name}").strip().splitlines()[0]
        _job_registry[name] = JobSpec(name, fn, doc, interval_minutes, interval_config_key)
        return fn
    return decorator


def get_registered_jobs() -> dict[str, JobSpec]:
    return dict(_job_registry)


def _job_record(job_name: str) -> ScheduledJob | None:
    return db.session.execute(
        select(ScheduledJob).where(ScheduledJob.job_name == job_name)
    ).scalar_one_or_none()


def _new_job_record(spec: JobSpec, config) -> ScheduledJob:
    return ScheduledJob(
        job_name=spec.name,
        description=spec.description,
        interval_minutes=spec.interval_for(config),
        status="active",
        is_enabled=True,
    )


# ═══════════════════════════════════════════════════════════════════════════
#  Service
# ═══════════════════════════════════════════════════════════════════════════


class SchedulerService:
    """Job persistence and execution, bound to one Flask app."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ``ScheduledJob`` row for every registered job lacking one."""
        if cls._app is None:
            return []

        created = []
        with cls._app.app_context():
            for spec in _job_registry.values():
                if _job_record(spec.name) is not None:
                    continue
                job = _new_job_record(spec, cls._app.config)
                db.session.add(job)
                created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """Execute a job once in a fresh app context and record the run.

        Returns:
            ``{job_name, status, duration_ms, result, error}``; ``status`` is
            ``"error"`` for an unknown job or an uninitialised scheduler.
        """
        spec = _job_registry.get(job_name)
        if spec is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if cls._app is None:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result: Any = None
        error = None

        with cls._app.app_context():
            record = _job_record(job_name)
            if record is not None and not record.is_enabled:
                status = "skipped"
                result = {"skipped": True, "message": "Job is paused"}
                logger.info("Job %s is paused; run skipped", job_name, extra={"job_name": job_name})
            else:
                try:
                    result = spec.fn(cls._app)
                    skipped = isinstance(result, dict) and result.get("skipped")
                    status = "skipped" if skipped else "success"
                except Exception as exc:
                    db.session.rollback()
                    status, error = "failed", str(exc)
                    logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})

            duration_ms = int((time.monotonic() - start) * 1000)
            cls._record_run(job_name, status, duration_ms, result, error)

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def _record_run(cls, job_name, status, duration_ms, result, error) -> None:
        stored = result if isinstance(result, dict) or result is None else {"output": str(result)}
        try:
            record = _job_record(job_name)
            if record is None:
                record = _new_job_record(_job_registry[job_name], cls._app.config)
                db.session.add(record)
            record.record_run(status=status, duration_ms=duration_ms, result=stored, error=error)
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Failed to update job record for %s", job_name, extra={"job_name": job_name})

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """Registered jobs with their persisted state (or defaults if not yet stored)."""
        jobs = []
        for spec in _job_registry.values():
            record = _job_record(spec.name)
            if record is not None:
                jobs.append(record.to_dict())
            else:
                jobs.append({
                    "job_name": spec.name,
                    "description": spec.description,
                    "interval_minutes": spec.interval_minutes,
                    "status": "unregistered",
                    "is_enabled": True,
                })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        record = _job_record(job_name)
        return record.to_dict() if record else None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Pause or resume a job; ``None`` when the job has no record."""
        record = _job_record(job_name)
        if record is None:
            return None
        record.set_enabled(enabled)
        db.session.commit()
        logger.info("Job %s %s", job_name, "resumed" if enabled else "paused",
                    extra={"job_name": job_name})
        return record.to_dict()
