"""
Clinical Privilege Approvals
Scheduling model.

Models:
    - ScheduledJob: one row per registered job (escalation_sweep,
      expire_stale_escalations) holding its pause switch and run history.
"""

from datetime import datetime, timezone

from privileges.models import db


JOB_STATUSES = {"active", "paused", "failing"}
RUN_STATUSES = {"success", "skipped", "failed"}

# consecutive failed runs before an active job is reported as "failing"
FAILING_AFTER = 3


def _utcnow():
    return datetime.now(timezone.utc)


class ScheduledJob(db.Model):
    """Persisted state of a scheduled job.

    ``is_enabled`` is the operator's pause switch; ``status`` is derived from
    it and from the run history.
    """

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    interval_minutes = db.Column(db.Integer, nullable=True)
    status = db.Column(db.String(20), default="active", comment="active, paused, failing")
    is_enabled = db.Column(db.Boolean, default=True)

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True, comment="success, skipped, failed")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True)
    last_success_at = db.Column(db.DateTime(timezone=True), nullable=True)

    run_count = db.Column(db.Integer, default=0)
    skip_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    consecutive_failures = db.Column(db.Integer, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def set_enabled(self, enabled: bool) -> None:
        self.is_enabled = enabled
        if not enabled:
            self.status = "paused"
        else:
            self.status = "failing" if (self.consecutive_failures or 0) >= FAILING_AFTER else "active"

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None, at=None):
        """Record one execution and update the derived status."""
        if status not in RUN_STATUSES:
            raise ValueError(f"Unknown run status: {status}")
        at = at or _utcnow()
        self.last_run_at = at
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1

        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.consecutive_failures = (self.consecutive_failures or 0) + 1
            self.last_error = str(error) if error else None
        elif status == "skipped":
            self.skip_count = (self.skip_count or 0) + 1
        else:
            self.consecutive_failures = 0
            self.last_success_at = at

        if self.is_enabled:
            self.status = "failing" if (self.consecutive_failures or 0) >= FAILING_AFTER else "active"

    def to_dict(self):
        def _iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "interval_minutes": self.interval_minutes,
            "status": self.status,
            "is_enabled": self.is_enabled,
            "last_run_at": _iso(self.last_run_at),
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "last_success_at": _iso(self.last_success_at),
            "run_count": self.run_count,
            "skip_count": self.skip_count,
            "error_count": self.error_count,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} [{self.status}]>"
