"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready  — 200 while the process is serving
    GET /api/v1/health/live   — database, rule table, escalation sweep state

``live`` answers 503 only when the database is unreachable; an unseeded rule
table or a failing sweep is reported as ``warning`` without failing the probe.
"""

import logging
import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from privileges.models import db
from privileges.models.approval import ApprovalRequirementRule
from privileges.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

health_bp = Blueprint("health_bp", __name__, url_prefix="/api/v1/health")


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


def _check_database():
    t0 = time.perf_counter()
    db.session.execute(db.text("SELECT 1"))
    return {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}


def _check_rules():
    count = db.session.execute(select(func.count(ApprovalRequirementRule.id))).scalar_one()
    if count == 0:
        return {"status": "warning", "rules": 0,
                "detail": "No approval rules seeded; every request uses the fallback requirement"}
    return {"status": "ok", "rules": count}


def _check_escalation():
    runner = current_app.extensions.get("escalation_runner")
    sweep = db.session.execute(
        select(ScheduledJob).where(ScheduledJob.job_name == "escalation_sweep")
    ).scalar_one_or_none()

    check = {
        "status": "active" if runner is not None and runner.is_active() else "inactive",
        "escalation_enabled": bool(current_app.config.get("ESCALATION_ENABLED", True)),
        "last_sweep_at": None,
        "last_sweep_status": None,
    }
    if sweep is not None:
        check["last_sweep_at"] = sweep.last_run_at.isoformat() if sweep.last_run_at else None
        check["last_sweep_status"] = sweep.last_run_status
        if sweep.status == "failing":
            check["warning"] = f"{sweep.consecutive_failures} consecutive sweep failures"
    return check


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {}
    healthy = True

    try:
        checks["database"] = _check_database()
        checks["approval_rules"] = _check_rules()
        checks["escalation_runner"] = _check_escalation()
    except SQLAlchemyError as exc:
        db.session.rollback()
        healthy = False
        checks["database"] = {"status": "error", "detail": str(exc)}
        logger.error("Health check — database failed: %s", exc)

    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "testing": current_app.testing,
        "checks": checks,
    }), 200 if healthy else 503
