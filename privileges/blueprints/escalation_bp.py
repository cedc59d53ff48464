"""
Escalation & Jobs Blueprint.

Routes:
  GET|POST /api/v1/cron/escalation          – run the escalation sweep (cron secret)
  GET      /api/v1/escalations/stats        – counts by level, resolution latency
  GET      /api/v1/escalations/unresolved   – open escalation records
  GET      /api/v1/jobs                     – registered jobs and last run
  POST     /api/v1/jobs/<name>/run          – run a job now (cron secret)
  PUT      /api/v1/jobs/<name>              – enable / pause a job
"""

import hmac
import logging
from datetime import datetime, timedelta, timezone

from flask import Blueprint, current_app, jsonify, request

from privileges.services.escalation import build_escalation_engine
from privileges.services.scheduler_service import SchedulerService, get_registered_jobs
from privileges.utils.errors import E, api_error

logger = logging.getLogger(__name__)

escalation_bp = Blueprint("escalation_bp", __name__, url_prefix="/api/v1")


# ── helpers ──────────────────────────────────────────────────────────────

def _cron_authorized() -> bool:
    """Accept ``Authorization: Bearer``, ``x-cron-secret`` or ``x-vercel-cron-secret``.

    Without a configured secret the trigger is open only in debug/testing.
    """
    secret = current_app.config.get("CRON_SECRET")
    if not secret:
        return current_app.debug or current_app.testing

    candidates = [
        request.headers.get("x-cron-secret", ""),
        request.headers.get("x-vercel-cron-secret", ""),
    ]
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        candidates.append(auth[len("Bearer "):])
    expected = secret.encode()
    return any(c and hmac.compare_digest(c.encode(), expected) for c in candidates)


def _parse_datetime(name, default):
    raw = request.args.get(name)
    if not raw:
        return default
    value = datetime.fromisoformat(raw)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _request_ids():
    raw = request.args.get("request_ids")
    if not raw:
        return None
    return [int(part) for part in raw.split(",") if part.strip()]


# ═════════════════════════════════════════════════════════════════════════════
# CRON
# ═════════════════════════════════════════════════════════════════════════════

@escalation_bp.route("/cron/escalation", methods=["GET", "POST"])
def cron_escalation():
    """Run the escalation sweep, then expire escalations of finished requests."""
    if not _cron_authorized():
        logger.warning("Rejected escalation cron call from %s", request.remote_addr)
        return api_error(E.UNAUTHORIZED, "Invalid or missing cron secret")

    sweep = SchedulerService.run_job("escalation_sweep")
    cleanup = SchedulerService.run_job("expire_stale_escalations")

    status_code = 500 if sweep.get("status") in ("failed", "error") else 200
    return jsonify({"sweep": sweep, "cleanup": cleanup}), status_code


# ═════════════════════════════════════════════════════════════════════════════
# REPORTING
# ═════════════════════════════════════════════════════════════════════════════

@escalation_bp.route("/escalations/stats", methods=["GET"])
def escalation_stats():
    """Escalation statistics; defaults to the last 30 days."""
    now = datetime.now(timezone.utc)
    try:
        start = _parse_datetime("start", now - timedelta(days=30))
        end = _parse_datetime("end", now)
        request_ids = _request_ids()
    except ValueError:
        return api_error(E.VALIDATION_INVALID, "start/end must be ISO-8601 and request_ids integers")
    if start > end:
        return api_error(E.VALIDATION_INVALID, "start must not be after end")

    engine = build_escalation_engine()
    stats = engine.get_escalation_stats(start, end, request_ids=request_ids)
    stats["start"] = start.isoformat()
    stats["end"] = end.isoformat()
    return jsonify(stats)


@escalation_bp.route("/escalations/unresolved", methods=["GET"])
def unresolved_escalations():
    try:
        request_ids = _request_ids()
    except ValueError:
        return api_error(E.VALIDATION_INVALID, "request_ids must be integers")
    records = build_escalation_engine().get_unresolved_escalations(request_ids)
    return jsonify({"items": [r.to_dict() for r in records], "total": len(records)})


# ═════════════════════════════════════════════════════════════════════════════
# JOBS
# ═════════════════════════════════════════════════════════════════════════════

@escalation_bp.route("/jobs", methods=["GET"])
def list_jobs():
    return jsonify(SchedulerService.list_jobs())


@escalation_bp.route("/jobs/<name>/run", methods=["POST"])
def run_job(name):
    if not _cron_authorized():
        return api_error(E.UNAUTHORIZED, "Invalid or missing cron secret")
    if name not in get_registered_jobs():
        return api_error(E.NOT_FOUND, f"Unknown job: {name}")
    return jsonify(SchedulerService.run_job(name))


@escalation_bp.route("/jobs/<name>", methods=["PUT"])
def toggle_job(name):
    """Body: { enabled: bool }"""
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict) or not isinstance(data.get("enabled"), bool):
        return api_error(E.VALIDATION_REQUIRED, "enabled (boolean) is required")
    SchedulerService.ensure_jobs_registered()
    record = SchedulerService.toggle_job(name, data["enabled"])
    if record is None:
        return api_error(E.NOT_FOUND, f"Unknown job: {name}")
    return jsonify(record)
