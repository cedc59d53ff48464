"""
Approval Blueprint.

Routes:
  GET    /api/v1/requests/<rid>/approval   – progress, requirement, can-approve
  POST   /api/v1/requests/<rid>/approval   – record APPROVED / REJECTED
  POST   /api/v1/requests/<rid>/submit     – submit a draft (auto-approval runs here)

The acting user is taken from the ``X-User-Id`` header; authentication is
handled upstream.
"""

import logging

from flask import Blueprint, jsonify, request

from privileges.core.exceptions import NotFoundError
from privileges.models import db
from privileges.models.privilege import PrivilegeRequest
from privileges.services.approval_progress import compute_progress
from privileges.services.approval_service import can_approve, record_decision, submit_request
from privileges.services.rule_table import RuleTable
from privileges.utils.errors import E, api_error

logger = logging.getLogger(__name__)

approval_bp = Blueprint("approval_bp", __name__, url_prefix="/api/v1")


# ── helpers ──────────────────────────────────────────────────────────────

def _acting_user_id():
    raw = request.headers.get("X-User-Id", "").strip()
    try:
        return int(raw) if raw else None
    except ValueError:
        return None


def _get_request_or_404(request_id):
    req = db.session.get(PrivilegeRequest, request_id)
    if req is None:
        raise NotFoundError(resource="PrivilegeRequest", resource_id=request_id)
    return req


# ═════════════════════════════════════════════════════════════════════════════
# APPROVAL STATUS & DECISIONS
# ═════════════════════════════════════════════════════════════════════════════

@approval_bp.route("/requests/<int:rid>/approval", methods=["GET"])
def approval_status(rid):
    """Approval progress for a request, plus whether the caller may act now."""
    req = _get_request_or_404(rid)
    table = RuleTable.from_db()
    progress = compute_progress(req, rule_table=table)

    body = {
        "request": req.to_dict(),
        "requirement": progress.requirement.to_dict(),
        "same_specialty": progress.requirement.same_specialty,
        "progress": progress.to_dict(),
        "can_approve": None,
    }
    user_id = _acting_user_id()
    if user_id is not None:
        body["can_approve"] = can_approve(user_id, rid, rule_table=table).to_dict()
    return jsonify(body)


@approval_bp.route("/requests/<int:rid>/approval", methods=["POST"])
def decide(rid):
    """Record a decision.

    Body: { status: "APPROVED" | "REJECTED", comments?: str }
    """
    user_id = _acting_user_id()
    if user_id is None:
        return api_error(E.UNAUTHORIZED, "X-User-Id header is required")
    _get_request_or_404(rid)

    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return api_error(E.VALIDATION_REQUIRED, "Request body must be a JSON object")
    status = data.get("status")
    if not isinstance(status, str) or not status.strip():
        return api_error(E.VALIDATION_REQUIRED, "status (string) is required")
    status = status.strip()
    comments = data.get("comments")
    if comments is not None and not isinstance(comments, str):
        return api_error(E.VALIDATION_INVALID, "comments must be a string")

    result = record_decision(rid, user_id, status, comments=comments)
    if not result.success:
        return api_error(E.FORBIDDEN, result.message, details={"status": result.new_status})
    return jsonify(result.to_dict())


@approval_bp.route("/requests/<int:rid>/submit", methods=["POST"])
def submit(rid):
    """Submit a draft request for approval."""
    user_id = _acting_user_id()
    if user_id is None:
        return api_error(E.UNAUTHORIZED, "X-User-Id header is required")

    result = submit_request(rid, user_id)
    if not result.success:
        return api_error(E.FORBIDDEN, result.message)
    return jsonify(result.to_dict())
