"""
Clinical Privilege Approvals
Approval Service — authorization guard, decisions, auto-approval, submission.

This module is the only place that changes a request's status:

    submit_request     DRAFT / MODIFICATIONS_REQUIRED → PENDING (→ APPROVED if auto)
    try_auto_approve   PENDING → APPROVED for auto-approvable CORE requests
    record_decision    PENDING / IN_REVIEW → IN_REVIEW | APPROVED | REJECTED

Authorization is recomputed on every decision; a denial is returned as a
result object with a readable reason and never mutates anything.

Usage:
    from privileges.services.approval_service import can_approve, record_decision

    auth = can_approve(user_id, request_id)
    result = record_decision(request_id, user_id, "APPROVED", comments="ok")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from privileges.core.exceptions import NotFoundError, ValidationError
from privileges.models.approval import ApprovalLevel, ApprovalStatus
from privileges.models.escalation import EscalationResolution
from privileges.models.privilege import (
    OPEN_STATUSES,
    SUBMITTABLE_STATUSES,
    PrivilegeType,
    RequestStatus,
    UserRole,
)
from privileges.services.approval_progress import ApprovalProgress, compute_progress
from privileges.services.directory import ApprovalDirectory, SqlApprovalDirectory
from privileges.services.escalation_store import EscalationStore, SqlEscalationStore
from privileges.services.requirement_resolver import lookup_requirement
from privileges.services.rule_table import RuleTable

logger = logging.getLogger(__name__)

DECISIONS = (ApprovalStatus.APPROVED, ApprovalStatus.REJECTED)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
#  Result types
# ═══════════════════════════════════════════════════════════════════════════


@dataclass
class AuthorizationResult:
    allowed: bool
    reason: str | None = None
    level: ApprovalLevel | None = None

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "level": self.level.value if self.level else None,
        }


@dataclass
class DecisionResult:
    success: bool
    new_status: str | None
    message: str

    def to_dict(self) -> dict:
        return {"success": self.success, "new_status": self.new_status, "message": self.message}


@dataclass
class AutoApprovalResult:
    auto_approved: bool
    reason: str | None = None

    def to_dict(self) -> dict:
        return {"auto_approved": self.auto_approved, "reason": self.reason}


@dataclass
class SubmissionResult:
    success: bool
    message: str
    request: dict | None = None
    auto_approval: AutoApprovalResult | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "request": self.request,
            "auto_approval": self.auto_approval.to_dict() if self.auto_approval else None,
        }


# ═══════════════════════════════════════════════════════════════════════════
#  Authorization Guard
# ═══════════════════════════════════════════════════════════════════════════


def _deny(reason: str) -> AuthorizationResult:
    return AuthorizationResult(allowed=False, reason=reason)


def can_approve(
    user_id: int,
    request_id: int,
    *,
    directory: ApprovalDirectory | None = None,
    rule_table: RuleTable | None = None,
) -> AuthorizationResult:
    """May ``user_id`` record a decision on ``request_id`` right now?

    Checks run in a fixed order and the first failing one supplies the
    reason. A Medical Director may act whenever director approval has not
    been recorded yet; everyone else must be a current pending approver.
    """
    directory = directory or SqlApprovalDirectory()

    user = directory.get_user(user_id)
    if user is None:
        return _deny("User not found")

    request = directory.get_request(request_id)
    if request is None:
        return _deny("Request not found")

    if request.applicant_id == user.id:
        return _deny("Cannot approve own request")

    if not user.can_approve_privileges:
        return _deny("User does not have approval privileges")

    if request.status not in OPEN_STATUSES:
        return _deny("Request is not awaiting approval")

    if directory.has_approved(request.id, user.id):
        return _deny("Already approved this request")

    progress = compute_progress(request, directory=directory, rule_table=rule_table)

    if user.role == UserRole.MEDICAL_DIRECTOR and not progress.medical_director_approved:
        return AuthorizationResult(allowed=True, level=ApprovalLevel.MEDICAL_DIRECTOR)

    level = progress.pending_level_for(user.id)
    if level is not None:
        return AuthorizationResult(allowed=True, level=level)

    return _deny("Your approval is not currently required for this request")


# ═══════════════════════════════════════════════════════════════════════════
#  Transition Processor
# ═══════════════════════════════════════════════════════════════════════════


def _parse_decision(decision) -> ApprovalStatus:
    try:
        parsed = ApprovalStatus(str(decision).upper())
    except ValueError:
        parsed = None
    if parsed not in DECISIONS:
        raise ValidationError(
            "decision must be APPROVED or REJECTED",
            details={"decision": decision},
        )
    return parsed


def progress_message(progress: ApprovalProgress) -> str:
    """Message for a recorded approval that did not complete the request."""
    remaining = progress.remaining_consultants
    if remaining:
        noun = "approval" if remaining == 1 else "approvals"
        return f"Approval recorded. {remaining} more consultant {noun} needed."
    if not progress.committee_complete:
        return "Approval recorded. Committee approval needed."
    return "Approval recorded. Medical Director approval needed."


def record_decision(
    request_id: int,
    approver_id: int,
    decision: ApprovalStatus | str,
    comments: str | None = None,
    *,
    directory: ApprovalDirectory | None = None,
    rule_table: RuleTable | None = None,
    escalation_store: EscalationStore | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> DecisionResult:
    """Record an approver's decision and advance the request status.

    Raises:
        ValidationError: ``decision`` is not APPROVED or REJECTED.
        ConflictError: A concurrent decision for the same key won the insert.
    """
    decision = _parse_decision(decision)
    directory = directory or SqlApprovalDirectory()
    table = rule_table if rule_table is not None else RuleTable.from_db()
    store = escalation_store or SqlEscalationStore()

    auth = can_approve(approver_id, request_id, directory=directory, rule_table=table)
    if not auth.allowed:
        request = directory.get_request(request_id)
        logger.info(
            "Decision denied for request %s by user %s: %s", request_id, approver_id, auth.reason,
            extra={"request_id": request_id, "approver_id": approver_id, "event_type": "decision_denied"},
        )
        return DecisionResult(
            success=False,
            new_status=request.status if request is not None else None,
            message=auth.reason,
        )

    request = directory.get_request(request_id)
    now = clock()
    directory.upsert_approval_record(
        request.id, approver_id, auth.level.value, decision.value, comments, now,
    )

    if decision == ApprovalStatus.REJECTED:
        directory.set_request_status(request, RequestStatus.REJECTED, completed_at=now)
        store.resolve_all(request.id, EscalationResolution.REJECTED, now)
        directory.commit()
        logger.info(
            "Request %s rejected by user %s", request.id, approver_id,
            extra={"request_id": request.id, "approver_id": approver_id, "event_type": "request_rejected"},
        )
        return DecisionResult(success=True, new_status=RequestStatus.REJECTED.value,
                              message="Request rejected")

    progress = compute_progress(request, directory=directory, rule_table=table)

    if progress.is_complete:
        directory.set_request_status(request, RequestStatus.APPROVED, completed_at=now)
        store.resolve_all(request.id, EscalationResolution.APPROVED, now)
        directory.commit()
        logger.info(
            "Request %s fully approved", request.id,
            extra={"request_id": request.id, "approver_id": approver_id, "event_type": "request_approved"},
        )
        return DecisionResult(success=True, new_status=RequestStatus.APPROVED.value,
                              message="Request fully approved")

    directory.set_request_status(request, RequestStatus.IN_REVIEW)
    store.resolve_all(request.id, EscalationResolution.APPROVED, now, approver_id=approver_id)
    directory.commit()
    logger.info(
        "Approval recorded on request %s by user %s at %s", request.id, approver_id, auth.level.value,
        extra={"request_id": request.id, "approver_id": approver_id, "level": auth.level.value,
               "event_type": "approval_recorded"},
    )
    return DecisionResult(success=True, new_status=RequestStatus.IN_REVIEW.value,
                          message=progress_message(progress))


# ═══════════════════════════════════════════════════════════════════════════
#  Auto-Approval Rule
# ═══════════════════════════════════════════════════════════════════════════


def try_auto_approve(
    request_id: int,
    *,
    directory: ApprovalDirectory | None = None,
    rule_table: RuleTable | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> AutoApprovalResult:
    """Approve a freshly submitted CORE request without an approval chain.

    Core privileges are always treated as same-specialty. No approval
    records are written.
    """
    directory = directory or SqlApprovalDirectory()

    request = directory.get_request(request_id)
    if request is None:
        return AutoApprovalResult(False, "Request not found")

    if request.request_type != PrivilegeType.CORE:
        return AutoApprovalResult(False, "Only core privileges can be auto-approved")

    if request.status != RequestStatus.PENDING:
        return AutoApprovalResult(False, "Request is not awaiting approval")

    requirement = lookup_requirement(
        request.applicant.practitioner_type, PrivilegeType.CORE, True, rule_table=rule_table,
    )
    if not requirement.auto_approve:
        return AutoApprovalResult(False, "Auto-approval not enabled for this configuration")

    directory.set_request_status(request, RequestStatus.APPROVED, completed_at=clock())
    directory.commit()
    logger.info(
        "Request %s auto-approved", request.id,
        extra={"request_id": request.id, "event_type": "request_auto_approved"},
    )
    return AutoApprovalResult(True)


# ═══════════════════════════════════════════════════════════════════════════
#  Submission
# ═══════════════════════════════════════════════════════════════════════════


def submit_request(
    request_id: int,
    user_id: int,
    *,
    directory: ApprovalDirectory | None = None,
    rule_table: RuleTable | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> SubmissionResult:
    """Move a draft into the approval chain and try the auto-approval path.

    Raises:
        NotFoundError: The request does not exist.
        ValidationError: The request is not submittable or has no privileges.
    """
    directory = directory or SqlApprovalDirectory()

    request = directory.get_request(request_id)
    if request is None:
        raise NotFoundError(resource="PrivilegeRequest", resource_id=request_id)

    if request.applicant_id != user_id:
        return SubmissionResult(False, "Only the applicant can submit this request")

    if request.status not in SUBMITTABLE_STATUSES:
        raise ValidationError(
            f"Request cannot be submitted from status {request.status}",
            details={"status": request.status},
        )
    if not request.requested_privileges:
        raise ValidationError("At least one privilege must be requested")

    request.submitted_at = clock()
    directory.set_request_status(request, RequestStatus.PENDING)
    directory.commit()
    logger.info(
        "Request %s submitted by user %s", request.id, user_id,
        extra={"request_id": request.id, "event_type": "request_submitted"},
    )

    auto = try_auto_approve(request.id, directory=directory, rule_table=rule_table, clock=clock)
    message = "Request approved automatically" if auto.auto_approved else "Request submitted"
    return SubmissionResult(True, message, request=request.to_dict(), auto_approval=auto)
