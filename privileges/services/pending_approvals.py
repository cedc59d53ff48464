"""
Clinical Privilege Approvals
Pending-approval source for the escalation sweep.

Projects one ``PendingApprovalView`` per (open request, current pending
approver). ``pending_since`` is the later of the submission time and the
most recent decision on the request, so the escalation clock restarts
whenever the chain moves forward.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from privileges.models.privilege import PrivilegeRequest, User
from privileges.services.approval_progress import compute_progress
from privileges.services.directory import ApprovalDirectory, SqlApprovalDirectory
from privileges.services.escalation_store import as_utc
from privileges.services.rule_table import RuleTable

logger = logging.getLogger(__name__)


@dataclass
class PendingApprovalView:
    request_id: int
    request: PrivilegeRequest
    approver_id: int
    approver: User
    pending_since: datetime

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "approver_id": self.approver_id,
            "approver_email": self.approver.email,
            "pending_since": self.pending_since.isoformat(),
        }


def _pending_since(request, records):
    moments = [as_utc(request.submitted_at or request.created_at)]
    moments.extend(as_utc(r.decided_at) for r in records if r.decided_at is not None)
    return max(m for m in moments if m is not None)


def list_pending_approvals(
    *,
    directory: ApprovalDirectory | None = None,
    rule_table: RuleTable | None = None,
) -> list[PendingApprovalView]:
    directory = directory or SqlApprovalDirectory()
    table = rule_table if rule_table is not None else RuleTable.from_db()

    views = []
    for request in directory.list_open_requests():
        records = directory.list_approval_records(request.id)
        since = _pending_since(request, records)
        progress = compute_progress(request, directory=directory, rule_table=table)
        for pending in progress.pending_approvers:
            approver = pending.user if pending.user is not None else directory.get_user(pending.user_id)
            views.append(PendingApprovalView(
                request_id=request.id,
                request=request,
                approver_id=approver.id,
                approver=approver,
                pending_since=since,
            ))
    logger.debug("Pending approvals: %d across open requests", len(views))
    return views
