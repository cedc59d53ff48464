"""
Clinical Privilege Approvals
Scheduled Jobs.

Jobs:
    - escalation_sweep: Reminder / manager / HR escalations for overdue approvals
    - expire_stale_escalations: Closes open escalations of finished requests

Pausing is handled by ``SchedulerService.run_job``; the jobs only check
their own feature switches.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select

from privileges.models import db
from privileges.models.escalation import EscalationRecord, EscalationResolution
from privileges.models.privilege import OPEN_STATUSES, PrivilegeRequest
from privileges.services.escalation import build_escalation_engine
from privileges.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Escalation Sweep
# ═══════════════════════════════════════════════════════════════════════════

@register_job("escalation_sweep", interval_config_key="ESCALATION_INTERVAL_MINUTES")
def escalation_sweep(app) -> dict[str, Any]:
    """Send reminder / manager / HR escalations for overdue approvals."""
    if not app.config.get("ESCALATION_ENABLED", True):
        logger.info("Escalation is disabled; sweep skipped", extra={"job_name": "escalation_sweep"})
        return {"skipped": True, "message": "Escalation is disabled", "processed": 0}

    result = build_escalation_engine(app.config).process_all_escalations()
    return result.to_dict()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Expire Stale Escalations
# ═══════════════════════════════════════════════════════════════════════════

@register_job("expire_stale_escalations", interval_minutes=24 * 60)
def expire_stale_escalations(app) -> dict[str, Any]:
    """Resolve open escalations whose request is no longer awaiting approval."""
    stmt = (
        select(EscalationRecord)
        .join(PrivilegeRequest, PrivilegeRequest.id == EscalationRecord.request_id)
        .where(
            EscalationRecord.resolved_at.is_(None),
            PrivilegeRequest.status.notin_([s.value for s in OPEN_STATUSES]),
        )
    )
    now = datetime.now(timezone.utc)
    expired = sum(
        1 for record in db.session.execute(stmt).scalars()
        if record.resolve(EscalationResolution.EXPIRED, now)
    )
    db.session.commit()

    if expired:
        logger.info("Expired %d stale escalation(s)", expired,
                    extra={"job_name": "expire_stale_escalations"})
    return {"expired": expired}
