"""
Clinical Privilege Approvals
Escalation Engine.

Time-threshold escalation for approvals that sit unanswered:

    hours pending  ≥ reminder  → REMINDER  (to the approver)
                   ≥ manager   → MANAGER   (to the approver's line manager)
                   ≥ hr        → HR        (to the first configured HR contact)

Every (request, approver, level) triple is notified at most once while its
record is unresolved. A record is written only after the dispatcher
reports success, so a failed send is retried naturally by the next sweep.
A missing manager or HR contact skips the approval for this sweep; it is
logged and never stops the sweep.

Collaborators (store, dispatcher, pending source, manager lookup, HR
contacts, clock) are injected; ``build_escalation_engine`` wires the
database-backed defaults from the Flask config.

Usage:
    from privileges.services.escalation import build_escalation_engine

    engine = build_escalation_engine()
    result = engine.process_all_escalations()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Mapping

from flask import current_app

from privileges.models.escalation import EscalationLevel, EscalationResolution
from privileges.models.privilege import User
from privileges.services.directory import SqlApprovalDirectory
from privileges.services.escalation_store import EscalationStore, SqlEscalationStore, as_utc
from privileges.services.notification import (
    InAppNotificationDispatcher,
    NotificationDispatcher,
    NotificationType,
)
from privileges.services.pending_approvals import PendingApprovalView, list_pending_approvals

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
#  Thresholds & classification
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class EscalationThresholds:
    reminder_hours: int = 24
    manager_hours: int = 48
    hr_hours: int = 72

    def __post_init__(self):
        if not 0 <= self.reminder_hours < self.manager_hours < self.hr_hours:
            raise ValueError(
                "Escalation thresholds must be strictly increasing: "
                f"reminder={self.reminder_hours} manager={self.manager_hours} hr={self.hr_hours}"
            )

    @classmethod
    def from_config(cls, config: Mapping) -> "EscalationThresholds":
        return cls(
            reminder_hours=int(config.get("ESCALATION_REMINDER_HOURS", 24)),
            manager_hours=int(config.get("ESCALATION_MANAGER_HOURS", 48)),
            hr_hours=int(config.get("ESCALATION_HR_HOURS", 72)),
        )

    def to_dict(self) -> dict:
        return {
            "reminder_hours": self.reminder_hours,
            "manager_hours": self.manager_hours,
            "hr_hours": self.hr_hours,
        }


DEFAULT_THRESHOLDS = EscalationThresholds()

_NOTIFICATION_TYPES = {
    EscalationLevel.REMINDER: NotificationType.ESCALATION_REMINDER,
    EscalationLevel.MANAGER: NotificationType.ESCALATION_MANAGER,
    EscalationLevel.HR: NotificationType.ESCALATION_HR,
}


def hours_pending(pending_since: datetime, now: datetime | None = None) -> int:
    """Whole hours elapsed since ``pending_since``. Naive datetimes are UTC."""
    now = as_utc(now) if now is not None else _utcnow()
    return int((now - as_utc(pending_since)).total_seconds() // 3600)


def determine_level(
    hours: int, thresholds: EscalationThresholds = DEFAULT_THRESHOLDS,
) -> EscalationLevel:
    if hours >= thresholds.hr_hours:
        return EscalationLevel.HR
    if hours >= thresholds.manager_hours:
        return EscalationLevel.MANAGER
    if hours >= thresholds.reminder_hours:
        return EscalationLevel.REMINDER
    return EscalationLevel.NONE


# ═══════════════════════════════════════════════════════════════════════════
#  Result types
# ═══════════════════════════════════════════════════════════════════════════


@dataclass
class EscalationOutcome:
    escalated: bool
    level: EscalationLevel
    error: str | None = None
    recipient_id: int | None = None
    # recipient unavailable; not retried until the next sweep
    skipped: bool = False

    def to_dict(self) -> dict:
        return {
            "escalated": self.escalated,
            "level": self.level.name,
            "error": self.error,
            "recipient_id": self.recipient_id,
            "skipped": self.skipped,
        }


@dataclass
class SweepResult:
    processed: int = 0
    escalated: int = 0
    errors: int = 0
    skipped: int = 0
    details: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "escalated": self.escalated,
            "errors": self.errors,
            "skipped": self.skipped,
            "details": list(self.details),
        }


# ═══════════════════════════════════════════════════════════════════════════
#  Engine
# ═══════════════════════════════════════════════════════════════════════════


class EscalationEngine:
    """Classifies pending approvals and dispatches deduplicated escalations."""

    def __init__(
        self,
        store: EscalationStore,
        dispatcher: NotificationDispatcher,
        *,
        pending_source: Callable[[], Iterable[PendingApprovalView]],
        manager_lookup: Callable[[int], User | None],
        hr_contacts: Callable[[], list[User]],
        thresholds: EscalationThresholds = DEFAULT_THRESHOLDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.pending_source = pending_source
        self.manager_lookup = manager_lookup
        self.hr_contacts = hr_contacts
        self.thresholds = thresholds
        self.clock = clock

    # ── Processing ────────────────────────────────────────────────────────

    def _select_recipient(self, level, pending):
        if level == EscalationLevel.REMINDER:
            return pending.approver, None
        if level == EscalationLevel.MANAGER:
            manager = self.manager_lookup(pending.approver_id)
            if manager is None:
                return None, "No manager found"
            return manager, None
        contacts = self.hr_contacts()
        if not contacts:
            return None, "No HR contacts found"
        return contacts[0], None

    def process_escalation(self, pending: PendingApprovalView) -> EscalationOutcome:
        now = self.clock()
        hours = hours_pending(pending.pending_since, now)
        level = determine_level(hours, self.thresholds)
        if level == EscalationLevel.NONE:
            return EscalationOutcome(escalated=False, level=level)

        if self.store.has_unresolved(pending.request_id, pending.approver_id, level):
            return EscalationOutcome(escalated=False, level=level)

        recipient, missing = self._select_recipient(level, pending)
        if recipient is None:
            logger.warning(
                "%s; skipping %s escalation for request %s approver %s",
                missing, level.name, pending.request_id, pending.approver_id,
                extra={"request_id": pending.request_id, "approver_id": pending.approver_id,
                       "level": level.name, "event_type": "escalation_skipped"},
            )
            return EscalationOutcome(escalated=False, level=level, error=missing, skipped=True)

        info = {
            "level": level.name,
            "original_approver": {
                "id": pending.approver.id,
                "email": pending.approver.email,
                "name_en": pending.approver.name_en,
            },
            "escalated_to": {
                "id": recipient.id,
                "email": recipient.email,
                "name_en": recipient.name_en,
            },
            "hours_pending": hours,
            "previous_reminders": self.store.count_reminders(pending.request_id, pending.approver_id),
            "escalated_at": as_utc(now).isoformat(),
        }

        try:
            result = self.dispatcher.send(_NOTIFICATION_TYPES[level], pending.request, recipient, info)
        except Exception as exc:
            logger.error(
                "Dispatcher raised for %s escalation of request %s: %s",
                level.name, pending.request_id, exc,
                extra={"request_id": pending.request_id, "approver_id": pending.approver_id,
                       "recipient_id": recipient.id, "level": level.name},
            )
            return EscalationOutcome(escalated=False, level=level, error=str(exc), recipient_id=recipient.id)

        if not result.success:
            logger.error(
                "Failed to send %s escalation for request %s: %s",
                level.name, pending.request_id, result.error,
                extra={"request_id": pending.request_id, "approver_id": pending.approver_id,
                       "recipient_id": recipient.id, "level": level.name},
            )
            return EscalationOutcome(
                escalated=False, level=level, error=result.error or "Dispatch failed",
                recipient_id=recipient.id,
            )

        record = self.store.create(pending.request_id, pending.approver_id, level, recipient.id, now)
        if record is None:
            return EscalationOutcome(escalated=False, level=level, recipient_id=recipient.id)

        logger.info(
            "Escalation %s sent for request %s (approver %s → user %s, %dh pending)",
            level.name, pending.request_id, pending.approver_id, recipient.id, hours,
            extra={"request_id": pending.request_id, "approver_id": pending.approver_id,
                   "recipient_id": recipient.id, "level": level.name, "event_type": "escalation_sent"},
        )
        return EscalationOutcome(escalated=True, level=level, recipient_id=recipient.id)

    def process_all_escalations(self) -> SweepResult:
        """One sweep over every pending approval, sequentially."""
        result = SweepResult()
        pendings = list(self.pending_source())
        logger.info("Processing %d pending approvals", len(pendings))

        for pending in pendings:
            result.processed += 1
            try:
                outcome = self.process_escalation(pending)
            except Exception as exc:
                logger.exception(
                    "Escalation failed for request %s approver %s",
                    pending.request_id, pending.approver_id,
                    extra={"request_id": pending.request_id, "approver_id": pending.approver_id},
                )
                result.errors += 1
                result.details.append({
                    "request_id": pending.request_id,
                    "approver_id": pending.approver_id,
                    "level": None,
                    "success": False,
                    "error": str(exc),
                })
                continue

            if outcome.escalated:
                result.escalated += 1
            if outcome.skipped:
                result.skipped += 1
            elif outcome.error:
                result.errors += 1
            if outcome.level != EscalationLevel.NONE:
                result.details.append({
                    "request_id": pending.request_id,
                    "approver_id": pending.approver_id,
                    "level": outcome.level.name,
                    "success": outcome.escalated,
                    "error": outcome.error,
                })

        logger.info(
            "Escalation sweep complete. Processed: %d, Escalated: %d, Errors: %d, Skipped: %d",
            result.processed, result.escalated, result.errors, result.skipped,
        )
        return result

    # ── Resolution ────────────────────────────────────────────────────────

    def mark_resolved(self, request_id: int, approver_id: int, resolution) -> int:
        """Resolve the latest unresolved record for (request, approver)."""
        count = self.store.resolve_latest(
            request_id, approver_id, EscalationResolution(resolution), self.clock(),
        )
        self.store.commit()
        return count

    def mark_all_resolved(self, request_id: int, resolution) -> int:
        count = self.store.resolve_all(request_id, EscalationResolution(resolution), self.clock())
        self.store.commit()
        if count:
            logger.info(
                "Resolved %d escalation(s) for request %s as %s", count, request_id,
                EscalationResolution(resolution).value,
                extra={"request_id": request_id, "event_type": "escalations_resolved"},
            )
        return count

    # ── Reporting ─────────────────────────────────────────────────────────

    def get_escalation_stats(
        self, start: datetime, end: datetime, request_ids: Iterable[int] | None = None,
    ) -> dict:
        """Counts by level, resolution totals and mean resolution latency.

        Computed by scanning the records created within [start, end].
        """
        records = self.store.list_all(start=start, end=end, request_ids=request_ids)
        by_level = {level.name: 0 for level in EscalationLevel}
        resolved = 0
        total_seconds = 0.0
        for record in records:
            by_level[EscalationLevel(record.level).name] += 1
            if record.resolved_at is not None:
                resolved += 1
                total_seconds += (as_utc(record.resolved_at) - as_utc(record.created_at)).total_seconds()

        average = total_seconds / resolved / 3600 if resolved else 0
        return {
            "total_escalations": len(records),
            "by_level": by_level,
            "resolved": resolved,
            "unresolved": len(records) - resolved,
            "average_resolution_time_hours": round(average, 2),
        }

    def get_unresolved_escalations(self, request_ids: Iterable[int] | None = None):
        return self.store.list_unresolved(request_ids)


# ═══════════════════════════════════════════════════════════════════════════
#  Wiring
# ═══════════════════════════════════════════════════════════════════════════


def parse_hr_contacts(raw) -> list[str]:
    if not raw:
        return []
    if isinstance(raw, str):
        raw = raw.split(",")
    return [email.strip() for email in raw if email and email.strip()]


def build_escalation_engine(
    app_config: Mapping | None = None,
    *,
    store: EscalationStore | None = None,
    dispatcher: NotificationDispatcher | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> EscalationEngine:
    """Engine on the application database, configured from ``app_config``.

    Must be called inside an app context when ``app_config`` is omitted.
    """
    cfg = app_config if app_config is not None else current_app.config
    directory = SqlApprovalDirectory()
    emails = parse_hr_contacts(cfg.get("ESCALATION_HR_CONTACTS"))

    def hr_contacts():
        users = (directory.get_user_by_email(email) for email in emails)
        return [u for u in users if u is not None and u.is_active]

    return EscalationEngine(
        store or SqlEscalationStore(),
        dispatcher or InAppNotificationDispatcher(),
        pending_source=lambda: list_pending_approvals(directory=directory),
        manager_lookup=directory.get_manager,
        hr_contacts=hr_contacts,
        thresholds=EscalationThresholds.from_config(cfg),
        clock=clock,
    )
