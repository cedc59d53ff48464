"""
Clinical Privilege Approvals
Escalation record model.

Append-mostly log of escalation notifications sent for pending approvals.
A record is created only after the notification was dispatched successfully
and is later closed by setting ``resolved_at`` + ``resolution``; it is never
deleted.
"""

from datetime import datetime, timezone
from enum import Enum, IntEnum

from privileges.models import db


class EscalationLevel(IntEnum):
    """Severity rung, ordered: NONE < REMINDER < MANAGER < HR."""

    NONE = 0
    REMINDER = 1
    MANAGER = 2
    HR = 3


class EscalationResolution(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DELEGATED = "DELEGATED"
    EXPIRED = "EXPIRED"


class EscalationRecord(db.Model):
    """
    One escalation notification for (request, approver, level).

    Business rules:
    - At most one unresolved record per (request_id, approver_id, level);
      enforced by the partial unique index below so concurrent sweeps
      cannot double-notify.
    - Resolving an already-resolved record is a no-op.
    """

    __tablename__ = "escalation_records"
    __table_args__ = (
        db.Index(
            "uq_escalation_open_triple",
            "request_id", "approver_id", "level",
            unique=True,
            sqlite_where=db.text("resolved_at IS NULL"),
            postgresql_where=db.text("resolved_at IS NULL"),
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("privilege_requests.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    approver_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    level = db.Column(db.Integer, nullable=False, comment="1=REMINDER | 2=MANAGER | 3=HR")
    recipient_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="Who was actually notified (approver, manager or HR contact)",
    )

    created_at = db.Column(db.DateTime(timezone=True), nullable=False,
                           default=lambda: datetime.now(timezone.utc))
    notified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    resolution = db.Column(db.String(20), nullable=True,
                           comment="APPROVED | REJECTED | DELEGATED | EXPIRED")

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def resolve(self, resolution, at=None):
        if self.resolved_at is not None:
            return False
        self.resolved_at = at or datetime.now(timezone.utc)
        self.resolution = EscalationResolution(resolution).value
        return True

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "approver_id": self.approver_id,
            "level": EscalationLevel(self.level).name,
            "recipient_id": self.recipient_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "notified_at": self.notified_at.isoformat() if self.notified_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolution": self.resolution,
        }

    def __repr__(self):
        return f"<EscalationRecord req={self.request_id} approver={self.approver_id} L{self.level}>"
