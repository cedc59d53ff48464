"""
Clinical Privilege Approvals
Notification domain model.

Models:
    - Notification: in-app notification record
"""

from datetime import datetime, timezone

from privileges.models import db


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event. ``payload`` carries the structured
    escalation / approval info handed to the dispatcher; turning it into
    email or HTML is left to the delivery layer.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    notification_type = db.Column(db.String(40), nullable=False,
                                  comment="APPROVAL_REQUIRED | ESCALATION_REMINDER | ...")
    request_id = db.Column(
        db.Integer, db.ForeignKey("privilege_requests.id", ondelete="CASCADE"),
        nullable=True, index=True,
    )
    title = db.Column(db.String(300), nullable=False)
    payload = db.Column(db.JSON, default=dict)

    # Maintained by the delivery layer
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "recipient_id": self.recipient_id,
            "notification_type": self.notification_type,
            "request_id": self.request_id,
            "title": self.title,
            "payload": self.payload or {},
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
