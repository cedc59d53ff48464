"""
Clinical Privilege Approvals
Notification Service.

The approval and escalation engines hand every outgoing message to a
``NotificationDispatcher``:

    send(notification_type, request, recipient, info) -> DispatchResult

``InAppNotificationDispatcher`` is the default implementation: it stores a
``Notification`` row with the structured ``info`` as payload. Rendering
bodies and delivering over email or push belong to a separate delivery
layer that reads those rows.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from privileges.models import db
from privileges.models.notification import Notification
from privileges.models.privilege import PrivilegeRequest, User

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    APPROVAL_PROGRESS = "APPROVAL_PROGRESS"
    APPROVAL_COMPLETE = "APPROVAL_COMPLETE"
    REJECTION = "REJECTION"
    MODIFICATIONS_REQUESTED = "MODIFICATIONS_REQUESTED"
    ESCALATION_REMINDER = "ESCALATION_REMINDER"
    ESCALATION_MANAGER = "ESCALATION_MANAGER"
    ESCALATION_HR = "ESCALATION_HR"


_TITLES = {
    NotificationType.APPROVAL_REQUIRED: "Approval required for privilege request #{id}",
    NotificationType.APPROVAL_PROGRESS: "Privilege request #{id} progressed",
    NotificationType.APPROVAL_COMPLETE: "Privilege request #{id} approved",
    NotificationType.REJECTION: "Privilege request #{id} rejected",
    NotificationType.MODIFICATIONS_REQUESTED: "Modifications requested on privilege request #{id}",
    NotificationType.ESCALATION_REMINDER: "Reminder: privilege request #{id} awaits your approval",
    NotificationType.ESCALATION_MANAGER: "Escalation: privilege request #{id} is overdue",
    NotificationType.ESCALATION_HR: "HR escalation: privilege request #{id} is overdue",
}


@dataclass
class DispatchResult:
    success: bool
    error: str | None = None


class NotificationDispatcher(Protocol):
    def send(
        self,
        notification_type: NotificationType,
        request: PrivilegeRequest,
        recipient: User,
        info: dict,
    ) -> DispatchResult: ...


class InAppNotificationDispatcher:
    """Record each dispatched message as an in-app ``Notification`` row.

    The row is flushed, not committed; the caller's unit of work (for
    escalations, the record store) commits it together with its own write.
    """

    def send(self, notification_type, request, recipient, info):
        notification_type = NotificationType(notification_type)
        try:
            notif = Notification(
                recipient_id=recipient.id,
                notification_type=notification_type.value,
                request_id=request.id,
                title=_TITLES[notification_type].format(id=request.id),
                payload=info,
            )
            db.session.add(notif)
            db.session.flush()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error(
                "In-app notification %s for request %s failed: %s",
                notification_type.value, request.id, exc,
                extra={"request_id": request.id, "recipient_id": recipient.id},
            )
            return DispatchResult(success=False, error=str(exc))
        return DispatchResult(success=True)
