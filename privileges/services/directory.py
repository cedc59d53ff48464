"""
Clinical Privilege Approvals
Approval Directory — data access for the approval engine.

``ApprovalDirectory`` is the contract the progress tracker, authorization
guard and transition processor are written against. ``SqlApprovalDirectory``
implements it on the Flask-SQLAlchemy models; tests and other processes can
inject a different implementation.

All reads use SQLAlchemy 2.0 ``select()``. The approval-record upsert is the
atomic write boundary for a (request, approver, level) key: the existing row
is locked with ``SELECT ... FOR UPDATE`` (a no-op on SQLite) and a racing
insert surfaces as ``ConflictError`` through the unique constraint.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from privileges.core.exceptions import ConflictError
from privileges.models import db
from privileges.models.approval import ApprovalRecord, ApprovalStatus
from privileges.models.privilege import (
    OPEN_STATUSES,
    PractitionerType,
    PrivilegeRequest,
    RequestStatus,
    User,
    UserRole,
)

logger = logging.getLogger(__name__)


class ApprovalDirectory(Protocol):
    """Store/directory operations the approval engine depends on."""

    def get_request(self, request_id: int) -> PrivilegeRequest | None: ...

    def get_user(self, user_id: int) -> User | None: ...

    def get_user_by_email(self, email: str) -> User | None: ...

    def find_consultants(
        self, exclude_ids: Iterable[int], *, specialty: str | None = None, limit: int | None = None,
    ) -> list[User]: ...

    def find_committee_members(self, exclude_ids: Iterable[int]) -> list[User]: ...

    def find_medical_director(self, exclude_ids: Iterable[int]) -> User | None: ...

    def get_manager(self, user_id: int) -> User | None: ...

    def list_approval_records(self, request_id: int) -> list[ApprovalRecord]: ...

    def has_approved(self, request_id: int, user_id: int) -> bool: ...

    def upsert_approval_record(
        self, request_id: int, approver_id: int, level: str, status: str,
        comments: str | None, decided_at: datetime,
    ) -> ApprovalRecord: ...

    def set_request_status(
        self, request: PrivilegeRequest, status: RequestStatus, *, completed_at: datetime | None = None,
    ) -> None: ...

    def list_open_requests(self) -> list[PrivilegeRequest]: ...

    def commit(self) -> None: ...


class SqlApprovalDirectory:
    """``ApprovalDirectory`` backed by the application database."""

    # ── Reads ─────────────────────────────────────────────────────────────

    def get_request(self, request_id):
        return db.session.get(PrivilegeRequest, request_id)

    def get_user(self, user_id):
        if user_id is None:
            return None
        return db.session.get(User, user_id)

    def get_user_by_email(self, email):
        stmt = select(User).where(func.lower(User.email) == email.strip().lower())
        return db.session.execute(stmt).scalar_one_or_none()

    def find_consultants(self, exclude_ids, *, specialty=None, limit=None):
        """Capable consultants, specialty holders first, then by id."""
        excluded = set(exclude_ids)
        stmt = (
            select(User)
            .where(
                User.can_approve_privileges.is_(True),
                User.is_active.is_(True),
                User.practitioner_type == PractitionerType.CONSULTANT.value,
            )
            .order_by(User.id)
        )
        candidates = [u for u in db.session.execute(stmt).scalars() if u.id not in excluded]
        if specialty:
            # stable sort keeps id order within each group
            candidates.sort(key=lambda u: not u.has_specialty(specialty))
        if limit is not None:
            candidates = candidates[:max(limit, 0)]
        return candidates

    def find_committee_members(self, exclude_ids):
        excluded = set(exclude_ids)
        stmt = (
            select(User)
            .where(User.is_committee_member.is_(True), User.is_active.is_(True))
            .order_by(User.id)
        )
        return [u for u in db.session.execute(stmt).scalars() if u.id not in excluded]

    def find_medical_director(self, exclude_ids):
        excluded = set(exclude_ids)
        stmt = (
            select(User)
            .where(User.role == UserRole.MEDICAL_DIRECTOR.value, User.is_active.is_(True))
            .order_by(User.id)
        )
        for user in db.session.execute(stmt).scalars():
            if user.id not in excluded:
                return user
        return None

    def get_manager(self, user_id):
        user = self.get_user(user_id)
        if not user or not user.manager_id:
            return None
        manager = db.session.get(User, user.manager_id)
        if manager is None or not manager.is_active:
            return None
        return manager

    def list_approval_records(self, request_id):
        stmt = (
            select(ApprovalRecord)
            .where(ApprovalRecord.request_id == request_id)
            .order_by(ApprovalRecord.id)
        )
        return list(db.session.execute(stmt).scalars())

    def has_approved(self, request_id, user_id):
        stmt = select(ApprovalRecord.id).where(
            ApprovalRecord.request_id == request_id,
            ApprovalRecord.approver_id == user_id,
            ApprovalRecord.status == ApprovalStatus.APPROVED.value,
        )
        return db.session.execute(stmt).first() is not None

    def list_open_requests(self):
        stmt = (
            select(PrivilegeRequest)
            .where(PrivilegeRequest.status.in_([s.value for s in OPEN_STATUSES]))
            .order_by(PrivilegeRequest.submitted_at, PrivilegeRequest.id)
        )
        return list(db.session.execute(stmt).scalars())

    # ── Writes ────────────────────────────────────────────────────────────

    def upsert_approval_record(self, request_id, approver_id, level, status, comments, decided_at):
        """Create or update the decision row for (request, approver, level)."""
        stmt = (
            select(ApprovalRecord)
            .where(
                ApprovalRecord.request_id == request_id,
                ApprovalRecord.approver_id == approver_id,
                ApprovalRecord.level == level,
            )
            .with_for_update()
        )
        record = db.session.execute(stmt).scalar_one_or_none()
        if record is None:
            record = ApprovalRecord(
                request_id=request_id, approver_id=approver_id, level=level,
                approver=self.get_user(approver_id),
            )
            db.session.add(record)
        record.status = status
        record.comments = comments
        record.decided_at = decided_at
        try:
            db.session.flush()
        except IntegrityError as exc:
            db.session.rollback()
            logger.warning("Concurrent decision for request %s approver %s level %s",
                           request_id, approver_id, level)
            raise ConflictError(
                "ApprovalRecord", "request_id/approver_id/level",
                f"{request_id}/{approver_id}/{level}",
            ) from exc
        return record

    def set_request_status(self, request, status, *, completed_at=None):
        request.status = RequestStatus(status).value
        if completed_at is not None:
            request.completed_at = completed_at

    def commit(self):
        db.session.commit()
