"""
Clinical Privilege Approvals
Escalation Record Store.

Persistence contract for ``EscalationRecord`` rows used by the escalation
engine and by the approval service when decisions close out escalations.

    SqlEscalationStore       — Flask-SQLAlchemy; the partial unique index
                               ``uq_escalation_open_triple`` makes ``create``
                               a compare-and-set per (request, approver, level)
    InMemoryEscalationStore  — records held per request id behind a lock;
                               used by tests and single-process tools

``create`` returns None instead of a record when an unresolved record for
the triple already exists, so two overlapping sweeps can never both notify.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Iterable, Protocol

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from privileges.models import db
from privileges.models.escalation import EscalationLevel, EscalationRecord, EscalationResolution

logger = logging.getLogger(__name__)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class EscalationStore(Protocol):
    def has_unresolved(self, request_id: int, approver_id: int, level: EscalationLevel) -> bool: ...

    def create(
        self, request_id: int, approver_id: int, level: EscalationLevel,
        recipient_id: int | None, at: datetime,
    ) -> EscalationRecord | None: ...

    def list_for_request(self, request_id: int) -> list[EscalationRecord]: ...

    def list_all(
        self, *, start: datetime | None = None, end: datetime | None = None,
        request_ids: Iterable[int] | None = None,
    ) -> list[EscalationRecord]: ...

    def list_unresolved(self, request_ids: Iterable[int] | None = None) -> list[EscalationRecord]: ...

    def resolve_latest(
        self, request_id: int, approver_id: int, resolution: EscalationResolution, at: datetime,
    ) -> int: ...

    def resolve_all(
        self, request_id: int, resolution: EscalationResolution, at: datetime,
        *, approver_id: int | None = None,
    ) -> int: ...

    def count_reminders(self, request_id: int, approver_id: int) -> int: ...

    def commit(self) -> None: ...


# ═══════════════════════════════════════════════════════════════════════════
#  SQL store
# ═══════════════════════════════════════════════════════════════════════════


class SqlEscalationStore:
    """``EscalationStore`` on the ``escalation_records`` table.

    ``create`` commits so a dispatched notification and its record land
    together; the resolve methods only flush and leave the commit to the
    caller's unit of work.
    """

    def has_unresolved(self, request_id, approver_id, level):
        stmt = select(EscalationRecord.id).where(
            EscalationRecord.request_id == request_id,
            EscalationRecord.approver_id == approver_id,
            EscalationRecord.level == int(level),
            EscalationRecord.resolved_at.is_(None),
        )
        return db.session.execute(stmt).first() is not None

    def create(self, request_id, approver_id, level, recipient_id, at):
        if self.has_unresolved(request_id, approver_id, level):
            return None
        record = EscalationRecord(
            request_id=request_id,
            approver_id=approver_id,
            level=int(level),
            recipient_id=recipient_id,
            created_at=at,
            notified_at=at,
        )
        db.session.add(record)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info(
                "Escalation already open for request %s approver %s level %s",
                request_id, approver_id, EscalationLevel(level).name,
                extra={"request_id": request_id, "approver_id": approver_id},
            )
            return None
        return record

    def list_for_request(self, request_id):
        stmt = (
            select(EscalationRecord)
            .where(EscalationRecord.request_id == request_id)
            .order_by(EscalationRecord.created_at, EscalationRecord.id)
        )
        return list(db.session.execute(stmt).scalars())

    def list_all(self, *, start=None, end=None, request_ids=None):
        stmt = select(EscalationRecord).order_by(EscalationRecord.created_at, EscalationRecord.id)
        if start is not None:
            stmt = stmt.where(EscalationRecord.created_at >= start)
        if end is not None:
            stmt = stmt.where(EscalationRecord.created_at <= end)
        if request_ids is not None:
            stmt = stmt.where(EscalationRecord.request_id.in_(list(request_ids)))
        return list(db.session.execute(stmt).scalars())

    def list_unresolved(self, request_ids=None):
        stmt = (
            select(EscalationRecord)
            .where(EscalationRecord.resolved_at.is_(None))
            .order_by(EscalationRecord.created_at, EscalationRecord.id)
        )
        if request_ids is not None:
            stmt = stmt.where(EscalationRecord.request_id.in_(list(request_ids)))
        return list(db.session.execute(stmt).scalars())

    def resolve_latest(self, request_id, approver_id, resolution, at):
        stmt = (
            select(EscalationRecord)
            .where(
                EscalationRecord.request_id == request_id,
                EscalationRecord.approver_id == approver_id,
                EscalationRecord.resolved_at.is_(None),
            )
            .order_by(EscalationRecord.created_at.desc(), EscalationRecord.id.desc())
            .limit(1)
        )
        record = db.session.execute(stmt).scalar_one_or_none()
        if record is None or not record.resolve(resolution, at):
            return 0
        db.session.flush()
        return 1

    def resolve_all(self, request_id, resolution, at, *, approver_id=None):
        stmt = select(EscalationRecord).where(
            EscalationRecord.request_id == request_id,
            EscalationRecord.resolved_at.is_(None),
        )
        if approver_id is not None:
            stmt = stmt.where(EscalationRecord.approver_id == approver_id)
        count = sum(1 for record in db.session.execute(stmt).scalars() if record.resolve(resolution, at))
        if count:
            db.session.flush()
        return count

    def count_reminders(self, request_id, approver_id):
        stmt = select(func.count(EscalationRecord.id)).where(
            EscalationRecord.request_id == request_id,
            EscalationRecord.approver_id == approver_id,
            EscalationRecord.level == int(EscalationLevel.REMINDER),
        )
        return db.session.execute(stmt).scalar() or 0

    def commit(self):
        db.session.commit()


# ═══════════════════════════════════════════════════════════════════════════
#  In-memory store
# ═══════════════════════════════════════════════════════════════════════════


class InMemoryEscalationStore:
    """Process-local ``EscalationStore``; records are transient ORM objects."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: dict[int, list[EscalationRecord]] = defaultdict(list)
        self._next_id = 1

    def _open(self, request_id, approver_id=None):
        return [
            r for r in self._records.get(request_id, [])
            if r.resolved_at is None and (approver_id is None or r.approver_id == approver_id)
        ]

    def has_unresolved(self, request_id, approver_id, level):
        with self._lock:
            return any(r.level == int(level) for r in self._open(request_id, approver_id))

    def create(self, request_id, approver_id, level, recipient_id, at):
        with self._lock:
            if any(r.level == int(level) for r in self._open(request_id, approver_id)):
                return None
            record = EscalationRecord(
                id=self._next_id,
                request_id=request_id,
                approver_id=approver_id,
                level=int(level),
                recipient_id=recipient_id,
                created_at=at,
                notified_at=at,
            )
            self._next_id += 1
            self._records[request_id].append(record)
            return record

    def list_for_request(self, request_id):
        with self._lock:
            return list(self._records.get(request_id, []))

    def list_all(self, *, start=None, end=None, request_ids=None):
        wanted = set(request_ids) if request_ids is not None else None
        with self._lock:
            records = [
                r for rid, bucket in self._records.items()
                if wanted is None or rid in wanted
                for r in bucket
            ]
        if start is not None:
            records = [r for r in records if as_utc(r.created_at) >= as_utc(start)]
        if end is not None:
            records = [r for r in records if as_utc(r.created_at) <= as_utc(end)]
        return sorted(records, key=lambda r: (as_utc(r.created_at), r.id))

    def list_unresolved(self, request_ids=None):
        return [r for r in self.list_all(request_ids=request_ids) if r.resolved_at is None]

    def resolve_latest(self, request_id, approver_id, resolution, at):
        with self._lock:
            candidates = self._open(request_id, approver_id)
            if not candidates:
                return 0
            latest = max(candidates, key=lambda r: (as_utc(r.created_at), r.id))
            return 1 if latest.resolve(resolution, at) else 0

    def resolve_all(self, request_id, resolution, at, *, approver_id=None):
        with self._lock:
            return sum(1 for r in self._open(request_id, approver_id) if r.resolve(resolution, at))

    def count_reminders(self, request_id, approver_id):
        with self._lock:
            return sum(
                1 for r in self._records.get(request_id, [])
                if r.approver_id == approver_id and r.level == int(EscalationLevel.REMINDER)
            )

    def commit(self):
        pass
