"""
Tests: escalation engine, escalation record stores, reporting.

Covers:
    1. Threshold classification at the 24 / 48 / 72 hour boundaries
    2. Recipient selection per level and non-fatal skips
    3. Deduplication per (request, approver, level) while unresolved
    4. Dispatch failure persists nothing and is retried by the next sweep
    5. Sweep aggregation and per-approval error isolation
    6. Resolution (latest / all) and idempotence
    7. Statistics over a date range
    8. SQL store partial unique index and a database-backed sweep

Engine tests run against InMemoryEscalationStore with a recording
dispatcher; pending approvals are plain namespaces.
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import IntegrityError

from privileges.models import db
from privileges.models.escalation import EscalationLevel, EscalationRecord, EscalationResolution
from privileges.models.notification import Notification
from privileges.services.approval_service import record_decision
from privileges.services.escalation import (
    EscalationEngine,
    EscalationThresholds,
    build_escalation_engine,
    determine_level,
    hours_pending,
    parse_hr_contacts,
)
from privileges.services.directory import SqlApprovalDirectory
from privileges.services.escalation_store import InMemoryEscalationStore, SqlEscalationStore
from privileges.services.notification import DispatchResult, NotificationType
from privileges.services.pending_approvals import list_pending_approvals

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


# ── Helpers ──────────────────────────────────────────────────────────────────


class RecordingDispatcher:
    def __init__(self, fail=False, raise_exc=None):
        self.fail = fail
        self.raise_exc = raise_exc
        self.sent = []

    def send(self, notification_type, request, recipient, info):
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail:
            return DispatchResult(success=False, error="SMTP unavailable")
        self.sent.append((notification_type, request.id, recipient.id, info))
        return DispatchResult(success=True)


def _person(pid, email=None):
    return SimpleNamespace(id=pid, email=email or f"p{pid}@hospital.test", name_en=f"Person {pid}")


APPROVER = _person(10)
MANAGER = _person(20)
HR = _person(30)


def _pending(hours, request_id=1, approver=APPROVER):
    return SimpleNamespace(
        request_id=request_id,
        request=SimpleNamespace(id=request_id),
        approver_id=approver.id,
        approver=approver,
        pending_since=NOW - timedelta(hours=hours),
    )


def _engine(store=None, dispatcher=None, pendings=(), managers=None, hr=(HR,), clock=lambda: NOW):
    managers = {APPROVER.id: MANAGER} if managers is None else managers
    return EscalationEngine(
        store if store is not None else InMemoryEscalationStore(),
        dispatcher if dispatcher is not None else RecordingDispatcher(),
        pending_source=lambda: list(pendings),
        manager_lookup=managers.get,
        hr_contacts=lambda: list(hr),
        clock=clock,
    )


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 1: Classification
# ═══════════════════════════════════════════════════════════════════════════


class TestClassification:
    @pytest.mark.parametrize("hours,level", [
        (0, EscalationLevel.NONE),
        (23, EscalationLevel.NONE),
        (24, EscalationLevel.REMINDER),
        (47, EscalationLevel.REMINDER),
        (48, EscalationLevel.MANAGER),
        (71, EscalationLevel.MANAGER),
        (72, EscalationLevel.HR),
        (500, EscalationLevel.HR),
    ])
    def test_default_boundaries(self, hours, level):
        assert determine_level(hours) == level

    def test_custom_thresholds(self):
        thresholds = EscalationThresholds(reminder_hours=1, manager_hours=2, hr_hours=3)
        assert determine_level(2, thresholds) == EscalationLevel.MANAGER

    def test_thresholds_must_increase(self):
        with pytest.raises(ValueError):
            EscalationThresholds(reminder_hours=48, manager_hours=24, hr_hours=72)
        with pytest.raises(ValueError):
            EscalationThresholds(reminder_hours=24, manager_hours=24, hr_hours=72)

    def test_thresholds_from_config(self):
        thresholds = EscalationThresholds.from_config({
            "ESCALATION_REMINDER_HOURS": "12", "ESCALATION_MANAGER_HOURS": 36, "ESCALATION_HR_HOURS": 60,
        })
        assert thresholds.to_dict() == {"reminder_hours": 12, "manager_hours": 36, "hr_hours": 60}

    def test_hours_pending_floors(self):
        assert hours_pending(NOW - timedelta(hours=23, minutes=59), NOW) == 23
        assert hours_pending(NOW - timedelta(hours=24), NOW) == 24

    def test_naive_pending_since_is_utc(self):
        naive = (NOW - timedelta(hours=30)).replace(tzinfo=None)
        assert hours_pending(naive, NOW) == 30

    def test_parse_hr_contacts(self):
        assert parse_hr_contacts(" hr@a.test, ,ops@a.test ") == ["hr@a.test", "ops@a.test"]
        assert parse_hr_contacts(None) == []
        assert parse_hr_contacts(["x@a.test"]) == ["x@a.test"]


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 2: Single escalation
# ═══════════════════════════════════════════════════════════════════════════


class TestProcessEscalation:
    def test_below_threshold_does_nothing(self):
        dispatcher = RecordingDispatcher()
        outcome = _engine(dispatcher=dispatcher).process_escalation(_pending(23))
        assert outcome.escalated is False
        assert outcome.level == EscalationLevel.NONE
        assert dispatcher.sent == []

    def test_reminder_goes_to_approver(self):
        store, dispatcher = InMemoryEscalationStore(), RecordingDispatcher()
        outcome = _engine(store, dispatcher).process_escalation(_pending(24))

        assert outcome.escalated is True
        assert outcome.level == EscalationLevel.REMINDER
        assert outcome.recipient_id == APPROVER.id
        ntype, request_id, recipient_id, info = dispatcher.sent[0]
        assert ntype == NotificationType.ESCALATION_REMINDER
        assert (request_id, recipient_id) == (1, APPROVER.id)
        assert info["level"] == "REMINDER"
        assert info["hours_pending"] == 24
        assert info["original_approver"]["email"] == APPROVER.email
        assert info["escalated_to"]["id"] == APPROVER.id
        assert info["escalated_at"] == NOW.isoformat()

        records = store.list_for_request(1)
        assert len(records) == 1
        assert records[0].level == EscalationLevel.REMINDER
        assert records[0].created_at == NOW

    def test_manager_level_goes_to_manager(self):
        dispatcher = RecordingDispatcher()
        outcome = _engine(dispatcher=dispatcher).process_escalation(_pending(50))
        assert outcome.level == EscalationLevel.MANAGER
        assert dispatcher.sent[0][0] == NotificationType.ESCALATION_MANAGER
        assert dispatcher.sent[0][2] == MANAGER.id

    def test_hr_level_uses_first_contact(self):
        dispatcher = RecordingDispatcher()
        other = _person(31)
        outcome = _engine(dispatcher=dispatcher, hr=(HR, other)).process_escalation(_pending(80))
        assert outcome.level == EscalationLevel.HR
        assert dispatcher.sent[0][2] == HR.id

    def test_missing_manager_is_skipped(self):
        store, dispatcher = InMemoryEscalationStore(), RecordingDispatcher()
        outcome = _engine(store, dispatcher, managers={}).process_escalation(_pending(50))
        assert outcome.escalated is False
        assert outcome.skipped is True
        assert outcome.error == "No manager found"
        assert dispatcher.sent == []
        assert store.list_for_request(1) == []

    def test_missing_hr_contacts_is_skipped(self):
        outcome = _engine(hr=()).process_escalation(_pending(72))
        assert outcome.skipped is True
        assert outcome.error == "No HR contacts found"

    def test_duplicate_suppressed_while_unresolved(self):
        store, dispatcher = InMemoryEscalationStore(), RecordingDispatcher()
        engine = _engine(store, dispatcher)
        assert engine.process_escalation(_pending(30)).escalated is True
        second = engine.process_escalation(_pending(30))
        assert second.escalated is False
        assert second.error is None
        assert len(dispatcher.sent) == 1

    def test_resolved_triple_can_escalate_again(self):
        store, dispatcher = InMemoryEscalationStore(), RecordingDispatcher()
        engine = _engine(store, dispatcher)
        engine.process_escalation(_pending(30))
        engine.mark_resolved(1, APPROVER.id, EscalationResolution.DELEGATED)
        assert engine.process_escalation(_pending(30)).escalated is True
        assert len(store.list_for_request(1)) == 2

    def test_each_level_escalates_once(self):
        store, dispatcher = InMemoryEscalationStore(), RecordingDispatcher()
        engine = _engine(store, dispatcher)
        for hours in (24, 30, 48, 60, 72, 100):
            engine.process_escalation(_pending(hours))
        assert [s[0] for s in dispatcher.sent] == [
            NotificationType.ESCALATION_REMINDER,
            NotificationType.ESCALATION_MANAGER,
            NotificationType.ESCALATION_HR,
        ]

    def test_previous_reminders_reported(self):
        store, dispatcher = InMemoryEscalationStore(), RecordingDispatcher()
        engine = _engine(store, dispatcher)
        engine.process_escalation(_pending(24))
        engine.process_escalation(_pending(48))
        assert dispatcher.sent[-1][3]["previous_reminders"] == 1

    def test_dispatch_failure_persists_nothing(self):
        store = InMemoryEscalationStore()
        outcome = _engine(store, RecordingDispatcher(fail=True)).process_escalation(_pending(30))
        assert outcome.escalated is False
        assert outcome.error == "SMTP unavailable"
        assert store.list_for_request(1) == []

        # the next sweep retries because nothing was recorded
        retry = _engine(store, RecordingDispatcher()).process_escalation(_pending(30))
        assert retry.escalated is True

    def test_dispatcher_exception_is_an_error(self):
        store = InMemoryEscalationStore()
        dispatcher = RecordingDispatcher(raise_exc=RuntimeError("connection reset"))
        outcome = _engine(store, dispatcher).process_escalation(_pending(30))
        assert outcome.escalated is False
        assert outcome.skipped is False
        assert "connection reset" in outcome.error
        assert store.list_for_request(1) == []


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 3: Sweep
# ═══════════════════════════════════════════════════════════════════════════


class TestProcessAll:
    def test_aggregates(self):
        other = _person(11)
        pendings = [
            _pending(5),                                    # none
            _pending(25, request_id=2),                     # reminder
            _pending(50, request_id=3),                     # manager
            _pending(50, request_id=4, approver=other),     # no manager → skipped
        ]
        result = _engine(pendings=pendings).process_all_escalations()
        assert result.processed == 4
        assert result.escalated == 2
        assert result.skipped == 1
        assert result.errors == 0
        assert len(result.details) == 3
        assert {d["level"] for d in result.details} == {"REMINDER", "MANAGER"}

    def test_failure_counted_and_sweep_continues(self):
        broken = _pending(30, request_id=2)
        broken.pending_since = None
        pendings = [broken, _pending(30, request_id=3)]
        result = _engine(pendings=pendings).process_all_escalations()
        assert result.processed == 2
        assert result.errors == 1
        assert result.escalated == 1

    def test_dispatch_failures_counted_as_errors(self):
        result = _engine(dispatcher=RecordingDispatcher(fail=True),
                         pendings=[_pending(30)]).process_all_escalations()
        assert result.errors == 1
        assert result.escalated == 0
        assert result.details[0]["success"] is False

    def test_second_sweep_is_quiet(self):
        store = InMemoryEscalationStore()
        engine = _engine(store, pendings=[_pending(30), _pending(30, request_id=2)])
        assert engine.process_all_escalations().escalated == 2
        again = engine.process_all_escalations()
        assert again.escalated == 0
        assert again.errors == 0

    def test_to_dict(self):
        data = _engine(pendings=[_pending(30)]).process_all_escalations().to_dict()
        assert set(data) == {"processed", "escalated", "errors", "skipped", "details"}


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 4: Resolution & statistics
# ═══════════════════════════════════════════════════════════════════════════


class TestResolution:
    def test_mark_resolved_closes_latest_only(self):
        store = InMemoryEscalationStore()
        store.create(1, APPROVER.id, EscalationLevel.REMINDER, APPROVER.id, NOW - timedelta(hours=30))
        store.create(1, APPROVER.id, EscalationLevel.MANAGER, MANAGER.id, NOW - timedelta(hours=5))
        engine = _engine(store)

        assert engine.mark_resolved(1, APPROVER.id, "APPROVED") == 1
        by_level = {r.level: r for r in store.list_for_request(1)}
        assert by_level[EscalationLevel.MANAGER].resolution == "APPROVED"
        assert by_level[EscalationLevel.REMINDER].resolved_at is None

    def test_mark_all_resolved_is_idempotent(self):
        store = InMemoryEscalationStore()
        store.create(1, APPROVER.id, EscalationLevel.REMINDER, APPROVER.id, NOW - timedelta(hours=30))
        store.create(1, 11, EscalationLevel.REMINDER, 11, NOW - timedelta(hours=30))
        engine = _engine(store)

        assert engine.mark_all_resolved(1, EscalationResolution.REJECTED) == 2
        first = [r.resolved_at for r in store.list_for_request(1)]
        assert engine.mark_all_resolved(1, EscalationResolution.APPROVED) == 0
        assert engine.mark_resolved(1, APPROVER.id, "APPROVED") == 0
        assert [r.resolved_at for r in store.list_for_request(1)] == first
        assert {r.resolution for r in store.list_for_request(1)} == {"REJECTED"}

    def test_unknown_resolution_rejected(self):
        with pytest.raises(ValueError):
            _engine().mark_all_resolved(1, "IGNORED")


class TestStats:
    def test_counts_and_average(self):
        store = InMemoryEscalationStore()
        day = NOW - timedelta(days=1)
        a = store.create(1, 10, EscalationLevel.REMINDER, 10, day)
        store.create(1, 10, EscalationLevel.MANAGER, 20, day)
        b = store.create(2, 11, EscalationLevel.HR, 30, day)
        a.resolve("APPROVED", day + timedelta(hours=2))
        b.resolve("EXPIRED", day + timedelta(hours=4))
        # outside the window
        store.create(3, 12, EscalationLevel.REMINDER, 12, NOW - timedelta(days=40))

        stats = _engine(store).get_escalation_stats(NOW - timedelta(days=30), NOW)
        assert stats["total_escalations"] == 3
        assert stats["by_level"] == {"NONE": 0, "REMINDER": 1, "MANAGER": 1, "HR": 1}
        assert stats["resolved"] == 2
        assert stats["unresolved"] == 1
        assert stats["average_resolution_time_hours"] == 3.0

    def test_request_filter_and_empty_range(self):
        store = InMemoryEscalationStore()
        store.create(1, 10, EscalationLevel.REMINDER, 10, NOW - timedelta(hours=1))
        store.create(2, 10, EscalationLevel.REMINDER, 10, NOW - timedelta(hours=1))
        engine = _engine(store)

        assert engine.get_escalation_stats(NOW - timedelta(days=1), NOW, [2])["total_escalations"] == 1
        empty = engine.get_escalation_stats(NOW + timedelta(days=1), NOW + timedelta(days=2))
        assert empty["total_escalations"] == 0
        assert empty["average_resolution_time_hours"] == 0

    def test_unresolved_listing(self):
        store = InMemoryEscalationStore()
        store.create(1, 10, EscalationLevel.REMINDER, 10, NOW)
        r = store.create(2, 10, EscalationLevel.REMINDER, 10, NOW)
        r.resolve("APPROVED", NOW)
        assert [x.request_id for x in _engine(store).get_unresolved_escalations()] == [1]


# ═══════════════════════════════════════════════════════════════════════════
#  TEST CLASS 5: Database-backed store & engine
# ═══════════════════════════════════════════════════════════════════════════


class TestSqlEscalationStore:
    def test_create_deduplicates(self, staff, make_privilege, make_request):
        req = make_request(staff.applicant, [make_privilege("IMPLANTS")])
        store = SqlEscalationStore()
        first = store.create(req.id, staff.c1.id, EscalationLevel.REMINDER, staff.c1.id, NOW)
        assert first is not None and first.id is not None
        assert store.create(req.id, staff.c1.id, EscalationLevel.REMINDER, staff.c1.id, NOW) is None
        assert store.has_unresolved(req.id, staff.c1.id, EscalationLevel.REMINDER) is True

    def test_partial_unique_index_blocks_second_open_record(self, staff, make_privilege, make_request):
        req = make_request(staff.applicant, [make_privilege("IMPLANTS")])
        SqlEscalationStore().create(req.id, staff.c1.id, EscalationLevel.REMINDER, staff.c1.id, NOW)

        db.session.add(EscalationRecord(request_id=req.id, approver_id=staff.c1.id,
                                        level=int(EscalationLevel.REMINDER), created_at=NOW))
        with pytest.raises(IntegrityError):
            db.session.commit()
        db.session.rollback()

    def test_resolved_record_does_not_block(self, staff, make_privilege, make_request):
        req = make_request(staff.applicant, [make_privilege("IMPLANTS")])
        store = SqlEscalationStore()
        store.create(req.id, staff.c1.id, EscalationLevel.REMINDER, staff.c1.id, NOW)
        assert store.resolve_latest(req.id, staff.c1.id, EscalationResolution.DELEGATED, NOW) == 1
        store.commit()
        assert store.create(req.id, staff.c1.id, EscalationLevel.REMINDER, staff.c1.id, NOW) is not None
        assert store.count_reminders(req.id, staff.c1.id) == 2

    def test_list_all_window(self, staff, make_privilege, make_request):
        req = make_request(staff.applicant, [make_privilege("IMPLANTS")])
        store = SqlEscalationStore()
        store.create(req.id, staff.c1.id, EscalationLevel.REMINDER, staff.c1.id, NOW - timedelta(days=2))
        store.create(req.id, staff.c2.id, EscalationLevel.REMINDER, staff.c2.id, NOW)
        window = store.list_all(start=NOW - timedelta(days=1), end=NOW + timedelta(minutes=1))
        assert [r.approver_id for r in window] == [staff.c2.id]


class TestDatabaseSweep:
    def test_manager_sweep_notifies_and_skips(self, staff, make_privilege, make_request, rules):
        # same specialty: consultants c2, c1, c3 are pending; only c1 has a manager
        req = make_request(staff.applicant, [make_privilege("ENDODONTICS")], submitted_hours_ago=50)

        engine = build_escalation_engine()
        result = engine.process_all_escalations()
        assert result.processed == 3
        assert result.escalated == 1
        assert result.skipped == 2

        notes = Notification.query.filter_by(request_id=req.id).all()
        assert len(notes) == 1
        assert notes[0].recipient_id == staff.hod.id
        assert notes[0].notification_type == NotificationType.ESCALATION_MANAGER.value
        assert notes[0].payload["original_approver"]["id"] == staff.c1.id
        assert notes[0].is_read is False

        again = build_escalation_engine().process_all_escalations()
        assert again.escalated == 0
        assert Notification.query.filter_by(request_id=req.id).count() == 1

    def test_hr_contacts_from_config(self, app, staff, make_user, make_privilege, make_request, rules):
        hr_user = make_user(role="HR", email="hr@hospital.test")
        req = make_request(staff.applicant, [make_privilege("ENDODONTICS")], submitted_hours_ago=80)

        cfg = dict(app.config)
        cfg["ESCALATION_HR_CONTACTS"] = "missing@hospital.test, HR@hospital.test"
        result = build_escalation_engine(cfg).process_all_escalations()

        assert result.escalated == 3
        recipients = {n.recipient_id for n in Notification.query.filter_by(request_id=req.id)}
        assert recipients == {hr_user.id}

    def test_reminder_clock_restarts_after_decision(self, staff, make_privilege, make_request, rules):
        req = make_request(staff.applicant, [make_privilege("IMPLANTS")], submitted_hours_ago=30)
        record_decision(req.id, staff.c1.id, "APPROVED", rule_table=rules)

        result = build_escalation_engine().process_all_escalations()
        assert result.escalated == 0
        assert result.details == []

    def test_pending_listing_reuses_loaded_approvers(self, staff, make_privilege, make_request, rules):
        req = make_request(staff.applicant, [make_privilege("ENDODONTICS")], submitted_hours_ago=30)

        class CountingDirectory(SqlApprovalDirectory):
            lookups = 0

            def get_user(self, user_id):
                CountingDirectory.lookups += 1
                return super().get_user(user_id)

        views = list_pending_approvals(directory=CountingDirectory(), rule_table=rules)
        assert {v.approver_id for v in views} == {staff.c1.id, staff.c2.id, staff.c3.id}
        assert all(v.request_id == req.id and v.approver.id == v.approver_id for v in views)
        assert CountingDirectory.lookups == 0
