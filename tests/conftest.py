"""
Shared pytest fixtures for the privilege approval test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - rules: default approval rule table seeded into the database
    - make_user / make_privilege / make_request: ORM factories
    - staff: applicant plus one approver per pool
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from privileges import create_app
from privileges.models import db as _db
from privileges.models.privilege import (
    Privilege,
    PrivilegeRequest,
    RequestedPrivilege,
    RequestStatus,
    User,
    UserRole,
)
from privileges.services.rule_table import RuleTable, seed_default_rules


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def rules():
    """Seed the default rule matrix and return it as a RuleTable."""
    seed_default_rules()
    _db.session.commit()
    return RuleTable.from_db()


@pytest.fixture()
def make_user():
    counter = {"n": 0}

    def _make_user(
        *,
        practitioner_type=None,
        specialty=None,
        additional_specialties=None,
        role=UserRole.PRACTITIONER.value,
        can_approve=False,
        committee=False,
        manager=None,
        email=None,
        active=True,
    ):
        counter["n"] += 1
        u = User(
            email=email or f"user{counter['n']}@hospital.test",
            name_en=f"User {counter['n']}",
            role=role,
            practitioner_type=practitioner_type,
            specialty=specialty,
            additional_specialties=list(additional_specialties or []),
            can_approve_privileges=can_approve,
            is_committee_member=committee,
            is_active=active,
            manager_id=manager.id if manager is not None else None,
        )
        _db.session.add(u)
        _db.session.flush()
        return u

    return _make_user


@pytest.fixture()
def make_privilege():
    counter = {"n": 0}

    def _make_privilege(required_specialty=None, code=None):
        counter["n"] += 1
        p = Privilege(
            code=code or f"PRV-{counter['n']:03d}",
            name_en=f"Privilege {counter['n']}",
            required_specialty=required_specialty,
        )
        _db.session.add(p)
        _db.session.flush()
        return p

    return _make_privilege


@pytest.fixture()
def make_request():
    def _make_request(
        applicant,
        privileges,
        *,
        request_type="NON_CORE",
        status=RequestStatus.PENDING.value,
        submitted_hours_ago=0,
    ):
        submitted_at = None
        if status != RequestStatus.DRAFT.value:
            submitted_at = datetime.now(timezone.utc) - timedelta(hours=submitted_hours_ago)
        req = PrivilegeRequest(
            applicant_id=applicant.id,
            request_type=request_type,
            status=status,
            submitted_at=submitted_at,
        )
        req.applicant = applicant
        for order, privilege in enumerate(privileges):
            req.requested_privileges.append(
                RequestedPrivilege(privilege=privilege, sort_order=order)
            )
        _db.session.add(req)
        _db.session.commit()
        return req

    return _make_request


@pytest.fixture()
def staff(make_user):
    """A small roster: applicant, three consultants, a committee member,
    the Medical Director and an approver who sits outside every pool."""
    hod = make_user(role=UserRole.HEAD_OF_DEPT.value, email="hod@hospital.test")
    return SimpleNamespace(
        hod=hod,
        applicant=make_user(practitioner_type="SPECIALIST", specialty="ENDODONTICS",
                            email="applicant@hospital.test"),
        c1=make_user(practitioner_type="CONSULTANT", specialty="IMPLANTS", can_approve=True,
                     manager=hod, email="c1@hospital.test"),
        c2=make_user(practitioner_type="CONSULTANT", specialty="ENDODONTICS", can_approve=True,
                     email="c2@hospital.test"),
        c3=make_user(practitioner_type="CONSULTANT", specialty="IMPLANTS", can_approve=True,
                     email="c3@hospital.test"),
        committee=make_user(role=UserRole.COMMITTEE_MEMBER.value, can_approve=True, committee=True,
                            email="committee@hospital.test"),
        md=make_user(role=UserRole.MEDICAL_DIRECTOR.value, can_approve=True, email="md@hospital.test"),
        outsider=make_user(role=UserRole.HEAD_OF_SECTION.value, can_approve=True,
                           email="outsider@hospital.test"),
    )
