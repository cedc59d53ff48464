"""
Tests: approval progress tracker and pending-approver enumeration.

Covers:
    - Pure progress evaluation (distinct consultant counting, completion)
    - next_level ordering: consultants/committee before the Medical Director
    - Pending approvers: specialty preference, exclusions, director gating
    - get_progress for unknown requests
"""

from datetime import datetime, timezone

import pytest

from privileges.core.exceptions import NotFoundError
from privileges.models.approval import ApprovalLevel, ApprovalRecord
from privileges.models.privilege import User
from privileges.services.approval_progress import evaluate_progress, get_progress
from privileges.services.directory import SqlApprovalDirectory
from privileges.services.rule_table import ApprovalRequirement

FULL_REVIEW = ApprovalRequirement(2, True, True, False)
ONE_CONSULTANT = ApprovalRequirement(1, False, True, False)


def _record(approver_id, level, status="APPROVED", practitioner_type="CONSULTANT"):
    approver = User(id=approver_id, email=f"u{approver_id}@x.test", name_en="U",
                    practitioner_type=practitioner_type)
    return ApprovalRecord(request_id=1, approver_id=approver_id, level=level,
                          status=status, approver=approver)


# ═══════════════════════════════════════════════════════════════════════════
#  Pure evaluation
# ═══════════════════════════════════════════════════════════════════════════


class TestEvaluateProgress:
    def test_no_records(self):
        progress = evaluate_progress(FULL_REVIEW, [])
        assert progress.consultant_approvals == 0
        assert progress.is_complete is False
        assert progress.next_level == ApprovalLevel.COMMITTEE

    def test_consultant_counted_once_across_levels(self):
        records = [_record(5, "COMMITTEE"), _record(5, "DEPARTMENT_HEAD")]
        progress = evaluate_progress(FULL_REVIEW, records)
        assert progress.consultant_approvals == 1
        assert progress.remaining_consultants == 1

    def test_director_level_does_not_count_as_consultant(self):
        progress = evaluate_progress(ONE_CONSULTANT, [_record(5, "MEDICAL_DIRECTOR")])
        assert progress.consultant_approvals == 0
        assert progress.medical_director_approved is True
        assert progress.is_complete is False

    def test_non_consultant_and_pending_rows_ignored(self):
        records = [
            _record(5, "COMMITTEE", practitioner_type="SPECIALIST"),
            _record(6, "COMMITTEE", status="PENDING"),
            _record(7, "COMMITTEE", status="REJECTED"),
        ]
        progress = evaluate_progress(FULL_REVIEW, records)
        assert progress.consultant_approvals == 0
        # the specialist's approval at committee level still satisfies committee review
        assert progress.committee_approved is True

    def test_director_is_next_once_consultants_and_committee_done(self):
        progress = evaluate_progress(FULL_REVIEW, [_record(5, "COMMITTEE"), _record(6, "COMMITTEE")])
        assert progress.consultants_complete and progress.committee_complete
        assert progress.next_level == ApprovalLevel.MEDICAL_DIRECTOR
        assert progress.is_complete is False

    def test_complete(self):
        records = [_record(5, "COMMITTEE"), _record(9, "MEDICAL_DIRECTOR", practitioner_type=None)]
        progress = evaluate_progress(ONE_CONSULTANT, records)
        assert progress.is_complete is True
        assert progress.next_level is None

    def test_zero_requirement_is_complete_immediately(self):
        progress = evaluate_progress(ApprovalRequirement(0, False, False, True), [])
        assert progress.is_complete is True

    def test_to_dict(self):
        data = evaluate_progress(FULL_REVIEW, []).to_dict()
        assert data["next_level"] == "COMMITTEE"
        assert data["pending_approvers"] == []
        assert data["required_consultants"] == 2


# ═══════════════════════════════════════════════════════════════════════════
#  Pending approvers
# ═══════════════════════════════════════════════════════════════════════════


class TestPendingApprovers:
    def test_specialty_holders_first_then_committee(self, staff, make_privilege, make_request, rules):
        req = make_request(staff.applicant, [make_privilege("IMPLANTS")])
        progress = get_progress(req.id, rule_table=rules)

        ids = [p.user_id for p in progress.pending_approvers]
        assert ids == [staff.c1.id, staff.c3.id, staff.c2.id, staff.committee.id]
        assert staff.md.id not in ids
        assert staff.applicant.id not in ids
        assert {p.level for p in progress.pending_approvers} == {ApprovalLevel.COMMITTEE}

    def test_consultant_pool_limited_to_outstanding_plus_two(
        self, staff, make_user, make_privilege, make_request, rules,
    ):
        for _ in range(3):
            make_user(practitioner_type="CONSULTANT", specialty="ORTHODONTICS", can_approve=True)
        # same specialty: one consultant outstanding, so at most three candidates
        req = make_request(staff.applicant, [make_privilege("ENDODONTICS")])
        progress = get_progress(req.id, rule_table=rules)

        consultants = [p for p in progress.pending_approvers if p.user_id != staff.committee.id]
        assert len(consultants) == 3
        assert consultants[0].user_id == staff.c2.id
        assert staff.committee.id not in [p.user_id for p in progress.pending_approvers]

    def test_inactive_and_incapable_consultants_excluded(
        self, staff, make_user, make_privilege, make_request, rules,
    ):
        inactive = make_user(practitioner_type="CONSULTANT", specialty="IMPLANTS",
                             can_approve=True, active=False)
        incapable = make_user(practitioner_type="CONSULTANT", specialty="IMPLANTS")
        req = make_request(staff.applicant, [make_privilege("IMPLANTS")])
        ids = [p.user_id for p in get_progress(req.id, rule_table=rules).pending_approvers]
        assert inactive.id not in ids
        assert incapable.id not in ids

    def test_director_listed_only_after_consultants_and_committee(
        self, staff, make_privilege, make_request, rules,
    ):
        req = make_request(staff.applicant, [make_privilege("ENDODONTICS")])
        directory = SqlApprovalDirectory()
        directory.upsert_approval_record(req.id, staff.c2.id, "COMMITTEE", "APPROVED", None,
                                         datetime.now(timezone.utc))
        directory.commit()

        progress = get_progress(req.id, rule_table=rules)
        assert progress.consultant_approvals == 1
        assert [p.user_id for p in progress.pending_approvers] == [staff.md.id]
        assert progress.pending_approvers[0].level == ApprovalLevel.MEDICAL_DIRECTOR

    def test_unknown_request(self, rules):
        with pytest.raises(NotFoundError):
            get_progress(9999, rule_table=rules)
