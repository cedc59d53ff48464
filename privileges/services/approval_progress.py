"""
Clinical Privilege Approvals
Approval Progress Tracker & Approver Finder.

Computes how far a request is through its approval chain and who may act
next:

  1. Consultant approvals — distinct consultants with an APPROVED decision
     below Medical Director level.
  2. Committee review — any APPROVED decision at COMMITTEE level.
  3. Medical Director — any APPROVED decision at MEDICAL_DIRECTOR level,
     solicited only after 1 and 2 are satisfied.

Consultant and committee solicitation run in parallel; the director is never
asked out of order.

Usage:
    from privileges.services.approval_progress import get_progress

    progress = get_progress(request_id)
    if progress.is_complete: ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from privileges.core.exceptions import NotFoundError
from privileges.models.approval import ApprovalLevel, ApprovalRecord, ApprovalStatus
from privileges.models.privilege import PrivilegeRequest, User
from privileges.services.directory import ApprovalDirectory, SqlApprovalDirectory
from privileges.services.requirement_resolver import resolve_for_request
from privileges.services.rule_table import ApprovalRequirement, RuleTable

# Consultants are solicited at the committee stage.
CONSULTANT_LEVEL = ApprovalLevel.COMMITTEE

# Extra consultant candidates listed beyond the number still outstanding.
CONSULTANT_EXTRA_CANDIDATES = 2


@dataclass
class PendingApprover:
    user_id: int
    email: str
    name_en: str
    name_ar: str | None
    specialty: str | None
    role: str
    level: ApprovalLevel
    user: User | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_user(cls, user: User, level: ApprovalLevel) -> "PendingApprover":
        return cls(
            user_id=user.id,
            email=user.email,
            name_en=user.name_en,
            name_ar=user.name_ar,
            specialty=user.specialty,
            role=user.role,
            level=level,
            user=user,
        )

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "name_en": self.name_en,
            "name_ar": self.name_ar,
            "specialty": self.specialty,
            "role": self.role,
            "level": self.level.value,
        }


@dataclass
class ApprovalProgress:
    consultant_approvals: int
    required_consultants: int
    committee_approved: bool
    requires_committee: bool
    medical_director_approved: bool
    requires_medical_director: bool
    is_complete: bool
    next_level: ApprovalLevel | None
    pending_approvers: list[PendingApprover] = field(default_factory=list)
    requirement: ApprovalRequirement | None = None

    @property
    def consultants_complete(self) -> bool:
        return self.consultant_approvals >= self.required_consultants

    @property
    def committee_complete(self) -> bool:
        return self.committee_approved or not self.requires_committee

    @property
    def medical_director_complete(self) -> bool:
        return self.medical_director_approved or not self.requires_medical_director

    @property
    def remaining_consultants(self) -> int:
        return max(self.required_consultants - self.consultant_approvals, 0)

    def pending_level_for(self, user_id: int) -> ApprovalLevel | None:
        for approver in self.pending_approvers:
            if approver.user_id == user_id:
                return approver.level
        return None

    def to_dict(self) -> dict:
        return {
            "consultant_approvals": self.consultant_approvals,
            "required_consultants": self.required_consultants,
            "committee_approved": self.committee_approved,
            "requires_committee": self.requires_committee,
            "medical_director_approved": self.medical_director_approved,
            "requires_medical_director": self.requires_medical_director,
            "is_complete": self.is_complete,
            "next_level": self.next_level.value if self.next_level else None,
            "pending_approvers": [p.to_dict() for p in self.pending_approvers],
        }


def _approved(records: Iterable[ApprovalRecord]) -> list[ApprovalRecord]:
    return [r for r in records if r.status == ApprovalStatus.APPROVED]


def _counts_as_consultant(record: ApprovalRecord) -> bool:
    approver = record.approver
    return (
        approver is not None
        and approver.is_consultant
        and record.level != ApprovalLevel.MEDICAL_DIRECTOR
    )


def evaluate_progress(
    requirement: ApprovalRequirement,
    records: Iterable[ApprovalRecord],
) -> ApprovalProgress:
    """Pure progress computation from a requirement and decision rows.

    Consultant approvals are counted per distinct approver, so one consultant
    deciding at two levels still counts once.
    """
    approved = _approved(records)

    consultant_ids = {r.approver_id for r in approved if _counts_as_consultant(r)}
    committee_approved = any(r.level == ApprovalLevel.COMMITTEE for r in approved)
    md_approved = any(r.level == ApprovalLevel.MEDICAL_DIRECTOR for r in approved)

    consultants_complete = len(consultant_ids) >= requirement.required_consultants
    committee_complete = committee_approved or not requirement.requires_committee
    md_complete = md_approved or not requirement.requires_medical_director

    if not consultants_complete or not committee_complete:
        next_level = ApprovalLevel.COMMITTEE
    elif not md_complete:
        next_level = ApprovalLevel.MEDICAL_DIRECTOR
    else:
        next_level = None

    return ApprovalProgress(
        consultant_approvals=len(consultant_ids),
        required_consultants=requirement.required_consultants,
        committee_approved=committee_approved,
        requires_committee=requirement.requires_committee,
        medical_director_approved=md_approved,
        requires_medical_director=requirement.requires_medical_director,
        is_complete=consultants_complete and committee_complete and md_complete,
        next_level=next_level,
        requirement=requirement,
    )


def find_pending_approvers(
    request: PrivilegeRequest,
    progress: ApprovalProgress,
    records: Iterable[ApprovalRecord],
    directory: ApprovalDirectory,
) -> list[PendingApprover]:
    """Ordered list of users eligible to record the next decision.

    Consultants first (specialty holders preferred), then committee members,
    then the Medical Director once consultants and committee are satisfied.
    The applicant and anyone who already approved are never listed.
    """
    excluded = {r.approver_id for r in _approved(records)}
    excluded.add(request.applicant_id)

    pending: list[PendingApprover] = []
    listed: set[int] = set()

    def _add(users, level):
        for user in users:
            if user.id in listed:
                continue
            listed.add(user.id)
            pending.append(PendingApprover.from_user(user, level))

    if not progress.consultants_complete:
        target_specialty = next(
            (p.required_specialty for p in request.privileges if p.required_specialty), None,
        )
        limit = progress.remaining_consultants + CONSULTANT_EXTRA_CANDIDATES
        _add(directory.find_consultants(excluded, specialty=target_specialty, limit=limit),
             CONSULTANT_LEVEL)

    if not progress.committee_complete:
        _add(directory.find_committee_members(excluded), ApprovalLevel.COMMITTEE)

    if (
        progress.consultants_complete
        and progress.committee_complete
        and not progress.medical_director_complete
    ):
        director = directory.find_medical_director(excluded)
        if director is not None:
            _add([director], ApprovalLevel.MEDICAL_DIRECTOR)

    return pending


def compute_progress(
    request: PrivilegeRequest,
    *,
    directory: ApprovalDirectory | None = None,
    rule_table: RuleTable | None = None,
) -> ApprovalProgress:
    """Progress (with pending approvers) for an already-loaded request."""
    directory = directory or SqlApprovalDirectory()
    requirement = resolve_for_request(request, rule_table=rule_table)
    records = directory.list_approval_records(request.id)
    progress = evaluate_progress(requirement, records)
    progress.pending_approvers = find_pending_approvers(request, progress, records, directory)
    return progress


def get_progress(
    request_id: int,
    *,
    directory: ApprovalDirectory | None = None,
    rule_table: RuleTable | None = None,
) -> ApprovalProgress:
    """Load a request and compute its approval progress.

    Raises:
        NotFoundError: If the request does not exist.
    """
    directory = directory or SqlApprovalDirectory()
    request = directory.get_request(request_id)
    if request is None:
        raise NotFoundError(resource="PrivilegeRequest", resource_id=request_id)
    return compute_progress(request, directory=directory, rule_table=rule_table)
