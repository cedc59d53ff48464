"""
Clinical Privilege Approvals
Directory & request domain models.

Models:
    - User: practitioner / approver directory entry
    - Privilege: clinical privilege reference data
    - PrivilegeRequest: a submitted privilege request (the approval subject)
    - RequestedPrivilege: ordered link between a request and its privileges
"""

from datetime import datetime, timezone
from enum import Enum

from privileges.models import db


# ── Enumerations ────────────────────────────────────────────────────────────


class PractitionerType(str, Enum):
    GP = "GP"
    SPECIALIST = "SPECIALIST"
    CONSULTANT = "CONSULTANT"


class PrivilegeType(str, Enum):
    CORE = "CORE"
    NON_CORE = "NON_CORE"
    EXTRA = "EXTRA"


class RequestStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    MODIFICATIONS_REQUIRED = "MODIFICATIONS_REQUIRED"
    CANCELLED = "CANCELLED"


class UserRole(str, Enum):
    EMPLOYEE = "EMPLOYEE"
    PRACTITIONER = "PRACTITIONER"
    HEAD_OF_SECTION = "HEAD_OF_SECTION"
    HEAD_OF_DEPT = "HEAD_OF_DEPT"
    COMMITTEE_MEMBER = "COMMITTEE_MEMBER"
    MEDICAL_DIRECTOR = "MEDICAL_DIRECTOR"
    HR = "HR"
    ADMIN = "ADMIN"


class Specialty(str, Enum):
    ADVANCED_GENERAL = "ADVANCED_GENERAL"
    ENDODONTICS = "ENDODONTICS"
    IMPLANTS = "IMPLANTS"
    ORAL_SURGERY = "ORAL_SURGERY"
    ORTHODONTICS = "ORTHODONTICS"
    PEDODONTICS = "PEDODONTICS"
    PERIODONTICS = "PERIODONTICS"
    PROSTHODONTICS = "PROSTHODONTICS"
    RESTORATIVE = "RESTORATIVE"


# Statuses in which approvers may still act on a request.
OPEN_STATUSES = frozenset({RequestStatus.PENDING, RequestStatus.IN_REVIEW})

# Statuses from which the applicant may (re)submit.
SUBMITTABLE_STATUSES = frozenset({RequestStatus.DRAFT, RequestStatus.MODIFICATIONS_REQUIRED})


def _utcnow():
    return datetime.now(timezone.utc)


class User(db.Model):
    """
    Directory entry for applicants and approvers.

    ``manager_id`` points at the user's line manager, used for level-2
    escalations. ``additional_specialties`` is a JSON list of ``Specialty``
    values held on top of the primary specialty.
    """

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name_en = db.Column(db.String(200), nullable=False)
    name_ar = db.Column(db.String(200), nullable=True)

    role = db.Column(db.String(30), nullable=False, default=UserRole.EMPLOYEE.value,
                     comment="EMPLOYEE | PRACTITIONER | HEAD_OF_SECTION | HEAD_OF_DEPT | "
                             "COMMITTEE_MEMBER | MEDICAL_DIRECTOR | HR | ADMIN")
    practitioner_type = db.Column(db.String(20), nullable=True,
                                  comment="GP | SPECIALIST | CONSULTANT; NULL is treated as GP")
    specialty = db.Column(db.String(30), nullable=True)
    additional_specialties = db.Column(db.JSON, default=list)

    can_approve_privileges = db.Column(db.Boolean, nullable=False, default=False)
    is_committee_member = db.Column(db.Boolean, nullable=False, default=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    manager_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
        comment="Line manager, target of MANAGER-level escalations",
    )
    manager = db.relationship("User", remote_side=[id], uselist=False)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def is_consultant(self) -> bool:
        return self.practitioner_type == PractitionerType.CONSULTANT

    def has_specialty(self, specialty) -> bool:
        if specialty is None:
            return False
        return self.specialty == specialty or specialty in (self.additional_specialties or [])

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name_en": self.name_en,
            "name_ar": self.name_ar,
            "role": self.role,
            "practitioner_type": self.practitioner_type,
            "specialty": self.specialty,
            "additional_specialties": list(self.additional_specialties or []),
            "can_approve_privileges": self.can_approve_privileges,
            "is_committee_member": self.is_committee_member,
            "manager_id": self.manager_id,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


class Privilege(db.Model):
    """Clinical privilege reference data."""

    __tablename__ = "privileges"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), unique=True, nullable=False)
    name_en = db.Column(db.String(300), nullable=False)
    name_ar = db.Column(db.String(300), nullable=True)
    category = db.Column(db.String(30), nullable=False, default="CLINICAL")
    required_specialty = db.Column(db.String(30), nullable=True,
                                   comment="NULL = any practitioner may hold this privilege")

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name_en": self.name_en,
            "name_ar": self.name_ar,
            "category": self.category,
            "required_specialty": self.required_specialty,
        }

    def __repr__(self):
        return f"<Privilege {self.code}>"


class PrivilegeRequest(db.Model):
    """
    A privilege request moving through the approval chain.

    Business rules:
    - status is mutated only by the approval service (decisions, submission,
      auto-approval).
    - APPROVED / REJECTED / CANCELLED are terminal; completed_at is set on entry.
    """

    __tablename__ = "privilege_requests"

    id = db.Column(db.Integer, primary_key=True)
    applicant_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    request_type = db.Column(db.String(20), nullable=False, default=PrivilegeType.CORE.value,
                             comment="CORE | NON_CORE | EXTRA")
    status = db.Column(db.String(30), nullable=False, default=RequestStatus.DRAFT.value, index=True)

    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    applicant = db.relationship("User", foreign_keys=[applicant_id])
    requested_privileges = db.relationship(
        "RequestedPrivilege",
        order_by="RequestedPrivilege.sort_order",
        cascade="all, delete-orphan",
        back_populates="request",
    )

    @property
    def privileges(self) -> list:
        return [rp.privilege for rp in self.requested_privileges]

    def to_dict(self):
        return {
            "id": self.id,
            "applicant_id": self.applicant_id,
            "request_type": self.request_type,
            "status": self.status,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "privileges": [p.to_dict() for p in self.privileges],
        }

    def __repr__(self):
        return f"<PrivilegeRequest {self.id} [{self.status}]>"


class RequestedPrivilege(db.Model):
    """Ordered association between a request and the privileges it asks for."""

    __tablename__ = "requested_privileges"
    __table_args__ = (
        db.UniqueConstraint("request_id", "privilege_id", name="uq_requested_privilege"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("privilege_requests.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    privilege_id = db.Column(
        db.Integer, db.ForeignKey("privileges.id", ondelete="CASCADE"), nullable=False,
    )
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    request = db.relationship("PrivilegeRequest", back_populates="requested_privileges")
    privilege = db.relationship("Privilege")
