"""
Clinical Privilege Approvals
Approval models.

Models:
    - ApprovalRequirementRule: configured rule-table row keyed by
      (privilege_type, practitioner_type, same_specialty)
    - ApprovalRecord: one approver's decision on a request at a level
"""

from datetime import datetime, timezone
from enum import Enum

from privileges.models import db


class ApprovalLevel(str, Enum):
    SECTION_HEAD = "SECTION_HEAD"
    DEPARTMENT_HEAD = "DEPARTMENT_HEAD"
    COMMITTEE = "COMMITTEE"
    MEDICAL_DIRECTOR = "MEDICAL_DIRECTOR"


class ApprovalStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class ApprovalRequirementRule(db.Model):
    """
    Rule-table row: how many and which approvals a request needs.

    At most one row per (privilege_type, practitioner_type, same_specialty);
    a missing row makes the resolver fall back to the most restrictive
    requirement.
    """

    __tablename__ = "approval_requirement_rules"
    __table_args__ = (
        db.UniqueConstraint(
            "privilege_type", "practitioner_type", "same_specialty",
            name="uq_approval_rule_key",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    privilege_type = db.Column(db.String(20), nullable=False, comment="CORE | NON_CORE | EXTRA")
    practitioner_type = db.Column(db.String(20), nullable=False, comment="GP | SPECIALIST | CONSULTANT")
    same_specialty = db.Column(db.Boolean, nullable=False)

    required_consultants = db.Column(db.Integer, nullable=False, default=2)
    requires_committee = db.Column(db.Boolean, nullable=False, default=True)
    requires_medical_director = db.Column(db.Boolean, nullable=False, default=True)
    auto_approve = db.Column(db.Boolean, nullable=False, default=False)

    description_en = db.Column(db.String(500), default="")
    description_ar = db.Column(db.String(500), default="")

    updated_at = db.Column(db.DateTime(timezone=True),
                           default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {
            "id": self.id,
            "privilege_type": self.privilege_type,
            "practitioner_type": self.practitioner_type,
            "same_specialty": self.same_specialty,
            "required_consultants": self.required_consultants,
            "requires_committee": self.requires_committee,
            "requires_medical_director": self.requires_medical_director,
            "auto_approve": self.auto_approve,
            "description_en": self.description_en,
            "description_ar": self.description_ar,
        }

    def __repr__(self):
        return (f"<ApprovalRequirementRule {self.privilege_type}/"
                f"{self.practitioner_type}/{self.same_specialty}>")


class ApprovalRecord(db.Model):
    """
    A single approver's decision on a request.

    Keyed by (request_id, approver_id, level) so that several consultants
    deciding at the same nominal level each keep their own row.
    """

    __tablename__ = "approval_records"
    __table_args__ = (
        db.UniqueConstraint("request_id", "approver_id", "level", name="uq_approval_record_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    request_id = db.Column(
        db.Integer, db.ForeignKey("privilege_requests.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    approver_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    level = db.Column(db.String(30), nullable=False,
                      comment="SECTION_HEAD | DEPARTMENT_HEAD | COMMITTEE | MEDICAL_DIRECTOR")
    status = db.Column(db.String(20), nullable=False, default=ApprovalStatus.PENDING.value)
    comments = db.Column(db.Text, nullable=True)
    decided_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    approver = db.relationship("User", foreign_keys=[approver_id])

    def to_dict(self):
        return {
            "id": self.id,
            "request_id": self.request_id,
            "approver_id": self.approver_id,
            "level": self.level,
            "status": self.status,
            "comments": self.comments,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
        }

    def __repr__(self):
        return f"<ApprovalRecord req={self.request_id} approver={self.approver_id} {self.level}={self.status}>"
