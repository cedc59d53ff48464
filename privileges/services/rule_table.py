"""
Clinical Privilege Approvals
Approval Rule Table.

Typed lookup from (privilege type, practitioner type, same-specialty) to the
approval requirement for a request. The table holds at most one requirement
per key; ``RuleTable.lookup`` returns ``RULE_NOT_FOUND`` for a missing key and
leaves the fallback policy to the resolver.

The default matrix follows the CBAHI/MOH privileging rules:
  - Core privileges: auto-approved for every practitioner type
  - Non-core, same specialty: 1 consultant + Medical Director
  - Non-core, different specialty: 2 consultants + committee + Medical Director
  - Extra: 2 consultants + committee + Medical Director

Usage:
    from privileges.services.rule_table import RuleKey, RuleTable

    table = RuleTable.from_db()
    found = table.lookup(RuleKey(PrivilegeType.NON_CORE, PractitionerType.GP, False))
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Iterable, Mapping, NamedTuple

from sqlalchemy import select

from privileges.core.exceptions import ConflictError
from privileges.models import db
from privileges.models.approval import ApprovalRequirementRule
from privileges.models.privilege import PractitionerType, PrivilegeType

logger = logging.getLogger(__name__)


class RuleKey(NamedTuple):
    privilege_type: PrivilegeType
    practitioner_type: PractitionerType
    same_specialty: bool


@dataclass(frozen=True)
class ApprovalRequirement:
    """How many consultants and which review stages a request needs."""

    required_consultants: int
    requires_committee: bool
    requires_medical_director: bool
    auto_approve: bool
    description: str = ""
    same_specialty: bool = True
    is_fallback: bool = False

    def to_dict(self) -> dict:
        return {
            "required_consultants": self.required_consultants,
            "requires_committee": self.requires_committee,
            "requires_medical_director": self.requires_medical_director,
            "auto_approve": self.auto_approve,
            "description": self.description,
            "same_specialty": self.same_specialty,
            "is_fallback": self.is_fallback,
        }


class RuleMiss:
    """Lookup result for a key with no configured requirement."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "RULE_NOT_FOUND"


RULE_NOT_FOUND = RuleMiss()

FALLBACK_REQUIREMENT = ApprovalRequirement(
    required_consultants=2,
    requires_committee=True,
    requires_medical_director=True,
    auto_approve=False,
    description="Default approval requirements (fallback)",
    is_fallback=True,
)


def _core(practitioner: str) -> ApprovalRequirement:
    return ApprovalRequirement(0, False, False, True,
                               f"Core privileges are automatically granted to all {practitioner}")


def _one_consultant() -> ApprovalRequirement:
    return ApprovalRequirement(1, False, True, False,
                               "Non-core privileges in same specialty require 1 consultant approval")


def _full_review(kind: str) -> ApprovalRequirement:
    return ApprovalRequirement(2, True, True, False,
                               f"{kind} privileges require 2 consultant approvals + committee review")


_GP, _SPEC, _CONS = PractitionerType.GP, PractitionerType.SPECIALIST, PractitionerType.CONSULTANT
_CORE, _NON_CORE, _EXTRA = PrivilegeType.CORE, PrivilegeType.NON_CORE, PrivilegeType.EXTRA

DEFAULT_RULES: dict[RuleKey, ApprovalRequirement] = {
    # GPs hold no specialty, so their non-core requests are always "different specialty"
    RuleKey(_CORE, _GP, True): _core("GPs"),
    RuleKey(_NON_CORE, _GP, False): _full_review("Non-core"),
    RuleKey(_EXTRA, _GP, False): _full_review("Additional"),

    RuleKey(_CORE, _SPEC, True): _core("Specialists"),
    RuleKey(_NON_CORE, _SPEC, True): _one_consultant(),
    RuleKey(_NON_CORE, _SPEC, False): _full_review("Non-core (different specialty)"),
    RuleKey(_EXTRA, _SPEC, False): _full_review("Additional"),

    RuleKey(_CORE, _CONS, True): _core("Consultants"),
    RuleKey(_NON_CORE, _CONS, True): _one_consultant(),
    RuleKey(_NON_CORE, _CONS, False): _full_review("Non-core (different specialty)"),
    RuleKey(_EXTRA, _CONS, False): _full_review("Additional"),
}


class RuleTable:
    """Immutable mapping of ``RuleKey`` → ``ApprovalRequirement``."""

    def __init__(self, rules: Mapping[RuleKey, ApprovalRequirement] | None = None):
        self._rules: dict[RuleKey, ApprovalRequirement] = {}
        for key, requirement in (rules or {}).items():
            key = RuleKey(PrivilegeType(key[0]), PractitionerType(key[1]), bool(key[2]))
            self._rules[key] = replace(requirement, same_specialty=key.same_specialty)

    def __len__(self):
        return len(self._rules)

    def __contains__(self, key):
        return key in self._rules

    def lookup(self, key: RuleKey) -> ApprovalRequirement | RuleMiss:
        return self._rules.get(key, RULE_NOT_FOUND)

    def items(self):
        return self._rules.items()

    @classmethod
    def from_rows(cls, rows: Iterable[ApprovalRequirementRule]) -> "RuleTable":
        """Build a table from persisted rows; duplicate keys are a configuration error."""
        rules: dict[RuleKey, ApprovalRequirement] = {}
        for row in rows:
            key = RuleKey(
                PrivilegeType(row.privilege_type),
                PractitionerType(row.practitioner_type),
                bool(row.same_specialty),
            )
            if key in rules:
                raise ConflictError("ApprovalRequirementRule", "key", repr(tuple(key)))
            rules[key] = ApprovalRequirement(
                required_consultants=row.required_consultants,
                requires_committee=row.requires_committee,
                requires_medical_director=row.requires_medical_director,
                auto_approve=row.auto_approve,
                description=row.description_en or "",
            )
        return cls(rules)

    @classmethod
    def from_db(cls) -> "RuleTable":
        rows = db.session.execute(select(ApprovalRequirementRule)).scalars().all()
        return cls.from_rows(rows)

    @classmethod
    def default(cls) -> "RuleTable":
        return cls(DEFAULT_RULES)


def seed_default_rules() -> int:
    """Upsert ``DEFAULT_RULES`` into ``approval_requirement_rules``.

    Returns the number of rows created. Existing rows are overwritten with
    the default values. The caller commits.
    """
    created = 0
    for key, requirement in DEFAULT_RULES.items():
        row = db.session.execute(
            select(ApprovalRequirementRule).where(
                ApprovalRequirementRule.privilege_type == key.privilege_type.value,
                ApprovalRequirementRule.practitioner_type == key.practitioner_type.value,
                ApprovalRequirementRule.same_specialty == key.same_specialty,
            )
        ).scalar_one_or_none()
        if row is None:
            row = ApprovalRequirementRule(
                privilege_type=key.privilege_type.value,
                practitioner_type=key.practitioner_type.value,
                same_specialty=key.same_specialty,
            )
            db.session.add(row)
            created += 1
        row.required_consultants = requirement.required_consultants
        row.requires_committee = requirement.requires_committee
        row.requires_medical_director = requirement.requires_medical_director
        row.auto_approve = requirement.auto_approve
        row.description_en = requirement.description
    db.session.flush()
    logger.info("Seeded approval rule table: %d created, %d total", created, len(DEFAULT_RULES))
    return created
