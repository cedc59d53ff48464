"""
Clinical Privilege Approvals
Requirement Resolver.

Classifies a request's privileges as same / different specialty for the
applicant and resolves the approval requirement from the rule table.

A missing rule row never under-requires approvals: the resolver falls back
to the most restrictive requirement (2 consultants + committee + Medical
Director, no auto-approval) and logs a warning.

Usage:
    from privileges.services.requirement_resolver import resolve_for_request

    requirement = resolve_for_request(privilege_request)
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Iterable

from privileges.models.privilege import PractitionerType, PrivilegeRequest, PrivilegeType
from privileges.services.rule_table import (
    FALLBACK_REQUIREMENT,
    ApprovalRequirement,
    RuleKey,
    RuleMiss,
    RuleTable,
)

logger = logging.getLogger(__name__)


def is_same_specialty(
    applicant_specialty: str | None,
    privilege_specialty: str | None,
    additional_specialties: Iterable[str] | None = None,
) -> bool:
    """Does a single privilege fall inside the applicant's specialty set?"""
    # Privileges without a required specialty are open to everyone
    if not privilege_specialty:
        return True
    # GPs (no specialty) never match a specialty-bearing privilege
    if not applicant_specialty:
        return False
    if applicant_specialty == privilege_specialty:
        return True
    return privilege_specialty in set(additional_specialties or ())


def classify_same_specialty(
    applicant_specialty: str | None,
    privilege_specialties: Iterable[str | None],
    additional_specialties: Iterable[str] | None = None,
) -> bool:
    """Request-level flag: True only if every privilege is same-specialty."""
    additional = list(additional_specialties or ())
    return all(
        is_same_specialty(applicant_specialty, ps, additional)
        for ps in privilege_specialties
    )


def resolve(
    practitioner_type: PractitionerType | str | None,
    privilege_type: PrivilegeType | str,
    requested_privileges: Iterable,
    applicant_specialty: str | None,
    applicant_additional_specialties: Iterable[str] | None = None,
    *,
    rule_table: RuleTable | None = None,
) -> ApprovalRequirement:
    """Resolve the approval requirement for a set of requested privileges.

    Args:
        practitioner_type: Applicant classification; None is treated as GP.
        privilege_type: Request classification (CORE / NON_CORE / EXTRA).
        requested_privileges: Privilege objects (anything with ``required_specialty``).
        applicant_specialty: Applicant's primary specialty, or None.
        applicant_additional_specialties: Further specialties held.
        rule_table: Table to consult; loaded from the database when omitted.

    Returns:
        The matching ApprovalRequirement, or the most restrictive fallback.
    """
    same_specialty = classify_same_specialty(
        applicant_specialty,
        [getattr(p, "required_specialty", None) for p in requested_privileges],
        applicant_additional_specialties,
    )
    return lookup_requirement(practitioner_type, privilege_type, same_specialty, rule_table=rule_table)


def lookup_requirement(
    practitioner_type: PractitionerType | str | None,
    privilege_type: PrivilegeType | str,
    same_specialty: bool,
    *,
    rule_table: RuleTable | None = None,
) -> ApprovalRequirement:
    """Exact rule-table lookup with the most-restrictive fallback."""
    table = rule_table if rule_table is not None else RuleTable.from_db()
    key = RuleKey(
        PrivilegeType(privilege_type),
        PractitionerType(practitioner_type or PractitionerType.GP),
        bool(same_specialty),
    )

    found = table.lookup(key)
    if isinstance(found, RuleMiss):
        logger.warning(
            "No approval requirement found for %s/%s/%s; using most restrictive fallback",
            key.practitioner_type.value, key.privilege_type.value, key.same_specialty,
            extra={"event_type": "rule_table_gap"},
        )
        return replace(FALLBACK_REQUIREMENT, same_specialty=key.same_specialty)
    return found


def resolve_for_request(
    request: PrivilegeRequest,
    *,
    rule_table: RuleTable | None = None,
) -> ApprovalRequirement:
    """Resolve the requirement for a persisted request and its applicant."""
    applicant = request.applicant
    return resolve(
        applicant.practitioner_type,
        request.request_type,
        request.privileges,
        applicant.specialty,
        applicant.additional_specialties,
        rule_table=rule_table,
    )
