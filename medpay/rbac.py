"""
Role-Based Access Control – company access decisions and query policies.

Every function here is pure: it only looks at an already-loaded Identity and
its CompanyGrants. Screens must go through these functions instead of checking
role strings themselves.
"""

from typing import Iterable, Optional

from medpay.config import COMPANY_COLUMN, COMPANY_NOT_FOUND
from medpay.models import UNRESTRICTED, AllowedCompanies, CompanyGrant, Identity, Policy, Role


def is_admin(identity: Optional[Identity]) -> bool:
    return identity is not None and identity.role is Role.ADMIN


def _has_known_role(identity: Optional[Identity]) -> bool:
    return identity is not None and identity.role is not None


def can_access_company(
    identity: Optional[Identity],
    company_grants: Iterable[CompanyGrant],
    company_id,
) -> bool:
    """Admins reach every company; everyone else only the companies they were granted."""
    if is_admin(identity):
        return True
    if company_id is None or not _has_known_role(identity):
        return False
    target = str(company_id)
    return any(g.company_id == target for g in company_grants)


def allowed_company_ids(
    identity: Optional[Identity],
    company_grants: Iterable[CompanyGrant],
) -> AllowedCompanies:
    """
    UNRESTRICTED for admins, otherwise the set of granted company ids.
    An empty set means the identity sees no company data at all.
    """
    if is_admin(identity):
        return UNRESTRICTED
    if not _has_known_role(identity):
        return frozenset()
    return frozenset(g.company_id for g in company_grants)


def company_display_name(
    identity: Optional[Identity],
    company_grants: Iterable[CompanyGrant],
    company_id,
) -> Optional[str]:
    """None for admins (use the company's own name); the granted company's name otherwise."""
    if is_admin(identity):
        return None
    target = None if company_id is None else str(company_id)
    for g in company_grants:
        if g.company_id == target:
            return g.company_name or COMPANY_NOT_FOUND
    return COMPANY_NOT_FOUND


def build_policy(identity: Optional[Identity], company_grants: Iterable[CompanyGrant]) -> Policy:
    """Derive the query-layer Policy for an identity."""
    grants = tuple(company_grants)
    allowed = allowed_company_ids(identity, grants)

    if allowed is UNRESTRICTED:
        return Policy(
            role=Role.ADMIN.value,
            allowed_company_ids=UNRESTRICTED,
            required_filter_column=None,
            notes="Admin can access every company; no company filter is applied.",
        )

    role = identity.role.value if _has_known_role(identity) else None
    if not allowed:
        notes = (
            "No company grants: no company data is visible."
            if role
            else "Profile unavailable: no company data is visible until it loads."
        )
    else:
        notes = f"Restricted to {len(allowed)} granted compan{'y' if len(allowed) == 1 else 'ies'}."
    return Policy(
        role=role,
        allowed_company_ids=allowed,
        required_filter_column=COMPANY_COLUMN,
        notes=notes,
    )
