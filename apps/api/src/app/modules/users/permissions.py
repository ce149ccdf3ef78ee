"""
Role resolution and administrative permission checks.
"""

from collections.abc import Iterable
from typing import Protocol

from app.modules.users.models import UserRole

# Highest privilege first
ROLE_PRIORITY: tuple[UserRole, ...] = tuple(UserRole)

# Roles that only make sense inside a school
SCHOOL_BOUND_ROLES = frozenset(role for role in UserRole if role is not UserRole.GLOBAL_ADMIN)

ADMIN_ROLES = frozenset({UserRole.GLOBAL_ADMIN, UserRole.SCHOOL_ADMIN})

DEFAULT_ROLE = UserRole.STUDENT


class HasRole(Protocol):
    role: UserRole
    school_id: str | None


def select_primary_role(
    assignments: Iterable[HasRole],
    default_school_id: str | None = None,
) -> tuple[UserRole, str | None]:
    """
    Pick the highest-privilege role held by a user.

    Args:
        assignments: The user's role assignments
        default_school_id: School used when the chosen assignment has none
            (normally the user's own school_id)

    Returns:
        (primary_role, primary_school_id). Users without any assignment
        fall back to DEFAULT_ROLE.
    """
    assignments = list(assignments)
    for role in ROLE_PRIORITY:
        found = next((a for a in assignments if a.role == role), None)
        if found is not None:
            return role, found.school_id or default_school_id
    return DEFAULT_ROLE, default_school_id


def has_role(assignments: Iterable[HasRole], *roles: UserRole) -> bool:
    return any(a.role in roles for a in assignments)


def administered_school_ids(assignments: Iterable[HasRole]) -> set[str]:
    """Schools in which the user holds the school_admin role."""
    return {a.school_id for a in assignments if a.role == UserRole.SCHOOL_ADMIN and a.school_id}


def can_manage_school(
    assignments: Iterable[HasRole],
    school_id: str | None,
    own_school_id: str | None = None,
) -> bool:
    """
    Whether an administrator may manage accounts of the given school.

    Global admins manage every school. School admins manage only the
    schools they administer; an assignment without a school falls back
    to the administrator's own school.
    """
    assignments = list(assignments)
    if has_role(assignments, UserRole.GLOBAL_ADMIN):
        return True
    if school_id is None:
        return False

    schools = administered_school_ids(assignments)
    if own_school_id and any(a.role == UserRole.SCHOOL_ADMIN and not a.school_id for a in assignments):
        schools.add(own_school_id)
    return school_id in schools


def grantable_roles(assignments: Iterable[HasRole]) -> frozenset[UserRole]:
    """Roles an administrator is allowed to assign to a new account."""
    assignments = list(assignments)
    if has_role(assignments, UserRole.GLOBAL_ADMIN):
        return frozenset(UserRole)
    if has_role(assignments, UserRole.SCHOOL_ADMIN):
        return SCHOOL_BOUND_ROLES
    return frozenset()
