"""
Membership model: pure functions over UserProfile and Membership.

Nothing here touches the document store. Every lookup is fail-closed: an
organization with no matching membership yields the all-false PermissionSet.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Optional

from orgauth_shared.schemas.common import Role
from orgauth_shared.schemas.permissions import ROLE_PRESETS, PermissionSet
from orgauth_shared.schemas.users import Membership, UserProfile


def find_membership(profile: UserProfile | None, org_id: str | None) -> Optional[Membership]:
    if profile is None or not org_id:
        return None
    for m in profile.memberships:
        if m.organization_id == org_id:
            return m
    return None


def effective_permissions(profile: UserProfile | None, org_id: str | None) -> PermissionSet:
    """Permissions held in ``org_id``; the all-false set when there is no membership."""
    m = find_membership(profile, org_id)
    return m.permissions if m is not None else PermissionSet.none()


def has_access_to(
    profile: UserProfile | None,
    org_id: str | None,
    *,
    excluded: Iterable[str] = (),
) -> bool:
    """True if the profile holds a membership in ``org_id`` that is not excluded.

    ``excluded`` carries organization ids known to be orphaned (their
    organization document no longer exists).
    """
    if org_id in set(excluded):
        return False
    return find_membership(profile, org_id) is not None


def pick_fallback_organization(
    profile: UserProfile | None,
    *,
    excluded: Iterable[str] = (),
) -> Optional[str]:
    """First accessible membership's organization id, or None."""
    if profile is None:
        return None
    skip = set(excluded)
    for m in profile.memberships:
        if m.organization_id not in skip:
            return m.organization_id
    return None


def default_organization(profile: UserProfile | None) -> Optional[str]:
    """The membership flagged ``is_default``, else the first one."""
    if profile is None or not profile.memberships:
        return None
    for m in profile.memberships:
        if m.is_default:
            return m.organization_id
    return profile.memberships[0].organization_id


def apply_role_preset(role: Role | str) -> PermissionSet:
    """Canned permissions for a built-in role. Custom roles get nothing."""
    try:
        return ROLE_PRESETS[Role(role)]
    except ValueError:
        return PermissionSet.none()


def build_membership(
    org_id: str,
    role: Role | str,
    permissions: PermissionSet | None = None,
    *,
    organization_name: str | None = None,
    is_default: bool = False,
) -> Membership:
    role_name = role.value if isinstance(role, Role) else role
    return Membership(
        organization_id=org_id,
        organization_name=organization_name,
        role=role_name,
        permissions=permissions if permissions is not None else apply_role_preset(role_name),
        is_default=is_default,
    )


# ---------------------------------------------------------------------------
# List helpers (return new lists; inputs are never mutated)
# ---------------------------------------------------------------------------

def append_membership(memberships: list[Membership], membership: Membership) -> list[Membership]:
    """Append, replacing nothing. A duplicate organization is ignored."""
    if any(m.organization_id == membership.organization_id for m in memberships):
        return list(memberships)
    return [*memberships, membership]


def remove_membership(memberships: list[Membership], org_id: str) -> list[Membership]:
    return [m for m in memberships if m.organization_id != org_id]


def replace_membership(memberships: list[Membership], membership: Membership) -> list[Membership]:
    return [
        membership if m.organization_id == membership.organization_id else m
        for m in memberships
    ]


@dataclass
class MembershipDiff:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    changed: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.added or self.removed or self.changed)


def diff_memberships(before: list[Membership], after: list[Membership]) -> MembershipDiff:
    """Organization ids gained, lost, or whose role/permissions changed."""
    old = {m.organization_id: m for m in before}
    new = {m.organization_id: m for m in after}
    diff = MembershipDiff()
    for org_id, m in new.items():
        if org_id not in old:
            diff.added.append(org_id)
        elif (m.role, m.permissions) != (old[org_id].role, old[org_id].permissions):
            diff.changed.append(org_id)
    diff.removed = [org_id for org_id in old if org_id not in new]
    return diff
