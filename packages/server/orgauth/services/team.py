"""
Team management: invites and membership edits within the active organization.

Every operation requires ``can_manage_team`` in the caller's ActiveSession.
Edits land in *other* principals' profile documents; their own synchronizers
pick the change up and reconcile.
"""

from __future__ import annotations

from typing import Optional

import structlog

from orgauth.core.config import Settings, get_settings
from orgauth.core.errors import Forbidden, MembershipNotFound, Unauthenticated
from orgauth.core.store import DocumentStore
from orgauth.services.invite_codes import InviteCodeRegistry
from orgauth.services.membership import (
    apply_role_preset,
    find_membership,
    remove_membership,
    replace_membership,
)
from orgauth.services.profile_sync import ActiveSession, ProfileSynchronizer
from orgauth.services.profiles import list_profiles_in_organization, mutate_profile
from orgauth_shared.schemas.common import Permission, Role
from orgauth_shared.schemas.invites import InviteCode
from orgauth_shared.schemas.permissions import PermissionSet
from orgauth_shared.schemas.users import MemberInfo, Membership, UserProfile

log = structlog.get_logger()


def _role_name(role: Role | str) -> str:
    name = role.value if isinstance(role, Role) else str(role)
    return name.strip().lower()


class TeamManager:
    def __init__(
        self,
        store: DocumentStore,
        registry: InviteCodeRegistry,
        synchronizer: ProfileSynchronizer,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._sync = synchronizer
        self._attempts = (settings or get_settings()).profile_write_attempts

    def _require_manager(self) -> ActiveSession:
        session = self._sync.session
        if session is None:
            raise Unauthenticated()
        if not session.can(Permission.MANAGE_TEAM):
            raise Forbidden(required_permission=Permission.MANAGE_TEAM.value)
        return session

    # -- invites --------------------------------------------------------------

    async def invite_member(
        self,
        role: Role | str = Role.STAFF,
        target_email: str | None = None,
        permissions: PermissionSet | None = None,
    ) -> InviteCode:
        session = self._require_manager()
        role = _role_name(role)
        if role == Role.OWNER.value:
            raise Forbidden("Invite codes cannot grant ownership")
        return await self._registry.generate(
            session.organization_id,
            role,
            permissions,
            session.principal.subject_id,
            target_email,
        )

    async def list_invites(self) -> list[InviteCode]:
        session = self._require_manager()
        return await self._registry.list_active(session.organization_id)

    async def revoke_invite(self, code: str) -> None:
        session = self._require_manager()
        invite = await self._registry.get(code)
        if invite.organization_id != session.organization_id:
            raise Forbidden(required_permission=Permission.MANAGE_TEAM.value)
        await self._registry.revoke(invite.code)

    # -- members --------------------------------------------------------------

    async def list_members(self) -> list[MemberInfo]:
        session = self._require_manager()
        org = session.active_organization
        profiles = await list_profiles_in_organization(self._store, org.id)
        members = []
        for profile in profiles:
            m = find_membership(profile, org.id)
            members.append(
                MemberInfo(
                    subject_id=profile.subject_id,
                    email=profile.email,
                    display_name=profile.display_name,
                    role=m.role,
                    permissions=m.permissions,
                    is_owner=profile.subject_id == org.owner_subject_id,
                )
            )
        # owner first, then by name
        members.sort(key=lambda mi: (not mi.is_owner, mi.display_name.lower()))
        return members

    async def update_member(
        self,
        subject_id: str,
        role: Optional[str] = None,
        permissions: PermissionSet | None = None,
    ) -> Membership:
        """Change a member's role and/or permissions.

        A role change without explicit permissions re-applies the role preset.
        """
        session = self._require_manager()
        org = session.active_organization
        if subject_id == org.owner_subject_id:
            raise Forbidden("The organization owner's membership cannot be changed")
        if role is not None:
            role = _role_name(role)
        if role == Role.OWNER.value:
            raise Forbidden("Ownership cannot be granted through a membership edit")

        result: list[Membership] = []

        def change(profile: UserProfile) -> UserProfile:
            current = find_membership(profile, org.id)
            if current is None:
                raise MembershipNotFound()
            if permissions is not None:
                new_permissions = permissions
            elif role is not None:
                new_permissions = apply_role_preset(role)
            else:
                new_permissions = current.permissions
            updated = current.model_copy(
                update={"role": role or current.role, "permissions": new_permissions}
            )
            result[:] = [updated]
            return profile.model_copy(
                update={"memberships": replace_membership(profile.memberships, updated)}
            )

        await mutate_profile(self._store, subject_id, change, attempts=self._attempts)
        log.info(
            "team.member_updated",
            org_id=org.id,
            subject_id=subject_id,
            role=result[0].role,
            by=session.principal.subject_id,
        )
        return result[0]

    async def remove_member(self, subject_id: str) -> None:
        """Strip the membership. The removed principal's session reconciles itself."""
        session = self._require_manager()
        org = session.active_organization
        if subject_id == session.principal.subject_id:
            raise Forbidden("You cannot remove yourself; leave the organization instead")
        if subject_id == org.owner_subject_id:
            raise Forbidden("The organization owner cannot be removed")

        def change(profile: UserProfile) -> UserProfile:
            if find_membership(profile, org.id) is None:
                raise MembershipNotFound()
            return profile.model_copy(
                update={"memberships": remove_membership(profile.memberships, org.id)}
            )

        await mutate_profile(self._store, subject_id, change, attempts=self._attempts)
        log.info(
            "team.member_removed",
            org_id=org.id,
            subject_id=subject_id,
            by=session.principal.subject_id,
        )
