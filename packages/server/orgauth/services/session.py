"""
Session facade: the public API of the identity core.

Each operation is a short sequence of credential-provider, registry and
document-store calls; the facade holds no state of its own beyond the
synchronizer it owns. Writes flow back through the store's change feed and
the synchronizer republishes the ActiveSession.

Usage::

    async with SessionFacade(store, credentials) as facade:
        await facade.signup_as_owner("a@x.com", "s3cret-pw", "Ada")
        session = await facade.settle()
"""

from __future__ import annotations

from typing import Optional

import structlog
from pydantic import ValidationError

from orgauth.core.config import Settings, get_settings
from orgauth.core.credentials import CredentialProvider, LocalCredentialProvider
from orgauth.core.errors import (
    AccessDenied,
    AlreadyMember,
    ConfirmationMismatch,
    CredentialError,
    Forbidden,
    OrganizationNotFound,
    OrgAuthError,
    OwnerCannotLeave,
    Unauthenticated,
)
from orgauth.core.store import DocumentStore
from orgauth.services import organizations as org_service
from orgauth.services.invite_codes import InviteCodeRegistry
from orgauth.services.membership import (
    append_membership,
    build_membership,
    default_organization,
    has_access_to,
    remove_membership,
)
from orgauth.services.profile_sync import (
    ActiveSession,
    ProfileSynchronizer,
    SessionListener,
    SessionNotice,
    SyncState,
)
from orgauth.services.profiles import (
    create_profile,
    load_profile,
    mutate_profile,
    set_active_organization,
)
from orgauth.services.team import TeamManager
from orgauth_shared.schemas.common import Role
from orgauth_shared.schemas.organizations import Organization, OrgCreateRequest
from orgauth_shared.schemas.users import Membership, Principal, SignupRequest, UserProfile

log = structlog.get_logger()


def _validated_signup(email: str, password: str, display_name: str) -> SignupRequest:
    try:
        return SignupRequest(email=email, password=password, display_name=display_name)
    except ValidationError as exc:
        field = exc.errors()[0]["loc"][0] if exc.errors() else "input"
        raise CredentialError("invalid_input", f"Invalid {field}")


class SessionFacade:
    def __init__(
        self,
        store: DocumentStore,
        credentials: CredentialProvider,
        *,
        settings: Settings | None = None,
        registry: InviteCodeRegistry | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.credentials = credentials
        self.registry = registry or InviteCodeRegistry(store, settings=self.settings)
        self.synchronizer = ProfileSynchronizer(store, credentials, settings=self.settings)
        self.team = TeamManager(store, self.registry, self.synchronizer, settings=self.settings)

    # -- lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        await self.synchronizer.attach()

    async def stop(self) -> None:
        await self.synchronizer.close()

    async def __aenter__(self) -> SessionFacade:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    # -- observation ----------------------------------------------------------

    @property
    def session(self) -> ActiveSession | None:
        return self.synchronizer.session

    @property
    def state(self) -> SyncState:
        return self.synchronizer.state

    @property
    def notice(self) -> SessionNotice | None:
        return self.synchronizer.notice

    def on_session(self, listener: SessionListener):
        return self.synchronizer.on_session(listener)

    async def settle(self, timeout: float | None = None) -> ActiveSession | None:
        """Wait for pending change notifications and return the resulting session."""
        await self.store.feed.idle()
        return await self.synchronizer.wait_settled(timeout)

    def _require_principal(self) -> Principal:
        principal = self.credentials.current_principal
        if principal is None:
            raise Unauthenticated()
        return principal

    async def _send_verification(self, principal: Principal) -> None:
        try:
            await self.credentials.send_verification(principal)
        except Exception as exc:
            # best effort: the account stays usable without a verified email
            log.warning("session.verification_failed", subject_id=principal.subject_id, error=str(exc))

    async def _organization_name(self, org_id: str) -> Optional[str]:
        try:
            return (await org_service.get_organization(self.store, org_id)).name
        except OrganizationNotFound:
            return None

    # -- credential delegation ------------------------------------------------

    async def login(self, email: str, password: str) -> Principal:
        return await self.credentials.authenticate(email, password)

    async def logout(self) -> None:
        self.synchronizer.clear()
        await self.credentials.sign_out()

    async def reset_password(self, email: str) -> None:
        await self.credentials.send_password_reset(email)

    def _local_credentials(self) -> LocalCredentialProvider:
        if not isinstance(self.credentials, LocalCredentialProvider):
            raise CredentialError("provider_error", "This credential provider handles tokens itself")
        return self.credentials

    async def confirm_email(self, token: str) -> Principal:
        return await self._local_credentials().confirm_email(token)

    async def complete_password_reset(self, token: str, new_password: str) -> None:
        await self._local_credentials().complete_password_reset(token, new_password)

    # -- signup ---------------------------------------------------------------

    async def signup_as_owner(
        self,
        email: str,
        password: str,
        display_name: str,
        organization_name: str | None = None,
    ) -> UserProfile:
        """Create an account that owns a fresh organization on the default plan."""
        req = _validated_signup(email, password, display_name)
        principal = await self.credentials.create_account(req.email, req.password)

        org = await org_service.create_organization(
            self.store,
            principal.subject_id,
            organization_name or f"{req.display_name}'s organization",
            settings=self.settings,
        )
        profile = UserProfile(
            subject_id=principal.subject_id,
            email=principal.email,
            display_name=req.display_name,
            memberships=[
                build_membership(org.id, Role.OWNER, organization_name=org.name, is_default=True)
            ],
            active_organization_id=org.id,
        )
        await create_profile(self.store, profile)
        await self._send_verification(principal)
        log.info("session.signup_owner", subject_id=principal.subject_id, org_id=org.id)
        return profile

    async def signup_with_invite_code(
        self,
        email: str,
        password: str,
        display_name: str,
        code: str,
    ) -> UserProfile:
        """Create an account whose first membership comes from an invite code."""
        req = _validated_signup(email, password, display_name)
        # dead codes fail here, before any account exists
        invite = await self.registry.validate(code)
        principal = await self.credentials.create_account(req.email, req.password)

        try:
            membership = await self.registry.redeem(invite.code, principal.subject_id)
        except OrgAuthError as exc:
            log.warning(
                "session.invite_signup_failed",
                code=invite.code,
                subject_id=principal.subject_id,
                error=exc.code,
            )
            await self.credentials.sign_out()
            raise

        membership = membership.model_copy(
            update={
                "is_default": True,
                "organization_name": await self._organization_name(membership.organization_id),
            }
        )
        profile = UserProfile(
            subject_id=principal.subject_id,
            email=principal.email,
            display_name=req.display_name,
            memberships=[membership],
            active_organization_id=membership.organization_id,
        )
        try:
            await create_profile(self.store, profile)
        except OrgAuthError:
            log.error(
                "invite.consumed_without_membership",
                code=invite.code,
                subject_id=principal.subject_id,
                org_id=membership.organization_id,
            )
            raise
        await self._send_verification(principal)
        log.info(
            "session.signup_invite",
            subject_id=principal.subject_id,
            org_id=membership.organization_id,
        )
        return profile

    # -- organization context -------------------------------------------------

    async def join_organization_with_code(self, code: str) -> Membership:
        principal = self._require_principal()
        invite = await self.registry.get(code)
        profile, _ = await load_profile(self.store, principal.subject_id)
        if has_access_to(profile, invite.organization_id):
            raise AlreadyMember()

        membership = await self.registry.redeem(invite.code, principal.subject_id)
        membership = membership.model_copy(
            update={"organization_name": await self._organization_name(membership.organization_id)}
        )

        def join(current: UserProfile) -> UserProfile:
            added = membership.model_copy(update={"is_default": not current.memberships})
            return current.model_copy(
                update={
                    "memberships": append_membership(current.memberships, added),
                    "active_organization_id": membership.organization_id,
                }
            )

        try:
            await mutate_profile(
                self.store,
                principal.subject_id,
                join,
                attempts=self.settings.profile_write_attempts,
            )
        except OrgAuthError:
            log.error(
                "invite.consumed_without_membership",
                code=invite.code,
                subject_id=principal.subject_id,
                org_id=membership.organization_id,
            )
            raise
        log.info("session.joined", subject_id=principal.subject_id, org_id=membership.organization_id)
        return membership

    async def switch_organization(self, org_id: str) -> None:
        """Make ``org_id`` active. Without a signed-in principal this does nothing."""
        principal = self.credentials.current_principal
        if principal is None:
            return
        profile, _ = await load_profile(self.store, principal.subject_id)
        if not has_access_to(profile, org_id, excluded=self.synchronizer.orphaned):
            log.warning("session.switch_denied", subject_id=principal.subject_id, org_id=org_id)
            raise AccessDenied()
        if profile.active_organization_id == org_id:
            return
        await set_active_organization(self.store, principal.subject_id, org_id)
        log.info("session.switched", subject_id=principal.subject_id, org_id=org_id)

    async def create_organization(self, name: str) -> Organization:
        """Found another organization under the plan of the ones already owned."""
        principal = self._require_principal()
        try:
            req = OrgCreateRequest(name=name)
        except ValidationError:
            raise OrgAuthError("Organization name must be 1-100 characters", code="INVALID_INPUT")

        plan = await org_service.check_founding_limit(self.store, principal.subject_id)
        org = await org_service.create_organization(
            self.store, principal.subject_id, req.name, plan=plan, settings=self.settings
        )

        def add_owner(current: UserProfile) -> UserProfile:
            owner = build_membership(
                org.id,
                Role.OWNER,
                organization_name=org.name,
                is_default=not current.memberships,
            )
            return current.model_copy(
                update={
                    "memberships": append_membership(current.memberships, owner),
                    "active_organization_id": org.id,
                }
            )

        await mutate_profile(
            self.store,
            principal.subject_id,
            add_owner,
            attempts=self.settings.profile_write_attempts,
        )
        return org

    async def leave_organization(self, org_id: str) -> None:
        principal = self._require_principal()
        profile, _ = await load_profile(self.store, principal.subject_id)
        if not has_access_to(profile, org_id):
            raise AccessDenied()
        try:
            org = await org_service.get_organization(self.store, org_id)
        except OrganizationNotFound:
            org = None
        if org is not None and org.owner_subject_id == principal.subject_id:
            raise OwnerCannotLeave()

        def leave(current: UserProfile) -> UserProfile:
            remaining = remove_membership(current.memberships, org_id)
            active = current.active_organization_id
            if active == org_id:
                active = default_organization(current.model_copy(update={"memberships": remaining}))
            return current.model_copy(
                update={"memberships": remaining, "active_organization_id": active}
            )

        await mutate_profile(
            self.store,
            principal.subject_id,
            leave,
            attempts=self.settings.profile_write_attempts,
        )
        log.info("session.left_org", subject_id=principal.subject_id, org_id=org_id)

    async def delete_organization(self, org_id: str, confirm_name: str) -> int:
        """Delete an owned organization. Returns how many other members were removed."""
        principal = self._require_principal()
        org = await org_service.get_organization(self.store, org_id)
        if org.owner_subject_id != principal.subject_id:
            raise Forbidden("Only the owner can delete an organization")
        if confirm_name.strip() != org.name:
            raise ConfirmationMismatch()
        return await org_service.delete_organization(
            self.store,
            self.registry,
            org,
            attempts=self.settings.profile_write_attempts,
        )
