"""
Invite code registry: generation, validation and single-use redemption.

Redemption is one version-conditional write on the code document: of any
number of concurrent ``redeem`` calls for the same code exactly one flips
``status`` to ``used``; the rest fail with CodeUsed.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog

from orgauth.core.config import Settings, get_settings
from orgauth.core.errors import CodeExpired, CodeUsed, DocumentExists, InvalidCode, WriteConflict
from orgauth.core.store import DocumentSnapshot, DocumentStore
from orgauth.services.membership import apply_role_preset, build_membership
from orgauth_shared.schemas.common import Collection, Role
from orgauth_shared.schemas.invites import INVITE_CODE_ALPHABET, InviteCode, InviteStatus
from orgauth_shared.schemas.permissions import PermissionSet
from orgauth_shared.schemas.users import Membership

log = structlog.get_logger()

COLLECTION = Collection.INVITE_CODES.value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_code(code: str) -> str:
    return code.strip().upper()


class InviteCodeRegistry:
    """Owns the invite code documents. Knows nothing about caller permissions."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._length = settings.invite_code_length
        self._ttl = timedelta(days=settings.invite_code_ttl_days)
        self._clock = clock

    # -- helpers ------------------------------------------------------------

    def new_candidate(self) -> str:
        return "".join(secrets.choice(INVITE_CODE_ALPHABET) for _ in range(self._length))

    def _well_formed(self, code: str) -> bool:
        return len(code) == self._length and all(c in INVITE_CODE_ALPHABET for c in code)

    async def _load(self, code: str) -> tuple[InviteCode, DocumentSnapshot]:
        key = normalize_code(code)
        if not self._well_formed(key):
            raise InvalidCode()
        snapshot = await self._store.get(COLLECTION, key)
        if not snapshot.exists:
            raise InvalidCode()
        return InviteCode.from_document(key, snapshot.data), snapshot

    def _check_redeemable(self, invite: InviteCode) -> None:
        if invite.status != InviteStatus.ACTIVE:
            raise CodeUsed()
        if invite.is_expired(self._clock()):
            raise CodeExpired()

    # -- public API ---------------------------------------------------------

    async def generate(
        self,
        org_id: str,
        role: Role | str,
        permissions: PermissionSet | None,
        created_by: str,
        target_email: str | None = None,
    ) -> InviteCode:
        """Issue a fresh active code. Loops until an unused code string is found."""
        role_name = role.value if isinstance(role, Role) else role
        if permissions is None:
            permissions = apply_role_preset(role_name)
        now = self._clock()

        while True:
            invite = InviteCode(
                code=self.new_candidate(),
                organization_id=org_id,
                role=role_name,
                permissions=permissions,
                created_by_subject_id=created_by,
                target_email=target_email,
                created_at=now,
                expires_at=now + self._ttl,
            )
            try:
                await self._store.create(COLLECTION, invite.code, invite.to_document())
            except DocumentExists:
                log.info("invite.collision", code=invite.code)
                continue
            break

        log.info(
            "invite.generated",
            code=invite.code,
            org_id=org_id,
            role=role_name,
            created_by=created_by,
        )
        return invite

    async def get(self, code: str) -> InviteCode:
        invite, _ = await self._load(code)
        return invite

    async def validate(self, code: str) -> InviteCode:
        """Check that a code could be redeemed right now, without consuming it."""
        invite, _ = await self._load(code)
        self._check_redeemable(invite)
        return invite

    async def redeem(self, code: str, subject_id: str) -> Membership:
        """Consume a code and return the membership it grants."""
        invite, snapshot = await self._load(code)
        self._check_redeemable(invite)

        used_at = self._clock()
        try:
            await self._store.update_if(
                COLLECTION,
                invite.code,
                {
                    "status": InviteStatus.USED.value,
                    "used_by_subject_id": subject_id,
                    "used_at": used_at.isoformat(),
                },
                expected_version=snapshot.version,
            )
        except WriteConflict:
            current = await self._store.get(COLLECTION, invite.code)
            if not current.exists:
                raise InvalidCode()
            log.info("invite.redeem_lost_race", code=invite.code, subject_id=subject_id)
            raise CodeUsed()

        log.info(
            "invite.redeemed",
            code=invite.code,
            org_id=invite.organization_id,
            subject_id=subject_id,
        )
        return build_membership(invite.organization_id, invite.role, invite.permissions)

    async def revoke(self, code: str) -> None:
        """Delete an active code. Callers check ``can_manage_team`` first."""
        invite, _ = await self._load(code)
        if invite.status != InviteStatus.ACTIVE:
            raise CodeUsed()
        await self._store.delete(COLLECTION, invite.code)
        log.info("invite.revoked", code=invite.code, org_id=invite.organization_id)

    async def list_active(self, org_id: str) -> list[InviteCode]:
        """Active, unexpired codes of one organization, oldest first."""
        snapshots = await self._store.query(
            COLLECTION,
            lambda d: d.get("organization_id") == org_id
            and d.get("status") == InviteStatus.ACTIVE.value,
        )
        now = self._clock()
        invites = [InviteCode.from_document(s.key, s.data) for s in snapshots]
        return sorted(
            (i for i in invites if not i.is_expired(now)),
            key=lambda i: i.created_at,
        )

    async def purge_organization(self, org_id: str) -> int:
        """Delete every code (any status) issued for an organization."""
        snapshots = await self._store.query(
            COLLECTION, lambda d: d.get("organization_id") == org_id
        )
        for s in snapshots:
            await self._store.delete(COLLECTION, s.key)
        if snapshots:
            log.info("invite.purged", org_id=org_id, count=len(snapshots))
        return len(snapshots)
