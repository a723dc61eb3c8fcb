"""
Profile synchronizer: turns credential sessions into an ActiveSession.

On sign-in the synchronizer subscribes to the principal's profile document and
runs a small state machine:

    UNAUTHENTICATED -> AWAITING_PROFILE(n) -> READY <-> RECONCILING
                                  \\-> SIGNED_OUT_FORCIBLY (terminal)
    any subscription error        ->  LOAD_FAILED

A profile may not exist yet when sign-in completes (the signup flow writes it
after creating the credential). Each "missing" notification counts as one
retry; ``profile_max_retries`` misses, or ``profile_wait_timeout_seconds``
without a profile, force a sign-out.

Every profile or organization notification re-runs reconciliation, which is
idempotent: it either publishes a session, writes a corrective
``active_organization_id`` and waits for the echo, or forces a sign-out.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Coroutine, Iterable, Optional

import structlog
from pydantic import ValidationError

from orgauth.core.config import Settings, get_settings
from orgauth.core.credentials import CredentialProvider
from orgauth.core.errors import NoProfileAfterRetries, OrgAuthError, OrphanedMembership
from orgauth.core.store import DocumentSnapshot, DocumentStore, Subscription
from orgauth.services.membership import (
    effective_permissions,
    has_access_to,
    pick_fallback_organization,
)
from orgauth_shared.schemas.common import Collection, Permission
from orgauth_shared.schemas.organizations import Organization
from orgauth_shared.schemas.permissions import PermissionSet
from orgauth_shared.schemas.users import Principal, UserProfile

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

class SyncState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AWAITING_PROFILE = "awaiting_profile"
    READY = "ready"
    RECONCILING = "reconciling"
    SIGNED_OUT_FORCIBLY = "signed_out_forcibly"
    LOAD_FAILED = "load_failed"


_SETTLED = {
    SyncState.UNAUTHENTICATED,
    SyncState.READY,
    SyncState.SIGNED_OUT_FORCIBLY,
    SyncState.LOAD_FAILED,
}


@dataclass(frozen=True)
class ActiveSession:
    """The only authorization artifact consumers should trust."""
    principal: Principal
    profile: UserProfile
    active_organization: Organization
    effective_permissions: PermissionSet

    @property
    def organization_id(self) -> str:
        return self.active_organization.id

    def can(self, permission: Permission | str) -> bool:
        return self.effective_permissions.allows(permission)


@dataclass(frozen=True)
class SessionNotice:
    """Why the user was signed out, in words they can read."""
    reason: str
    message: str


NO_PROFILE_NOTICE = SessionNotice("no_profile", NoProfileAfterRetries.default_message)
NO_ACCESS_NOTICE = SessionNotice(
    "no_access",
    "You no longer belong to any organization. You have been signed out; "
    "ask an administrator for a new invite code.",
)
PROFILE_DELETED_NOTICE = SessionNotice(
    "profile_deleted",
    "Your account profile was removed. You have been signed out.",
)


class ReconcileAction(str, Enum):
    SIGN_OUT = "sign_out"
    SWITCH = "switch"
    READY = "ready"


@dataclass(frozen=True)
class Reconciliation:
    action: ReconcileAction
    organization_id: Optional[str] = None


def plan_reconciliation(profile: UserProfile, orphaned: Iterable[str] = ()) -> Reconciliation:
    """Decide what a profile snapshot requires. Pure; safe to call repeatedly."""
    orphaned = set(orphaned)
    active = profile.active_organization_id
    if not profile.memberships:
        return Reconciliation(ReconcileAction.SIGN_OUT)
    if active and has_access_to(profile, active, excluded=orphaned):
        return Reconciliation(ReconcileAction.READY, active)
    fallback = pick_fallback_organization(profile, excluded=orphaned)
    if fallback is None:
        return Reconciliation(ReconcileAction.SIGN_OUT)
    return Reconciliation(ReconcileAction.SWITCH, fallback)


SessionListener = Callable[[Optional[ActiveSession]], Coroutine[Any, Any, None]]


# ---------------------------------------------------------------------------
# Synchronizer
# ---------------------------------------------------------------------------

class ProfileSynchronizer:
    """Keeps ``session`` in step with the signed-in principal's documents."""

    def __init__(
        self,
        store: DocumentStore,
        credentials: CredentialProvider,
        *,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._store = store
        self._credentials = credentials
        self.max_retries = settings.profile_max_retries
        self.wait_timeout = settings.profile_wait_timeout_seconds

        self.state = SyncState.UNAUTHENTICATED
        self.retry_count = 0
        self.session: ActiveSession | None = None
        self.notice: SessionNotice | None = None
        self.error: Exception | None = None

        self._principal: Principal | None = None
        self._profile: UserProfile | None = None
        self._organization: Organization | None = None
        self._org_version = -1
        self._orphaned: set[str] = set()
        self._generation = 0
        self._profile_sub: Subscription | None = None
        self._org_sub: Subscription | None = None
        self._timeout_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._settled = asyncio.Event()
        self._settled.set()
        self._listeners: list[SessionListener] = []
        self._detach: Callable[[], None] | None = None

    # -- lifecycle ------------------------------------------------------------

    @property
    def principal(self) -> Principal | None:
        return self._principal

    @property
    def orphaned(self) -> frozenset[str]:
        return frozenset(self._orphaned)

    async def attach(self) -> None:
        """Follow the credential provider's session changes."""
        if self._detach is None:
            self._detach = self._credentials.on_session_change(self._on_session_change)
        if self._credentials.current_principal is not None and self._principal is None:
            await self.start(self._credentials.current_principal)

    async def close(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None
        await self._teardown()

    def on_session(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener for every published session (or ``None``)."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def wait_settled(self, timeout: float | None = None) -> ActiveSession | None:
        """Wait until the state machine rests (ready, signed out or failed)."""
        await asyncio.wait_for(self._settled.wait(), timeout)
        return self.session

    def clear(self) -> None:
        """Drop the local session view immediately. In-flight notifications are ignored."""
        self._generation += 1
        self._principal = None
        self._profile = None
        self.session = None
        self.notice = None
        self.error = None
        self.retry_count = 0
        self._set_state(SyncState.UNAUTHENTICATED)

    async def start(self, principal: Principal) -> None:
        """Begin observing ``principal``'s profile document."""
        await self._teardown()
        self._generation += 1
        generation = self._generation
        self._principal = principal
        self._profile = None
        self.session = None
        self.notice = None
        self.error = None
        self.retry_count = 0
        self._orphaned = set()
        self._set_state(SyncState.AWAITING_PROFILE)
        log.info("profile.awaiting", subject_id=principal.subject_id)

        if self.wait_timeout:
            self._timeout_task = asyncio.create_task(self._wall_clock_ceiling(generation))
        self._profile_sub = await self._store.subscribe(
            Collection.PROFILES.value,
            principal.subject_id,
            lambda snap: self.handle_profile_snapshot(snap, generation),
            lambda exc: self.handle_store_error(exc, generation),
        )

    async def _on_session_change(self, principal: Principal | None) -> None:
        if principal is None:
            await self._teardown()
            self._principal = None
            self._profile = None
            self.session = None
            if self.state != SyncState.SIGNED_OUT_FORCIBLY:
                self.notice = None
                self._set_state(SyncState.UNAUTHENTICATED)
            return
        await self.start(principal)

    async def _teardown(self) -> None:
        self._generation += 1
        task, self._timeout_task = self._timeout_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        for sub in (self._profile_sub, self._org_sub):
            if sub is not None:
                await sub.cancel()
        self._profile_sub = None
        self._org_sub = None
        self._organization = None
        self._org_version = -1

    # -- notification handlers ----------------------------------------------

    def _stale(self, generation: int | None) -> bool:
        return generation is not None and generation != self._generation

    async def handle_profile_snapshot(
        self, snapshot: DocumentSnapshot, generation: int | None = None
    ) -> None:
        async with self._lock:
            if self._stale(generation) or self._principal is None:
                return
            if self.state in (SyncState.SIGNED_OUT_FORCIBLY, SyncState.LOAD_FAILED):
                return
            current = self._generation

            if not snapshot.exists:
                if self.state in (SyncState.READY, SyncState.RECONCILING):
                    await self._force_sign_out(PROFILE_DELETED_NOTICE)
                    return
                self.retry_count += 1
                log.info(
                    "profile.missing",
                    subject_id=self._principal.subject_id,
                    retry=self.retry_count,
                    max_retries=self.max_retries,
                )
                if self.retry_count >= self.max_retries:
                    await self._force_sign_out(NO_PROFILE_NOTICE, NoProfileAfterRetries())
                return

            try:
                profile = UserProfile.from_document(snapshot.key, snapshot.data)
            except ValidationError as exc:
                # an unreadable profile grants nothing
                await self._fail_load(exc)
                return

            if self.state == SyncState.AWAITING_PROFILE:
                log.info(
                    "profile.observed",
                    subject_id=self._principal.subject_id,
                    retries=self.retry_count,
                )
                self.retry_count = 0
                self._cancel_timeout()

            self._profile = profile
            self._set_state(SyncState.RECONCILING)
            await self._reconcile(current)

    async def handle_organization_snapshot(
        self, snapshot: DocumentSnapshot, generation: int | None = None
    ) -> None:
        async with self._lock:
            if self._stale(generation) or self._profile is None:
                return
            if self._organization is None or snapshot.key != self._organization.id:
                return
            if snapshot.version <= self._org_version:
                return
            current = self._generation
            self._org_version = snapshot.version
            if snapshot.exists:
                try:
                    self._organization = Organization.from_document(snapshot.key, snapshot.data)
                except ValidationError as exc:
                    await self._fail_load(exc)
                    return
            else:
                self._mark_orphaned(snapshot.key)
                self._organization = None
            self._set_state(SyncState.RECONCILING)
            await self._reconcile(current)

    async def handle_store_error(self, exc: Exception, generation: int | None = None) -> None:
        async with self._lock:
            if self._stale(generation) or self._principal is None:
                return
            await self._fail_load(exc)

    # -- reconciliation -------------------------------------------------------

    async def _reconcile(self, generation: int) -> None:
        # clear(), start() and sign-out bump the generation without taking the
        # lock, so every await below is followed by a staleness check.
        profile = self._profile
        while True:
            plan = plan_reconciliation(profile, self._orphaned)

            if plan.action == ReconcileAction.SIGN_OUT:
                await self._force_sign_out(NO_ACCESS_NOTICE)
                return

            if plan.action == ReconcileAction.SWITCH:
                log.info(
                    "session.corrective_switch",
                    subject_id=profile.subject_id,
                    from_org=profile.active_organization_id,
                    to_org=plan.organization_id,
                )
                try:
                    await self._store.put(
                        Collection.PROFILES.value,
                        profile.subject_id,
                        {"active_organization_id": plan.organization_id},
                    )
                except OrgAuthError as exc:
                    if not self._stale(generation):
                        await self._fail_load(exc)
                # the write's own notification drives the next step
                return

            try:
                org = await self._watch_organization(plan.organization_id, generation)
            except (OrgAuthError, ValidationError) as exc:
                if not self._stale(generation):
                    await self._fail_load(exc)
                return
            if self._stale(generation):
                return
            if org is None:
                self._mark_orphaned(plan.organization_id)
                continue

            await self._publish(
                ActiveSession(
                    principal=self._principal,
                    profile=profile,
                    active_organization=org,
                    effective_permissions=effective_permissions(profile, org.id),
                )
            )
            return

    async def _watch_organization(self, org_id: str, generation: int) -> Organization | None:
        """Read and subscribe to ``org_id``. Returns None if it is missing or the read went stale."""
        if self._organization is not None and self._organization.id == org_id:
            return self._organization

        if self._org_sub is not None:
            sub, self._org_sub = self._org_sub, None
            await sub.cancel()

        snapshot = await self._store.get(Collection.ORGANIZATIONS.value, org_id)
        if self._stale(generation):
            return None
        if not snapshot.exists:
            self._organization = None
            return None

        organization = Organization.from_document(org_id, snapshot.data)
        sub = await self._store.subscribe(
            Collection.ORGANIZATIONS.value,
            org_id,
            lambda snap: self.handle_organization_snapshot(snap, generation),
            lambda exc: self.handle_store_error(exc, generation),
        )
        if self._stale(generation):
            await sub.cancel()
            return None
        self._organization = organization
        self._org_version = snapshot.version
        self._org_sub = sub
        return organization

    def _mark_orphaned(self, org_id: str) -> None:
        if org_id in self._orphaned:
            return
        self._orphaned.add(org_id)
        exc = OrphanedMembership(org_id)
        log.warning(
            "membership.orphaned",
            subject_id=self._principal.subject_id if self._principal else None,
            org_id=org_id,
            error=exc.message,
        )

    # -- transitions ----------------------------------------------------------

    def _set_state(self, state: SyncState) -> None:
        self.state = state
        if state in _SETTLED:
            self._settled.set()
        else:
            self._settled.clear()

    def _cancel_timeout(self) -> None:
        task, self._timeout_task = self._timeout_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _publish(self, session: ActiveSession) -> None:
        changed = self.session != session
        self.session = session
        self._set_state(SyncState.READY)
        if changed:
            log.info(
                "session.ready",
                subject_id=session.principal.subject_id,
                org_id=session.organization_id,
                permissions=[p.value for p in session.effective_permissions.granted()],
            )
            await self._notify(session)

    async def _notify(self, session: ActiveSession | None) -> None:
        for listener in list(self._listeners):
            try:
                await listener(session)
            except Exception:
                log.exception("session.listener_error")

    async def _force_sign_out(self, notice: SessionNotice, error: Exception | None = None) -> None:
        subject_id = self._principal.subject_id if self._principal else None
        log.warning("session.forced_sign_out", subject_id=subject_id, reason=notice.reason)
        await self._teardown()
        self.session = None
        self._profile = None
        self._principal = None
        self.notice = notice
        self.error = error
        self._set_state(SyncState.SIGNED_OUT_FORCIBLY)
        await self._notify(None)
        await self._credentials.sign_out()

    async def _fail_load(self, exc: Exception) -> None:
        log.error(
            "profile.load_failed",
            subject_id=self._principal.subject_id if self._principal else None,
            error=str(exc),
        )
        await self._teardown()
        self.session = None
        self.error = exc
        self._set_state(SyncState.LOAD_FAILED)
        await self._notify(None)

    async def _wall_clock_ceiling(self, generation: int) -> None:
        await asyncio.sleep(self.wait_timeout)
        async with self._lock:
            if self._stale(generation) or self.state != SyncState.AWAITING_PROFILE:
                return
            log.warning(
                "profile.wait_timeout",
                subject_id=self._principal.subject_id if self._principal else None,
                seconds=self.wait_timeout,
            )
            await self._force_sign_out(NO_PROFILE_NOTICE, NoProfileAfterRetries())
