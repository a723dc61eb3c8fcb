"""
Tests for the profile synchronizer.

Covers:
- plan_reconciliation decisions
- AWAITING_PROFILE retry budget (boundary at the 10th miss) and wall-clock ceiling
- Corrective organization switches and orphaned memberships
- Forced sign-out when the last membership disappears
- Organization changes, store errors, listeners and clear()
- Malformed documents and sign-outs that land mid-reconciliation
"""

from __future__ import annotations

import asyncio

import pytest

from orgauth.core.errors import NoProfileAfterRetries
from orgauth.core.store import DocumentSnapshot
from orgauth.services.membership import build_membership
from orgauth.services.organizations import build_organization
from orgauth.services.profile_sync import (
    NO_ACCESS_NOTICE,
    NO_PROFILE_NOTICE,
    ProfileSynchronizer,
    ReconcileAction,
    SyncState,
    plan_reconciliation,
)
from orgauth.services.profiles import mutate_profile
from orgauth_shared.schemas.common import Collection, Role
from orgauth_shared.schemas.permissions import PermissionSet
from orgauth_shared.schemas.users import Principal, UserProfile

PROFILES = Collection.PROFILES.value
ORGS = Collection.ORGANIZATIONS.value


async def seed_org(store, org_id: str, owner: str = "owner-1") -> None:
    org = build_organization(owner, f"Org {org_id}").model_copy(update={"id": org_id})
    await store.put(ORGS, org_id, org.to_document(), merge=False)


async def seed_profile(store, subject_id: str, orgs: list[tuple[str, Role]], active: str | None):
    profile = UserProfile(
        subject_id=subject_id,
        email=f"{subject_id}@x.com",
        display_name=subject_id,
        memberships=[build_membership(o, r) for o, r in orgs],
        active_organization_id=active,
    )
    await store.put(PROFILES, subject_id, profile.to_document(), merge=False)


@pytest.fixture
async def sync(store, credentials, settings):
    s = ProfileSynchronizer(store, credentials, settings=settings)
    await s.attach()
    yield s
    await s.close()


async def settled(store, sync):
    await store.feed.idle()
    return await sync.wait_settled(timeout=1)


async def sign_in(credentials, email: str = "p@x.com") -> Principal:
    return await credentials.create_account(email, "password-1")


# ---------------------------------------------------------------------------
# Pure reconciliation
# ---------------------------------------------------------------------------

class TestPlanReconciliation:
    def _profile(self, orgs, active):
        return UserProfile(
            subject_id="u",
            email="u@x.com",
            display_name="u",
            memberships=[build_membership(o, Role.STAFF) for o in orgs],
            active_organization_id=active,
        )

    def test_no_memberships_signs_out(self):
        assert plan_reconciliation(self._profile([], None)).action == ReconcileAction.SIGN_OUT

    def test_accessible_active_is_ready(self):
        plan = plan_reconciliation(self._profile(["a", "b"], "b"))
        assert plan.action == ReconcileAction.READY
        assert plan.organization_id == "b"

    def test_unset_active_switches_to_first(self):
        plan = plan_reconciliation(self._profile(["a", "b"], None))
        assert (plan.action, plan.organization_id) == (ReconcileAction.SWITCH, "a")

    def test_inaccessible_active_switches(self):
        plan = plan_reconciliation(self._profile(["a"], "gone"))
        assert (plan.action, plan.organization_id) == (ReconcileAction.SWITCH, "a")

    def test_orphaned_are_skipped(self):
        plan = plan_reconciliation(self._profile(["a", "b"], "a"), orphaned={"a"})
        assert (plan.action, plan.organization_id) == (ReconcileAction.SWITCH, "b")

    def test_everything_orphaned_signs_out(self):
        plan = plan_reconciliation(self._profile(["a"], "a"), orphaned={"a"})
        assert plan.action == ReconcileAction.SIGN_OUT


# ---------------------------------------------------------------------------
# Awaiting profile
# ---------------------------------------------------------------------------

class TestAwaitingProfile:
    async def test_ninth_miss_keeps_waiting_tenth_signs_out(self, store, credentials, settings):
        sync = ProfileSynchronizer(store, credentials, settings=settings)
        await sync.start(Principal(subject_id="ghost", email="ghost@x.com"))
        await store.feed.idle()
        assert sync.retry_count == 1

        missing = DocumentSnapshot(PROFILES, "ghost", None, 0)
        for _ in range(8):
            await sync.handle_profile_snapshot(missing)
        assert sync.retry_count == 9
        assert sync.state == SyncState.AWAITING_PROFILE

        await sync.handle_profile_snapshot(missing)
        assert sync.state == SyncState.SIGNED_OUT_FORCIBLY
        assert sync.notice == NO_PROFILE_NOTICE
        assert isinstance(sync.error, NoProfileAfterRetries)
        assert sync.session is None
        await sync.close()

    async def test_profile_appearing_resets_counter(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await store.feed.idle()
        assert sync.state == SyncState.AWAITING_PROFILE
        assert sync.retry_count == 1

        await seed_org(store, "org-1")
        await seed_profile(store, principal.subject_id, [("org-1", Role.STAFF)], "org-1")
        session = await settled(store, sync)

        assert sync.state == SyncState.READY
        assert sync.retry_count == 0
        assert session.organization_id == "org-1"
        assert session.can("can_add_records")
        assert not session.can("can_manage_team")

    async def test_wall_clock_ceiling(self, store, credentials, settings):
        quick = settings.model_copy(update={"profile_wait_timeout_seconds": 0.05})
        sync = ProfileSynchronizer(store, credentials, settings=quick)
        await sync.attach()
        await sign_in(credentials)
        await asyncio.sleep(0.2)

        assert sync.state == SyncState.SIGNED_OUT_FORCIBLY
        assert sync.notice.reason == "no_profile"
        assert credentials.current_principal is None
        await sync.close()

    async def test_forced_sign_out_notice_survives_sign_out_event(self, store, credentials, sync):
        await sign_in(credentials)
        await store.feed.idle()
        missing = DocumentSnapshot(PROFILES, credentials.current_principal.subject_id, None, 0)
        while sync.state == SyncState.AWAITING_PROFILE:
            await sync.handle_profile_snapshot(missing)
        assert sync.state == SyncState.SIGNED_OUT_FORCIBLY
        assert sync.notice is NO_PROFILE_NOTICE

    async def test_new_sign_in_after_forced_sign_out(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_profile(store, principal.subject_id, [], None)
        await settled(store, sync)
        assert sync.state == SyncState.SIGNED_OUT_FORCIBLY

        await mutate_profile(
            store,
            principal.subject_id,
            lambda p: p.model_copy(update={"memberships": [build_membership("org-1", Role.VIEWER)]}),
        )
        await credentials.authenticate("p@x.com", "password-1")
        session = await settled(store, sync)
        assert sync.notice is None
        assert session.organization_id == "org-1"


# ---------------------------------------------------------------------------
# Reconciliation against live documents
# ---------------------------------------------------------------------------

class TestReconciliation:
    async def test_unset_active_triggers_corrective_write(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_org(store, "org-2")
        await seed_profile(
            store, principal.subject_id, [("org-2", Role.ADMIN), ("org-1", Role.STAFF)], None
        )
        session = await settled(store, sync)

        assert session.organization_id == "org-2"
        stored = await store.get(PROFILES, principal.subject_id)
        assert stored.data["active_organization_id"] == "org-2"

    async def test_removed_from_active_org_falls_back(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_org(store, "org-2")
        await seed_profile(
            store, principal.subject_id, [("org-1", Role.STAFF), ("org-2", Role.VIEWER)], "org-2"
        )
        assert (await settled(store, sync)).organization_id == "org-2"

        await mutate_profile(
            store,
            principal.subject_id,
            lambda p: p.model_copy(update={"memberships": p.memberships[:1]}),
        )
        session = await settled(store, sync)
        assert session.organization_id == "org-1"
        assert session.can("can_add_records")

    async def test_removed_from_only_org_forces_sign_out(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_profile(store, principal.subject_id, [("org-1", Role.STAFF)], "org-1")
        await settled(store, sync)
        published = []

        async def listener(session):
            published.append(session)

        sync.on_session(listener)

        # an administrator strips the membership from another session
        await mutate_profile(
            store,
            principal.subject_id,
            lambda p: p.model_copy(update={"memberships": []}),
        )
        await settled(store, sync)

        assert sync.state == SyncState.SIGNED_OUT_FORCIBLY
        assert sync.notice == NO_ACCESS_NOTICE
        assert "no longer belong" in sync.notice.message
        assert sync.session is None
        assert credentials.current_principal is None
        assert published == [None]

    async def test_permission_edit_is_republished(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_profile(store, principal.subject_id, [("org-1", Role.VIEWER)], "org-1")
        assert not (await settled(store, sync)).can("can_export")

        await mutate_profile(
            store,
            principal.subject_id,
            lambda p: p.model_copy(update={"memberships": [build_membership("org-1", Role.ADMIN)]}),
        )
        assert (await settled(store, sync)).can("can_export")

    async def test_orphaned_membership_is_skipped(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_org(store, "org-2")
        await seed_profile(
            store, principal.subject_id, [("org-1", Role.ADMIN), ("org-2", Role.STAFF)], "org-1"
        )
        session = await settled(store, sync)

        assert session.organization_id == "org-2"
        assert sync.orphaned == {"org-1"}

    async def test_only_orphaned_memberships_force_sign_out(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_profile(store, principal.subject_id, [("org-1", Role.ADMIN)], "org-1")
        await settled(store, sync)
        assert sync.state == SyncState.SIGNED_OUT_FORCIBLY
        assert sync.notice.reason == "no_access"

    async def test_active_org_deleted_while_ready(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_org(store, "org-2")
        await seed_profile(
            store, principal.subject_id, [("org-1", Role.STAFF), ("org-2", Role.STAFF)], "org-1"
        )
        await settled(store, sync)

        await store.delete(ORGS, "org-1")
        session = await settled(store, sync)
        assert session.organization_id == "org-2"

    async def test_organization_change_republishes(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_profile(store, principal.subject_id, [("org-1", Role.STAFF)], "org-1")
        await settled(store, sync)

        await store.put(ORGS, "org-1", {"name": "Renamed"})
        session = await settled(store, sync)
        assert session.active_organization.name == "Renamed"

    async def test_profile_deleted_while_ready(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_profile(store, principal.subject_id, [("org-1", Role.STAFF)], "org-1")
        await settled(store, sync)

        await store.delete(PROFILES, principal.subject_id)
        await settled(store, sync)
        assert sync.state == SyncState.SIGNED_OUT_FORCIBLY
        assert sync.notice.reason == "profile_deleted"


# ---------------------------------------------------------------------------
# Failures and teardown
# ---------------------------------------------------------------------------

class TestFailuresAndTeardown:
    async def test_subscription_error_is_load_failed(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_profile(store, principal.subject_id, [("org-1", Role.STAFF)], "org-1")
        await settled(store, sync)

        store.feed.fail(PROFILES, principal.subject_id, ConnectionError("stream dropped"))
        await settled(store, sync)
        assert sync.state == SyncState.LOAD_FAILED
        assert sync.session is None
        assert isinstance(sync.error, ConnectionError)
        # the process keeps its credential session
        assert credentials.current_principal == principal

    async def test_sign_out_unsubscribes(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_profile(store, principal.subject_id, [("org-1", Role.STAFF)], "org-1")
        await settled(store, sync)

        await credentials.sign_out()
        assert sync.state == SyncState.UNAUTHENTICATED
        assert sync.session is None
        assert store.feed.subscriber_count(PROFILES, principal.subject_id) == 0
        assert store.feed.subscriber_count(ORGS, "org-1") == 0

    async def test_clear_is_synchronous_and_ignores_late_notifications(
        self, store, credentials, sync
    ):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_profile(store, principal.subject_id, [("org-1", Role.STAFF)], "org-1")
        await settled(store, sync)

        sync.clear()
        assert sync.session is None
        assert sync.state == SyncState.UNAUTHENTICATED

        await store.put(PROFILES, principal.subject_id, {"display_name": "late"})
        await store.feed.idle()
        assert sync.session is None

    async def test_listeners_receive_sessions(self, store, credentials, sync):
        seen = []

        async def listener(session):
            seen.append(session and session.organization_id)

        unsubscribe = sync.on_session(listener)
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_profile(store, principal.subject_id, [("org-1", Role.STAFF)], "org-1")
        await settled(store, sync)
        assert seen == ["org-1"]

        unsubscribe()
        await store.put(ORGS, "org-1", {"name": "Other"})
        await settled(store, sync)
        assert seen == ["org-1"]


# ---------------------------------------------------------------------------
# Malformed documents
# ---------------------------------------------------------------------------

class TestMalformedDocuments:
    async def test_null_permissions_deny(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_profile(store, principal.subject_id, [("org-1", Role.ADMIN)], "org-1")
        assert (await settled(store, sync)).can("can_delete_records")

        stored = (await store.get(PROFILES, principal.subject_id)).data
        stored["memberships"][0]["permissions"] = None
        await store.put(PROFILES, principal.subject_id, {"memberships": stored["memberships"]})
        session = await settled(store, sync)

        assert sync.state == SyncState.READY
        assert not session.can("can_delete_records")
        assert session.effective_permissions == PermissionSet.none()

    async def test_unreadable_profile_drops_session(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_profile(store, principal.subject_id, [("org-1", Role.ADMIN)], "org-1")
        await settled(store, sync)

        await store.put(PROFILES, principal.subject_id, {"memberships": "not-a-list"})
        await settled(store, sync)

        assert sync.state == SyncState.LOAD_FAILED
        assert sync.session is None

    async def test_unreadable_organization_drops_session(self, store, credentials, sync):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        await seed_profile(store, principal.subject_id, [("org-1", Role.STAFF)], "org-1")
        await settled(store, sync)

        await store.put(ORGS, "org-1", {"subscription": "broken"})
        await settled(store, sync)

        assert sync.state == SyncState.LOAD_FAILED
        assert sync.session is None


# ---------------------------------------------------------------------------
# Sign-outs during an in-flight reconciliation
# ---------------------------------------------------------------------------

def gate_organization_reads(store, monkeypatch):
    """Block organization reads until ``release`` is set. Returns (entered, release)."""
    entered, release = asyncio.Event(), asyncio.Event()
    real_get = store.get

    async def gated_get(collection, key):
        if collection == ORGS:
            entered.set()
            await release.wait()
        return await real_get(collection, key)

    monkeypatch.setattr(store, "get", gated_get)
    return entered, release


async def drain(sync):
    # the lock is released only when the in-flight handler has finished
    async with sync._lock:
        pass


class TestInFlightReconciliation:
    async def test_logout_while_reading_organization(self, store, credentials, sync, monkeypatch):
        principal = await sign_in(credentials)
        await seed_org(store, "org-1")
        entered, release = gate_organization_reads(store, monkeypatch)
        published = []

        async def listener(session):
            published.append(session)

        sync.on_session(listener)
        await seed_profile(store, principal.subject_id, [("org-1", Role.ADMIN)], "org-1")
        await asyncio.wait_for(entered.wait(), timeout=1)

        sync.clear()
        await credentials.sign_out()
        release.set()
        await drain(sync)
        await store.feed.idle()

        assert sync.session is None
        assert sync.state == SyncState.UNAUTHENTICATED
        assert published == []
        assert store.feed.subscriber_count(ORGS, "org-1") == 0
        assert store.feed.subscriber_count(PROFILES, principal.subject_id) == 0

    async def test_new_principal_while_reading_organization(
        self, store, credentials, sync, monkeypatch
    ):
        first = await sign_in(credentials, "a@x.com")
        await seed_org(store, "org-1")
        await seed_org(store, "org-2")
        entered, release = gate_organization_reads(store, monkeypatch)
        await seed_profile(store, first.subject_id, [("org-1", Role.ADMIN)], "org-1")
        await asyncio.wait_for(entered.wait(), timeout=1)

        second = await sign_in(credentials, "b@x.com")
        await seed_profile(store, second.subject_id, [("org-2", Role.VIEWER)], "org-2")
        release.set()
        await drain(sync)
        session = await settled(store, sync)

        assert session.principal == second
        assert session.profile.subject_id == second.subject_id
        assert session.organization_id == "org-2"
        assert not session.can("can_delete_records")
        assert store.feed.subscriber_count(ORGS, "org-1") == 0
