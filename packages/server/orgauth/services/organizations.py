"""
Organization service: founding, lookup, plan limits and deletion.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import structlog

from orgauth.core.config import Settings, get_settings
from orgauth.core.errors import OrganizationLimitReached, OrganizationNotFound
from orgauth.core.store import DocumentStore
from orgauth.services.invite_codes import InviteCodeRegistry
from orgauth.services.membership import default_organization, remove_membership
from orgauth.services.profiles import list_profiles_in_organization, mutate_profile
from orgauth_shared.schemas.common import Collection
from orgauth_shared.schemas.organizations import (
    MAX_ORGANIZATIONS_BY_PLAN,
    Organization,
    OrgLimits,
    PlanType,
    Subscription,
)
from orgauth_shared.schemas.users import UserProfile

log = structlog.get_logger()

COLLECTION = Collection.ORGANIZATIONS.value


def build_organization(
    owner_subject_id: str,
    name: str,
    *,
    plan: PlanType = PlanType.FREE,
    period_days: int = 30,
    now: datetime | None = None,
) -> Organization:
    """A new Organization document with an active subscription on ``plan``."""
    now = now or datetime.now(timezone.utc)
    return Organization(
        id=uuid.uuid4().hex,
        name=name,
        owner_subject_id=owner_subject_id,
        subscription=Subscription(
            plan=plan,
            period_start=now,
            period_end=now + timedelta(days=period_days),
        ),
        limits=OrgLimits(max_organizations=MAX_ORGANIZATIONS_BY_PLAN[plan]),
        created_at=now,
        updated_at=now,
    )


async def create_organization(
    store: DocumentStore,
    owner_subject_id: str,
    name: str,
    *,
    plan: PlanType | None = None,
    settings: Settings | None = None,
) -> Organization:
    settings = settings or get_settings()
    org = build_organization(
        owner_subject_id,
        name,
        plan=plan or PlanType(settings.default_plan),
        period_days=settings.subscription_period_days,
    )
    await store.create(COLLECTION, org.id, org.to_document())
    log.info("org.created", org_id=org.id, owner=owner_subject_id, plan=org.subscription.plan.value)
    return org


async def get_organization(store: DocumentStore, org_id: str) -> Organization:
    snapshot = await store.get(COLLECTION, org_id)
    if not snapshot.exists:
        raise OrganizationNotFound()
    return Organization.from_document(org_id, snapshot.data)


async def list_owned_organizations(store: DocumentStore, subject_id: str) -> list[Organization]:
    snapshots = await store.query(COLLECTION, lambda d: d.get("owner_subject_id") == subject_id)
    return [Organization.from_document(s.key, s.data) for s in snapshots]


async def check_founding_limit(store: DocumentStore, subject_id: str) -> PlanType | None:
    """Raise OrganizationLimitReached unless ``subject_id`` may found one more.

    Returns the plan a new organization inherits: the best plan among the
    organizations the principal already owns, or None for a first organization.
    """
    owned = await list_owned_organizations(store, subject_id)
    if not owned:
        return None
    best = max(owned, key=lambda o: o.limits.max_organizations)
    if len(owned) >= best.limits.max_organizations:
        log.info(
            "org.limit_reached",
            subject_id=subject_id,
            owned=len(owned),
            limit=best.limits.max_organizations,
        )
        raise OrganizationLimitReached()
    return best.subscription.plan


async def delete_organization(
    store: DocumentStore,
    registry: InviteCodeRegistry,
    org: Organization,
    *,
    attempts: int = 3,
) -> int:
    """Strip every membership in ``org``, purge its codes, delete it.

    Returns the number of members other than the owner that were removed.
    """
    members = await list_profiles_in_organization(store, org.id)

    def strip(profile: UserProfile) -> UserProfile:
        remaining = remove_membership(profile.memberships, org.id)
        active = profile.active_organization_id
        if active == org.id:
            reduced = profile.model_copy(update={"memberships": remaining})
            active = default_organization(reduced)
        return profile.model_copy(
            update={"memberships": remaining, "active_organization_id": active}
        )

    for profile in members:
        await mutate_profile(store, profile.subject_id, strip, attempts=attempts)

    purged = await registry.purge_organization(org.id)
    await store.delete(COLLECTION, org.id)
    others = sum(1 for p in members if p.subject_id != org.owner_subject_id)
    log.info("org.deleted", org_id=org.id, members_removed=others, codes_purged=purged)
    return others
