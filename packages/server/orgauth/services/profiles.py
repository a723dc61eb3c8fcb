"""
Profile document access.

Membership edits are read-modify-write on a list, so they go through
``mutate_profile``: a version-conditional merge retried a bounded number of
times. Single-field updates (the active organization) are plain merge puts.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from orgauth.core.errors import ProfileNotFound, WriteConflict
from orgauth.core.store import DocumentStore
from orgauth_shared.schemas.common import Collection
from orgauth_shared.schemas.users import UserProfile

log = structlog.get_logger()

COLLECTION = Collection.PROFILES.value

ProfileChange = Callable[[UserProfile], Optional[UserProfile]]


async def load_profile(store: DocumentStore, subject_id: str) -> tuple[UserProfile, int]:
    """Read a profile and its version. Raises ProfileNotFound."""
    snapshot = await store.get(COLLECTION, subject_id)
    if not snapshot.exists:
        raise ProfileNotFound()
    return UserProfile.from_document(subject_id, snapshot.data), snapshot.version


async def create_profile(store: DocumentStore, profile: UserProfile) -> UserProfile:
    await store.create(COLLECTION, profile.subject_id, profile.to_document())
    log.info(
        "profile.created",
        subject_id=profile.subject_id,
        orgs=[m.organization_id for m in profile.memberships],
    )
    return profile


async def set_active_organization(
    store: DocumentStore, subject_id: str, org_id: str | None
) -> None:
    await store.put(
        COLLECTION,
        subject_id,
        {
            "active_organization_id": org_id,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        },
    )


async def list_profiles_in_organization(store: DocumentStore, org_id: str) -> list[UserProfile]:
    snapshots = await store.query(
        COLLECTION,
        lambda d: any(m.get("organization_id") == org_id for m in d.get("memberships", [])),
    )
    return [UserProfile.from_document(s.key, s.data) for s in snapshots]


async def mutate_profile(
    store: DocumentStore,
    subject_id: str,
    change: ProfileChange,
    *,
    attempts: int = 3,
) -> UserProfile:
    """Apply ``change`` to the stored profile with optimistic concurrency.

    ``change`` receives the current profile and returns the new one, or None
    to leave the document untouched. It may run more than once.
    """
    for attempt in range(1, attempts + 1):
        profile, version = await load_profile(store, subject_id)
        updated = change(profile)
        if updated is None:
            return profile
        updated = updated.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        doc = updated.to_document()
        try:
            await store.update_if(
                COLLECTION,
                subject_id,
                {
                    "memberships": doc["memberships"],
                    "active_organization_id": doc["active_organization_id"],
                    "display_name": doc["display_name"],
                    "updated_at": doc["updated_at"],
                },
                expected_version=version,
            )
        except WriteConflict:
            log.info("profile.write_conflict", subject_id=subject_id, attempt=attempt)
            continue
        return updated
    raise WriteConflict(f"profile {subject_id} kept changing; gave up after {attempts} attempts")
