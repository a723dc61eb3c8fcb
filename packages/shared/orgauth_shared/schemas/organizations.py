"""
Organization-related Pydantic schemas.

Covers: the Organization document, its subscription and limits sub-models,
plan/status enums and the create request.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class PlanType(str, Enum):
    FREE = "free"
    MONTHLY = "monthly"
    SEMIANNUAL = "semiannual"
    ANNUAL = "annual"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


# Number of organizations an owner may found under one plan
MAX_ORGANIZATIONS_BY_PLAN: dict[PlanType, int] = {
    PlanType.FREE: 1,
    PlanType.MONTHLY: 1,
    PlanType.SEMIANNUAL: 1,
    PlanType.ANNUAL: 999,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Sub-models
# ---------------------------------------------------------------------------

class Subscription(BaseModel):
    plan: PlanType = PlanType.FREE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    period_start: datetime = Field(default_factory=_utcnow)
    period_end: datetime | None = None
    cancel_at_period_end: bool = False


class OrgLimits(BaseModel):
    max_organizations: int = Field(default=1, ge=1)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

class Organization(BaseModel):
    """An organization document, keyed by ``id``."""

    id: str
    name: str = Field(min_length=1, max_length=100)
    owner_subject_id: str
    subscription: Subscription = Field(default_factory=Subscription)
    limits: OrgLimits = Field(default_factory=OrgLimits)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def to_document(self) -> dict:
        return self.model_dump(mode="json", exclude={"id"})

    @classmethod
    def from_document(cls, key: str, data: dict) -> Organization:
        return cls.model_validate({**data, "id": key})


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class OrgCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100, description="Organization display name")
