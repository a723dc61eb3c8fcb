"""User profile and membership schemas."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError, field_validator

from .common import Role
from .permissions import PermissionSet


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Principal(BaseModel):
    """An authenticated identity as issued by the credential provider."""
    model_config = ConfigDict(frozen=True)

    subject_id: str
    email: str
    email_verified: bool = False


class Membership(BaseModel):
    """Edge between a profile and an organization, embedded in the profile."""

    organization_id: str
    organization_name: Optional[str] = None
    role: str = Role.VIEWER.value  # owner | admin | staff | viewer | custom
    permissions: PermissionSet = Field(default_factory=PermissionSet)
    is_default: bool = False
    joined_at: datetime = Field(default_factory=_utcnow)

    @field_validator("permissions", mode="before")
    @classmethod
    def _unreadable_permissions_deny(cls, value):
        # unreadable permission data grants nothing
        if isinstance(value, PermissionSet):
            return value
        if not isinstance(value, dict):
            return PermissionSet.none()
        try:
            return PermissionSet.model_validate(value)
        except ValidationError:
            return PermissionSet.none()


class UserProfile(BaseModel):
    """One profile document per principal, keyed by ``subject_id``."""

    subject_id: str
    email: str
    display_name: str
    memberships: list[Membership] = Field(default_factory=list)
    active_organization_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("memberships")
    @classmethod
    def _one_membership_per_org(cls, value: list[Membership]) -> list[Membership]:
        # First membership wins for both duplicates and the default flag.
        seen: set[str] = set()
        result: list[Membership] = []
        default_taken = False
        for m in value:
            if m.organization_id in seen:
                continue
            seen.add(m.organization_id)
            if m.is_default:
                if default_taken:
                    m = m.model_copy(update={"is_default": False})
                default_taken = True
            result.append(m)
        return result

    def to_document(self) -> dict:
        return self.model_dump(mode="json", exclude={"subject_id"})

    @classmethod
    def from_document(cls, key: str, data: dict) -> UserProfile:
        return cls.model_validate({**data, "subject_id": key})


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class SignupRequest(BaseModel):
    email: EmailStr
    password: str
    display_name: str = Field(min_length=1, max_length=200)


class MembershipUpdateRequest(BaseModel):
    """Change a member's role and/or permissions within one organization."""
    role: Optional[str] = Field(default=None, min_length=1, max_length=50)
    permissions: Optional[PermissionSet] = None


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class MemberInfo(BaseModel):
    """A member of an organization as shown on the team screen."""
    subject_id: str
    email: str
    display_name: str
    role: str
    permissions: PermissionSet
    is_owner: bool = False
