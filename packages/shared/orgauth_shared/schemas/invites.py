"""
Invite code schemas.

Codes are short, human-typable strings over an alphabet without the
look-alike characters I, L, O, 0 and 1.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, EmailStr, Field

from .common import Role
from .permissions import PermissionSet

INVITE_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
INVITE_CODE_LENGTH = 6


class InviteStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"


class InviteCode(BaseModel):
    """An invite code document, keyed by ``code``."""

    code: str
    organization_id: str
    role: str
    permissions: PermissionSet  # snapshot taken at generation time
    status: InviteStatus = InviteStatus.ACTIVE
    created_by_subject_id: str
    target_email: Optional[str] = None  # advisory only
    created_at: datetime
    expires_at: datetime
    used_by_subject_id: Optional[str] = None
    used_at: Optional[datetime] = None

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) > self.expires_at

    def to_document(self) -> dict:
        return self.model_dump(mode="json", exclude={"code"})

    @classmethod
    def from_document(cls, key: str, data: dict) -> InviteCode:
        return cls.model_validate({**data, "code": key})


class InviteCreateRequest(BaseModel):
    role: str = Field(default=Role.STAFF.value, min_length=1, max_length=50)
    target_email: Optional[EmailStr] = None
    permissions: Optional[PermissionSet] = None  # None = role preset
