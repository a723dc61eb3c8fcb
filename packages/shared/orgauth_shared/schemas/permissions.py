"""
Permission schemas.

A PermissionSet is a fixed-shape record of boolean capabilities. Every field
defaults to False, so a missing or partial record always denies.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from .common import Permission, Role


class PermissionSet(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    can_add_records: bool = False
    can_edit_records: bool = False
    can_delete_records: bool = False
    can_view_statistics: bool = False
    can_export: bool = False
    can_configure_catalog: bool = False
    can_manage_team: bool = False
    can_change_plan: bool = False

    @classmethod
    def none(cls) -> PermissionSet:
        return cls()

    @classmethod
    def full(cls) -> PermissionSet:
        return cls(**{p.value: True for p in Permission})

    def allows(self, permission: Permission | str) -> bool:
        name = permission.value if isinstance(permission, Permission) else permission
        if name not in type(self).model_fields:
            return False
        return bool(getattr(self, name))

    def granted(self) -> list[Permission]:
        return [p for p in Permission if getattr(self, p.value)]


# Canned capability sets applied when a membership is created. Editing these
# never touches memberships or invite codes that already exist.
ROLE_PRESETS: dict[Role, PermissionSet] = {
    Role.OWNER: PermissionSet.full(),
    Role.ADMIN: PermissionSet(
        can_add_records=True,
        can_edit_records=True,
        can_delete_records=True,
        can_view_statistics=True,
        can_export=True,
        can_configure_catalog=True,
    ),
    Role.STAFF: PermissionSet(
        can_add_records=True,
        can_edit_records=True,
        can_view_statistics=True,
    ),
    Role.VIEWER: PermissionSet(can_view_statistics=True),
}
