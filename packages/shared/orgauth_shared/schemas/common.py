from enum import Enum


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    STAFF = "staff"
    VIEWER = "viewer"


class Collection(str, Enum):
    """Document store collections. The names are part of the wire format."""
    ACCOUNTS = "accounts"
    PROFILES = "profiles"
    ORGANIZATIONS = "organizations"
    INVITE_CODES = "invite_codes"


class Permission(str, Enum):
    ADD_RECORDS = "can_add_records"
    EDIT_RECORDS = "can_edit_records"
    DELETE_RECORDS = "can_delete_records"
    VIEW_STATISTICS = "can_view_statistics"
    EXPORT = "can_export"
    CONFIGURE_CATALOG = "can_configure_catalog"
    MANAGE_TEAM = "can_manage_team"
    CHANGE_PLAN = "can_change_plan"
