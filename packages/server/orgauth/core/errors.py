"""Error hierarchy for the identity core.

Every error carries a stable machine ``code`` and an HTTP-like
``status_code`` so an outer transport can map it directly. ``message`` is
user-facing text.
"""

from __future__ import annotations


class OrgAuthError(Exception):
    """Base error for all identity-core failures."""

    code = "ORGAUTH_ERROR"
    status_code = 400
    default_message = "Request could not be completed"

    def __init__(self, message: str | None = None, *, code: str | None = None) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        super().__init__(self.message)


# -- Credentials / session --


class CredentialError(OrgAuthError):
    """Account creation or sign-in failed.

    ``reason`` is one of: invalid_credentials, account_exists, weak_password,
    invalid_input, invalid_token, provider_error.
    """

    code = "CREDENTIAL_ERROR"
    status_code = 401
    default_message = "Invalid email or password"

    def __init__(self, reason: str = "invalid_credentials", message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message)


class Unauthenticated(OrgAuthError):
    code = "UNAUTHENTICATED"
    status_code = 401
    default_message = "You must be signed in"


class NoProfileAfterRetries(OrgAuthError):
    """The profile document never appeared after sign-in."""

    code = "NO_PROFILE"
    status_code = 500
    default_message = (
        "Your account profile could not be loaded. You have been signed out; "
        "please sign in again or contact support."
    )


class ProfileNotFound(OrgAuthError):
    code = "PROFILE_NOT_FOUND"
    status_code = 404
    default_message = "User profile does not exist"


# -- Invite codes --


class InvalidCode(OrgAuthError):
    code = "INVALID_CODE"
    status_code = 404
    default_message = "Invalid invite code"


class CodeUsed(OrgAuthError):
    code = "CODE_USED"
    status_code = 409
    default_message = "This invite code has already been used"


class CodeExpired(OrgAuthError):
    code = "CODE_EXPIRED"
    status_code = 410
    default_message = "This invite code has expired"


class AlreadyMember(OrgAuthError):
    code = "ALREADY_MEMBER"
    status_code = 409
    default_message = "You are already a member of this organization"


# -- Authorization --


class AccessDenied(OrgAuthError):
    """The principal has no membership in the target organization."""

    code = "ACCESS_DENIED"
    status_code = 403
    default_message = "You do not have access to this organization"


class Forbidden(OrgAuthError):
    """The principal is a member but lacks the required capability."""

    code = "FORBIDDEN"
    status_code = 403
    default_message = "You are not allowed to perform this action"

    def __init__(self, message: str | None = None, *, required_permission: str = "") -> None:
        self.required_permission = required_permission
        if message is None and required_permission:
            message = f"Permission denied: {required_permission}"
        super().__init__(message)


class OrphanedMembership(OrgAuthError):
    """A membership points at an organization document that does not exist."""

    code = "ORPHANED_MEMBERSHIP"
    status_code = 404
    default_message = "Organization no longer exists"

    def __init__(self, organization_id: str) -> None:
        self.organization_id = organization_id
        super().__init__(f"Organization {organization_id} no longer exists")


# -- Organizations / team --


class OrganizationNotFound(OrgAuthError):
    code = "ORG_NOT_FOUND"
    status_code = 404
    default_message = "Organization not found"


class OrganizationLimitReached(OrgAuthError):
    code = "ORG_LIMIT_REACHED"
    status_code = 409
    default_message = "Your plan does not allow founding another organization"


class OwnerCannotLeave(OrgAuthError):
    code = "OWNER_CANNOT_LEAVE"
    status_code = 409
    default_message = "The owner cannot leave their own organization"


class ConfirmationMismatch(OrgAuthError):
    code = "CONFIRMATION_MISMATCH"
    status_code = 422
    default_message = "Organization name does not match"


class MembershipNotFound(OrgAuthError):
    code = "MEMBERSHIP_NOT_FOUND"
    status_code = 404
    default_message = "User is not a member of this organization"


# -- Document store --


class StoreError(OrgAuthError):
    code = "STORE_ERROR"
    status_code = 503
    default_message = "Document store is unavailable"


class DocumentExists(StoreError):
    code = "DOCUMENT_EXISTS"
    status_code = 409
    default_message = "Document already exists"


class WriteConflict(StoreError):
    """A conditional write lost against a concurrent writer."""

    code = "WRITE_CONFLICT"
    status_code = 409
    default_message = "Document was modified concurrently"
