"""
Credential provider port and the local email/password implementation.

The provider authenticates principals, reports sign-in / sign-out through
session-change callbacks and sends verification and password-reset notices.

LocalCredentialProvider keeps accounts in the document store (``accounts``
collection, keyed by normalised email), hashes passwords with bcrypt and
issues signed, expiring JWTs for the verification and reset flows.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Coroutine, Optional

import bcrypt
import jwt
import structlog
from pydantic import EmailStr, TypeAdapter, ValidationError

from orgauth.core.config import Settings, get_settings
from orgauth.core.errors import CredentialError, DocumentExists
from orgauth.core.store import DocumentStore
from orgauth_shared.schemas.common import Collection
from orgauth_shared.schemas.users import Principal

log = structlog.get_logger()

SessionChangeHandler = Callable[[Optional[Principal]], Coroutine[Any, Any, None]]

TOKEN_PURPOSE_VERIFY = "verify_email"
TOKEN_PURPOSE_RESET = "reset_password"

_email_adapter = TypeAdapter(EmailStr)


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

def hash_password(password: str, rounds: int = 12) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against a bcrypt hash."""
    return bcrypt.checkpw(password.encode(), hashed.encode())


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Action tokens (JWT)
# ---------------------------------------------------------------------------

def create_action_token(
    subject_id: str,
    email: str,
    purpose: str,
    settings: Settings,
    *,
    expires_delta: timedelta | None = None,
) -> str:
    """Create a signed single-purpose token for verification or password reset."""
    now = datetime.now(timezone.utc)
    exp = now + (expires_delta or timedelta(minutes=settings.token_expire_minutes))
    payload = {
        "sub": subject_id,
        "email": email,
        "purpose": purpose,
        "iat": now,
        "exp": exp,
        "jti": str(uuid.uuid4()),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_action_token(token: str, purpose: str, settings: Settings) -> dict:
    """Decode and verify an action token. Raises CredentialError on any failure."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise CredentialError("invalid_token", "This link has expired")
    except jwt.PyJWTError:
        raise CredentialError("invalid_token", "This link is invalid")
    if payload.get("purpose") != purpose:
        raise CredentialError("invalid_token", "This link is invalid")
    return payload


# ---------------------------------------------------------------------------
# Notification delivery
# ---------------------------------------------------------------------------

class NotificationSender(ABC):
    """Delivers account notices (verification, password reset) to a mailbox."""

    @abstractmethod
    async def send(self, email: str, kind: str, token: str) -> None:
        ...


class LoggingNotificationSender(NotificationSender):
    """Writes notices to the log instead of sending mail (local development)."""

    async def send(self, email: str, kind: str, token: str) -> None:
        log.info("notification.sent", email=email, kind=kind)


# ---------------------------------------------------------------------------
# Provider port
# ---------------------------------------------------------------------------

class CredentialProvider(ABC):
    """Port: authentication of principals plus session-change events."""

    def __init__(self) -> None:
        self._handlers: list[SessionChangeHandler] = []
        self._current: Principal | None = None

    @property
    def current_principal(self) -> Principal | None:
        return self._current

    def on_session_change(self, handler: SessionChangeHandler) -> Callable[[], None]:
        """Register a session-change callback. Returns the unsubscribe function."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    async def _emit(self, principal: Principal | None) -> None:
        self._current = principal
        for handler in list(self._handlers):
            try:
                await handler(principal)
            except Exception:
                log.exception("credentials.handler_error")

    @abstractmethod
    async def create_account(self, email: str, password: str) -> Principal:
        """Create an account and sign it in."""

    @abstractmethod
    async def authenticate(self, email: str, password: str) -> Principal:
        """Verify credentials and sign the principal in."""

    @abstractmethod
    async def sign_out(self) -> None:
        ...

    @abstractmethod
    async def send_verification(self, principal: Principal) -> None:
        ...

    @abstractmethod
    async def send_password_reset(self, email: str) -> None:
        ...


class LocalCredentialProvider(CredentialProvider):
    """Email/password accounts stored alongside the rest of the documents."""

    def __init__(
        self,
        store: DocumentStore,
        *,
        settings: Settings | None = None,
        sender: NotificationSender | None = None,
    ) -> None:
        super().__init__()
        self._store = store
        self._settings = settings or get_settings()
        self._sender = sender or LoggingNotificationSender()

    def _check_password(self, password: str) -> None:
        if len(password) < self._settings.min_password_length:
            raise CredentialError(
                "weak_password",
                f"Password must be at least {self._settings.min_password_length} characters",
            )

    async def create_account(self, email: str, password: str) -> Principal:
        email = normalize_email(email)
        try:
            _email_adapter.validate_python(email)
        except ValidationError:
            raise CredentialError("invalid_input", "Invalid email address")
        self._check_password(password)

        subject_id = uuid.uuid4().hex
        try:
            await self._store.create(
                Collection.ACCOUNTS.value,
                email,
                {
                    "subject_id": subject_id,
                    "email": email,
                    "password_hash": hash_password(password, self._settings.bcrypt_rounds),
                    "email_verified": False,
                    "created_at": datetime.now(timezone.utc).isoformat(),
                },
            )
        except DocumentExists:
            raise CredentialError("account_exists", "Email already registered")

        principal = Principal(subject_id=subject_id, email=email)
        log.info("credentials.account_created", subject_id=subject_id)
        await self._emit(principal)
        return principal

    async def authenticate(self, email: str, password: str) -> Principal:
        snapshot = await self._store.get(Collection.ACCOUNTS.value, normalize_email(email))
        if not snapshot.exists or not verify_password(password, snapshot.data["password_hash"]):
            log.info("credentials.login_failed")
            raise CredentialError("invalid_credentials")

        principal = Principal(
            subject_id=snapshot.data["subject_id"],
            email=snapshot.data["email"],
            email_verified=snapshot.data.get("email_verified", False),
        )
        log.info("credentials.signed_in", subject_id=principal.subject_id)
        await self._emit(principal)
        return principal

    async def sign_out(self) -> None:
        if self._current is None:
            return
        log.info("credentials.signed_out", subject_id=self._current.subject_id)
        await self._emit(None)

    async def send_verification(self, principal: Principal) -> None:
        token = create_action_token(
            principal.subject_id, principal.email, TOKEN_PURPOSE_VERIFY, self._settings
        )
        await self._sender.send(principal.email, TOKEN_PURPOSE_VERIFY, token)

    async def send_password_reset(self, email: str) -> None:
        email = normalize_email(email)
        snapshot = await self._store.get(Collection.ACCOUNTS.value, email)
        if not snapshot.exists:
            # No account enumeration: unknown addresses look like a success.
            log.info("credentials.reset_unknown_email")
            return
        token = create_action_token(
            snapshot.data["subject_id"], email, TOKEN_PURPOSE_RESET, self._settings
        )
        await self._sender.send(email, TOKEN_PURPOSE_RESET, token)

    async def confirm_email(self, token: str) -> Principal:
        """Mark an account's email as verified from a verification token."""
        payload = decode_action_token(token, TOKEN_PURPOSE_VERIFY, self._settings)
        snapshot = await self._store.get(Collection.ACCOUNTS.value, payload["email"])
        if not snapshot.exists or snapshot.data["subject_id"] != payload["sub"]:
            raise CredentialError("invalid_token", "This link is invalid")

        await self._store.put(
            Collection.ACCOUNTS.value, payload["email"], {"email_verified": True}
        )
        principal = Principal(subject_id=payload["sub"], email=payload["email"], email_verified=True)
        if self._current is not None and self._current.subject_id == principal.subject_id:
            self._current = principal
        log.info("credentials.email_verified", subject_id=principal.subject_id)
        return principal

    async def complete_password_reset(self, token: str, new_password: str) -> None:
        payload = decode_action_token(token, TOKEN_PURPOSE_RESET, self._settings)
        self._check_password(new_password)
        snapshot = await self._store.get(Collection.ACCOUNTS.value, payload["email"])
        if not snapshot.exists or snapshot.data["subject_id"] != payload["sub"]:
            raise CredentialError("invalid_token", "This link is invalid")

        await self._store.put(
            Collection.ACCOUNTS.value,
            payload["email"],
            {"password_hash": hash_password(new_password, self._settings.bcrypt_rounds)},
        )
        log.info("credentials.password_reset", subject_id=payload["sub"])
