"""
Shared fixtures: cheap settings, an in-memory store, a local credential
provider and a started SessionFacade.
"""

from __future__ import annotations

import pytest

from orgauth.core.config import Settings
from orgauth.core.credentials import LocalCredentialProvider, NotificationSender
from orgauth.core.store import MemoryDocumentStore
from orgauth.services.session import SessionFacade


class RecordingSender(NotificationSender):
    """Keeps every notice so tests can pull tokens out."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, email: str, kind: str, token: str) -> None:
        self.sent.append((email, kind, token))

    def last_token(self, kind: str) -> str:
        return [t for _, k, t in self.sent if k == kind][-1]


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        secret_key="test-secret",
        bcrypt_rounds=4,
        profile_wait_timeout_seconds=5.0,
    )


@pytest.fixture
async def store():
    s = MemoryDocumentStore()
    yield s
    await s.close()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def credentials(store, settings, sender):
    return LocalCredentialProvider(store, settings=settings, sender=sender)


@pytest.fixture
async def facade(store, credentials, settings):
    async with SessionFacade(store, credentials, settings=settings) as f:
        yield f
