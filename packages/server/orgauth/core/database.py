"""
SQL-backed document store.

All collections live in one ``documents`` table. Conditional writes are a
single ``UPDATE ... WHERE version = :expected`` statement, so they hold on any
backend SQLAlchemy supports (sqlite+aiosqlite for local use, postgresql+asyncpg
in production). Change notifications are fanned out in-process after commit.
"""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import sqlalchemy as sa
import structlog
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel, select

from orgauth.core.config import Settings, get_settings
from orgauth.core.errors import DocumentExists, StoreError, WriteConflict
from orgauth.core.store import DocumentSnapshot, DocumentStore, Predicate
from orgauth.models import Document

log = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_snapshot(collection: str, key: str, row: Document | None) -> DocumentSnapshot:
    if row is None:
        return DocumentSnapshot(collection, key, None, 0)
    body = dict(row.body) if row.body is not None else None
    return DocumentSnapshot(collection, key, body, row.version)


class SqlDocumentStore(DocumentStore):
    """Document store over SQLModel/SQLAlchemy async sessions."""

    def __init__(self, database_url: str | None = None, *, settings: Settings | None = None):
        super().__init__()
        settings = settings or get_settings()
        self._url = database_url or settings.database_url
        self._echo = settings.debug
        self._engine: AsyncEngine | None = None
        self._session_factory: sessionmaker | None = None

    async def open(self) -> None:
        """Create the engine and the schema (create_all; there are no migrations)."""
        url = make_url(self._url)
        if url.get_backend_name() == "sqlite" and url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)

        self._engine = create_async_engine(self._url, echo=self._echo, future=True)
        self._session_factory = sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        log.info("store.opened", backend=url.get_backend_name())

    async def close(self) -> None:
        await super().close()
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        if self._session_factory is None:
            raise StoreError("SqlDocumentStore is not open")
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def get(self, collection: str, key: str) -> DocumentSnapshot:
        async with self.session() as session:
            row = await session.get(Document, (collection, key))
            return _to_snapshot(collection, key, row)

    async def put(
        self,
        collection: str,
        key: str,
        fields: dict[str, Any],
        *,
        merge: bool = True,
    ) -> DocumentSnapshot:
        try:
            async with self.session() as session:
                row = await session.get(Document, (collection, key), with_for_update=True)
                if row is None:
                    row = Document(collection=collection, key=key, body=dict(fields), version=1)
                else:
                    base = row.body if merge and row.body is not None else {}
                    row.body = {**base, **fields}
                    row.version += 1
                    row.updated_at = _utcnow()
                session.add(row)
                await session.flush()
                snapshot = _to_snapshot(collection, key, row)
        except IntegrityError as exc:
            raise WriteConflict(f"{collection}/{key} was created concurrently") from exc

        self.feed.publish(snapshot)
        return snapshot

    async def create(self, collection: str, key: str, fields: dict[str, Any]) -> DocumentSnapshot:
        try:
            async with self.session() as session:
                row = await session.get(Document, (collection, key), with_for_update=True)
                if row is not None and row.body is not None:
                    raise DocumentExists(f"{collection}/{key} already exists")
                if row is None:
                    row = Document(collection=collection, key=key, body=dict(fields), version=1)
                else:
                    # revive a tombstone
                    row.body = dict(fields)
                    row.version += 1
                    row.updated_at = _utcnow()
                session.add(row)
                await session.flush()
                snapshot = _to_snapshot(collection, key, row)
        except IntegrityError as exc:
            raise DocumentExists(f"{collection}/{key} already exists") from exc

        self.feed.publish(snapshot)
        return snapshot

    async def update_if(
        self,
        collection: str,
        key: str,
        fields: dict[str, Any],
        *,
        expected_version: int,
    ) -> DocumentSnapshot:
        async with self.session() as session:
            row = await session.get(Document, (collection, key))
            if row is None or row.body is None or row.version != expected_version:
                raise WriteConflict(
                    f"{collection}/{key} is not at expected version {expected_version}"
                )
            body = {**row.body, **fields}
            result = await session.execute(
                sa.update(Document)
                .where(
                    Document.collection == collection,
                    Document.key == key,
                    Document.version == expected_version,
                )
                .values(body=body, version=expected_version + 1, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise WriteConflict(
                    f"{collection}/{key} is not at expected version {expected_version}"
                )

        snapshot = DocumentSnapshot(collection, key, body, expected_version + 1)
        self.feed.publish(snapshot)
        return snapshot

    async def delete(self, collection: str, key: str) -> None:
        async with self.session() as session:
            row = await session.get(Document, (collection, key), with_for_update=True)
            if row is None or row.body is None:
                return
            row.body = None
            row.version += 1
            row.updated_at = _utcnow()
            session.add(row)
            await session.flush()
            snapshot = _to_snapshot(collection, key, row)

        self.feed.publish(snapshot)

    async def query(
        self, collection: str, predicate: Predicate | None = None
    ) -> list[DocumentSnapshot]:
        async with self.session() as session:
            result = await session.execute(
                select(Document).where(Document.collection == collection)
            )
            rows = result.scalars().all()
        return [
            _to_snapshot(collection, row.key, row)
            for row in rows
            if row.body is not None and (predicate is None or predicate(row.body))
        ]
