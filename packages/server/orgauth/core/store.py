"""
Document store port and change feed.

The identity core talks to its backing store only through ``DocumentStore``:
keyed documents in named collections, merge writes, a conditional create, a
version-conditional update and a per-document change subscription.

Delivery model:
- every write bumps the document version (deletes leave a versioned tombstone)
- subscribers receive the current snapshot first, then every later change
- one ordered queue per subscriber, so a document's changes arrive in write order
- a snapshot older than one already delivered is dropped
"""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Coroutine, Optional

import structlog

from orgauth.core.errors import DocumentExists, WriteConflict

log = structlog.get_logger()


@dataclass(frozen=True)
class DocumentSnapshot:
    """A point-in-time view of one document. ``data`` is None when it does not exist."""
    collection: str
    key: str
    data: Optional[dict[str, Any]]
    version: int = 0

    @property
    def exists(self) -> bool:
        return self.data is not None


ChangeHandler = Callable[[DocumentSnapshot], Coroutine[Any, Any, None]]
ErrorHandler = Callable[[Exception], Coroutine[Any, Any, None]]
Predicate = Callable[[dict[str, Any]], bool]

_STOP = object()


class Subscription:
    """Handle for one document subscription. ``cancel()`` unsubscribes."""

    def __init__(
        self,
        feed: ChangeFeed,
        collection: str,
        key: str,
        on_change: ChangeHandler,
        on_error: ErrorHandler | None = None,
    ) -> None:
        self.collection = collection
        self.key = key
        self._feed = feed
        self._on_change = on_change
        self._on_error = on_error
        self._queue: asyncio.Queue = asyncio.Queue()
        self._last_version = -1
        self._pending = 0
        self._active = True
        self._task = asyncio.create_task(self._pump())

    @property
    def active(self) -> bool:
        return self._active

    @property
    def pending(self) -> int:
        return self._pending

    def push(self, item: DocumentSnapshot | Exception) -> None:
        if self._active:
            self._pending += 1
            self._queue.put_nowait(item)

    async def cancel(self) -> None:
        """Stop delivery. A handler that is already running finishes; queued items are dropped."""
        if not self._active:
            return
        self._active = False
        self._feed.remove(self)
        self._queue.put_nowait(_STOP)

    async def join(self) -> None:
        await self._queue.join()

    async def _pump(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                if not self._active:
                    continue
                if isinstance(item, Exception):
                    await self._deliver_error(item)
                    continue
                if item.version < self._last_version:
                    continue
                self._last_version = item.version
                await self._on_change(item)
            except Exception:
                log.exception(
                    "store.handler_error",
                    collection=self.collection,
                    key=self.key,
                )
            finally:
                if item is not _STOP:
                    self._pending -= 1
                self._queue.task_done()

    async def _deliver_error(self, exc: Exception) -> None:
        if self._on_error is None:
            log.error(
                "store.subscription_error",
                collection=self.collection,
                key=self.key,
                error=str(exc),
            )
            return
        await self._on_error(exc)


class ChangeFeed:
    """Fan-out of document changes to subscribers, keyed by (collection, key)."""

    def __init__(self) -> None:
        self._subs: dict[tuple[str, str], list[Subscription]] = defaultdict(list)

    def add(
        self,
        collection: str,
        key: str,
        on_change: ChangeHandler,
        on_error: ErrorHandler | None = None,
    ) -> Subscription:
        sub = Subscription(self, collection, key, on_change, on_error)
        self._subs[(collection, key)].append(sub)
        return sub

    def remove(self, sub: Subscription) -> None:
        subs = self._subs.get((sub.collection, sub.key))
        if subs and sub in subs:
            subs.remove(sub)
            if not subs:
                del self._subs[(sub.collection, sub.key)]

    def publish(self, snapshot: DocumentSnapshot) -> None:
        for sub in list(self._subs.get((snapshot.collection, snapshot.key), [])):
            sub.push(snapshot)

    def fail(self, collection: str, key: str, exc: Exception) -> None:
        """Route a store-side error to every subscriber of one document."""
        for sub in list(self._subs.get((collection, key), [])):
            sub.push(exc)

    def subscriber_count(self, collection: str, key: str) -> int:
        return len(self._subs.get((collection, key), []))

    async def idle(self) -> None:
        """Wait until every queued notification, including ones caused by handlers, is delivered."""
        while True:
            await asyncio.sleep(0)
            pending = [
                sub for subs in self._subs.values() for sub in subs
                if sub.pending
            ]
            if not pending:
                return
            for sub in pending:
                await sub.join()

    async def close(self) -> None:
        for subs in list(self._subs.values()):
            for sub in list(subs):
                await sub.cancel()


class DocumentStore(ABC):
    """Port: keyed document storage with change subscriptions."""

    def __init__(self) -> None:
        self.feed = ChangeFeed()

    @abstractmethod
    async def get(self, collection: str, key: str) -> DocumentSnapshot:
        """Read one document. Missing documents yield a snapshot with ``data=None``."""

    @abstractmethod
    async def put(
        self,
        collection: str,
        key: str,
        fields: dict[str, Any],
        *,
        merge: bool = True,
    ) -> DocumentSnapshot:
        """Write fields. ``merge=True`` updates only the given top-level fields."""

    @abstractmethod
    async def create(self, collection: str, key: str, fields: dict[str, Any]) -> DocumentSnapshot:
        """Insert a new document; raises DocumentExists if the key is taken."""

    @abstractmethod
    async def update_if(
        self,
        collection: str,
        key: str,
        fields: dict[str, Any],
        *,
        expected_version: int,
    ) -> DocumentSnapshot:
        """Merge fields only if the document still has ``expected_version``; raises WriteConflict."""

    @abstractmethod
    async def delete(self, collection: str, key: str) -> None:
        ...

    @abstractmethod
    async def query(
        self, collection: str, predicate: Predicate | None = None
    ) -> list[DocumentSnapshot]:
        """Return existing documents of a collection matching ``predicate``."""

    async def subscribe(
        self,
        collection: str,
        key: str,
        on_change: ChangeHandler,
        on_error: ErrorHandler | None = None,
    ) -> Subscription:
        """Subscribe to one document. The current snapshot is delivered first."""
        sub = self.feed.add(collection, key, on_change, on_error)
        try:
            snapshot = await self.get(collection, key)
        except Exception as exc:
            log.warning("store.initial_read_failed", collection=collection, key=key, error=str(exc))
            sub.push(exc)
        else:
            sub.push(snapshot)
        return sub

    async def close(self) -> None:
        await self.feed.close()


class MemoryDocumentStore(DocumentStore):
    """In-process document store. Each call yields to the loop once, like real I/O."""

    def __init__(self) -> None:
        super().__init__()
        # (collection, key) -> (version, data or None for a tombstone)
        self._docs: dict[tuple[str, str], tuple[int, Optional[dict[str, Any]]]] = {}
        self._lock = asyncio.Lock()

    def _snapshot(self, collection: str, key: str) -> DocumentSnapshot:
        version, data = self._docs.get((collection, key), (0, None))
        return DocumentSnapshot(collection, key, copy.deepcopy(data), version)

    def _write(self, collection: str, key: str, data: Optional[dict[str, Any]]) -> DocumentSnapshot:
        version, _ = self._docs.get((collection, key), (0, None))
        self._docs[(collection, key)] = (version + 1, copy.deepcopy(data))
        snapshot = self._snapshot(collection, key)
        self.feed.publish(snapshot)
        return snapshot

    async def get(self, collection: str, key: str) -> DocumentSnapshot:
        await asyncio.sleep(0)
        return self._snapshot(collection, key)

    async def put(
        self,
        collection: str,
        key: str,
        fields: dict[str, Any],
        *,
        merge: bool = True,
    ) -> DocumentSnapshot:
        await asyncio.sleep(0)
        async with self._lock:
            _, current = self._docs.get((collection, key), (0, None))
            body = {**current, **fields} if merge and current is not None else dict(fields)
            return self._write(collection, key, body)

    async def create(self, collection: str, key: str, fields: dict[str, Any]) -> DocumentSnapshot:
        await asyncio.sleep(0)
        async with self._lock:
            _, current = self._docs.get((collection, key), (0, None))
            if current is not None:
                raise DocumentExists(f"{collection}/{key} already exists")
            return self._write(collection, key, dict(fields))

    async def update_if(
        self,
        collection: str,
        key: str,
        fields: dict[str, Any],
        *,
        expected_version: int,
    ) -> DocumentSnapshot:
        await asyncio.sleep(0)
        async with self._lock:
            version, current = self._docs.get((collection, key), (0, None))
            if current is None or version != expected_version:
                raise WriteConflict(
                    f"{collection}/{key} is at version {version}, expected {expected_version}"
                )
            return self._write(collection, key, {**current, **fields})

    async def delete(self, collection: str, key: str) -> None:
        await asyncio.sleep(0)
        async with self._lock:
            _, current = self._docs.get((collection, key), (0, None))
            if current is None:
                return
            self._write(collection, key, None)

    async def query(
        self, collection: str, predicate: Predicate | None = None
    ) -> list[DocumentSnapshot]:
        await asyncio.sleep(0)
        result = []
        for (coll, key), (_, data) in list(self._docs.items()):
            if coll != collection or data is None:
                continue
            if predicate is None or predicate(data):
                result.append(self._snapshot(coll, key))
        return result
