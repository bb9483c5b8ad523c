"""Realtime sync client: keeps a user's four collections fresh from the change feed.

The client never trusts event payloads for data. An event only says which
collection changed; the collection is then refetched in full from the
loader. Every (re)connect starts with a refetch of everything, which
reconciles whatever was missed while disconnected.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Protocol

from sqlalchemy.orm import Session

from readshare.schemas.notification import NotificationRead
from readshare.services import access, notifications
from readshare.services.changes import (
    ALL_TABLES,
    NOTIFICATIONS,
    PERMISSIONS,
    REQUESTS,
    RESYNC,
    ChangeEvent,
)
from readshare.utils.time import utcnow

logger = logging.getLogger(__name__)

GRANTED_TO_ME = "granted_to_me"
MY_VIEWERS = "my_viewers"
PENDING_REQUESTS = "pending_requests"
NOTIFICATION_INBOX = "notifications"
COLLECTIONS = (GRANTED_TO_ME, MY_VIEWERS, PENDING_REQUESTS, NOTIFICATION_INBOX)

NOTIFICATION_PAGE_SIZE = 50


class ChangeSource(Protocol):
    def subscribe(self, user_id: str) -> AbstractAsyncContextManager[AsyncIterator[ChangeEvent]]:
        """Open a subscription; iterating it yields the user's change events."""


class SnapshotLoader(Protocol):
    async def load(self, user_id: str, collection: str) -> list[dict[str, Any]]:
        """Return the current contents of ``collection`` for ``user_id``."""


def collections_for(change: ChangeEvent, user_id: str) -> set[str]:
    """Which of the user's collections a change invalidates."""

    if change.op == RESYNC or change.table == ALL_TABLES:
        return set(COLLECTIONS)
    scopes = change.scopes
    affected: set[str] = set()
    if change.table == PERMISSIONS:
        if scopes.get("viewer_id") == user_id:
            affected.add(GRANTED_TO_ME)
        if scopes.get("owner_id") == user_id:
            affected.add(MY_VIEWERS)
    elif change.table == REQUESTS:
        if user_id in (scopes.get("requester_id"), scopes.get("owner_id")):
            affected.add(PENDING_REQUESTS)
    elif change.table == NOTIFICATIONS:
        if scopes.get("user_id") == user_id:
            affected.add(NOTIFICATION_INBOX)
    return affected


def load_collection(db: Session, user_id: str, collection: str) -> list[dict[str, Any]]:
    """Read one collection through the service listings, JSON-ready."""

    if collection == GRANTED_TO_ME:
        rows = access.present_permissions(db, access.list_granted_to_me(db, user_id))
    elif collection == MY_VIEWERS:
        rows = access.present_permissions(db, access.list_my_viewers(db, user_id))
    elif collection == PENDING_REQUESTS:
        rows = access.present_requests(db, access.list_pending_requests(db, user_id, "all"))
    elif collection == NOTIFICATION_INBOX:
        items, _ = notifications.list_notifications(db, user_id, limit=NOTIFICATION_PAGE_SIZE)
        rows = [NotificationRead.model_validate(item) for item in items]
    else:
        raise ValueError(f"unknown collection: {collection}")
    return [row.model_dump(mode="json") for row in rows]


class DatabaseSnapshotLoader:
    """Loads collections in a worker thread with a short-lived session."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def _load_sync(self, user_id: str, collection: str) -> list[dict[str, Any]]:
        with self._session_factory() as db:
            return load_collection(db, user_id, collection)

    async def load(self, user_id: str, collection: str) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._load_sync, user_id, collection)


@dataclass
class SyncState:
    collections: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    refreshed_at: dict[str, datetime] = field(default_factory=dict)
    full_refreshes: int = 0
    reconnects: int = 0
    connected: bool = False


class RealtimeSyncClient:
    """Subscribes for one user and refetches what each change invalidates.

    ``run()`` loops until cancelled: subscribe, refetch everything, apply
    events; on connection loss wait (exponential backoff) and start over.
    ``on_change`` is called with the set of refreshed collection names.
    """

    def __init__(
        self,
        user_id: str,
        source: ChangeSource,
        loader: SnapshotLoader,
        *,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
        on_change: Callable[[set[str]], None] | None = None,
    ) -> None:
        self.user_id = user_id
        self._source = source
        self._loader = loader
        self._reconnect_delay = reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay
        self._on_change = on_change
        self.state = SyncState()

    def collection(self, name: str) -> list[dict[str, Any]]:
        return self.state.collections.get(name, [])

    async def refresh(self, names: set[str] | None = None) -> set[str]:
        """Refetch ``names`` (everything when omitted) and replace local copies."""

        targets = [name for name in COLLECTIONS if names is None or name in names]
        results = await asyncio.gather(*(self._loader.load(self.user_id, name) for name in targets))
        now = utcnow()
        for name, rows in zip(targets, results):
            self.state.collections[name] = rows
            self.state.refreshed_at[name] = now
        if names is None:
            self.state.full_refreshes += 1
        refreshed = set(targets)
        if refreshed and self._on_change is not None:
            self._on_change(refreshed)
        return refreshed

    async def handle_event(self, change: ChangeEvent) -> set[str]:
        affected = collections_for(change, self.user_id)
        if not affected:
            return set()
        if affected == set(COLLECTIONS):
            return await self.refresh()
        return await self.refresh(affected)

    async def _session(self) -> None:
        async with self._source.subscribe(self.user_id) as events:
            self.state.connected = True
            try:
                await self.refresh()
                async for change in events:
                    await self.handle_event(change)
            finally:
                self.state.connected = False

    async def run(self) -> None:
        delay = self._reconnect_delay
        while True:
            synced_before = self.state.full_refreshes
            try:
                await self._session()
                logger.info("Change stream ended, reconnecting", extra={"user_id": self.user_id})
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning(
                    "Change stream lost, reconnecting",
                    extra={"user_id": self.user_id, "retry_in_seconds": delay},
                    exc_info=True,
                )
            if self.state.full_refreshes > synced_before:
                # The last connection got as far as a full sync: start backoff over.
                delay = self._reconnect_delay
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._max_reconnect_delay)
            self.state.reconnects += 1


__all__ = [
    "COLLECTIONS",
    "ChangeSource",
    "SnapshotLoader",
    "DatabaseSnapshotLoader",
    "RealtimeSyncClient",
    "SyncState",
    "collections_for",
    "load_collection",
]
