"""Change capture and the in-process change feed behind realtime sync.

Inserts, updates and deletes of access requests, reading permissions and
notifications are collected per session while it flushes and published only
once the session commits; a rollback discards them. Writes issued as bulk
statements (compare-and-set updates, upserts, deletes) are announced by the
service that issues them through :func:`record_change`.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session

from readshare.models.access import AccessRequest, ReadingPermission
from readshare.models.notification import Notification

logger = logging.getLogger(__name__)

_PENDING_KEY = "readshare.pending_changes"

PERMISSIONS = "reading_permissions"
REQUESTS = "access_requests"
NOTIFICATIONS = "notifications"
ALL_TABLES = "*"

RESYNC = "resync"


@dataclass(frozen=True)
class ChangeEvent:
    """A committed change, addressed to the users named in ``scopes``.

    ``scopes`` maps the scoping column (``viewer_id``, ``owner_id``,
    ``requester_id``, ``user_id``) to the user it points at.
    """

    table: str
    op: str
    record_id: str | None = None
    scopes: Mapping[str, str] = field(default_factory=dict)

    @property
    def user_ids(self) -> frozenset[str]:
        return frozenset(self.scopes.values())

    def concerns(self, user_id: str) -> bool:
        return self.table == ALL_TABLES or user_id in self.user_ids

    def as_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "op": self.op,
            "record_id": self.record_id,
            "scopes": dict(self.scopes),
        }


def resync_event() -> ChangeEvent:
    return ChangeEvent(table=ALL_TABLES, op=RESYNC)


def _event_for(obj: object, op: str) -> ChangeEvent | None:
    if isinstance(obj, ReadingPermission):
        return ChangeEvent(
            table=PERMISSIONS,
            op=op,
            record_id=obj.id,
            scopes={"viewer_id": obj.viewer_id, "owner_id": obj.owner_id},
        )
    if isinstance(obj, AccessRequest):
        return ChangeEvent(
            table=REQUESTS,
            op=op,
            record_id=obj.id,
            scopes={"requester_id": obj.requester_id, "owner_id": obj.owner_id},
        )
    if isinstance(obj, Notification):
        return ChangeEvent(table=NOTIFICATIONS, op=op, record_id=obj.id, scopes={"user_id": obj.user_id})
    return None


def pending_changes(db: Session) -> list[ChangeEvent]:
    return db.info.setdefault(_PENDING_KEY, [])


def record_change(
    db: Session,
    table: str,
    op: str,
    *,
    record_id: str | None = None,
    scopes: Mapping[str, str],
) -> None:
    """Announce a change made through a bulk statement; published on commit."""

    pending_changes(db).append(ChangeEvent(table=table, op=op, record_id=record_id, scopes=dict(scopes)))


def _after_flush(session: Session, flush_context: Any) -> None:
    pending = pending_changes(session)
    for obj in session.new:
        change = _event_for(obj, "insert")
        if change is not None:
            pending.append(change)
    for obj in session.dirty:
        if not session.is_modified(obj, include_collections=False):
            continue
        change = _event_for(obj, "update")
        if change is not None:
            pending.append(change)
    for obj in session.deleted:
        change = _event_for(obj, "delete")
        if change is not None:
            pending.append(change)


def _after_commit(session: Session) -> None:
    changes = session.info.pop(_PENDING_KEY, None)
    if not changes:
        return
    feed = get_change_feed()
    for change in changes:
        feed.publish(change)


def _after_rollback(session: Session) -> None:
    session.info.pop(_PENDING_KEY, None)


def install_change_capture() -> None:
    """Register the session hooks once per process."""

    if event.contains(Session, "after_flush", _after_flush):
        return
    event.listen(Session, "after_flush", _after_flush)
    event.listen(Session, "after_commit", _after_commit)
    event.listen(Session, "after_rollback", _after_rollback)


class Subscription:
    """One subscriber's bounded queue, bound to the event loop that created it."""

    def __init__(self, feed: "ChangeFeed", user_id: str, loop: asyncio.AbstractEventLoop, maxsize: int) -> None:
        self.user_id = user_id
        self._feed = feed
        self._loop = loop
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=maxsize)
        self._overflowed = False
        self.closed = False

    def offer(self, change: ChangeEvent) -> None:
        if self.closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._put, change)
        except RuntimeError:
            # Loop already closed: the subscriber is gone.
            self.closed = True

    def _put(self, change: ChangeEvent) -> None:
        try:
            self._queue.put_nowait(change)
        except asyncio.QueueFull:
            self._overflowed = True

    async def get(self) -> ChangeEvent:
        """Next event; after an overflow the subscriber gets a single resync."""

        if self._overflowed:
            self._overflowed = False
            while not self._queue.empty():
                self._queue.get_nowait()
            return resync_event()
        return await self._queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._feed.unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed:
            raise StopAsyncIteration
        return await self.get()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class ChangeFeed:
    """In-process publish/subscribe for committed changes, filtered per user."""

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._subscriptions: set[Subscription] = set()

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def subscribe(self, user_id: str) -> Subscription:
        """Register a subscriber; must be called from inside a running event loop."""

        subscription = Subscription(self, user_id, asyncio.get_running_loop(), self._queue_size)
        with self._lock:
            self._subscriptions.add(subscription)
        logger.debug("Change feed subscriber added", extra={"user_id": user_id})
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions.discard(subscription)

    def publish(self, change: ChangeEvent) -> int:
        """Fan ``change`` out to interested subscribers; safe from any thread."""

        with self._lock:
            targets = [sub for sub in self._subscriptions if change.concerns(sub.user_id)]
        for subscription in targets:
            subscription.offer(change)
        return len(targets)


_feed: ChangeFeed | None = None
_feed_lock = threading.Lock()


def get_change_feed() -> ChangeFeed:
    global _feed
    if _feed is None:
        with _feed_lock:
            if _feed is None:
                from readshare.config import get_settings

                _feed = ChangeFeed(queue_size=get_settings().REALTIME_QUEUE_SIZE)
    return _feed


def reset_change_feed() -> None:
    global _feed
    with _feed_lock:
        _feed = None


__all__ = [
    "ChangeEvent",
    "ChangeFeed",
    "Subscription",
    "PERMISSIONS",
    "REQUESTS",
    "NOTIFICATIONS",
    "RESYNC",
    "get_change_feed",
    "install_change_capture",
    "pending_changes",
    "record_change",
    "reset_change_feed",
]
