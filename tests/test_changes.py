import asyncio

import pytest

from readshare.models.notification import Notification, NotificationKind
from readshare.services import access, notifications
from readshare.services.changes import (
    NOTIFICATIONS,
    PERMISSIONS,
    REQUESTS,
    RESYNC,
    ChangeEvent,
    ChangeFeed,
    get_change_feed,
    pending_changes,
    record_change,
)


async def _drain(subscription, timeout=0.2):
    events = []
    while True:
        try:
            events.append(await asyncio.wait_for(subscription.get(), timeout=timeout))
        except asyncio.TimeoutError:
            return events


def test_change_event_scoping():
    change = ChangeEvent(table=PERMISSIONS, op="insert", record_id="p1", scopes={"viewer_id": "v", "owner_id": "o"})

    assert change.user_ids == {"v", "o"}
    assert change.concerns("v") and change.concerns("o")
    assert not change.concerns("someone-else")
    assert change.as_dict() == {
        "table": PERMISSIONS,
        "op": "insert",
        "record_id": "p1",
        "scopes": {"viewer_id": "v", "owner_id": "o"},
    }


@pytest.mark.anyio("asyncio")
async def test_feed_filters_by_user():
    feed = ChangeFeed(queue_size=8)
    alice = feed.subscribe("alice")
    bob = feed.subscribe("bob")

    delivered = feed.publish(ChangeEvent(table=NOTIFICATIONS, op="insert", record_id="n1", scopes={"user_id": "alice"}))

    assert delivered == 1
    assert [change.record_id for change in await _drain(alice)] == ["n1"]
    assert await _drain(bob, timeout=0.05) == []

    alice.close()
    bob.close()
    assert feed.subscriber_count == 0


@pytest.mark.anyio("asyncio")
async def test_overflow_collapses_into_resync():
    feed = ChangeFeed(queue_size=2)
    subscription = feed.subscribe("alice")
    for index in range(5):
        feed.publish(ChangeEvent(table=NOTIFICATIONS, op="insert", record_id=str(index), scopes={"user_id": "alice"}))
    await asyncio.sleep(0)

    first = await subscription.get()
    assert first.op == RESYNC
    assert first.concerns("anyone")

    feed.publish(ChangeEvent(table=NOTIFICATIONS, op="insert", record_id="after", scopes={"user_id": "alice"}))
    assert (await asyncio.wait_for(subscription.get(), timeout=1)).record_id == "after"
    subscription.close()


@pytest.mark.anyio("asyncio")
async def test_subscription_context_and_iteration():
    feed = ChangeFeed(queue_size=4)
    async with feed.subscribe("alice") as subscription:
        feed.publish(ChangeEvent(table=REQUESTS, op="update", scopes={"owner_id": "alice"}))
        async for change in subscription:
            assert change.table == REQUESTS
            break
    assert subscription.closed
    assert feed.subscriber_count == 0


@pytest.mark.anyio("asyncio")
async def test_commit_publishes_captured_changes(db_session, make_user):
    requester, owner = make_user(), make_user()
    feed = get_change_feed()
    owner_sub = feed.subscribe(owner.id)
    requester_sub = feed.subscribe(requester.id)

    request = access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)

    owner_changes = await _drain(owner_sub)
    assert (REQUESTS, "insert", request.id) in {(c.table, c.op, c.record_id) for c in owner_changes}
    assert any(c.table == NOTIFICATIONS and c.scopes == {"user_id": owner.id} for c in owner_changes)
    requester_changes = await _drain(requester_sub)
    assert {c.table for c in requester_changes} == {REQUESTS}

    access.accept_request(db_session, request_id=request.id, acting_owner_id=owner.id)

    requester_changes = await _drain(requester_sub)
    tables = {(c.table, c.op) for c in requester_changes}
    assert (REQUESTS, "update") in tables
    assert (PERMISSIONS, "upsert") in tables
    assert (NOTIFICATIONS, "insert") in tables

    owner_sub.close()
    requester_sub.close()


@pytest.mark.anyio("asyncio")
async def test_bulk_update_is_announced(db_session, make_user):
    user = make_user()
    db_session.add(
        Notification(user_id=user.id, kind=NotificationKind.ACCESS_REQUEST, title="t", body="b", data={})
    )
    db_session.commit()
    subscription = get_change_feed().subscribe(user.id)

    assert notifications.mark_all_read(db_session, user_id=user.id) == 1

    changes = await _drain(subscription)
    assert [(c.table, c.op) for c in changes] == [(NOTIFICATIONS, "update")]
    subscription.close()


@pytest.mark.anyio("asyncio")
async def test_rollback_discards_pending_changes(db_session, make_user):
    user = make_user()
    subscription = get_change_feed().subscribe(user.id)

    record_change(db_session, NOTIFICATIONS, "update", scopes={"user_id": user.id})
    assert len(pending_changes(db_session)) == 1
    db_session.rollback()

    assert pending_changes(db_session) == []
    assert await _drain(subscription, timeout=0.05) == []
    subscription.close()
