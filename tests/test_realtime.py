import asyncio
from contextlib import asynccontextmanager

import pytest

from readshare.models.access import PermissionStatus, ReadingPermission
from readshare.routers.realtime import change_stream, format_sse_event
from readshare.services import access
from readshare.services.changes import NOTIFICATIONS, PERMISSIONS, REQUESTS, ChangeEvent, resync_event
from readshare.services.realtime import (
    COLLECTIONS,
    GRANTED_TO_ME,
    MY_VIEWERS,
    NOTIFICATION_INBOX,
    PENDING_REQUESTS,
    RealtimeSyncClient,
    collections_for,
    load_collection,
)


class FakeLoader:
    def __init__(self):
        self.calls = []

    async def load(self, user_id, collection):
        self.calls.append(collection)
        return [{"collection": collection, "version": len(self.calls)}]


class FakeSource:
    """Each subscribe() consumes one script: an exception to raise, or events to yield."""

    def __init__(self, scripts):
        self.scripts = list(scripts)
        self.subscriptions = 0

    @asynccontextmanager
    async def subscribe(self, user_id):
        self.subscriptions += 1
        script = self.scripts.pop(0) if self.scripts else None
        if isinstance(script, Exception):
            raise script

        async def events():
            for change in script or []:
                yield change
            if script is None:
                await asyncio.sleep(3600)

        yield events()


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def _permission_change(viewer_id, owner_id):
    return ChangeEvent(table=PERMISSIONS, op="upsert", scopes={"viewer_id": viewer_id, "owner_id": owner_id})


def test_collections_for_routes_by_scope():
    assert collections_for(_permission_change("me", "other"), "me") == {GRANTED_TO_ME}
    assert collections_for(_permission_change("other", "me"), "me") == {MY_VIEWERS}
    assert collections_for(
        ChangeEvent(table=REQUESTS, op="insert", scopes={"requester_id": "other", "owner_id": "me"}), "me"
    ) == {PENDING_REQUESTS}
    assert collections_for(ChangeEvent(table=NOTIFICATIONS, op="insert", scopes={"user_id": "me"}), "me") == {
        NOTIFICATION_INBOX
    }
    assert collections_for(ChangeEvent(table=NOTIFICATIONS, op="insert", scopes={"user_id": "x"}), "me") == set()
    assert collections_for(resync_event(), "me") == set(COLLECTIONS)


@pytest.mark.anyio("asyncio")
async def test_client_refreshes_everything_then_only_what_changed():
    loader = FakeLoader()
    refreshed = []
    source = FakeSource([[_permission_change("me", "owner-1")]])
    client = RealtimeSyncClient("me", source, loader, on_change=refreshed.append)

    await client._session()

    assert loader.calls[:4] == list(COLLECTIONS)
    assert loader.calls[4:] == [GRANTED_TO_ME]
    assert refreshed == [set(COLLECTIONS), {GRANTED_TO_ME}]
    assert client.state.full_refreshes == 1
    assert client.collection(GRANTED_TO_ME) == [{"collection": GRANTED_TO_ME, "version": 5}]
    assert client.state.connected is False


@pytest.mark.anyio("asyncio")
async def test_client_ignores_unrelated_changes():
    loader = FakeLoader()
    client = RealtimeSyncClient("me", FakeSource([]), loader)

    assert await client.handle_event(_permission_change("a", "b")) == set()
    assert loader.calls == []
    assert await client.handle_event(resync_event()) == set(COLLECTIONS)
    assert client.state.full_refreshes == 1


@pytest.mark.anyio("asyncio")
async def test_client_reconnects_and_resyncs():
    loader = FakeLoader()
    source = FakeSource([ConnectionError("stream dropped"), [], None])
    client = RealtimeSyncClient("me", source, loader, reconnect_delay=0.01, max_reconnect_delay=0.02)

    task = asyncio.create_task(client.run())
    try:
        await _wait_for(lambda: client.state.full_refreshes >= 2 and client.state.connected)
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert source.subscriptions == 3
    assert client.state.reconnects == 2
    assert loader.calls.count(NOTIFICATION_INBOX) == 2


def test_load_collection_reads_service_listings(db_session, make_user):
    viewer = make_user("Sam Viewer")
    owner = make_user("Olivia Owner")
    db_session.add(ReadingPermission(viewer_id=viewer.id, owner_id=owner.id, status=PermissionStatus.ACTIVE))
    db_session.commit()
    access.create_request(db_session, requester_id=owner.id, owner_id=viewer.id)

    granted = load_collection(db_session, viewer.id, GRANTED_TO_ME)
    assert [(row["owner_id"], row["owner_name"]) for row in granted] == [(owner.id, "Olivia Owner")]
    assert load_collection(db_session, owner.id, MY_VIEWERS)[0]["viewer_name"] == "Sam Viewer"
    assert len(load_collection(db_session, viewer.id, PENDING_REQUESTS)) == 1
    inbox = load_collection(db_session, viewer.id, NOTIFICATION_INBOX)
    assert [row["kind"] for row in inbox] == ["access_request"]

    with pytest.raises(ValueError):
        load_collection(db_session, viewer.id, "timeline")


def test_format_sse_event():
    assert format_sse_event(3, "change", {"table": "notifications"}) == (
        'id: 3\nevent: change\ndata: {"table": "notifications"}\n\n'
    )


@pytest.mark.anyio("asyncio")
async def test_change_stream_frames(fresh_change_feed):
    subscription = fresh_change_feed.subscribe("me")

    async def connected():
        return False

    stream = change_stream(subscription, ping_seconds=0.05, is_disconnected=connected)
    ready = await stream.__anext__()
    assert ready.startswith("id: 0\nevent: ready\n")

    fresh_change_feed.publish(ChangeEvent(table=NOTIFICATIONS, op="insert", record_id="n1", scopes={"user_id": "me"}))
    frame = await stream.__anext__()
    assert frame.startswith("id: 1\nevent: change\n")
    assert '"record_id": "n1"' in frame

    assert await stream.__anext__() == ": ping\n\n"

    await stream.aclose()
    assert subscription.closed
    assert fresh_change_feed.subscriber_count == 0


@pytest.mark.anyio("asyncio")
async def test_change_stream_stops_on_disconnect(fresh_change_feed):
    subscription = fresh_change_feed.subscribe("me")

    async def disconnected():
        return True

    frames = [frame async for frame in change_stream(subscription, ping_seconds=1, is_disconnected=disconnected)]

    assert len(frames) == 1
    assert subscription.closed


@pytest.mark.anyio("asyncio")
async def test_snapshot_endpoint(client, make_user, headers_for, db_session):
    viewer = make_user()
    owner = make_user()
    db_session.add(ReadingPermission(viewer_id=viewer.id, owner_id=owner.id, status=PermissionStatus.ACTIVE))
    db_session.commit()

    response = await client.get("/realtime/snapshot", headers=headers_for(viewer))

    assert response.status_code == 200
    payload = response.json()
    assert set(payload) == {*COLLECTIONS, "generated_at"}
    assert [row["owner_id"] for row in payload[GRANTED_TO_ME]] == [owner.id]
    assert payload[MY_VIEWERS] == []
