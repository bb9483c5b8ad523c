import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from sqlalchemy import select

from readshare.models.access import AccessRequest, AccessRequestStatus, PermissionStatus, ReadingPermission
from readshare.models.audit import AuditLog
from readshare.models.notification import Notification, NotificationKind, QueuedDelivery
from readshare.models.user import UserProfile
from readshare.services import access
from readshare.utils.errors import (
    DuplicateRequestError,
    InvalidStateError,
    NotAuthorizedError,
    PermissionNotFoundError,
    RequestNotFoundError,
    SelfRequestError,
    UserNotFoundError,
)


def _notifications_for(db_session, user_id):
    return db_session.scalars(select(Notification).where(Notification.user_id == user_id)).all()


def _permission(db_session, *, viewer_id, owner_id):
    return db_session.scalars(
        select(ReadingPermission)
        .where(ReadingPermission.viewer_id == viewer_id, ReadingPermission.owner_id == owner_id)
        .execution_options(populate_existing=True)
    ).first()


def test_create_request_notifies_owner(db_session, make_user):
    requester = make_user("Sam Viewer")
    owner = make_user("Olivia Owner")

    request = access.create_request(
        db_session, requester_id=requester.id, owner_id=owner.id, message="  Can I follow along?  "
    )

    assert request.status is AccessRequestStatus.PENDING
    assert request.message == "Can I follow along?"
    notes = _notifications_for(db_session, owner.id)
    assert len(notes) == 1
    assert notes[0].kind is NotificationKind.ACCESS_REQUEST
    assert notes[0].title == "New Reading Request"
    assert notes[0].body == "Sam Viewer wants to view your health readings"
    assert notes[0].data["request_id"] == request.id
    assert notes[0].data["message"] == "Can I follow along?"

    delivery = db_session.scalars(
        select(QueuedDelivery).where(QueuedDelivery.notification_id == notes[0].id)
    ).one()
    assert delivery.data["tag"] == f"reading-request-{requester.id}"
    assert delivery.data["requireInteraction"] is True


def test_create_request_rejects_self(db_session, make_user):
    user = make_user()
    with pytest.raises(SelfRequestError):
        access.create_request(db_session, requester_id=user.id, owner_id=user.id)


def test_create_request_unknown_owner(db_session, make_user):
    requester = make_user()
    with pytest.raises(UserNotFoundError):
        access.create_request(db_session, requester_id=requester.id, owner_id="missing-user")


def test_second_pending_request_is_duplicate(db_session, make_user):
    requester, owner = make_user(), make_user()
    access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)

    with pytest.raises(DuplicateRequestError) as excinfo:
        access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)
    assert "already pending" in excinfo.value.message


def test_request_after_grant_is_duplicate(db_session, make_user):
    requester, owner = make_user(), make_user()
    request = access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)
    access.accept_request(db_session, request_id=request.id, acting_owner_id=owner.id)

    with pytest.raises(DuplicateRequestError) as excinfo:
        access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)
    assert "already view" in excinfo.value.message


def test_accept_grants_permission_and_notifies_requester(db_session, make_user):
    requester = make_user("Sam Viewer")
    owner = make_user("Olivia Owner")
    request = access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)

    accepted = access.accept_request(db_session, request_id=request.id, acting_owner_id=owner.id)

    assert accepted.status is AccessRequestStatus.ACCEPTED
    permission = _permission(db_session, viewer_id=requester.id, owner_id=owner.id)
    assert permission is not None
    assert permission.status is PermissionStatus.ACTIVE

    notes = _notifications_for(db_session, requester.id)
    assert [note.kind for note in notes] == [NotificationKind.ACCESS_GRANTED]
    assert notes[0].body == "Olivia Owner has accepted your request to view their health readings!"

    audit = db_session.scalars(
        select(AuditLog).where(AuditLog.action == "ACCESS_REQUEST_ACCEPTED", AuditLog.entity_id == request.id)
    ).first()
    assert audit is not None
    assert audit.actor == f"user:{owner.id}"


def test_accept_twice_is_idempotent(db_session, make_user):
    requester, owner = make_user(), make_user()
    request = access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)
    access.accept_request(db_session, request_id=request.id, acting_owner_id=owner.id)

    again = access.accept_request(db_session, request_id=request.id, acting_owner_id=owner.id)

    assert again.status is AccessRequestStatus.ACCEPTED
    assert len(_notifications_for(db_session, requester.id)) == 1
    permissions = db_session.scalars(
        select(ReadingPermission).where(
            ReadingPermission.viewer_id == requester.id, ReadingPermission.owner_id == owner.id
        )
    ).all()
    assert len(permissions) == 1


def test_accept_reactivates_blocked_permission(db_session, make_user):
    requester, owner = make_user(), make_user()
    db_session.add(ReadingPermission(viewer_id=requester.id, owner_id=owner.id, status=PermissionStatus.BLOCKED))
    db_session.commit()
    request = AccessRequest(requester_id=requester.id, owner_id=owner.id, status=AccessRequestStatus.PENDING)
    db_session.add(request)
    db_session.commit()

    access.accept_request(db_session, request_id=request.id, acting_owner_id=owner.id)

    permission = _permission(db_session, viewer_id=requester.id, owner_id=owner.id)
    assert permission.status is PermissionStatus.ACTIVE


def test_only_owner_can_answer(db_session, make_user):
    requester, owner, stranger = make_user(), make_user(), make_user()
    request = access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)

    with pytest.raises(NotAuthorizedError):
        access.accept_request(db_session, request_id=request.id, acting_owner_id=stranger.id)
    with pytest.raises(NotAuthorizedError):
        access.decline_request(db_session, request_id=request.id, acting_owner_id=requester.id)

    db_session.refresh(request)
    assert request.status is AccessRequestStatus.PENDING


def test_unknown_request(db_session, make_user):
    owner = make_user()
    with pytest.raises(RequestNotFoundError):
        access.accept_request(db_session, request_id="nope", acting_owner_id=owner.id)


def test_decline_is_silent_by_default(db_session, make_user):
    requester, owner = make_user(), make_user()
    request = access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)

    declined = access.decline_request(db_session, request_id=request.id, acting_owner_id=owner.id)

    assert declined.status is AccessRequestStatus.DECLINED
    assert _notifications_for(db_session, requester.id) == []
    assert _permission(db_session, viewer_id=requester.id, owner_id=owner.id) is None


def test_decline_can_notify_requester(db_session, make_user):
    requester = make_user()
    owner = make_user("Olivia Owner")
    request = access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)

    access.decline_request(db_session, request_id=request.id, acting_owner_id=owner.id, notify_requester=True)

    notes = _notifications_for(db_session, requester.id)
    assert [note.kind for note in notes] == [NotificationKind.ACCESS_DECLINED]
    assert notes[0].title == "Reading Request Declined"


def test_answered_requests_cannot_flip(db_session, make_user):
    requester, owner = make_user(), make_user()
    declined = access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)
    access.decline_request(db_session, request_id=declined.id, acting_owner_id=owner.id)

    with pytest.raises(InvalidStateError) as excinfo:
        access.accept_request(db_session, request_id=declined.id, acting_owner_id=owner.id)
    assert "declined" in excinfo.value.message

    # Declining again is a no-op.
    again = access.decline_request(db_session, request_id=declined.id, acting_owner_id=owner.id)
    assert again.status is AccessRequestStatus.DECLINED

    accepted = access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)
    access.accept_request(db_session, request_id=accepted.id, acting_owner_id=owner.id)
    with pytest.raises(InvalidStateError):
        access.decline_request(db_session, request_id=accepted.id, acting_owner_id=owner.id)


def test_revoke_removes_grant_and_history(db_session, make_user):
    requester, owner = make_user(), make_user()
    request = access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)
    access.accept_request(db_session, request_id=request.id, acting_owner_id=owner.id)

    assert access.revoke_access(db_session, owner_id=owner.id, viewer_id=requester.id) is True

    assert _permission(db_session, viewer_id=requester.id, owner_id=owner.id) is None
    assert db_session.get(AccessRequest, request.id, populate_existing=True) is None
    assert access.revoke_access(db_session, owner_id=owner.id, viewer_id=requester.id) is False

    # The viewer may ask again afterwards.
    fresh = access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)
    assert fresh.status is AccessRequestStatus.PENDING


def test_block_and_unblock_viewer(db_session, make_user):
    requester, owner = make_user(), make_user()
    request = access.create_request(db_session, requester_id=requester.id, owner_id=owner.id)
    access.accept_request(db_session, request_id=request.id, acting_owner_id=owner.id)

    blocked = access.set_permission_status(
        db_session, owner_id=owner.id, viewer_id=requester.id, status=PermissionStatus.BLOCKED
    )
    assert blocked.status is PermissionStatus.BLOCKED
    assert access.list_granted_to_me(db_session, requester.id) == []
    assert [row.viewer_id for row in access.list_my_viewers(db_session, owner.id)] == [requester.id]

    access.set_permission_status(db_session, owner_id=owner.id, viewer_id=requester.id, status=PermissionStatus.ACTIVE)
    assert [row.owner_id for row in access.list_granted_to_me(db_session, requester.id)] == [owner.id]

    with pytest.raises(PermissionNotFoundError):
        access.set_permission_status(
            db_session, owner_id=requester.id, viewer_id=owner.id, status=PermissionStatus.BLOCKED
        )


def test_pending_request_boxes(db_session, make_user):
    alice, bob, carol = make_user(), make_user(), make_user()
    incoming = access.create_request(db_session, requester_id=bob.id, owner_id=alice.id)
    outgoing = access.create_request(db_session, requester_id=alice.id, owner_id=carol.id)

    assert [r.id for r in access.list_pending_requests(db_session, alice.id, "incoming")] == [incoming.id]
    assert [r.id for r in access.list_pending_requests(db_session, alice.id, "outgoing")] == [outgoing.id]
    assert {r.id for r in access.list_pending_requests(db_session, alice.id, "all")} == {incoming.id, outgoing.id}


@pytest.mark.anyio("asyncio")
async def test_request_flow_over_http(client, make_user, headers_for):
    requester = make_user("Sam Viewer")
    owner = make_user("Olivia Owner", email="olivia@example.com")
    requester_headers = headers_for(requester)
    owner_headers = headers_for(owner)

    created = await client.post(
        "/access-requests",
        json={"owner_email": "Olivia@Example.com", "message": "hi"},
        headers=requester_headers,
    )
    assert created.status_code == 201
    body = created.json()
    assert body["owner_id"] == owner.id
    assert body["requester_name"] == "Sam Viewer"
    assert body["status"] == "pending"

    incoming = await client.get("/access-requests", headers=owner_headers)
    assert [row["id"] for row in incoming.json()] == [body["id"]]

    duplicate = await client.post("/access-requests", json={"owner_id": owner.id}, headers=requester_headers)
    assert duplicate.status_code == 409
    assert duplicate.json()["error"]["code"] == "DUPLICATE_REQUEST"

    forbidden = await client.post(f"/access-requests/{body['id']}/accept", headers=requester_headers)
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "NOT_AUTHORIZED"

    accepted = await client.post(f"/access-requests/{body['id']}/accept", headers=owner_headers)
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"

    granted = await client.get("/permissions/granted-to-me", headers=requester_headers)
    assert [(row["owner_id"], row["owner_name"]) for row in granted.json()] == [(owner.id, "Olivia Owner")]

    viewers = await client.get("/permissions/viewers", headers=owner_headers)
    assert [row["viewer_id"] for row in viewers.json()] == [requester.id]

    revoked = await client.delete(f"/permissions/viewers/{requester.id}", headers=owner_headers)
    assert revoked.status_code == 204
    granted = await client.get("/permissions/granted-to-me", headers=requester_headers)
    assert granted.json() == []


@pytest.mark.anyio("asyncio")
async def test_request_payload_needs_one_target(client, make_user, headers_for):
    user = make_user()
    response = await client.post(
        "/access-requests",
        json={"owner_id": "x", "owner_email": "x@example.com"},
        headers=headers_for(user),
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.anyio("asyncio")
async def test_request_to_unknown_email(client, make_user, headers_for):
    user = make_user()
    response = await client.post(
        "/access-requests", json={"owner_email": "nobody@example.com"}, headers=headers_for(user)
    )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "USER_NOT_FOUND"


def test_concurrent_accepts_grant_once(isolated_sessionmaker):
    with isolated_sessionmaker() as db:
        requester = UserProfile(email="viewer@example.com", full_name="Val Viewer", is_active=True)
        owner = UserProfile(email="owner@example.com", full_name="Olive Owner", is_active=True)
        db.add_all([requester, owner])
        db.commit()
        requester_id, owner_id = requester.id, owner.id
        request_id = access.create_request(db, requester_id=requester_id, owner_id=owner_id).id

    barrier = threading.Barrier(2)

    def _accept():
        with isolated_sessionmaker() as db:
            barrier.wait(timeout=5)
            return access.accept_request(db, request_id=request_id, acting_owner_id=owner_id).status

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [pool.submit(_accept) for _ in range(2)]
        statuses = [future.result(timeout=60) for future in futures]

    assert statuses == [AccessRequestStatus.ACCEPTED, AccessRequestStatus.ACCEPTED]
    with isolated_sessionmaker() as db:
        permissions = db.scalars(
            select(ReadingPermission).where(
                ReadingPermission.viewer_id == requester_id, ReadingPermission.owner_id == owner_id
            )
        ).all()
        granted = db.scalars(
            select(Notification).where(
                Notification.user_id == requester_id, Notification.kind == NotificationKind.ACCESS_GRANTED
            )
        ).all()
        deliveries = db.scalars(
            select(QueuedDelivery).where(
                QueuedDelivery.recipient_user_id == requester_id,
                QueuedDelivery.kind == NotificationKind.ACCESS_GRANTED,
            )
        ).all()
    assert len(permissions) == 1
    assert permissions[0].status is PermissionStatus.ACTIVE
    assert len(granted) == 1
    assert len(deliveries) == 1
