import pytest
from uuid import uuid4

from readshare.models.audit import AuditLog


@pytest.mark.anyio("asyncio")
async def test_user_creation_audit_has_api_actor(client, admin_headers, db_session):
    payload = {
        "email": f"audit-user-{uuid4().hex[:6]}@example.com",
        "full_name": "Audit User",
    }
    resp = await client.post("/users", json=payload, headers=admin_headers)
    assert resp.status_code == 201
    assert resp.json()["full_name"] == "Audit User"

    db_session.expire_all()
    audit = (
        db_session.query(AuditLog)
        .filter(AuditLog.action == "CREATE_USER", AuditLog.entity_id == resp.json()["id"])
        .first()
    )
    assert audit is not None
    assert audit.actor.startswith("apikey:")
    assert audit.data_json["email"].startswith("***@")


@pytest.mark.anyio("asyncio")
async def test_lookup_by_email(client, make_user, headers_for):
    target = make_user(email="Findable@Example.com")
    caller = make_user()

    found = await client.get("/users/lookup", params={"email": " findable@example.com "}, headers=headers_for(caller))
    assert found.status_code == 200
    assert found.json() == {"user_id": target.id}

    missing = await client.get("/users/lookup", params={"email": "nobody@example.com"}, headers=headers_for(caller))
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "USER_NOT_FOUND"


@pytest.mark.anyio("asyncio")
async def test_inactive_users_are_not_found(client, make_user, headers_for):
    make_user(email="gone@example.com", is_active=False)
    caller = make_user()

    response = await client.get("/users/lookup", params={"email": "gone@example.com"}, headers=headers_for(caller))
    assert response.status_code == 404


@pytest.mark.anyio("asyncio")
async def test_get_user_requires_operator_scope(client, make_user, headers_for, admin_headers):
    user = make_user()

    forbidden = await client.get(f"/users/{user.id}", headers=headers_for(user))
    assert forbidden.status_code == 403

    allowed = await client.get(f"/users/{user.id}", headers=admin_headers)
    assert allowed.status_code == 200
    assert allowed.json()["email"] == user.email


@pytest.mark.anyio("asyncio")
async def test_inactive_user_key_is_rejected(client, make_user, headers_for):
    user = make_user(is_active=False)
    response = await client.get("/notifications/unread-count", headers=headers_for(user))
    assert response.status_code == 403
    assert response.json()["error"]["code"] == "USER_INACTIVE"
