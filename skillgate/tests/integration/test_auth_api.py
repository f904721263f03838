from __future__ import annotations

from skillgate.domain.identity import Role
from skillgate.tests.utils.auth import DEFAULT_PASSWORD, bearer_headers, create_test_company, create_test_principal


async def test_user_registers_and_logs_in(client, session_factory) -> None:
    await create_test_company(session_factory, tenant_id="acme")
    registered = await client.post(
        "/v1/auth/register",
        json={
            "email": "bob@acme.com",
            "password": "bob-passphrase",
            "name": "Bob",
            "company_code": "acme-join",
        },
    )
    assert registered.status_code == 201
    data = registered.json()["data"]
    assert data["token_type"] == "bearer"
    assert data["principal"]["role"] == "user"
    assert data["principal"]["tenant_id"] == "acme"
    assert data["expires_in"] == 7 * 24 * 3600

    login = await client.post(
        "/v1/auth/login",
        json={"email": "bob@acme.com", "password": "bob-passphrase"},
    )
    assert login.status_code == 200
    token = login.json()["data"]["access_token"]

    me = await client.get("/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["data"]["approved"] is True


async def test_duplicate_email_and_short_password(client) -> None:
    first = await client.post(
        "/v1/auth/register",
        json={"email": "carol@acme.com", "password": "carol-passphrase"},
    )
    assert first.status_code == 201
    again = await client.post(
        "/v1/auth/register",
        json={"email": "carol@acme.com", "password": "carol-passphrase"},
    )
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "CONFLICT"

    short = await client.post(
        "/v1/auth/register",
        json={"email": "dave@acme.com", "password": "short"},
    )
    assert short.status_code == 400


async def test_login_failures_look_identical(client, session_factory) -> None:
    await create_test_principal(
        session_factory, role=Role.COMPANY_ADMIN, tenant_id="acme", email="erin@acme.com"
    )
    wrong_portal = await client.post(
        "/v1/auth/login",
        json={"email": "erin@acme.com", "password": DEFAULT_PASSWORD},
    )
    wrong_password = await client.post(
        "/v1/auth/admin/login",
        json={"email": "erin@acme.com", "password": "not-the-password"},
    )
    unknown = await client.post(
        "/v1/auth/admin/login",
        json={"email": "nobody@acme.com", "password": DEFAULT_PASSWORD},
    )
    for response in (wrong_portal, wrong_password, unknown):
        assert response.status_code == 401
        assert response.json()["error"] == {"code": "AUTH_UNAUTHORIZED", "message": "Access denied"}

    admin = await client.post(
        "/v1/auth/admin/login",
        json={"email": "erin@acme.com", "password": DEFAULT_PASSWORD},
    )
    assert admin.status_code == 200
    assert admin.json()["data"]["expires_in"] == 30 * 60


async def test_admin_signup_rejects_unknown_roles(client, session_factory) -> None:
    await create_test_company(session_factory, tenant_id="acme")
    response = await client.post(
        "/v1/auth/admin/register",
        json={
            "email": "frank@acme.com",
            "password": "frank-passphrase",
            "role": "super_admin",
            "company_code": "acme-join",
        },
    )
    assert response.status_code == 400
    missing_code = await client.post(
        "/v1/auth/admin/register",
        json={"email": "grace@acme.com", "password": "grace-passphrase", "role": "hr_manager"},
    )
    assert missing_code.status_code == 400


async def test_password_change_requires_current_password(app, client, session_factory) -> None:
    admin = await create_test_principal(
        session_factory, role=Role.COMPANY_ADMIN, tenant_id="acme", email="frank@acme.com"
    )
    headers = bearer_headers(app.state.token_codec, admin)

    wrong = await client.put(
        "/v1/auth/password",
        json={"current_password": "not-the-password", "new_password": "fresh-passphrase"},
        headers=headers,
    )
    assert wrong.status_code == 401
    unauthenticated = await client.put(
        "/v1/auth/password",
        json={"current_password": DEFAULT_PASSWORD, "new_password": "fresh-passphrase"},
    )
    assert unauthenticated.status_code == 401

    changed = await client.put(
        "/v1/auth/password",
        json={"current_password": DEFAULT_PASSWORD, "new_password": "fresh-passphrase"},
        headers=headers,
    )
    assert changed.status_code == 200
    assert changed.json()["data"] == {"subject_id": admin.id, "password_changed": True}

    old = await client.post(
        "/v1/auth/admin/login", json={"email": "frank@acme.com", "password": DEFAULT_PASSWORD}
    )
    assert old.status_code == 401
    new = await client.post(
        "/v1/auth/admin/login", json={"email": "frank@acme.com", "password": "fresh-passphrase"}
    )
    assert new.status_code == 200

    events = await client.get(
        "/v1/audit/events", params={"action": "auth.password_changed"}, headers=headers
    )
    items = events.json()["data"]["items"]
    assert [item["actor_id"] for item in items] == [admin.id]
