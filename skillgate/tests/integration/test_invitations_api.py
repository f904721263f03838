from __future__ import annotations

from skillgate.domain.identity import Role
from skillgate.tests.utils.auth import bearer_headers, create_test_company, create_test_principal


async def test_invited_hr_manager_joins_approved(app, client, session_factory) -> None:
    await create_test_company(session_factory, tenant_id="acme")
    admin = await create_test_principal(session_factory, role=Role.COMPANY_ADMIN, tenant_id="acme")
    headers = bearer_headers(app.state.token_codec, admin)

    created = await client.post(
        "/v1/admin/invitations",
        json={"email": "hr@acme.com", "role": "hr_manager"},
        headers=headers,
    )
    assert created.status_code == 201
    invitation = created.json()["data"]
    assert invitation["status"] == "pending"
    assert invitation["tenant_id"] == "acme"
    token = invitation["token"]

    listed = await client.get("/v1/admin/invitations", headers=headers)
    items = listed.json()["data"]["items"]
    assert [item["email"] for item in items] == ["hr@acme.com"]
    assert "token" not in items[0]

    preview = await client.post("/v1/auth/invitations/verify", json={"token": token})
    assert preview.status_code == 200
    assert preview.json()["data"]["company_name"] == "Acme"

    accepted = await client.post(
        "/v1/auth/invitations/accept",
        json={"token": token, "password": "hr-passphrase", "name": "Helen"},
    )
    assert accepted.status_code == 201
    data = accepted.json()["data"]
    assert data["role"] == "hr_manager"
    assert data["approved"] is True
    assert data["approved_by"] == admin.id

    login = await client.post("/v1/auth/admin/login", json={"email": "hr@acme.com", "password": "hr-passphrase"})
    assert login.status_code == 200

    replay = await client.post(
        "/v1/auth/invitations/accept",
        json={"token": token, "password": "hr-passphrase"},
    )
    assert replay.status_code == 404

    events = await client.get("/v1/audit/events", params={"target_id": str(invitation["id"])}, headers=headers)
    actions = sorted(item["action"] for item in events.json()["data"]["items"])
    assert actions == ["invitation.accepted", "invitation.created"]


async def test_company_admin_cannot_invite_peers_or_other_tenants(app, client, session_factory) -> None:
    await create_test_company(session_factory, tenant_id="acme")
    await create_test_company(session_factory, tenant_id="globex")
    admin = await create_test_principal(session_factory, role=Role.COMPANY_ADMIN, tenant_id="acme")
    hr = await create_test_principal(session_factory, role=Role.HR_MANAGER, tenant_id="acme")
    sys_admin = await create_test_principal(session_factory, role=Role.SYS_ADMIN)
    headers = bearer_headers(app.state.token_codec, admin)

    peer = await client.post(
        "/v1/admin/invitations",
        json={"email": "peer@acme.com", "role": "company_admin"},
        headers=headers,
    )
    assert peer.status_code == 403
    by_hr = await client.post(
        "/v1/admin/invitations",
        json={"email": "x@acme.com", "role": "hr_manager"},
        headers=bearer_headers(app.state.token_codec, hr),
    )
    assert by_hr.status_code == 403

    foreign = await client.post(
        "/v1/admin/invitations",
        json={"email": "boss@globex.com", "role": "company_admin", "tenant_id": "globex"},
        headers=bearer_headers(app.state.token_codec, sys_admin),
    )
    assert foreign.status_code == 201
    invitation_id = foreign.json()["data"]["id"]

    # Other tenants' invitations are invisible to a company admin.
    assert (await client.get("/v1/admin/invitations", headers=headers)).json()["data"]["items"] == []
    assert (await client.delete(f"/v1/admin/invitations/{invitation_id}", headers=headers)).status_code == 404


async def test_revoked_invitation_cannot_be_redeemed(app, client, session_factory) -> None:
    await create_test_company(session_factory, tenant_id="acme")
    admin = await create_test_principal(session_factory, role=Role.COMPANY_ADMIN, tenant_id="acme")
    headers = bearer_headers(app.state.token_codec, admin)

    created = await client.post(
        "/v1/admin/invitations",
        json={"email": "hr@acme.com", "role": "hr_manager"},
        headers=headers,
    )
    invitation = created.json()["data"]

    revoked = await client.delete(f"/v1/admin/invitations/{invitation['id']}", headers=headers)
    assert revoked.status_code == 200
    again = await client.delete(f"/v1/admin/invitations/{invitation['id']}", headers=headers)
    assert again.status_code == 409

    for path, body in (
        ("/v1/auth/invitations/verify", {"token": invitation["token"]}),
        ("/v1/auth/invitations/accept", {"token": invitation["token"], "password": "hr-passphrase"}),
        ("/v1/auth/invitations/verify", {"token": "not-a-real-token"}),
    ):
        response = await client.post(path, json=body)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"
