from __future__ import annotations

from skillgate.domain.identity import Role
from skillgate.tests.utils.auth import bearer_headers, create_test_company, create_test_principal


async def test_super_admin_manages_admin_accounts(app, client, session_factory) -> None:
    await create_test_company(session_factory, tenant_id="acme")
    root = await create_test_principal(session_factory, role=Role.SUPER_ADMIN)
    headers = bearer_headers(app.state.token_codec, root)

    created = await client.post(
        "/v1/admin/accounts",
        json={
            "email": "hr@acme.com",
            "password": "hr-passphrase",
            "name": "HR",
            "role": "hr_manager",
            "tenant_id": "acme",
        },
        headers=headers,
    )
    assert created.status_code == 201
    account = created.json()["data"]
    assert account["approved"] is True
    assert account["approved_by"] == root.id
    assert "password_hash" not in account

    # The new account can sign in at once, without an approval round.
    login = await client.post("/v1/auth/admin/login", json={"email": "hr@acme.com", "password": "hr-passphrase"})
    assert login.status_code == 200
    assert login.json()["data"]["principal"]["approved"] is True

    promoted = await client.put(
        f"/v1/admin/accounts/{account['subject_id']}",
        json={"role": "company_admin"},
        headers=headers,
    )
    assert promoted.status_code == 200
    assert promoted.json()["data"]["role"] == "company_admin"

    listed = await client.get("/v1/admin/accounts", params={"tenant_id": "acme"}, headers=headers)
    assert [item["role"] for item in listed.json()["data"]["items"]] == ["company_admin"]

    deleted = await client.delete(f"/v1/admin/accounts/{account['subject_id']}", headers=headers)
    assert deleted.status_code == 200
    assert (await client.delete(f"/v1/admin/accounts/{account['subject_id']}", headers=headers)).status_code == 404

    events = await client.get("/v1/audit/events", params={"target_id": account["subject_id"]}, headers=headers)
    actions = sorted(item["action"] for item in events.json()["data"]["items"] if item["action"].startswith("admin."))
    assert actions == ["admin.created", "admin.deleted", "admin.updated"]


async def test_admin_accounts_are_super_admin_only(app, client, session_factory) -> None:
    await create_test_company(session_factory, tenant_id="acme")
    sys_admin = await create_test_principal(session_factory, role=Role.SYS_ADMIN)
    company_admin = await create_test_principal(session_factory, role=Role.COMPANY_ADMIN, tenant_id="acme")

    for user in (sys_admin, company_admin):
        headers = bearer_headers(app.state.token_codec, user)
        assert (await client.get("/v1/admin/accounts", headers=headers)).status_code == 403
        created = await client.post(
            "/v1/admin/accounts",
            json={"email": "x@acme.com", "password": "x-passphrase", "role": "super_admin"},
            headers=headers,
        )
        assert created.status_code == 403


async def test_account_rules_map_to_client_errors(app, client, session_factory) -> None:
    root = await create_test_principal(session_factory, role=Role.SUPER_ADMIN)
    headers = bearer_headers(app.state.token_codec, root)

    own_role = await client.put(f"/v1/admin/accounts/{root.id}", json={"role": "sys_admin"}, headers=headers)
    assert own_role.status_code == 400
    own_delete = await client.delete(f"/v1/admin/accounts/{root.id}", headers=headers)
    assert own_delete.status_code == 400
    no_company = await client.post(
        "/v1/admin/accounts",
        json={"email": "x@acme.com", "password": "x-passphrase", "role": "company_admin", "tenant_id": "nope"},
        headers=headers,
    )
    assert no_company.status_code == 404
    assert no_company.json()["error"]["code"] == "NOT_FOUND"

    other_root = await create_test_principal(session_factory, role=Role.SUPER_ADMIN)
    other_headers = bearer_headers(app.state.token_codec, other_root)
    assert (await client.delete(f"/v1/admin/accounts/{root.id}", headers=other_headers)).status_code == 200
    # The deleted super_admin's token stops working at once.
    assert (await client.get("/v1/admin/accounts", headers=headers)).status_code == 401
