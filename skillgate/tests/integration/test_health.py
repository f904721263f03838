from __future__ import annotations

from skillgate.core.errors import AuditWriteFailure
from skillgate.domain.identity import Role
from skillgate.tests.utils.auth import bearer_headers, create_test_company, create_test_principal


async def test_health_ok(client) -> None:
    response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "ok", "audit_write_failures": 0}


async def test_audit_failure_degrades_health_without_failing_the_action(
    app, client, session_factory, alerts, monkeypatch
) -> None:
    await create_test_company(session_factory, tenant_id="acme")
    super_admin = await create_test_principal(session_factory, role=Role.SUPER_ADMIN)

    async def _broken_append(record) -> None:
        raise AuditWriteFailure("audit table unavailable")

    monkeypatch.setattr(app.state.principal_store, "append_audit", _broken_append)

    deleted = await client.delete(
        "/v1/admin/companies/acme",
        headers=bearer_headers(app.state.token_codec, super_admin),
    )
    assert deleted.status_code == 200

    assert alerts and alerts[0][0] == "audit_write_failure"
    assert alerts[0][1]["action"] == "company.deleted"

    health = await client.get("/v1/health")
    assert health.json()["data"] == {"status": "degraded", "audit_write_failures": 1}
