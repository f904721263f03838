from __future__ import annotations

from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import select

from skillgate.apps.api.main import create_app
from skillgate.domain.identity import Role
from skillgate.domain.models import User
from skillgate.services.security.session import SessionTimeoutPolicy
from skillgate.services.telemetry import counter_value
from skillgate.tests.utils.auth import bearer_headers, create_test_principal


def _client_for(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def test_markup_is_stripped_before_handlers(client, session_factory) -> None:
    response = await client.post(
        "/v1/auth/register",
        json={
            "email": "john@acme.com",
            "password": "john-passphrase",
            "name": "<script>alert(1)</script>John",
        },
    )
    assert response.status_code == 201
    async with session_factory() as session:
        user = (await session.execute(select(User).where(User.email == "john@acme.com"))).scalar_one()
    assert user.name == "John"


async def test_injection_in_body_query_and_path_is_rejected(client) -> None:
    body = await client.post(
        "/v1/auth/login",
        json={"email": "mallory@acme.com", "password": "' OR '1'='1"},
    )
    assert body.status_code == 400
    assert body.json()["error"] == {"code": "BAD_REQUEST", "message": "Invalid input"}
    assert "'1'='1" not in body.text

    query = await client.get("/v1/auth/me", params={"filter": "1 union select password from users"})
    assert query.status_code == 400

    path = await client.get("/v1/admin/companies/1 union select 1")
    assert path.status_code == 400
    assert counter_value("security.injection_blocked") == 3


async def test_cors_rejects_unknown_origins_and_answers_preflight(client) -> None:
    denied = await client.get("/v1/health", headers={"Origin": "https://evil.example.com"})
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "CORS_FORBIDDEN"

    allowed = await client.get("/v1/health", headers={"Origin": "https://app.acme.com"})
    assert allowed.status_code == 200
    assert allowed.headers["Access-Control-Allow-Origin"] == "https://app.acme.com"
    assert "X-New-Token" in allowed.headers["Access-Control-Expose-Headers"]

    preflight = await client.options(
        "/v1/auth/login",
        headers={"Origin": "https://app.acme.com", "Access-Control-Request-Method": "POST"},
    )
    assert preflight.status_code == 200
    assert "POST" in preflight.headers["Access-Control-Allow-Methods"]

    foreign_preflight = await client.options(
        "/v1/auth/login",
        headers={"Origin": "https://evil.example.com", "Access-Control-Request-Method": "POST"},
    )
    assert foreign_preflight.status_code == 403

    # Same-origin and server-to-server calls carry no Origin header.
    assert (await client.get("/v1/health")).status_code == 200


async def test_login_rate_limit_window(settings, session_factory, clock) -> None:
    app = create_app(
        settings=settings.model_copy(update={"rl_login_max": 2, "rl_login_window_s": 900}),
        session_factory=session_factory,
        clock=clock,
    )
    payload = {"email": "nobody@acme.com", "password": "whatever-pass"}
    async with _client_for(app) as client:
        assert (await client.post("/v1/auth/login", json=payload)).status_code == 401
        assert (await client.post("/v1/auth/login", json=payload)).status_code == 401

        limited = await client.post("/v1/auth/login", json=payload)
        assert limited.status_code == 429
        assert limited.headers["Retry-After"] == "900"
        error = limited.json()["error"]
        assert error["code"] == "RATE_LIMITED"
        assert error["details"] == {"retry_after": 900, "route_class": "login"}

        # Other route classes keep their own budget.
        assert (await client.get("/v1/auth/me")).status_code == 401

        clock.advance(900)
        assert (await client.post("/v1/auth/login", json=payload)).status_code == 401


async def test_privileged_routes_honour_ip_allowlist(settings, session_factory, clock) -> None:
    app = create_app(
        settings=settings.model_copy(update={"admin_allowed_ips": "10.9.9.0/24"}),
        session_factory=session_factory,
        clock=clock,
    )
    async with _client_for(app) as client:
        denied = await client.get("/v1/admin/companies")
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "AUTH_FORBIDDEN"
        assert (await client.get("/v1/audit/events")).status_code == 403
        # Non-privileged routes are unaffected.
        assert (await client.get("/v1/auth/me")).status_code == 401


async def test_security_headers_and_request_id(client) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-abc"})
    assert response.status_code == 200
    assert response.headers["X-Request-Id"] == "req-abc"
    assert response.json()["meta"] == {"request_id": "req-abc", "api_version": "v1"}
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "max-age" in response.headers["Strict-Transport-Security"]


async def test_idle_privileged_session_expires(app, client, session_factory, clock) -> None:
    super_admin = await create_test_principal(session_factory, role=Role.SUPER_ADMIN)
    headers = bearer_headers(app.state.token_codec, super_admin, ttl=4 * 3600)

    assert (await client.get("/v1/auth/me", headers=headers)).status_code == 200
    clock.advance(20 * 60)
    assert (await client.get("/v1/auth/me", headers=headers)).status_code == 200
    clock.advance(20 * 60)
    assert (await client.get("/v1/auth/me", headers=headers)).status_code == 200

    clock.advance(31 * 60)
    expired = await client.get("/v1/auth/me", headers=headers)
    assert expired.status_code == 401
    assert expired.json()["error"]["code"] == "SESSION_EXPIRED"
    # The terminated session stays dead even after activity stops.
    assert (await client.get("/v1/auth/me", headers=headers)).status_code == 401

    fresh = bearer_headers(app.state.token_codec, super_admin, ttl=4 * 3600)
    assert (await client.get("/v1/auth/me", headers=fresh)).status_code == 200


async def test_oversized_and_malformed_bodies(settings, session_factory, clock) -> None:
    app = create_app(
        settings=settings.model_copy(update={"security_max_body_bytes": 64}),
        session_factory=session_factory,
        clock=clock,
    )
    async with _client_for(app) as client:
        too_large = await client.post(
            "/v1/auth/login",
            json={"email": "big@acme.com", "password": "x" * 200},
        )
        assert too_large.status_code == 413
        assert too_large.json()["error"]["code"] == "PAYLOAD_TOO_LARGE"

        malformed = await client.post(
            "/v1/auth/login",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert malformed.status_code == 400
        assert malformed.json()["error"]["code"] == "BAD_REQUEST"


async def test_markup_in_path_keeps_the_login_rate_limit_class(settings, session_factory, clock) -> None:
    app = create_app(
        settings=settings.model_copy(update={"rl_admin_login_max": 3, "rl_admin_login_window_s": 900}),
        session_factory=session_factory,
        clock=clock,
    )
    payload = {"email": "nobody@acme.com", "password": "whatever-pass"}
    async with _client_for(app) as client:
        for path in ("/v1/auth/admin/login", "/v1/auth/admin/<b>login", "/v1/auth/<i>admin/login"):
            assert (await client.post(path, json=payload)).status_code == 401

        limited = await client.post("/v1/auth/admin/<b>login", json=payload)
        assert limited.status_code == 429
        assert limited.json()["error"]["details"]["route_class"] == "admin_login"


async def test_markup_in_path_keeps_the_admin_ip_allowlist(settings, session_factory, clock) -> None:
    app = create_app(
        settings=settings.model_copy(update={"admin_allowed_ips": "10.0.0.0/8"}),
        session_factory=session_factory,
        clock=clock,
    )
    super_admin = await create_test_principal(session_factory, role=Role.SUPER_ADMIN)
    headers = bearer_headers(app.state.token_codec, super_admin)
    async with _client_for(app) as client:
        for path in ("/v1/admin/approvals/pending", "/v1/<i>admin/approvals/pending", "/v1/<b></b>audit/events"):
            denied = await client.get(path, headers=headers)
            assert denied.status_code == 403
            assert denied.json()["error"]["code"] == "AUTH_FORBIDDEN"
    assert counter_value("security.ip_denied") == 3


class _UnreachableSessionStore:
    async def last_activity(self, session_id: str) -> float | None:
        raise RedisConnectionError("connection refused")

    async def touch(self, session_id: str, now: float) -> None:
        raise RedisConnectionError("connection refused")

    async def terminate(self, session_id: str, now: float) -> None:
        raise RedisConnectionError("connection refused")

    async def is_terminated(self, session_id: str) -> bool:
        raise RedisConnectionError("connection refused")


async def test_unreachable_session_store_returns_503(app, client, session_factory, clock) -> None:
    app.state.security.session_policy = SessionTimeoutPolicy(
        _UnreachableSessionStore(),
        timeout_minutes=30,
        clock=clock,
    )
    super_admin = await create_test_principal(session_factory, role=Role.SUPER_ADMIN)
    headers = bearer_headers(app.state.token_codec, super_admin, ttl=4 * 3600)

    response = await client.get("/v1/auth/me", headers=headers)
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "SERVICE_UNAVAILABLE"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert counter_value("security.session_store_unavailable") == 1

    # Roles without an idle timeout never consult the session store.
    member = await create_test_principal(session_factory, role=Role.USER)
    member_headers = bearer_headers(app.state.token_codec, member)
    assert (await client.get("/v1/auth/me", headers=member_headers)).status_code == 200
