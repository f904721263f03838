from __future__ import annotations

import logging
import time
from typing import Callable

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.exceptions import HTTPException as StarletteHTTPException

from skillgate.apps.api.errors import (
    http_exception_handler,
    skillgate_exception_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from skillgate.apps.api.rate_limit import build_rate_limiter, route_class_for_path
from skillgate.apps.api.response import API_VERSION, request_id_for
from skillgate.apps.api.routes.admins import router as admins_router
from skillgate.apps.api.routes.approvals import router as approvals_router
from skillgate.apps.api.routes.audit import router as audit_router
from skillgate.apps.api.routes.auth import router as auth_router
from skillgate.apps.api.routes.companies import router as companies_router
from skillgate.apps.api.routes.health import router as health_router
from skillgate.apps.api.routes.invitations import admin_router as invitations_admin_router
from skillgate.apps.api.routes.invitations import public_router as invitations_public_router
from skillgate.apps.api.security import SecurityComponents, SecurityPipelineMiddleware
from skillgate.core.config import Settings, get_settings, validate_settings
from skillgate.core.errors import SkillGateError
from skillgate.core.logging import configure_logging
from skillgate.persistence.db import SessionLocal
from skillgate.persistence.guards import TenantPredicateError
from skillgate.persistence.store import SqlPrincipalStore
from skillgate.services.admin_accounts import AdminAccountService
from skillgate.services.approvals import ApprovalService
from skillgate.services.audit import AlertSink, AuditRecorder
from skillgate.services.auth.tokens import build_token_codec
from skillgate.services.invitations import InvitationService
from skillgate.services.registration import RegistrationService
from skillgate.services.security.cors import CorsPolicy
from skillgate.services.security.ip_allowlist import parse_allowlist
from skillgate.services.security.session import (
    MemorySessionStore,
    RedisSessionStore,
    SessionActivityStore,
    SessionTimeoutPolicy,
)
from skillgate.services.telemetry import record_request


logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {
    "/v1/health",
    "/v1/auth/register",
    "/v1/auth/admin/register",
    "/v1/auth/login",
    "/v1/auth/admin/login",
    "/v1/auth/invitations/verify",
    "/v1/auth/invitations/accept",
}


def _build_session_store(settings: Settings) -> SessionActivityStore:
    # Keep activity entries a little longer than the timeout so expiry stays observable.
    retention_s = settings.session_timeout_minutes * 60 * 2
    if settings.session_backend == "redis":
        redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return RedisSessionStore(redis, prefix=settings.session_redis_prefix, retention_s=retention_s)
    return MemorySessionStore(retention_s=retention_s)


def create_app(
    *,
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    clock: Callable[[], float] | None = None,
    alert_sink: AlertSink | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    # Misconfiguration is the only fatal error class; fail before serving anything.
    validate_settings(settings)
    configure_logging()
    session_factory = session_factory or SessionLocal

    codec = build_token_codec(settings, clock=clock)
    store = SqlPrincipalStore(session_factory)
    recorder = AuditRecorder(store, alert_sink=alert_sink)

    app = FastAPI(title="SkillGate API")
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.token_codec = codec
    app.state.principal_store = store
    app.state.audit_recorder = recorder
    app.state.approval_service = ApprovalService(store, recorder, session_factory=session_factory)
    app.state.registration_service = RegistrationService(session_factory=session_factory)
    app.state.admin_account_service = AdminAccountService(session_factory=session_factory)
    app.state.invitation_service = InvitationService(
        session_factory=session_factory,
        ttl_days=settings.invitation_ttl_days,
        clock=clock,
    )

    components = SecurityComponents(
        settings=settings,
        limiter=build_rate_limiter(settings, time_provider=clock),
        cors=CorsPolicy.from_origins(
            settings.cors_origins(),
            allow_credentials=settings.cors_allow_credentials,
            max_age_s=settings.cors_max_age_s,
        ),
        session_policy=SessionTimeoutPolicy(
            _build_session_store(settings),
            timeout_minutes=settings.session_timeout_minutes,
            clock=clock,
        ),
        codec=codec,
        admin_allowlist=parse_allowlist(settings.admin_ips()),
    )
    app.state.security = components

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # The security pipeline assigns the request id; reuse it for telemetry and headers.
        request_id = request_id_for(request)
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(
            route_class=route_class_for_path(request.url.path, request.method),
            status_code=response.status_code,
            latency_ms=latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    # Added last so it wraps everything, including the request context middleware.
    app.add_middleware(SecurityPipelineMiddleware, components=components)

    @app.exception_handler(SkillGateError)
    async def _skillgate_exception_handler(request: Request, exc: SkillGateError):
        return await skillgate_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(auth_router, prefix=f"/{API_VERSION}")
    app.include_router(invitations_public_router, prefix=f"/{API_VERSION}")
    # Approval decisions and company administration sit behind the admin IP allow-list.
    app.include_router(approvals_router, prefix=f"/{API_VERSION}")
    app.include_router(companies_router, prefix=f"/{API_VERSION}")
    app.include_router(admins_router, prefix=f"/{API_VERSION}")
    app.include_router(invitations_admin_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router, prefix=f"/{API_VERSION}")

    # Serve versioned OpenAPI JSON and docs endpoints for v1 consumers.
    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="SkillGate API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Inject bearer auth and version metadata into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="SkillGate API",
            version=API_VERSION,
            routes=app.routes,
        )
        schema["servers"] = [{"url": "http://localhost:8000"}]
        components_schema = schema.setdefault("components", {})
        security_schemes = components_schema.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    logger.info(
        "app_created environment=%s rl_backend=%s session_backend=%s cors_origins=%d",
        settings.environment,
        settings.rl_backend,
        settings.session_backend,
        len(components.cors.allowed_origins),
    )
    return app
