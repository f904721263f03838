from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import AsyncGenerator

from fastapi import Request, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillgate.core.config import Settings
from skillgate.core.errors import Forbidden, StoreUnavailable, Unapproved, Unauthenticated
from skillgate.domain.identity import Action, Principal, Role
from skillgate.persistence.store import PrincipalStore
from skillgate.services.admin_accounts import AdminAccountService
from skillgate.services.approvals import ApprovalService
from skillgate.services.audit import AuditRecorder
from skillgate.services.auth.roles import can_perform, role_allows
from skillgate.services.auth.tokens import TokenClaims, TokenCodec
from skillgate.services.invitations import InvitationService
from skillgate.services.registration import RegistrationService
from skillgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouteCapability:
    # Declared per route: minimum role, the action performed, and whether a
    # {tenant_id} path parameter selects the target tenant.
    required_role: Role
    required_action: Action
    tenant_scoped: bool = False


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_codec(request: Request) -> TokenCodec:
    return request.app.state.token_codec


def get_store(request: Request) -> PrincipalStore:
    return request.app.state.principal_store


def get_recorder(request: Request) -> AuditRecorder:
    return request.app.state.audit_recorder


def get_approval_service(request: Request) -> ApprovalService:
    return request.app.state.approval_service


def get_registration_service(request: Request) -> RegistrationService:
    return request.app.state.registration_service


def get_admin_account_service(request: Request) -> AdminAccountService:
    return request.app.state.admin_account_service


def get_invitation_service(request: Request) -> InvitationService:
    return request.app.state.invitation_service


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with session_factory() as session:
        yield session


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise Unauthenticated("Missing bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise Unauthenticated("Malformed authorization header")
    return parts[1]


def _deny(reason: str, *, principal: Principal, action: Action, request: Request) -> None:
    # Real cause goes to the log; clients only see the generic message.
    increment_counter(f"authz.denied.{reason}")
    logger.warning(
        "authz_denied reason=%s subject_id=%s role=%s tenant_id=%s action=%s path=%s",
        reason,
        principal.subject_id,
        principal.role.value,
        principal.tenant_id,
        action.value,
        request.url.path,
    )


async def _load_principal(request: Request, claims: TokenClaims) -> Principal:
    settings = get_settings_dep(request)
    store = get_store(request)
    try:
        stored = await asyncio.wait_for(
            store.get_principal(claims.subject_id),
            timeout=settings.authz_store_timeout_ms / 1000.0,
        )
    except asyncio.TimeoutError as exc:
        increment_counter("authz.store_timeout")
        logger.error("authz_store_timeout subject_id=%s", claims.subject_id)
        raise StoreUnavailable("Principal lookup timed out") from exc
    except SQLAlchemyError as exc:
        logger.error("authz_store_failed subject_id=%s", claims.subject_id, exc_info=exc)
        raise StoreUnavailable("Principal lookup failed") from exc
    if stored is None:
        logger.warning("authz_denied reason=unknown_principal subject_id=%s", claims.subject_id)
        raise Unauthenticated("Principal is unknown or deleted")
    return stored.model_copy(update={"session_id": claims.session_id})


def _claims_match(claims: TokenClaims, principal: Principal) -> bool:
    return (
        claims.role == principal.role
        and claims.tenant_id == principal.tenant_id
        and claims.approved == principal.approved
    )


def _refreshed_token(request: Request, token: str, claims: TokenClaims, principal: Principal) -> str | None:
    # Re-issue on drift from stored state; otherwise rotate once past the threshold.
    settings = get_settings_dep(request)
    codec = get_codec(request)
    if not _claims_match(claims, principal):
        return codec.issue(
            principal.subject_id,
            principal.role,
            principal.tenant_id,
            approved=principal.approved,
            session_id=claims.session_id,
        )
    lifetime = claims.lifetime_s
    if lifetime <= 0:
        return None
    if claims.remaining_s(codec.now()) < lifetime * settings.token_rotate_threshold_ratio:
        return codec.rotate(token)
    return None


async def authenticate_request(request: Request) -> tuple[Principal, TokenClaims, str]:
    settings = get_settings_dep(request)
    token = _parse_bearer_token(request.headers.get(settings.auth_token_header))
    claims = get_codec(request).decode_claims(token)
    principal = await _load_principal(request, claims)
    return principal, claims, token


def require_capability(capability: RouteCapability):
    """Dependency factory enforcing role, approval, capability and tenant scope."""

    async def authorize(request: Request, response: Response) -> Principal:
        principal, claims, token = await authenticate_request(request)
        action = capability.required_action
        if not role_allows(role=principal.role, minimum_role=capability.required_role):
            _deny("role_below_required", principal=principal, action=action, request=request)
            raise Forbidden("Insufficient role for this operation")
        if not principal.approved and action != Action.VIEW_OWN_APPROVAL:
            _deny("unapproved", principal=principal, action=action, request=request)
            raise Unapproved("Principal is pending approval")
        if capability.tenant_scoped:
            target_tenant_id = request.path_params.get("tenant_id")
        else:
            target_tenant_id = principal.tenant_id
        if not can_perform(principal, action, target_tenant_id):
            _deny("capability_or_tenant", principal=principal, action=action, request=request)
            raise Forbidden("Capability or tenant scope denied")

        request.state.principal = principal
        new_token = _refreshed_token(request, token, claims, principal)
        if new_token is not None:
            response.headers[get_settings_dep(request).auth_rotated_token_header] = new_token
        return principal

    return authorize


# Any authenticated principal, approved or not, acting on its own record.
require_authenticated = require_capability(RouteCapability(Role.USER, Action.VIEW_OWN_APPROVAL))
