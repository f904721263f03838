from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from skillgate.apps.api.deps import RouteCapability, get_db, get_settings_dep, require_capability
from skillgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillgate.apps.api.response import envelope
from skillgate.core.config import Settings
from skillgate.core.errors import Forbidden, NotFound
from skillgate.domain.identity import Action, Principal, Role
from skillgate.domain.models import AuditEvent
from skillgate.persistence.repos import audit as audit_repo
from skillgate.services.auth.roles import effective_tenant_scope


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)

_VIEW_AUDIT = RouteCapability(Role.COMPANY_ADMIN, Action.VIEW_AUDIT_LOG)


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: str
    tenant_id: str | None
    actor_id: str | None
    actor_role: str | None
    action: str
    target_type: str | None
    target_id: str | None
    request_id: str | None
    origin_address: str | None
    detail: dict[str, Any] | None


def _to_response(event: AuditEvent) -> AuditEventResponse:
    # Serialize audit event datetimes to ISO 8601 for API clients.
    return AuditEventResponse(
        id=event.id,
        occurred_at=event.occurred_at.isoformat(),
        tenant_id=event.tenant_id,
        actor_id=event.actor_id,
        actor_role=event.actor_role,
        action=event.action,
        target_type=event.target_type,
        target_id=event.target_id,
        request_id=event.request_id,
        origin_address=event.origin_address,
        detail=event.detail_json,
    )


def _scope_for(principal: Principal, tenant_id: str | None) -> str | None:
    # Company admins may only name their own tenant; global roles may name any.
    if tenant_id is not None and not principal.is_global and tenant_id != principal.tenant_id:
        raise Forbidden("Tenant scope does not match principal")
    return effective_tenant_scope(principal, tenant_id)


@router.get("/events")
async def list_audit_events(
    request: Request,
    tenant_id: str | None = None,
    action: str | None = None,
    actor_id: str | None = None,
    target_type: str | None = None,
    target_id: str | None = None,
    occurred_from: datetime | None = Query(default=None, alias="from"),
    occurred_to: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1),
    principal: Principal = Depends(require_capability(_VIEW_AUDIT)),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings_dep),
) -> dict:
    scoped_tenant_id = _scope_for(principal, tenant_id)
    limit = min(limit, settings.audit_page_max)
    events = await audit_repo.list_events(
        db,
        tenant_id=scoped_tenant_id,
        action=action,
        actor_id=actor_id,
        target_type=target_type,
        target_id=target_id,
        occurred_from=occurred_from,
        occurred_to=occurred_to,
        offset=offset,
        limit=limit + 1,
    )

    next_offset = None
    if len(events) > limit:
        events = events[:limit]
        next_offset = offset + limit

    data = {
        "items": [_to_response(event).model_dump() for event in events],
        "next_offset": next_offset,
    }
    return envelope(request, data)


@router.get("/events/{event_id}")
async def get_audit_event(
    event_id: int,
    request: Request,
    principal: Principal = Depends(require_capability(_VIEW_AUDIT)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    event = await audit_repo.get_event_by_id(
        db,
        tenant_id=effective_tenant_scope(principal, None),
        event_id=event_id,
    )
    if event is None:
        raise NotFound("Audit event not found")
    return envelope(request, _to_response(event).model_dump())
