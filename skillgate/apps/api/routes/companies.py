from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from skillgate.apps.api.deps import RouteCapability, get_db, get_recorder, get_settings_dep, require_capability
from skillgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillgate.apps.api.response import envelope
from skillgate.core.config import Settings
from skillgate.core.errors import Conflict, Forbidden, MalformedInput, NotFound
from skillgate.domain.identity import Action, Principal, Role, parse_role
from skillgate.domain.models import Company, User
from skillgate.persistence.db import pool_stats
from skillgate.persistence.repos import approvals as approvals_repo
from skillgate.persistence.repos import companies as companies_repo
from skillgate.persistence.repos import principals as principals_repo
from skillgate.services.audit import AuditRecorder, get_request_context
from skillgate.services.auth.roles import is_strictly_senior
from skillgate.services.telemetry import counters_snapshot, request_stats


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["companies"], responses=DEFAULT_ERROR_RESPONSES)

_LIST_COMPANIES = RouteCapability(Role.SYS_ADMIN, Action.LIST_COMPANIES)
_CREATE_COMPANY = RouteCapability(Role.SYS_ADMIN, Action.CREATE_COMPANY)
_VIEW_COMPANY = RouteCapability(Role.HR_MANAGER, Action.VIEW_COMPANY, tenant_scoped=True)
_UPDATE_COMPANY = RouteCapability(Role.COMPANY_ADMIN, Action.MANAGE_COMPANY, tenant_scoped=True)
_TOGGLE_COMPANY = RouteCapability(Role.SYS_ADMIN, Action.TOGGLE_COMPANY, tenant_scoped=True)
_DELETE_COMPANY = RouteCapability(Role.COMPANY_ADMIN, Action.DELETE_COMPANY, tenant_scoped=True)
_VIEW_USERS = RouteCapability(Role.HR_MANAGER, Action.VIEW_USERS, tenant_scoped=True)
_MANAGE_USERS = RouteCapability(Role.COMPANY_ADMIN, Action.MANAGE_USERS, tenant_scoped=True)
_SYSTEM_STATS = RouteCapability(Role.SYS_ADMIN, Action.VIEW_SYSTEM_STATS)

_STATS_WINDOW_S = 3600


class CreateCompanyRequest(BaseModel):
    id: str = Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    name: str = Field(min_length=1, max_length=200)
    code: str = Field(min_length=3, max_length=64)
    email_domain: str | None = Field(default=None, max_length=255)


class UpdateCompanyRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    code: str | None = Field(default=None, min_length=3, max_length=64)
    email_domain: str | None = Field(default=None, max_length=255)


def _company_payload(company: Company) -> dict:
    return {
        "id": company.id,
        "name": company.name,
        "code": company.code,
        "email_domain": company.email_domain,
        "is_active": company.is_active,
        "created_at": company.created_at.isoformat() if company.created_at else None,
    }


def _user_payload(user: User) -> dict:
    return {
        "subject_id": user.id,
        "email": user.email,
        "name": user.name,
        "role": user.role,
        "tenant_id": user.tenant_id,
        "approved": user.approved,
        "approved_by": user.approved_by,
        "created_at": user.created_at.isoformat() if user.created_at else None,
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
    }


@router.get("/companies")
async def list_companies(
    request: Request,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_capability(_LIST_COMPANIES)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    companies = await companies_repo.list_companies(db, offset=offset, limit=limit)
    return envelope(request, {"items": [_company_payload(c) for c in companies]})


@router.post("/companies", status_code=status.HTTP_201_CREATED)
async def create_company(
    payload: CreateCompanyRequest,
    request: Request,
    principal: Principal = Depends(require_capability(_CREATE_COMPANY)),
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
) -> dict:
    if await companies_repo.get_company(db, payload.id, include_deleted=True) is not None:
        raise Conflict("Company id already exists")
    if await companies_repo.code_in_use(db, payload.code):
        raise Conflict("Company code already exists")
    company = await companies_repo.create_company(
        db,
        company_id=payload.id,
        name=payload.name,
        code=payload.code.strip(),
        email_domain=payload.email_domain,
    )
    await db.commit()
    await db.refresh(company)

    request_ctx = get_request_context(request)
    await recorder.record(
        principal.subject_id,
        "company.created",
        "company",
        company.id,
        {"name": company.name},
        request_ctx["origin_address"],
        tenant_id=company.id,
        actor_role=principal.role.value,
        request_id=request_ctx["request_id"],
    )
    return envelope(request, _company_payload(company))


@router.get("/companies/{tenant_id}")
async def get_company(
    tenant_id: str,
    request: Request,
    principal: Principal = Depends(require_capability(_VIEW_COMPANY)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    company = await companies_repo.get_company(db, tenant_id)
    if company is None:
        raise NotFound("Company not found")
    return envelope(request, _company_payload(company))


@router.patch("/companies/{tenant_id}")
async def update_company(
    tenant_id: str,
    payload: UpdateCompanyRequest,
    request: Request,
    principal: Principal = Depends(require_capability(_UPDATE_COMPANY)),
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
) -> dict:
    values = payload.model_dump(exclude_unset=True)
    if not values:
        raise MalformedInput("No fields to update")
    if "code" in values:
        if values["code"] is None:
            raise MalformedInput("Company code cannot be cleared")
        values["code"] = values["code"].strip()
        if await companies_repo.code_in_use(db, values["code"], exclude_id=tenant_id):
            raise Conflict("Company code already exists")
    if "name" in values and values["name"] is None:
        raise MalformedInput("Company name cannot be cleared")
    if not await companies_repo.update_company(db, tenant_id, **values):
        raise NotFound("Company not found")
    await db.commit()
    company = await companies_repo.get_company(db, tenant_id)
    if company is None:
        raise NotFound("Company not found")
    await db.refresh(company)

    request_ctx = get_request_context(request)
    await recorder.record(
        principal.subject_id,
        "company.updated",
        "company",
        tenant_id,
        {"fields": sorted(values)},
        request_ctx["origin_address"],
        tenant_id=tenant_id,
        actor_role=principal.role.value,
        request_id=request_ctx["request_id"],
    )
    return envelope(request, _company_payload(company))


@router.put("/companies/{tenant_id}/toggle")
async def toggle_company(
    tenant_id: str,
    request: Request,
    principal: Principal = Depends(require_capability(_TOGGLE_COMPANY)),
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
) -> dict:
    # Members of an inactive company fail authentication until it is re-enabled.
    company = await companies_repo.get_company(db, tenant_id)
    if company is None:
        raise NotFound("Company not found")
    is_active = not company.is_active
    if not await companies_repo.update_company(db, tenant_id, is_active=is_active):
        raise NotFound("Company not found")
    await db.commit()
    await db.refresh(company)

    request_ctx = get_request_context(request)
    await recorder.record(
        principal.subject_id,
        "company.status_changed",
        "company",
        tenant_id,
        {"is_active": is_active},
        request_ctx["origin_address"],
        tenant_id=tenant_id,
        actor_role=principal.role.value,
        request_id=request_ctx["request_id"],
    )
    return envelope(request, _company_payload(company))


@router.delete("/companies/{tenant_id}")
async def delete_company(
    tenant_id: str,
    request: Request,
    principal: Principal = Depends(require_capability(_DELETE_COMPANY)),
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
) -> dict:
    # Soft delete only; users and audit rows keep pointing at the tombstoned tenant.
    deleted = await companies_repo.soft_delete_company(db, tenant_id)
    if not deleted:
        raise NotFound("Company not found")
    await db.commit()

    request_ctx = get_request_context(request)
    await recorder.record(
        principal.subject_id,
        "company.deleted",
        "company",
        tenant_id,
        None,
        request_ctx["origin_address"],
        tenant_id=tenant_id,
        actor_role=principal.role.value,
        request_id=request_ctx["request_id"],
    )
    return envelope(request, {"id": tenant_id, "deleted": True})


@router.get("/companies/{tenant_id}/users")
async def list_company_users(
    tenant_id: str,
    request: Request,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_capability(_VIEW_USERS)),
    db: AsyncSession = Depends(get_db),
) -> dict:
    users = await principals_repo.list_users(db, tenant_id=tenant_id, offset=offset, limit=limit)
    return envelope(request, {"items": [_user_payload(user) for user in users]})


@router.delete("/companies/{tenant_id}/users/{subject_id}")
async def delete_company_user(
    tenant_id: str,
    subject_id: str,
    request: Request,
    principal: Principal = Depends(require_capability(_MANAGE_USERS)),
    db: AsyncSession = Depends(get_db),
    recorder: AuditRecorder = Depends(get_recorder),
) -> dict:
    user = await principals_repo.get_user(db, subject_id)
    if user is None or user.tenant_id != tenant_id:
        raise NotFound("User not found")
    try:
        target_role = parse_role(user.role)
    except ValueError:
        target_role = None
    # Only strictly senior principals may remove someone, and never themselves.
    if (
        target_role is None
        or subject_id == principal.subject_id
        or not is_strictly_senior(principal.role, target_role)
    ):
        logger.warning(
            "authz_denied reason=user_delete_not_senior subject_id=%s role=%s target_id=%s",
            principal.subject_id,
            principal.role.value,
            subject_id,
        )
        raise Forbidden("Access denied")
    tombstoned = await principals_repo.tombstone_user(db, user_id=subject_id, tenant_id=tenant_id)
    if not tombstoned:
        raise NotFound("User not found")
    await db.commit()

    request_ctx = get_request_context(request)
    await recorder.record(
        principal.subject_id,
        "user.deleted",
        "user",
        subject_id,
        {"role": user.role},
        request_ctx["origin_address"],
        tenant_id=tenant_id,
        actor_role=principal.role.value,
        request_id=request_ctx["request_id"],
    )
    return envelope(request, {"subject_id": subject_id, "deleted": True})


@router.get("/system-stats")
async def system_stats(
    request: Request,
    principal: Principal = Depends(require_capability(_SYSTEM_STATS)),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings_dep),
) -> dict:
    users_by_role = await principals_repo.count_users_by_role(db)
    data = {
        "environment": settings.environment,
        "users_by_role": users_by_role,
        "companies": await companies_repo.count_companies(db),
        "pending_approvals": await approvals_repo.count_pending(db),
        "requests": request_stats(_STATS_WINDOW_S),
        "db_pool": pool_stats(db.bind),
        "counters": counters_snapshot(),
    }
    return envelope(request, data)
