from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, EmailStr, Field

from skillgate.apps.api.deps import RouteCapability, get_admin_account_service, get_recorder, require_capability
from skillgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillgate.apps.api.response import envelope
from skillgate.domain.identity import Action, Principal, Role
from skillgate.domain.models import User
from skillgate.services.admin_accounts import AdminAccountService
from skillgate.services.audit import AuditRecorder, get_request_context


router = APIRouter(prefix="/admin/accounts", tags=["admins"], responses=DEFAULT_ERROR_RESPONSES)

_MANAGE_ADMINS = RouteCapability(Role.SUPER_ADMIN, Action.MANAGE_ADMINS)


class CreateAdminRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    name: str | None = Field(default=None, max_length=120)
    role: str = Field(max_length=32)
    tenant_id: str | None = Field(default=None, max_length=64)


class UpdateAdminRequest(BaseModel):
    role: str | None = Field(default=None, max_length=32)
    tenant_id: str | None = Field(default=None, max_length=64)
    name: str | None = Field(default=None, max_length=120)
    password: str | None = Field(default=None, min_length=1, max_length=128)


def _account_payload(user: User) -> dict:
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


async def _audit(
    request: Request,
    recorder: AuditRecorder,
    principal: Principal,
    action: str,
    user: User,
    detail: dict,
) -> None:
    request_ctx = get_request_context(request)
    await recorder.record(
        principal.subject_id,
        action,
        "user",
        user.id,
        detail,
        request_ctx["origin_address"],
        tenant_id=user.tenant_id,
        actor_role=principal.role.value,
        request_id=request_ctx["request_id"],
    )


@router.get("")
async def list_accounts(
    request: Request,
    role: str | None = Query(default=None, max_length=32),
    tenant_id: str | None = Query(default=None, max_length=64),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_capability(_MANAGE_ADMINS)),
    accounts: AdminAccountService = Depends(get_admin_account_service),
) -> dict:
    users = await accounts.list_accounts(role=role, tenant_id=tenant_id, offset=offset, limit=limit)
    return envelope(request, {"items": [_account_payload(user) for user in users]})


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_account(
    payload: CreateAdminRequest,
    request: Request,
    principal: Principal = Depends(require_capability(_MANAGE_ADMINS)),
    accounts: AdminAccountService = Depends(get_admin_account_service),
    recorder: AuditRecorder = Depends(get_recorder),
) -> dict:
    user = await accounts.create_account(
        principal,
        email=payload.email,
        password=payload.password,
        name=payload.name,
        role=payload.role,
        tenant_id=payload.tenant_id,
    )
    await _audit(request, recorder, principal, "admin.created", user, {"role": user.role})
    return envelope(request, _account_payload(user))


@router.put("/{subject_id}")
async def update_account(
    subject_id: str,
    payload: UpdateAdminRequest,
    request: Request,
    principal: Principal = Depends(require_capability(_MANAGE_ADMINS)),
    accounts: AdminAccountService = Depends(get_admin_account_service),
    recorder: AuditRecorder = Depends(get_recorder),
) -> dict:
    change = await accounts.update_account(
        principal,
        subject_id,
        role=payload.role,
        tenant_id=payload.tenant_id,
        name=payload.name,
        password=payload.password,
    )
    detail: dict = {"fields": list(change.changed)}
    if "role" in change.changed:
        detail["previous_role"] = change.previous_role
        detail["role"] = change.user.role
    await _audit(request, recorder, principal, "admin.updated", change.user, detail)
    return envelope(request, _account_payload(change.user))


@router.delete("/{subject_id}")
async def delete_account(
    subject_id: str,
    request: Request,
    principal: Principal = Depends(require_capability(_MANAGE_ADMINS)),
    accounts: AdminAccountService = Depends(get_admin_account_service),
    recorder: AuditRecorder = Depends(get_recorder),
) -> dict:
    user = await accounts.delete_account(principal, subject_id)
    await _audit(request, recorder, principal, "admin.deleted", user, {"role": user.role})
    return envelope(request, {"subject_id": subject_id, "deleted": True})
