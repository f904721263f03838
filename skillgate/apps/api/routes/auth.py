from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, EmailStr, Field

from skillgate.apps.api.deps import (
    get_approval_service,
    get_codec,
    get_recorder,
    get_registration_service,
    require_authenticated,
)
from skillgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillgate.apps.api.response import envelope
from skillgate.domain.identity import Principal
from skillgate.services.approvals import ApprovalService
from skillgate.services.audit import AuditRecorder, get_request_context
from skillgate.services.auth.tokens import TokenCodec
from skillgate.services.registration import RegistrationService


router = APIRouter(prefix="/auth", tags=["auth"], responses=DEFAULT_ERROR_RESPONSES)


class RegisterUserRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    name: str | None = Field(default=None, max_length=120)
    company_code: str | None = Field(default=None, max_length=64)


class RegisterAdminRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)
    name: str | None = Field(default=None, max_length=120)
    role: str = Field(max_length=32)
    # Required for company-tier roles; ignored for sys_admin.
    company_code: str | None = Field(default=None, max_length=64)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=128)


def _principal_payload(principal: Principal) -> dict:
    return {
        "subject_id": principal.subject_id,
        "role": principal.role.value,
        "tenant_id": principal.tenant_id,
        "approved": principal.approved,
        "approved_by": principal.approved_by,
        "approved_at": principal.approved_at.isoformat() if principal.approved_at else None,
    }


def _token_payload(codec: TokenCodec, principal: Principal) -> dict:
    token = codec.issue(
        principal.subject_id,
        principal.role,
        principal.tenant_id,
        approved=principal.approved,
    )
    return {
        "access_token": token,
        "token_type": "bearer",
        "expires_in": codec.default_ttl(principal.role),
        "principal": _principal_payload(principal),
    }


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register_user(
    payload: RegisterUserRequest,
    request: Request,
    registration: RegistrationService = Depends(get_registration_service),
    codec: TokenCodec = Depends(get_codec),
) -> dict:
    result = await registration.register_user(
        email=payload.email,
        password=payload.password,
        name=payload.name,
        company_code=payload.company_code,
    )
    return envelope(request, _token_payload(codec, result.principal))


@router.post("/admin/register", status_code=status.HTTP_201_CREATED)
async def register_admin(
    payload: RegisterAdminRequest,
    request: Request,
    registration: RegistrationService = Depends(get_registration_service),
) -> dict:
    # Company-tier admins start unapproved; no token is handed out until login.
    result = await registration.register_admin(
        email=payload.email,
        password=payload.password,
        name=payload.name,
        role=payload.role,
        company_code=payload.company_code,
    )
    data = _principal_payload(result.principal)
    data["approval_request_id"] = result.approval_request_id
    return envelope(request, data)


@router.post("/login")
async def login(
    payload: LoginRequest,
    request: Request,
    registration: RegistrationService = Depends(get_registration_service),
    codec: TokenCodec = Depends(get_codec),
) -> dict:
    principal = await registration.authenticate(email=payload.email, password=payload.password, admin=False)
    return envelope(request, _token_payload(codec, principal))


@router.post("/admin/login")
async def admin_login(
    payload: LoginRequest,
    request: Request,
    registration: RegistrationService = Depends(get_registration_service),
    codec: TokenCodec = Depends(get_codec),
    recorder: AuditRecorder = Depends(get_recorder),
) -> dict:
    principal = await registration.authenticate(email=payload.email, password=payload.password, admin=True)
    request_ctx = get_request_context(request)
    await recorder.record(
        principal.subject_id,
        "auth.admin_login",
        "user",
        principal.subject_id,
        {"approved": principal.approved},
        request_ctx["origin_address"],
        tenant_id=principal.tenant_id,
        actor_role=principal.role.value,
        request_id=request_ctx["request_id"],
    )
    return envelope(request, _token_payload(codec, principal))


@router.get("/me")
async def me(
    request: Request,
    principal: Principal = Depends(require_authenticated),
) -> dict:
    return envelope(request, _principal_payload(principal))


@router.get("/me/approval")
async def my_approval(
    request: Request,
    principal: Principal = Depends(require_authenticated),
    approvals: ApprovalService = Depends(get_approval_service),
) -> dict:
    latest = await approvals.approval_status(principal.subject_id)
    data = {
        "approved": principal.approved,
        "request": latest.as_dict() if latest is not None else None,
    }
    return envelope(request, data)


@router.put("/password")
async def change_password(
    payload: ChangePasswordRequest,
    request: Request,
    principal: Principal = Depends(require_authenticated),
    registration: RegistrationService = Depends(get_registration_service),
    recorder: AuditRecorder = Depends(get_recorder),
) -> dict:
    await registration.change_password(
        subject_id=principal.subject_id,
        current_password=payload.current_password,
        new_password=payload.new_password,
    )
    request_ctx = get_request_context(request)
    await recorder.record(
        principal.subject_id,
        "auth.password_changed",
        "user",
        principal.subject_id,
        None,
        request_ctx["origin_address"],
        tenant_id=principal.tenant_id,
        actor_role=principal.role.value,
        request_id=request_ctx["request_id"],
    )
    return envelope(request, {"subject_id": principal.subject_id, "password_changed": True})
