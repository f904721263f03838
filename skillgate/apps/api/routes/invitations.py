from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, EmailStr, Field

from skillgate.apps.api.deps import RouteCapability, get_invitation_service, get_recorder, require_capability
from skillgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillgate.apps.api.response import envelope
from skillgate.domain.identity import Action, Principal, Role
from skillgate.services.audit import AuditRecorder, get_request_context
from skillgate.services.auth.roles import effective_tenant_scope
from skillgate.services.invitations import InvitationService, invitation_payload


admin_router = APIRouter(prefix="/admin/invitations", tags=["invitations"], responses=DEFAULT_ERROR_RESPONSES)
public_router = APIRouter(prefix="/auth/invitations", tags=["invitations"], responses=DEFAULT_ERROR_RESPONSES)

_MANAGE_INVITATIONS = RouteCapability(Role.COMPANY_ADMIN, Action.MANAGE_INVITATIONS)


class CreateInvitationRequest(BaseModel):
    email: EmailStr
    role: str = Field(max_length=32)
    # Ignored for company_admin inviters, who always invite into their own company.
    tenant_id: str | None = Field(default=None, max_length=64)


class VerifyInvitationRequest(BaseModel):
    token: str = Field(min_length=1, max_length=128)


class AcceptInvitationRequest(BaseModel):
    token: str = Field(min_length=1, max_length=128)
    password: str = Field(min_length=1, max_length=128)
    name: str | None = Field(default=None, max_length=120)


@admin_router.post("", status_code=status.HTTP_201_CREATED)
async def create_invitation(
    payload: CreateInvitationRequest,
    request: Request,
    principal: Principal = Depends(require_capability(_MANAGE_INVITATIONS)),
    invitations: InvitationService = Depends(get_invitation_service),
    recorder: AuditRecorder = Depends(get_recorder),
) -> dict:
    issued = await invitations.invite(
        principal,
        email=payload.email,
        role=payload.role,
        tenant_id=payload.tenant_id,
    )
    invitation = issued.invitation
    request_ctx = get_request_context(request)
    await recorder.record(
        principal.subject_id,
        "invitation.created",
        "invitation",
        str(invitation.id),
        {"role": invitation.role, "email": invitation.email},
        request_ctx["origin_address"],
        tenant_id=invitation.tenant_id,
        actor_role=principal.role.value,
        request_id=request_ctx["request_id"],
    )
    data = invitation_payload(invitation, invitation.created_at)
    # The raw token is only ever shown here.
    data["token"] = issued.token
    return envelope(request, data)


@admin_router.get("")
async def list_invitations(
    request: Request,
    tenant_id: str | None = Query(default=None, max_length=64),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(require_capability(_MANAGE_INVITATIONS)),
    invitations: InvitationService = Depends(get_invitation_service),
) -> dict:
    items = await invitations.list_invitations(
        tenant_id=effective_tenant_scope(principal, tenant_id),
        offset=offset,
        limit=limit,
    )
    return envelope(request, {"items": items})


@admin_router.delete("/{invitation_id}")
async def revoke_invitation(
    invitation_id: int,
    request: Request,
    principal: Principal = Depends(require_capability(_MANAGE_INVITATIONS)),
    invitations: InvitationService = Depends(get_invitation_service),
    recorder: AuditRecorder = Depends(get_recorder),
) -> dict:
    invitation = await invitations.revoke(principal, invitation_id)
    request_ctx = get_request_context(request)
    await recorder.record(
        principal.subject_id,
        "invitation.revoked",
        "invitation",
        str(invitation.id),
        {"email": invitation.email},
        request_ctx["origin_address"],
        tenant_id=invitation.tenant_id,
        actor_role=principal.role.value,
        request_id=request_ctx["request_id"],
    )
    return envelope(request, {"id": invitation.id, "revoked": True})


@public_router.post("/verify")
async def verify_invitation(
    payload: VerifyInvitationRequest,
    request: Request,
    invitations: InvitationService = Depends(get_invitation_service),
) -> dict:
    data = await invitations.verify(payload.token)
    return envelope(request, {key: data[key] for key in ("email", "role", "tenant_id", "company_name", "expires_at")})


@public_router.post("/accept", status_code=status.HTTP_201_CREATED)
async def accept_invitation(
    payload: AcceptInvitationRequest,
    request: Request,
    invitations: InvitationService = Depends(get_invitation_service),
    recorder: AuditRecorder = Depends(get_recorder),
) -> dict:
    # No token is issued; the new admin signs in through admin login.
    accepted = await invitations.accept(payload.token, name=payload.name, password=payload.password)
    user = accepted.user
    request_ctx = get_request_context(request)
    await recorder.record(
        user.id,
        "invitation.accepted",
        "invitation",
        str(accepted.invitation.id),
        {"role": user.role, "invited_by": accepted.invitation.invited_by},
        request_ctx["origin_address"],
        tenant_id=user.tenant_id,
        actor_role=user.role,
        request_id=request_ctx["request_id"],
    )
    return envelope(
        request,
        {
            "subject_id": user.id,
            "email": user.email,
            "role": user.role,
            "tenant_id": user.tenant_id,
            "approved": user.approved,
            "approved_by": user.approved_by,
        },
    )
