from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from skillgate.apps.api.deps import RouteCapability, get_approval_service, require_capability
from skillgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillgate.apps.api.response import envelope
from skillgate.domain.identity import Action, Principal, Role
from skillgate.services.approvals import ApprovalService
from skillgate.services.audit import get_request_context


router = APIRouter(prefix="/admin/approvals", tags=["approvals"], responses=DEFAULT_ERROR_RESPONSES)

_VIEW = RouteCapability(Role.COMPANY_ADMIN, Action.VIEW_APPROVALS)
_DECIDE = RouteCapability(Role.COMPANY_ADMIN, Action.DECIDE_APPROVALS)


class RejectRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class BulkApproveRequest(BaseModel):
    request_ids: list[int] = Field(min_length=1, max_length=200)


@router.get("/pending")
async def list_pending(
    request: Request,
    tenant_id: str | None = None,
    principal: Principal = Depends(require_capability(_VIEW)),
    approvals: ApprovalService = Depends(get_approval_service),
) -> dict:
    # Non-global admins are pinned to their own tenant whatever the query says.
    items = await approvals.list_pending(principal, tenant_id=tenant_id)
    return envelope(request, {"items": [item.as_dict() for item in items]})


@router.post("/approve-bulk")
async def approve_bulk(
    payload: BulkApproveRequest,
    request: Request,
    principal: Principal = Depends(require_capability(_DECIDE)),
    approvals: ApprovalService = Depends(get_approval_service),
) -> dict:
    request_ctx = get_request_context(request)
    result = await approvals.approve_bulk(
        principal,
        payload.request_ids,
        request_ctx["origin_address"],
        request_ref=request_ctx["request_id"],
    )
    data = {
        "approved": result.approved,
        "approved_count": len(result.approved),
        "skipped": result.skipped,
    }
    return envelope(request, data)


@router.post("/reopen/{subject_id}")
async def reopen(
    subject_id: str,
    request: Request,
    principal: Principal = Depends(require_capability(_DECIDE)),
    approvals: ApprovalService = Depends(get_approval_service),
) -> dict:
    request_ctx = get_request_context(request)
    view = await approvals.reopen(
        principal,
        subject_id,
        request_ctx["origin_address"],
        request_ref=request_ctx["request_id"],
    )
    return envelope(request, view.as_dict())


@router.post("/{request_id}/approve")
async def approve(
    request_id: int,
    request: Request,
    principal: Principal = Depends(require_capability(_DECIDE)),
    approvals: ApprovalService = Depends(get_approval_service),
) -> dict:
    request_ctx = get_request_context(request)
    view = await approvals.approve(
        principal,
        request_id,
        request_ctx["origin_address"],
        request_ref=request_ctx["request_id"],
    )
    return envelope(request, view.as_dict())


@router.post("/{request_id}/reject")
async def reject(
    request_id: int,
    request: Request,
    payload: RejectRequest | None = None,
    principal: Principal = Depends(require_capability(_DECIDE)),
    approvals: ApprovalService = Depends(get_approval_service),
) -> dict:
    request_ctx = get_request_context(request)
    view = await approvals.reject(
        principal,
        request_id,
        payload.reason if payload is not None else None,
        request_ctx["origin_address"],
        request_ref=request_ctx["request_id"],
    )
    return envelope(request, view.as_dict())
