from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from skillgate.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from skillgate.apps.api.response import DataEnvelope, envelope
from skillgate.services.audit import audit_failures

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    audit_write_failures: int


@router.get("/health", response_model=DataEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    # Report degraded while any audit append has failed in this process.
    failures = audit_failures()
    payload = HealthResponse(status="degraded" if failures else "ok", audit_write_failures=failures)
    return envelope(request, payload.model_dump())
