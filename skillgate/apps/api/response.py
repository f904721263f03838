"""Envelopes for the versioned API.

Routes under ``/v1`` answer ``{"data", "meta"}`` or ``{"error", "meta"}``.
Unversioned paths (the docs redirect, stray 404s) keep FastAPI's bare
``{"detail": ...}`` shape. Route handlers, the exception handlers and the
security pipeline all build their bodies here, so a request rejected before
routing looks the same as one rejected by a handler.
"""

from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel


API_VERSION = "v1"
_VERSION_PREFIX = f"/{API_VERSION}"

T = TypeVar("T")


class Meta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorInfo(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class DataEnvelope(BaseModel, Generic[T]):
    data: T
    meta: Meta


class ErrorEnvelope(BaseModel):
    error: ErrorInfo
    meta: Meta


def is_versioned_path(path: str) -> bool:
    return path == _VERSION_PREFIX or path.startswith(_VERSION_PREFIX + "/")


def request_id_for(request: Request) -> str:
    # The pipeline stamps every request; the fallbacks only matter without it.
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


def envelope(request: Request, data: Any) -> Any:
    if not is_versioned_path(request.url.path):
        return data
    return {"data": data, "meta": Meta(request_id=request_id_for(request)).model_dump()}


def error_json(
    path: str,
    request_id: str,
    status_code: int,
    code: str,
    message: str,
    *,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    bare_detail: Any = None,
) -> JSONResponse:
    """Build an error response for ``path``.

    ``bare_detail`` replaces the default ``{"code", "message"}`` detail on
    unversioned paths.
    """
    if is_versioned_path(path):
        info = ErrorInfo(code=code, message=message, details=details)
        content: Any = {
            "error": info.model_dump(exclude_none=True),
            "meta": Meta(request_id=request_id).model_dump(),
        }
    else:
        detail = bare_detail if bare_detail is not None else {"code": code, "message": message}
        content = {"detail": detail}
    return JSONResponse(content=content, status_code=status_code, headers=headers)


def request_error(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    **kwargs: Any,
) -> JSONResponse:
    return error_json(request.url.path, request_id_for(request), status_code, code, message, **kwargs)
