from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from skillgate.apps.api.response import error_json, request_error, request_id_for
from skillgate.core.errors import (
    AccessError,
    AuditWriteFailure,
    ConfigError,
    Conflict,
    ExpiredToken,
    Forbidden,
    InvalidClaims,
    InvalidSignature,
    InvalidTransition,
    MalformedInput,
    NotFound,
    SessionExpired,
    SkillGateError,
    StoreUnavailable,
    TokenError,
    TooManyRequests,
    Unapproved,
    Unauthenticated,
)
from skillgate.persistence.guards import TenantPredicateError


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    413: "PAYLOAD_TOO_LARGE",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


@dataclass(frozen=True)
class ErrorMapping:
    status_code: int
    code: str
    # Generic message shown to clients; the real cause only reaches the logs.
    message: str


# Most specific classes first; lookup walks the exception MRO.
ERROR_TABLE: dict[type[SkillGateError], ErrorMapping] = {
    SessionExpired: ErrorMapping(401, "SESSION_EXPIRED", "Session expired"),
    Unauthenticated: ErrorMapping(401, "AUTH_UNAUTHORIZED", "Access denied"),
    ExpiredToken: ErrorMapping(401, "AUTH_TOKEN_EXPIRED", "Access denied"),
    InvalidSignature: ErrorMapping(401, "AUTH_UNAUTHORIZED", "Access denied"),
    InvalidClaims: ErrorMapping(401, "AUTH_UNAUTHORIZED", "Access denied"),
    TokenError: ErrorMapping(401, "AUTH_UNAUTHORIZED", "Access denied"),
    Unapproved: ErrorMapping(403, "AUTH_UNAPPROVED", "Account is pending approval"),
    Forbidden: ErrorMapping(403, "AUTH_FORBIDDEN", "Access denied"),
    AccessError: ErrorMapping(403, "AUTH_FORBIDDEN", "Access denied"),
    TooManyRequests: ErrorMapping(429, "RATE_LIMITED", "Too many requests"),
    MalformedInput: ErrorMapping(400, "BAD_REQUEST", "Invalid input"),
    NotFound: ErrorMapping(404, "NOT_FOUND", "Not found"),
    Conflict: ErrorMapping(409, "CONFLICT", "Conflict"),
    InvalidTransition: ErrorMapping(409, "INVALID_TRANSITION", "Approval request is not pending"),
    StoreUnavailable: ErrorMapping(503, "SERVICE_UNAVAILABLE", "Service unavailable"),
    AuditWriteFailure: ErrorMapping(503, "SERVICE_UNAVAILABLE", "Service unavailable"),
    ConfigError: ErrorMapping(500, "INTERNAL_ERROR", "Internal server error"),
}

# Validation-type errors may surface their own message; everything else stays generic.
_DETAILED_MESSAGE_TYPES = (MalformedInput, Conflict, NotFound)


def mapping_for(exc: SkillGateError) -> ErrorMapping:
    for cls in type(exc).__mro__:
        mapping = ERROR_TABLE.get(cls)
        if mapping is not None:
            return mapping
    return ErrorMapping(500, "INTERNAL_ERROR", "Internal server error")


def error_for_exception(exc: SkillGateError, path: str, request_id: str) -> JSONResponse:
    """Render a domain error with its mapped status, code and headers."""
    mapping = mapping_for(exc)
    message = mapping.message
    if isinstance(exc, _DETAILED_MESSAGE_TYPES) and str(exc):
        message = str(exc)
    headers: dict[str, str] | None = None
    details: dict[str, Any] | None = None
    if isinstance(exc, TooManyRequests):
        headers = {"Retry-After": str(exc.retry_after_s)}
        details = {"retry_after": exc.retry_after_s, "route_class": exc.route_class}
    elif mapping.status_code == 401:
        headers = {"WWW-Authenticate": "Bearer"}
    return error_json(
        path,
        request_id,
        mapping.status_code,
        mapping.code,
        message,
        details=details,
        headers=headers,
    )


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # HTTPException detail may be a plain string or a {"code", "message", ...} dict.
    default_code = _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key not in {"code", "message"}}
        return (
            str(detail.get("code") or default_code),
            str(detail.get("message") or "Request failed"),
            extra or None,
        )
    if isinstance(detail, str):
        return default_code, detail, None
    return default_code, "Request failed", None


async def skillgate_exception_handler(request: Request, exc: SkillGateError) -> JSONResponse:
    logger.warning(
        "request_rejected error=%s path=%s reason=%s",
        type(exc).__name__,
        request.url.path,
        str(exc),
    )
    return error_for_exception(exc, request.url.path, request_id_for(request))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return request_error(
        request,
        exc.status_code,
        code,
        message,
        details=details,
        headers=exc.headers,
        bare_detail=exc.detail,
    )


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return await http_exception_handler(request, exc)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Field-level errors only; submitted values are never echoed back.
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    return request_error(
        request,
        422,
        "REQUEST_VALIDATION_ERROR",
        "Validation error",
        details={"errors": errors},
        bare_detail=errors,
    )


async def tenant_predicate_exception_handler(
    request: Request, exc: TenantPredicateError
) -> JSONResponse:
    # A missing tenant predicate is a server bug; fail closed without details.
    logger.error("tenant_predicate_missing path=%s message=%s", request.url.path, exc.message)
    return request_error(request, 403, "AUTH_FORBIDDEN", "Access denied")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return request_error(
        request,
        500,
        "INTERNAL_ERROR",
        "Internal server error",
        bare_detail="Internal Server Error",
    )
