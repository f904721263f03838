from __future__ import annotations

from typing import Any

from skillgate.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Sanitization or injection check failed", code="BAD_REQUEST", message="Invalid input"),
    401: _response("Missing, invalid or expired credentials", code="AUTH_UNAUTHORIZED", message="Access denied"),
    403: _response("Unapproved principal, missing capability or foreign tenant", code="AUTH_FORBIDDEN", message="Access denied"),
    404: _response("Company, account or invitation does not exist", code="NOT_FOUND", message="Not found"),
    409: _response("Approval request is no longer pending", code="INVALID_TRANSITION", message="Approval request is not pending"),
    429: _response(
        "Rate limit window exhausted",
        code="RATE_LIMITED",
        message="Too many requests",
        details={"retry_after": 900, "route_class": "login"},
    ),
    503: _response("Principal store did not answer in time", code="SERVICE_UNAVAILABLE", message="Service unavailable"),
}
