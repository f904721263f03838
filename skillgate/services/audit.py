from __future__ import annotations

import logging
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import Request

from skillgate.core.errors import AuditWriteFailure
from skillgate.core.logging import ALERT_LOGGER_NAME
from skillgate.domain.audit import AuditRecord
from skillgate.persistence.store import PrincipalStore
from skillgate.services.telemetry import counter_value, increment_counter


logger = logging.getLogger(__name__)
alert_logger = logging.getLogger(ALERT_LOGGER_NAME)

AUDIT_FAILURE_COUNTER = "audit.write_failure"

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "api_key", "cookie"]
_REDACTED_VALUE = "[REDACTED]"

AlertSink = Callable[[str, dict[str, Any]], None]


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client address without persisting credentials.
    if request is None:
        return {"request_id": None, "origin_address": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    # The security pipeline resolves the client once, honouring X-Forwarded-For when trusted.
    origin_address = getattr(request.state, "client_address", None)
    if origin_address is None and request.client:
        origin_address = request.client.host
    return {"request_id": request_id, "origin_address": origin_address}


def log_alert_sink(event: str, context: dict[str, Any]) -> None:
    # Default sink: a CRITICAL line on the alert logger for pagers to pick up.
    alert_logger.critical(
        "%s %s",
        event,
        " ".join(f"{key}={value}" for key, value in sorted(context.items())),
    )


def audit_failures() -> int:
    return counter_value(AUDIT_FAILURE_COUNTER)


class AuditRecorder:
    """Append-only writer for privileged actions.

    ``record`` never raises: a failed append is logged, counted under
    ``audit.write_failure`` and pushed to the alert sink, and the primary
    action carries on. The health route reports degraded while failures exist.
    """

    def __init__(self, store: PrincipalStore, *, alert_sink: AlertSink | None = None) -> None:
        self._store = store
        self._alert_sink = alert_sink or log_alert_sink

    @staticmethod
    def build_record(
        *,
        actor_id: str | None,
        action: str,
        target_type: str | None,
        target_id: str | None,
        detail: dict[str, Any] | None = None,
        origin_address: str | None = None,
        tenant_id: str | None = None,
        actor_role: str | None = None,
        request_id: str | None = None,
    ) -> AuditRecord:
        return AuditRecord(
            actor_id=actor_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            detail=sanitize_metadata(detail or {}),
            origin_address=origin_address,
            tenant_id=tenant_id,
            actor_role=actor_role,
            request_id=request_id,
        )

    async def record(
        self,
        actor_id: str | None,
        action: str,
        target_type: str | None,
        target_id: str | None,
        detail: dict[str, Any] | None = None,
        origin_address: str | None = None,
        *,
        tenant_id: str | None = None,
        actor_role: str | None = None,
        request_id: str | None = None,
    ) -> bool:
        record = self.build_record(
            actor_id=actor_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            detail=detail,
            origin_address=origin_address,
            tenant_id=tenant_id,
            actor_role=actor_role,
            request_id=request_id,
        )
        return await self.append(record)

    async def append(self, record: AuditRecord) -> bool:
        try:
            await self._store.append_audit(record)
        except (SQLAlchemyError, AuditWriteFailure, OSError) as exc:
            self.report_failure(record, exc)
            return False
        return True

    def report_failure(self, record: AuditRecord, exc: BaseException) -> None:
        increment_counter(AUDIT_FAILURE_COUNTER)
        logger.error(
            "audit_event_write_failed action=%s target_type=%s target_id=%s request_id=%s",
            record.action,
            record.target_type,
            record.target_id,
            record.request_id,
            exc_info=exc,
        )
        try:
            self._alert_sink(
                "audit_write_failure",
                {
                    "action": record.action,
                    "actor_id": record.actor_id,
                    "target_id": record.target_id,
                    "request_id": record.request_id,
                },
            )
        except Exception:  # noqa: BLE001
            # Alerting is best-effort; never let it mask the primary action.
            logger.exception("audit_alert_sink_failed action=%s", record.action)
