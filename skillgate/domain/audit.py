from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from skillgate.domain.models import AuditEvent


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AuditRecord:
    # Immutable description of one privileged action; persisted as an AuditEvent row.
    actor_id: str | None
    action: str
    target_type: str | None
    target_id: str | None
    detail: dict[str, Any] = field(default_factory=dict)
    origin_address: str | None = None
    timestamp: datetime = field(default_factory=_utc_now)
    tenant_id: str | None = None
    actor_role: str | None = None
    request_id: str | None = None

    def to_model(self) -> AuditEvent:
        return AuditEvent(
            occurred_at=self.timestamp,
            tenant_id=self.tenant_id,
            actor_id=self.actor_id,
            actor_role=self.actor_role,
            action=self.action,
            target_type=self.target_type,
            target_id=self.target_id,
            request_id=self.request_id,
            origin_address=self.origin_address,
            detail_json=dict(self.detail),
        )
