from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from skillgate.domain.models import AuditEvent
from skillgate.persistence.guards import scoped_predicate


async def insert_event(session: AsyncSession, event: AuditEvent) -> AuditEvent:
    # Insert only; audit rows are never updated or deleted through the API surface.
    session.add(event)
    await session.flush()
    return event


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    action: str | None = None,
    actor_id: str | None = None,
    target_type: str | None = None,
    target_id: str | None = None,
    occurred_from: datetime | None = None,
    occurred_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    # Scope audit queries to a tenant unless the caller holds a global scope.
    stmt = select(AuditEvent)
    predicate = scoped_predicate(AuditEvent, tenant_id)
    if predicate is not None:
        stmt = stmt.where(predicate)
    if action:
        stmt = stmt.where(AuditEvent.action == action)
    if actor_id:
        stmt = stmt.where(AuditEvent.actor_id == actor_id)
    if target_type:
        stmt = stmt.where(AuditEvent.target_type == target_type)
    if target_id:
        stmt = stmt.where(AuditEvent.target_id == target_id)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    if occurred_to:
        stmt = stmt.where(AuditEvent.occurred_at <= occurred_to)

    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_event_by_id(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    event_id: int,
) -> AuditEvent | None:
    stmt = select(AuditEvent).where(AuditEvent.id == event_id)
    predicate = scoped_predicate(AuditEvent, tenant_id)
    if predicate is not None:
        stmt = stmt.where(predicate)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()
