from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from skillgate.domain.identity import ApprovalOutcome
from skillgate.domain.models import ApprovalRequest
from skillgate.persistence.guards import scoped_predicate


async def get_request(session: AsyncSession, request_id: int) -> ApprovalRequest | None:
    result = await session.execute(select(ApprovalRequest).where(ApprovalRequest.id == request_id))
    return result.scalar_one_or_none()


async def get_pending_for_target(
    session: AsyncSession,
    subject_id: str,
) -> ApprovalRequest | None:
    result = await session.execute(
        select(ApprovalRequest).where(
            ApprovalRequest.target_subject_id == subject_id,
            ApprovalRequest.outcome == ApprovalOutcome.PENDING.value,
        )
    )
    return result.scalars().first()


async def get_latest_for_target(
    session: AsyncSession,
    subject_id: str,
) -> ApprovalRequest | None:
    result = await session.execute(
        select(ApprovalRequest)
        .where(ApprovalRequest.target_subject_id == subject_id)
        .order_by(ApprovalRequest.requested_at.desc(), ApprovalRequest.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_request(
    session: AsyncSession,
    *,
    subject_id: str,
    tenant_id: str | None,
    requested_role: str,
    requested_at: datetime,
) -> ApprovalRequest:
    request = ApprovalRequest(
        target_subject_id=subject_id,
        tenant_id=tenant_id,
        requested_role=requested_role,
        requested_at=requested_at,
        outcome=ApprovalOutcome.PENDING.value,
    )
    session.add(request)
    await session.flush()
    return request


async def list_pending(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    limit: int = 200,
) -> list[ApprovalRequest]:
    stmt = select(ApprovalRequest).where(ApprovalRequest.outcome == ApprovalOutcome.PENDING.value)
    predicate = scoped_predicate(ApprovalRequest, tenant_id)
    if predicate is not None:
        stmt = stmt.where(predicate)
    stmt = stmt.order_by(ApprovalRequest.requested_at.asc(), ApprovalRequest.id.asc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def decide_request(
    session: AsyncSession,
    *,
    request_id: int,
    outcome: ApprovalOutcome,
    actor_id: str,
    decided_at: datetime,
    reason: str | None,
) -> bool:
    # Conditional update keeps the transition monotonic under concurrent deciders.
    result = await session.execute(
        update(ApprovalRequest)
        .where(
            ApprovalRequest.id == request_id,
            ApprovalRequest.outcome == ApprovalOutcome.PENDING.value,
        )
        .values(
            outcome=outcome.value,
            decided_by=actor_id,
            decided_at=decided_at,
            reason=reason,
        )
    )
    return (result.rowcount or 0) > 0


async def count_pending(session: AsyncSession) -> int:
    result = await session.execute(
        select(func.count(ApprovalRequest.id)).where(
            ApprovalRequest.outcome == ApprovalOutcome.PENDING.value
        )
    )
    return int(result.scalar_one())
