from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from skillgate.domain.models import AdminInvitation
from skillgate.persistence.guards import scoped_predicate


async def get_invitation(
    session: AsyncSession,
    invitation_id: int,
    *,
    tenant_id: str | None,
) -> AdminInvitation | None:
    stmt = select(AdminInvitation).where(AdminInvitation.id == invitation_id)
    predicate = scoped_predicate(AdminInvitation, tenant_id)
    if predicate is not None:
        stmt = stmt.where(predicate)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_by_token_hash(session: AsyncSession, token_hash: str) -> AdminInvitation | None:
    result = await session.execute(
        select(AdminInvitation).where(AdminInvitation.token_hash == token_hash)
    )
    return result.scalar_one_or_none()


async def has_open_invitation(session: AsyncSession, email: str, *, now: datetime) -> bool:
    result = await session.execute(
        select(AdminInvitation.id)
        .where(
            AdminInvitation.email == email,
            AdminInvitation.used_at.is_(None),
            AdminInvitation.revoked_at.is_(None),
            AdminInvitation.expires_at > now,
        )
        .limit(1)
    )
    return result.first() is not None


async def insert_invitation(session: AsyncSession, invitation: AdminInvitation) -> AdminInvitation:
    session.add(invitation)
    await session.flush()
    return invitation


async def list_invitations(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    offset: int = 0,
    limit: int = 50,
) -> list[AdminInvitation]:
    stmt = select(AdminInvitation)
    predicate = scoped_predicate(AdminInvitation, tenant_id)
    if predicate is not None:
        stmt = stmt.where(predicate)
    stmt = stmt.order_by(AdminInvitation.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def close_invitation(
    session: AsyncSession,
    invitation_id: int,
    *,
    used_at: datetime | None = None,
    accepted_by: str | None = None,
    revoked_at: datetime | None = None,
) -> bool:
    # Compare-and-set on the open state so a token is consumed at most once.
    values: dict[str, object] = {}
    if used_at is not None:
        values["used_at"] = used_at
        values["accepted_by"] = accepted_by
    if revoked_at is not None:
        values["revoked_at"] = revoked_at
    result = await session.execute(
        update(AdminInvitation)
        .where(
            AdminInvitation.id == invitation_id,
            AdminInvitation.used_at.is_(None),
            AdminInvitation.revoked_at.is_(None),
        )
        .values(**values)
    )
    return (result.rowcount or 0) > 0
