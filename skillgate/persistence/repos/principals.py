from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from skillgate.domain.models import User
from skillgate.persistence.guards import scoped_predicate


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_user(
    session: AsyncSession,
    user_id: str,
    *,
    include_deleted: bool = False,
) -> User | None:
    stmt = select(User).where(User.id == user_id)
    if not include_deleted:
        stmt = stmt.where(User.deleted_at.is_(None))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_user_by_email(session: AsyncSession, email: str) -> User | None:
    # Emails are stored lower-cased so lookups stay case-insensitive.
    result = await session.execute(select(User).where(User.email == email.strip().lower()))
    return result.scalar_one_or_none()


async def create_user(
    session: AsyncSession,
    *,
    user_id: str,
    email: str,
    name: str | None,
    password_hash: str,
    role: str,
    tenant_id: str | None,
    approved: bool,
    approved_by: str | None = None,
    now: datetime | None = None,
) -> User:
    now = now or _utc_now()
    user = User(
        id=user_id,
        tenant_id=tenant_id,
        email=email.strip().lower(),
        name=name,
        password_hash=password_hash,
        role=role,
        approved=approved,
        # Self-approved roles carry their own approval stamp.
        approved_by=approved_by if approved else None,
        approved_at=now if approved else None,
        created_at=now,
    )
    session.add(user)
    await session.flush()
    return user


async def list_users(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    include_deleted: bool = False,
    offset: int = 0,
    limit: int = 100,
) -> list[User]:
    stmt = select(User)
    predicate = scoped_predicate(User, tenant_id)
    if predicate is not None:
        stmt = stmt.where(predicate)
    if not include_deleted:
        stmt = stmt.where(User.deleted_at.is_(None))
    stmt = stmt.order_by(User.created_at.asc(), User.id.asc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def set_approval(
    session: AsyncSession,
    *,
    user_id: str,
    approved: bool,
    actor_id: str | None,
    decided_at: datetime,
) -> bool:
    # Return whether a live row was updated so callers can surface missing principals.
    result = await session.execute(
        update(User)
        .where(User.id == user_id, User.deleted_at.is_(None))
        .values(
            approved=approved,
            approved_by=actor_id if approved else None,
            approved_at=decided_at if approved else None,
        )
    )
    return (result.rowcount or 0) > 0


async def touch_login(session: AsyncSession, *, user_id: str) -> None:
    await session.execute(update(User).where(User.id == user_id).values(last_login_at=_utc_now()))


async def tombstone_user(session: AsyncSession, *, user_id: str, tenant_id: str | None) -> bool:
    stmt = update(User).where(User.id == user_id, User.deleted_at.is_(None))
    predicate = scoped_predicate(User, tenant_id)
    if predicate is not None:
        stmt = stmt.where(predicate)
    result = await session.execute(stmt.values(deleted_at=_utc_now()))
    return (result.rowcount or 0) > 0


async def count_users_by_role(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(User.role, func.count(User.id)).where(User.deleted_at.is_(None)).group_by(User.role)
    )
    return {role: int(count) for role, count in result.all()}


async def list_admins(
    session: AsyncSession,
    *,
    role: str | None = None,
    tenant_id: str | None = None,
    offset: int = 0,
    limit: int = 100,
) -> list[User]:
    # Account management is cross-tenant; tenant_id here is a filter, not a scope.
    stmt = select(User).where(User.role != "user", User.deleted_at.is_(None))
    if role is not None:
        stmt = stmt.where(User.role == role)
    if tenant_id is not None:
        stmt = stmt.where(User.tenant_id == tenant_id)
    stmt = stmt.order_by(User.created_at.asc(), User.id.asc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def count_live_with_role(session: AsyncSession, role: str) -> int:
    result = await session.execute(
        select(func.count(User.id)).where(User.role == role, User.deleted_at.is_(None))
    )
    return int(result.scalar_one())


async def update_user(session: AsyncSession, *, user_id: str, **values: object) -> bool:
    result = await session.execute(
        update(User).where(User.id == user_id, User.deleted_at.is_(None)).values(**values)
    )
    return (result.rowcount or 0) > 0
