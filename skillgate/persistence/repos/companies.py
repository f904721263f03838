from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from skillgate.domain.models import Company


async def get_company(
    session: AsyncSession,
    company_id: str,
    *,
    include_deleted: bool = False,
) -> Company | None:
    stmt = select(Company).where(Company.id == company_id)
    if not include_deleted:
        stmt = stmt.where(Company.deleted_at.is_(None))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_company_by_code(
    session: AsyncSession,
    code: str,
    *,
    active_only: bool = True,
) -> Company | None:
    # Tombstoned and inactive companies no longer accept registrations.
    stmt = select(Company).where(Company.code == code.strip(), Company.deleted_at.is_(None))
    if active_only:
        stmt = stmt.where(Company.is_active.is_(True))
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_companies(
    session: AsyncSession,
    *,
    include_deleted: bool = False,
    offset: int = 0,
    limit: int = 100,
) -> list[Company]:
    stmt = select(Company)
    if not include_deleted:
        stmt = stmt.where(Company.deleted_at.is_(None))
    stmt = stmt.order_by(Company.created_at.asc(), Company.id.asc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def create_company(
    session: AsyncSession,
    *,
    company_id: str,
    name: str,
    code: str,
    email_domain: str | None,
) -> Company:
    company = Company(
        id=company_id,
        name=name,
        code=code,
        email_domain=email_domain,
        created_at=datetime.now(timezone.utc),
    )
    session.add(company)
    await session.flush()
    return company


async def soft_delete_company(session: AsyncSession, company_id: str) -> bool:
    result = await session.execute(
        update(Company)
        .where(Company.id == company_id, Company.deleted_at.is_(None))
        .values(deleted_at=datetime.now(timezone.utc))
    )
    return (result.rowcount or 0) > 0


async def count_companies(session: AsyncSession) -> int:
    result = await session.execute(
        select(func.count(Company.id)).where(Company.deleted_at.is_(None))
    )
    return int(result.scalar_one())


async def code_in_use(session: AsyncSession, code: str, *, exclude_id: str | None = None) -> bool:
    # Codes stay reserved by tombstoned companies too; the column is unique.
    stmt = select(Company.id).where(Company.code == code.strip())
    if exclude_id is not None:
        stmt = stmt.where(Company.id != exclude_id)
    result = await session.execute(stmt.limit(1))
    return result.first() is not None


async def update_company(session: AsyncSession, company_id: str, **values: object) -> bool:
    if not values:
        return False
    result = await session.execute(
        update(Company)
        .where(Company.id == company_id, Company.deleted_at.is_(None))
        .values(**values)
    )
    return (result.rowcount or 0) > 0


async def is_company_active(session: AsyncSession, company_id: str) -> bool:
    result = await session.execute(select(Company.is_active).where(Company.id == company_id))
    active = result.scalar_one_or_none()
    # Unknown tenants are not this check's concern; foreign keys cover them.
    return active is None or bool(active)
