from __future__ import annotations

from dataclasses import dataclass
import logging
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillgate.core.errors import Conflict, MalformedInput, NotFound
from skillgate.domain.identity import GLOBAL_ROLES, TENANT_BOUND_ROLES, Principal, Role, parse_role
from skillgate.domain.models import User
from skillgate.persistence.db import SessionLocal
from skillgate.persistence.repos import companies as companies_repo
from skillgate.persistence.repos import principals as principals_repo
from skillgate.services.auth.passwords import check_password_policy, hash_password


logger = logging.getLogger(__name__)

ADMIN_ROLES = frozenset(role for role in Role if role != Role.USER)


@dataclass(frozen=True)
class AccountChange:
    user: User
    changed: tuple[str, ...]
    previous_role: str


def _admin_role(value: str) -> Role:
    try:
        role = parse_role(value)
    except ValueError as exc:
        raise MalformedInput("Unsupported role") from exc
    if role not in ADMIN_ROLES:
        raise MalformedInput("Unsupported role")
    return role


async def _tenant_for(session: AsyncSession, role: Role, tenant_id: str | None) -> str | None:
    # Company-tier roles need a live, active company; global roles never carry one.
    if role in GLOBAL_ROLES:
        if tenant_id is not None:
            raise MalformedInput("Global roles cannot belong to a company")
        return None
    if role in TENANT_BOUND_ROLES and not tenant_id:
        raise MalformedInput("Company is required for this role")
    company = await companies_repo.get_company(session, tenant_id)
    if company is None or not company.is_active:
        raise NotFound("Company not found")
    return company.id


class AdminAccountService:
    """Super-admin management of privileged accounts.

    Accounts created here are approved on creation and record the creating
    super_admin as approver. Nobody may change their own role or delete
    themselves, and the last live super_admin can be neither demoted nor
    deleted.
    """

    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def list_accounts(
        self,
        *,
        role: str | None = None,
        tenant_id: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[User]:
        role_filter = _admin_role(role).value if role else None
        async with self._session_factory() as session:
            return await principals_repo.list_admins(
                session,
                role=role_filter,
                tenant_id=tenant_id,
                offset=offset,
                limit=limit,
            )

    async def create_account(
        self,
        actor: Principal,
        *,
        email: str,
        password: str,
        name: str | None,
        role: str,
        tenant_id: str | None,
    ) -> User:
        resolved_role = _admin_role(role)
        check_password_policy(password)
        async with self._session_factory() as session:
            async with session.begin():
                resolved_tenant = await _tenant_for(session, resolved_role, tenant_id)
                if await principals_repo.get_user_by_email(session, email) is not None:
                    raise Conflict("Email is already registered")
                try:
                    user = await principals_repo.create_user(
                        session,
                        user_id=uuid4().hex,
                        email=email,
                        name=name,
                        password_hash=hash_password(password),
                        role=resolved_role.value,
                        tenant_id=resolved_tenant,
                        approved=True,
                        approved_by=actor.subject_id,
                    )
                except IntegrityError as exc:
                    raise Conflict("Email is already registered") from exc
        logger.info(
            "admin_account_created subject_id=%s role=%s tenant_id=%s actor_id=%s",
            user.id,
            user.role,
            user.tenant_id,
            actor.subject_id,
        )
        return user

    async def update_account(
        self,
        actor: Principal,
        subject_id: str,
        *,
        role: str | None = None,
        tenant_id: str | None = None,
        name: str | None = None,
        password: str | None = None,
    ) -> AccountChange:
        if role is None and tenant_id is None and name is None and password is None:
            raise MalformedInput("No fields to update")
        if role is not None and subject_id == actor.subject_id:
            raise MalformedInput("Own role cannot be changed")
        if password is not None:
            check_password_policy(password)
        async with self._session_factory() as session:
            async with session.begin():
                user = await self._load(session, subject_id)
                previous_role = user.role
                values: dict[str, object] = {}
                if role is not None or tenant_id is not None:
                    new_role = _admin_role(role) if role is not None else parse_role(user.role)
                    requested_tenant = tenant_id
                    if requested_tenant is None and new_role in TENANT_BOUND_ROLES:
                        requested_tenant = user.tenant_id
                    new_tenant = await _tenant_for(session, new_role, requested_tenant)
                    if previous_role == Role.SUPER_ADMIN.value and new_role != Role.SUPER_ADMIN:
                        await self._ensure_not_last_super_admin(session)
                    if new_role.value != user.role:
                        values["role"] = new_role.value
                    if new_tenant != user.tenant_id:
                        values["tenant_id"] = new_tenant
                if name is not None and name != user.name:
                    values["name"] = name
                if password is not None:
                    values["password_hash"] = hash_password(password)
                if values:
                    await principals_repo.update_user(session, user_id=subject_id, **values)
                    await session.refresh(user)
        changed = tuple(sorted("password" if key == "password_hash" else key for key in values))
        logger.info(
            "admin_account_updated subject_id=%s fields=%s actor_id=%s",
            subject_id,
            ",".join(changed) or "-",
            actor.subject_id,
        )
        return AccountChange(user=user, changed=changed, previous_role=previous_role)

    async def delete_account(self, actor: Principal, subject_id: str) -> User:
        if subject_id == actor.subject_id:
            raise MalformedInput("Own account cannot be deleted")
        async with self._session_factory() as session:
            async with session.begin():
                user = await self._load(session, subject_id)
                if user.role == Role.SUPER_ADMIN.value:
                    await self._ensure_not_last_super_admin(session)
                # Tombstone so audit rows keep a resolvable actor.
                await principals_repo.tombstone_user(session, user_id=subject_id, tenant_id=None)
        logger.info(
            "admin_account_deleted subject_id=%s role=%s actor_id=%s",
            subject_id,
            user.role,
            actor.subject_id,
        )
        return user

    @staticmethod
    async def _load(session: AsyncSession, subject_id: str) -> User:
        user = await principals_repo.get_user(session, subject_id)
        if user is None or user.role == Role.USER.value:
            raise NotFound("Admin account not found")
        return user

    @staticmethod
    async def _ensure_not_last_super_admin(session: AsyncSession) -> None:
        if await principals_repo.count_live_with_role(session, Role.SUPER_ADMIN.value) <= 1:
            raise Conflict("The last super_admin cannot be removed")
