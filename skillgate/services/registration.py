from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
import logging
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillgate.core.errors import Conflict, MalformedInput, NotFound, Unauthenticated
from skillgate.domain.identity import Principal, Role, parse_role, requires_approval
from skillgate.domain.models import User
from skillgate.persistence.db import SessionLocal
from skillgate.persistence.repos import companies as companies_repo
from skillgate.persistence.repos import principals as principals_repo
from skillgate.persistence.store import principal_from_user
from skillgate.services.approvals import open_request
from skillgate.services.auth.passwords import check_password_policy, hash_password, verify_password
from skillgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Roles that may self-register through the admin signup flow. Global roles are
# only ever created by a super_admin.
ADMIN_SIGNUP_ROLES = frozenset({Role.HR_MANAGER, Role.COMPANY_ADMIN})


@dataclass(frozen=True)
class RegistrationResult:
    principal: Principal
    approval_request_id: int | None


@lru_cache
def _dummy_hash() -> str:
    return hash_password(uuid4().hex)


def _dummy_verify(password: str) -> None:
    # Spend comparable bcrypt time on unknown accounts to blunt user enumeration.
    verify_password(password, _dummy_hash())


class RegistrationService:
    def __init__(self, *, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def register_user(
        self,
        *,
        email: str,
        password: str,
        name: str | None,
        company_code: str | None = None,
    ) -> RegistrationResult:
        check_password_policy(password)
        async with self._session_factory() as session:
            async with session.begin():
                tenant_id = None
                if company_code:
                    company = await companies_repo.get_company_by_code(session, company_code)
                    if company is None:
                        raise NotFound("Company not found")
                    tenant_id = company.id
                user = await self._create(
                    session,
                    email=email,
                    password=password,
                    name=name,
                    role=Role.USER,
                    tenant_id=tenant_id,
                )
        logger.info("user_registered subject_id=%s role=%s tenant_id=%s", user.id, user.role, user.tenant_id)
        return RegistrationResult(principal=principal_from_user(user), approval_request_id=None)

    async def register_admin(
        self,
        *,
        email: str,
        password: str,
        name: str | None,
        role: str,
        company_code: str | None,
    ) -> RegistrationResult:
        try:
            resolved_role = parse_role(role)
        except ValueError as exc:
            raise MalformedInput("Unsupported role") from exc
        if resolved_role not in ADMIN_SIGNUP_ROLES:
            raise MalformedInput("Unsupported role")
        check_password_policy(password)
        async with self._session_factory() as session:
            async with session.begin():
                if not company_code:
                    raise MalformedInput("Company code is required")
                company = await companies_repo.get_company_by_code(session, company_code)
                if company is None:
                    raise NotFound("Company not found")
                tenant_id = company.id
                approved = not requires_approval(resolved_role)
                user = await self._create(
                    session,
                    email=email,
                    password=password,
                    name=name,
                    role=resolved_role,
                    tenant_id=tenant_id,
                    approved=approved,
                )
                request_id = None
                if not approved:
                    request = await open_request(
                        session,
                        subject_id=user.id,
                        tenant_id=tenant_id,
                        requested_role=resolved_role.value,
                    )
                    request_id = request.id
        logger.info(
            "admin_registered subject_id=%s role=%s tenant_id=%s approval_request_id=%s",
            user.id,
            user.role,
            user.tenant_id,
            request_id,
        )
        return RegistrationResult(principal=principal_from_user(user), approval_request_id=request_id)

    async def _create(
        self,
        session: AsyncSession,
        *,
        email: str,
        password: str,
        name: str | None,
        role: Role,
        tenant_id: str | None,
        approved: bool = True,
    ) -> User:
        if await principals_repo.get_user_by_email(session, email) is not None:
            raise Conflict("Email is already registered")
        try:
            return await principals_repo.create_user(
                session,
                user_id=uuid4().hex,
                email=email,
                name=name,
                password_hash=hash_password(password),
                role=role.value,
                tenant_id=tenant_id,
                approved=approved,
            )
        except IntegrityError as exc:
            raise Conflict("Email is already registered") from exc

    async def authenticate(self, *, email: str, password: str, admin: bool) -> Principal:
        # Unapproved admins may still sign in so they can follow their approval status.
        async with self._session_factory() as session:
            user = await principals_repo.get_user_by_email(session, email)
            if user is None or user.deleted_at is not None:
                _dummy_verify(password)
                increment_counter("auth.login_failed")
                logger.warning("login_failed reason=unknown_account admin=%s", admin)
                raise Unauthenticated("Access denied")
            if not verify_password(password, user.password_hash):
                increment_counter("auth.login_failed")
                logger.warning("login_failed reason=bad_password subject_id=%s admin=%s", user.id, admin)
                raise Unauthenticated("Access denied")
            is_admin_role = user.role != Role.USER.value
            if is_admin_role != admin:
                increment_counter("auth.login_failed")
                logger.warning("login_failed reason=wrong_portal subject_id=%s admin=%s", user.id, admin)
                raise Unauthenticated("Access denied")
            if user.tenant_id and not await companies_repo.is_company_active(session, user.tenant_id):
                increment_counter("auth.login_failed")
                logger.warning("login_failed reason=company_inactive subject_id=%s admin=%s", user.id, admin)
                raise Unauthenticated("Access denied")
            await principals_repo.touch_login(session, user_id=user.id)
            await session.commit()
        try:
            return principal_from_user(user)
        except ValueError as exc:
            logger.warning("login_failed reason=invalid_row subject_id=%s", user.id)
            raise Unauthenticated("Access denied") from exc

    async def change_password(self, *, subject_id: str, current_password: str, new_password: str) -> None:
        check_password_policy(new_password)
        if new_password == current_password:
            raise MalformedInput("New password must differ from the current one")
        async with self._session_factory() as session:
            async with session.begin():
                user = await principals_repo.get_user(session, subject_id)
                if user is None or not verify_password(current_password, user.password_hash):
                    increment_counter("auth.password_change_failed")
                    logger.warning("password_change_failed reason=bad_password subject_id=%s", subject_id)
                    raise Unauthenticated("Access denied")
                await principals_repo.update_user(
                    session,
                    user_id=subject_id,
                    password_hash=hash_password(new_password),
                )
        logger.info("password_changed subject_id=%s", subject_id)
