from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import logging
import secrets
import time
from typing import Any, Callable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillgate.core.errors import Conflict, Forbidden, MalformedInput, NotFound
from skillgate.domain.identity import GLOBAL_ROLES, Principal, Role, parse_role
from skillgate.domain.models import AdminInvitation, Company, User
from skillgate.persistence.db import SessionLocal
from skillgate.persistence.repos import companies as companies_repo
from skillgate.persistence.repos import invitations as invitations_repo
from skillgate.persistence.repos import principals as principals_repo
from skillgate.services.auth.passwords import check_password_policy, hash_password
from skillgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

INVITABLE_ROLES = frozenset({Role.COMPANY_ADMIN, Role.HR_MANAGER})


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _aware(value: datetime | None) -> datetime | None:
    # sqlite hands back naive datetimes; stored values are always UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def invitation_status(invitation: AdminInvitation, now: datetime) -> str:
    if invitation.used_at is not None:
        return "used"
    if invitation.revoked_at is not None:
        return "revoked"
    if _aware(invitation.expires_at) <= now:
        return "expired"
    return "pending"


@dataclass(frozen=True)
class IssuedInvitation:
    invitation: AdminInvitation
    # Returned once to the inviter; only its hash is stored.
    token: str


@dataclass(frozen=True)
class AcceptedInvitation:
    invitation: AdminInvitation
    user: User


class InvitationService:
    """One-time invitations onto a company's admin team.

    A company_admin may only invite hr_managers into its own company; global
    roles may invite company_admins and hr_managers anywhere. Accepting an
    invitation creates an approved account whose approver is the inviter.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        ttl_days: int = 7,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self._ttl = timedelta(days=ttl_days)
        self._clock = clock or time.time

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def invite(
        self,
        actor: Principal,
        *,
        email: str,
        role: str,
        tenant_id: str | None,
    ) -> IssuedInvitation:
        try:
            invited_role = parse_role(role)
        except ValueError as exc:
            raise MalformedInput("Unsupported role") from exc
        if invited_role not in INVITABLE_ROLES:
            raise MalformedInput("Unsupported role")
        if actor.role not in GLOBAL_ROLES:
            if invited_role != Role.HR_MANAGER:
                logger.warning(
                    "authz_denied reason=invite_role_not_allowed subject_id=%s role=%s invited_role=%s",
                    actor.subject_id,
                    actor.role.value,
                    invited_role.value,
                )
                raise Forbidden("Access denied")
            tenant_id = actor.tenant_id
        if not tenant_id:
            raise MalformedInput("Company is required")

        email = email.strip().lower()
        now = self._now()
        token = secrets.token_urlsafe(32)
        async with self._session_factory() as session:
            async with session.begin():
                company = await companies_repo.get_company(session, tenant_id)
                if company is None or not company.is_active:
                    raise NotFound("Company not found")
                if await principals_repo.get_user_by_email(session, email) is not None:
                    raise Conflict("Email is already registered")
                if await invitations_repo.has_open_invitation(session, email, now=now):
                    raise Conflict("An invitation is already pending for this email")
                invitation = await invitations_repo.insert_invitation(
                    session,
                    AdminInvitation(
                        token_hash=hash_token(token),
                        email=email,
                        tenant_id=company.id,
                        role=invited_role.value,
                        invited_by=actor.subject_id,
                        created_at=now,
                        expires_at=now + self._ttl,
                    ),
                )
        logger.info(
            "invitation_created invitation_id=%s tenant_id=%s role=%s actor_id=%s",
            invitation.id,
            invitation.tenant_id,
            invitation.role,
            actor.subject_id,
        )
        return IssuedInvitation(invitation=invitation, token=token)

    async def list_invitations(
        self,
        *,
        tenant_id: str | None,
        offset: int = 0,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        now = self._now()
        async with self._session_factory() as session:
            rows = await invitations_repo.list_invitations(
                session,
                tenant_id=tenant_id,
                offset=offset,
                limit=limit,
            )
        return [invitation_payload(row, now) for row in rows]

    async def revoke(self, actor: Principal, invitation_id: int) -> AdminInvitation:
        scope = None if actor.role in GLOBAL_ROLES else actor.tenant_id
        async with self._session_factory() as session:
            async with session.begin():
                invitation = await invitations_repo.get_invitation(session, invitation_id, tenant_id=scope)
                if invitation is None:
                    raise NotFound("Invitation not found")
                now = self._now()
                if not await invitations_repo.close_invitation(session, invitation.id, revoked_at=now):
                    raise Conflict("Invitation is already closed")
                await session.refresh(invitation)
        logger.info("invitation_revoked invitation_id=%s actor_id=%s", invitation_id, actor.subject_id)
        return invitation

    async def verify(self, token: str) -> dict[str, Any]:
        async with self._session_factory() as session:
            invitation, company = await self._open_invitation(session, token)
        payload = invitation_payload(invitation, self._now())
        payload["company_name"] = company.name
        return payload

    async def accept(self, token: str, *, name: str | None, password: str) -> AcceptedInvitation:
        check_password_policy(password)
        async with self._session_factory() as session:
            async with session.begin():
                invitation, _ = await self._open_invitation(session, token)
                now = self._now()
                if await principals_repo.get_user_by_email(session, invitation.email) is not None:
                    raise Conflict("Email is already registered")
                try:
                    user = await principals_repo.create_user(
                        session,
                        user_id=uuid4().hex,
                        email=invitation.email,
                        name=name,
                        password_hash=hash_password(password),
                        role=invitation.role,
                        tenant_id=invitation.tenant_id,
                        approved=True,
                        approved_by=invitation.invited_by,
                        now=now,
                    )
                except IntegrityError as exc:
                    raise Conflict("Email is already registered") from exc
                closed = await invitations_repo.close_invitation(
                    session,
                    invitation.id,
                    used_at=now,
                    accepted_by=user.id,
                )
                if not closed:
                    # Lost a race with another accept or a revoke; roll the account back.
                    raise NotFound("Invitation not found")
                await session.refresh(invitation)
        logger.info(
            "invitation_accepted invitation_id=%s subject_id=%s tenant_id=%s",
            invitation.id,
            user.id,
            user.tenant_id,
        )
        return AcceptedInvitation(invitation=invitation, user=user)

    async def _open_invitation(self, session: AsyncSession, token: str) -> tuple[AdminInvitation, Company]:
        # Unknown, used, revoked and expired tokens look the same to the caller.
        invitation = await invitations_repo.get_by_token_hash(session, hash_token(token))
        if invitation is None or invitation_status(invitation, self._now()) != "pending":
            increment_counter("invitations.rejected")
            raise NotFound("Invitation not found")
        company = await companies_repo.get_company(session, invitation.tenant_id)
        if company is None or not company.is_active:
            increment_counter("invitations.rejected")
            raise NotFound("Invitation not found")
        return invitation, company


def invitation_payload(invitation: AdminInvitation, now: datetime) -> dict[str, Any]:
    return {
        "id": invitation.id,
        "email": invitation.email,
        "tenant_id": invitation.tenant_id,
        "role": invitation.role,
        "invited_by": invitation.invited_by,
        "status": invitation_status(invitation, now),
        "created_at": _aware(invitation.created_at).isoformat(),
        "expires_at": _aware(invitation.expires_at).isoformat(),
    }
