from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillgate.core.errors import AuditWriteFailure, InvalidTransition, NotFound, StoreUnavailable
from skillgate.domain.audit import AuditRecord
from skillgate.domain.identity import ApprovalOutcome, Principal, parse_role
from skillgate.domain.models import User
from skillgate.persistence.db import SessionLocal
from skillgate.persistence.repos import approvals as approvals_repo
from skillgate.persistence.repos import audit as audit_repo
from skillgate.persistence.repos import companies as companies_repo
from skillgate.persistence.repos import principals as principals_repo


logger = logging.getLogger(__name__)


class PrincipalStore(Protocol):
    async def get_principal(self, subject_id: str) -> Principal | None:
        ...

    async def update_approval(
        self,
        subject_id: str,
        outcome: ApprovalOutcome,
        actor_id: str,
        *,
        request_id: int,
        reason: str | None = None,
        audit: AuditRecord | None = None,
    ) -> None:
        ...

    async def append_audit(self, record: AuditRecord) -> None:
        ...


def principal_from_user(user: User) -> Principal:
    # Re-validate stored rows so corrupted roles or tenant bindings never authenticate.
    return Principal(
        subject_id=user.id,
        role=parse_role(user.role),
        tenant_id=user.tenant_id,
        approved=bool(user.approved),
        approved_by=user.approved_by,
        approved_at=user.approved_at,
    )


class SqlPrincipalStore:
    """Relational implementation of the principal store contract.

    Each call opens its own session from ``session_factory``; approval decisions
    commit the request transition, the principal flag and the audit row together.
    A failed audit insert rolls the decision back and surfaces as
    ``AuditWriteFailure``; other database errors surface as ``StoreUnavailable``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def get_principal(self, subject_id: str) -> Principal | None:
        async with self._session_factory() as session:
            user = await principals_repo.get_user(session, subject_id)
            # Deactivating a company locks out its members on their next request.
            if user is not None and user.tenant_id:
                if not await companies_repo.is_company_active(session, user.tenant_id):
                    logger.warning(
                        "principal_company_inactive subject_id=%s tenant_id=%s",
                        subject_id,
                        user.tenant_id,
                    )
                    return None
        if user is None:
            return None
        try:
            return principal_from_user(user)
        except ValueError:
            logger.warning("principal_row_invalid subject_id=%s role=%s", subject_id, user.role)
            return None

    async def update_approval(
        self,
        subject_id: str,
        outcome: ApprovalOutcome,
        actor_id: str,
        *,
        request_id: int,
        reason: str | None = None,
        audit: AuditRecord | None = None,
    ) -> None:
        decided_at = datetime.now(timezone.utc)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    moved = await approvals_repo.decide_request(
                        session,
                        request_id=request_id,
                        outcome=outcome,
                        actor_id=actor_id,
                        decided_at=decided_at,
                        reason=reason,
                    )
                    if not moved:
                        raise InvalidTransition("Approval request is no longer pending")
                    if outcome == ApprovalOutcome.APPROVED:
                        updated = await principals_repo.set_approval(
                            session,
                            user_id=subject_id,
                            approved=True,
                            actor_id=actor_id,
                            decided_at=decided_at,
                        )
                        if not updated:
                            raise NotFound("Principal not found")
                    if audit is not None:
                        try:
                            await audit_repo.insert_event(session, audit.to_model())
                        except SQLAlchemyError as exc:
                            raise AuditWriteFailure("Audit append failed") from exc
        except SQLAlchemyError as exc:
            logger.error(
                "approval_update_failed subject_id=%s request_id=%s",
                subject_id,
                request_id,
                exc_info=exc,
            )
            raise StoreUnavailable("Approval update failed") from exc

    async def append_audit(self, record: AuditRecord) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await audit_repo.insert_event(session, record.to_model())
