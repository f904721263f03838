from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from skillgate.core.errors import AuditWriteFailure, Forbidden, InvalidTransition, NotFound
from skillgate.domain.identity import ApprovalOutcome, Principal, parse_role
from skillgate.domain.models import ApprovalRequest
from skillgate.persistence.db import SessionLocal
from skillgate.persistence.repos import approvals as approvals_repo
from skillgate.persistence.repos import principals as principals_repo
from skillgate.persistence.store import PrincipalStore
from skillgate.services.audit import AuditRecorder
from skillgate.services.auth.roles import can_decide_approval, effective_tenant_scope


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ApprovalView:
    id: int
    target_subject_id: str
    tenant_id: str | None
    requested_role: str
    requested_at: datetime
    outcome: ApprovalOutcome
    decided_by: str | None = None
    decided_at: datetime | None = None
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "target_subject_id": self.target_subject_id,
            "tenant_id": self.tenant_id,
            "requested_role": self.requested_role,
            "requested_at": self.requested_at.isoformat(),
            "outcome": self.outcome.value,
            "decided_by": self.decided_by,
            "decided_at": self.decided_at.isoformat() if self.decided_at else None,
            "reason": self.reason,
        }


@dataclass
class BulkApprovalResult:
    approved: list[int] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)


def _to_view(row: ApprovalRequest) -> ApprovalView:
    return ApprovalView(
        id=row.id,
        target_subject_id=row.target_subject_id,
        tenant_id=row.tenant_id,
        requested_role=row.requested_role,
        requested_at=row.requested_at,
        outcome=ApprovalOutcome(row.outcome),
        decided_by=row.decided_by,
        decided_at=row.decided_at,
        reason=row.reason,
    )


async def open_request(
    session: AsyncSession,
    *,
    subject_id: str,
    tenant_id: str | None,
    requested_role: str,
) -> ApprovalRequest:
    # At most one pending request per target; callers commit with their own unit of work.
    existing = await approvals_repo.get_pending_for_target(session, subject_id)
    if existing is not None:
        raise InvalidTransition("A pending approval request already exists")
    return await approvals_repo.create_request(
        session,
        subject_id=subject_id,
        tenant_id=tenant_id,
        requested_role=requested_role,
        requested_at=_utc_now(),
    )


class ApprovalService:
    """Drives approval requests through pending -> approved | rejected.

    Authority comes from ``can_decide_approval``; a decision, the principal's
    approval flag and its audit row commit together through the store.
    """

    def __init__(
        self,
        store: PrincipalStore,
        recorder: AuditRecorder,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._store = store
        self._recorder = recorder
        self._session_factory = session_factory or SessionLocal

    async def _load(self, request_id: int) -> ApprovalRequest:
        async with self._session_factory() as session:
            row = await approvals_repo.get_request(session, request_id)
        if row is None:
            raise NotFound("Approval request not found")
        return row

    def _authorize(self, actor: Principal, row: ApprovalRequest, *, operation: str) -> None:
        try:
            requested_role = parse_role(row.requested_role)
        except ValueError:
            requested_role = None
        if requested_role is None or not can_decide_approval(
            actor,
            requested_role=requested_role,
            target_tenant_id=row.tenant_id,
        ):
            logger.warning(
                "approval_denied operation=%s actor_id=%s actor_role=%s request_id=%s requested_role=%s",
                operation,
                actor.subject_id,
                actor.role.value,
                row.id,
                row.requested_role,
            )
            raise Forbidden("Access denied")

    async def _decide(
        self,
        actor: Principal,
        request_id: int,
        outcome: ApprovalOutcome,
        *,
        origin: str | None,
        reason: str | None = None,
        request_ref: str | None = None,
        detail: dict[str, Any] | None = None,
    ) -> ApprovalView:
        row = await self._load(request_id)
        self._authorize(actor, row, operation=outcome.value)
        if row.outcome != ApprovalOutcome.PENDING.value:
            raise InvalidTransition("Approval request is no longer pending")
        audit_detail: dict[str, Any] = {"requested_role": row.requested_role}
        if reason:
            audit_detail["reason"] = reason
        audit_detail.update(detail or {})
        record = self._recorder.build_record(
            actor_id=actor.subject_id,
            action=f"approval.{outcome.value}",
            target_type="user",
            target_id=row.target_subject_id,
            detail=audit_detail,
            origin_address=origin,
            tenant_id=row.tenant_id,
            actor_role=actor.role.value,
            request_id=request_ref,
        )
        try:
            await self._store.update_approval(
                row.target_subject_id,
                outcome,
                actor.subject_id,
                request_id=row.id,
                reason=reason,
                audit=record,
            )
        except AuditWriteFailure as exc:
            # The decision rolled back with the audit row; the request stays pending.
            self._recorder.report_failure(record, exc)
            raise
        logger.info(
            "approval_decided outcome=%s request_id=%s target=%s actor_id=%s",
            outcome.value,
            row.id,
            row.target_subject_id,
            actor.subject_id,
        )
        return _to_view(await self._load(request_id))

    async def approve(
        self,
        actor: Principal,
        request_id: int,
        origin: str | None = None,
        *,
        request_ref: str | None = None,
    ) -> ApprovalView:
        return await self._decide(
            actor,
            request_id,
            ApprovalOutcome.APPROVED,
            origin=origin,
            request_ref=request_ref,
        )

    async def reject(
        self,
        actor: Principal,
        request_id: int,
        reason: str | None = None,
        origin: str | None = None,
        *,
        request_ref: str | None = None,
    ) -> ApprovalView:
        # The principal row is kept; only the request is closed.
        return await self._decide(
            actor,
            request_id,
            ApprovalOutcome.REJECTED,
            origin=origin,
            reason=reason,
            request_ref=request_ref,
        )

    async def approve_bulk(
        self,
        actor: Principal,
        request_ids: list[int],
        origin: str | None = None,
        *,
        request_ref: str | None = None,
    ) -> BulkApprovalResult:
        result = BulkApprovalResult()
        for request_id in dict.fromkeys(request_ids):
            try:
                await self._decide(
                    actor,
                    request_id,
                    ApprovalOutcome.APPROVED,
                    origin=origin,
                    request_ref=request_ref,
                    detail={"bulk_operation": True},
                )
            except NotFound:
                result.skipped.append({"id": request_id, "reason": "not_found"})
            except Forbidden:
                result.skipped.append({"id": request_id, "reason": "forbidden"})
            except InvalidTransition:
                result.skipped.append({"id": request_id, "reason": "not_pending"})
            except AuditWriteFailure:
                result.skipped.append({"id": request_id, "reason": "audit_unavailable"})
            else:
                result.approved.append(request_id)
        return result

    async def reopen(
        self,
        actor: Principal,
        subject_id: str,
        origin: str | None = None,
        *,
        request_ref: str | None = None,
    ) -> ApprovalView:
        # Appeals append a fresh pending request; decided history is left untouched.
        async with self._session_factory() as session:
            async with session.begin():
                target = await principals_repo.get_user(session, subject_id)
                latest = await approvals_repo.get_latest_for_target(session, subject_id)
                if target is None or latest is None:
                    raise NotFound("Approval request not found")
                self._authorize(actor, latest, operation="reopen")
                if latest.outcome != ApprovalOutcome.REJECTED.value:
                    raise InvalidTransition("Only rejected requests can be reopened")
                row = await open_request(
                    session,
                    subject_id=subject_id,
                    tenant_id=latest.tenant_id,
                    requested_role=latest.requested_role,
                )
                view = _to_view(row)
        await self._recorder.record(
            actor.subject_id,
            "approval.reopened",
            "user",
            subject_id,
            {"previous_request_id": latest.id, "requested_role": latest.requested_role},
            origin,
            tenant_id=latest.tenant_id,
            actor_role=actor.role.value,
            request_id=request_ref,
        )
        return view

    async def list_pending(self, actor: Principal, *, tenant_id: str | None = None) -> list[ApprovalView]:
        scope = effective_tenant_scope(actor, tenant_id)
        async with self._session_factory() as session:
            rows = await approvals_repo.list_pending(session, tenant_id=scope)
        visible: list[ApprovalView] = []
        for row in rows:
            try:
                requested_role = parse_role(row.requested_role)
            except ValueError:
                continue
            # Only surface requests the actor could actually decide.
            if can_decide_approval(actor, requested_role=requested_role, target_tenant_id=row.tenant_id):
                visible.append(_to_view(row))
        return visible

    async def approval_status(self, subject_id: str) -> ApprovalView | None:
        async with self._session_factory() as session:
            row = await approvals_repo.get_latest_for_target(session, subject_id)
        return _to_view(row) if row is not None else None
