from __future__ import annotations

import pytest
from sqlalchemy import select

from skillgate.core.errors import Conflict, Forbidden, MalformedInput, NotFound
from skillgate.domain.identity import Principal, Role
from skillgate.domain.models import AdminInvitation, User
from skillgate.services.invitations import InvitationService, hash_token
from skillgate.services.telemetry import counter_value
from skillgate.tests.utils.auth import create_test_company


PASSWORD = "s3cure-passphrase"
DAY_S = 24 * 3600


@pytest.fixture
def invitations(session_factory, clock) -> InvitationService:
    return InvitationService(session_factory=session_factory, ttl_days=7, clock=clock)


def _company_admin(tenant_id: str = "acme") -> Principal:
    return Principal(subject_id="ca-1", role=Role.COMPANY_ADMIN, tenant_id=tenant_id, approved=True)


def _sys_admin() -> Principal:
    return Principal(subject_id="sa-1", role=Role.SYS_ADMIN, approved=True)


async def test_token_is_stored_hashed_and_accepted_once(session_factory, invitations) -> None:
    await create_test_company(session_factory, tenant_id="acme")
    issued = await invitations.invite(_company_admin(), email="New.HR@acme.com", role="hr_manager", tenant_id=None)
    assert issued.invitation.email == "new.hr@acme.com"
    assert issued.invitation.tenant_id == "acme"

    async with session_factory() as session:
        stored = (await session.execute(select(AdminInvitation))).scalar_one()
    assert stored.token_hash == hash_token(issued.token)
    assert issued.token not in stored.token_hash

    preview = await invitations.verify(issued.token)
    assert preview["status"] == "pending"
    assert preview["company_name"] == "Acme"

    accepted = await invitations.accept(issued.token, name="New HR", password=PASSWORD)
    assert accepted.user.role == "hr_manager"
    assert accepted.user.tenant_id == "acme"
    assert accepted.user.approved is True
    assert accepted.user.approved_by == "ca-1"
    assert accepted.invitation.accepted_by == accepted.user.id

    with pytest.raises(NotFound):
        await invitations.accept(issued.token, name=None, password=PASSWORD)
    with pytest.raises(NotFound):
        await invitations.verify(issued.token)
    assert counter_value("invitations.rejected") == 2


async def test_company_admin_invites_only_hr_into_own_company(session_factory, invitations) -> None:
    await create_test_company(session_factory, tenant_id="acme")
    await create_test_company(session_factory, tenant_id="globex")

    with pytest.raises(Forbidden):
        await invitations.invite(_company_admin(), email="x@acme.com", role="company_admin", tenant_id=None)
    with pytest.raises(MalformedInput):
        await invitations.invite(_company_admin(), email="x@acme.com", role="sys_admin", tenant_id=None)

    # A foreign tenant in the request is ignored for company admins.
    issued = await invitations.invite(_company_admin(), email="x@acme.com", role="hr_manager", tenant_id="globex")
    assert issued.invitation.tenant_id == "acme"

    issued = await invitations.invite(_sys_admin(), email="boss@globex.com", role="company_admin", tenant_id="globex")
    assert issued.invitation.tenant_id == "globex"
    with pytest.raises(MalformedInput):
        await invitations.invite(_sys_admin(), email="y@globex.com", role="hr_manager", tenant_id=None)
    with pytest.raises(NotFound):
        await invitations.invite(_sys_admin(), email="y@initech.com", role="hr_manager", tenant_id="initech")


async def test_duplicate_invitations_and_registered_emails_conflict(session_factory, invitations) -> None:
    await create_test_company(session_factory, tenant_id="acme")
    await invitations.invite(_company_admin(), email="x@acme.com", role="hr_manager", tenant_id=None)
    with pytest.raises(Conflict):
        await invitations.invite(_company_admin(), email="X@acme.com", role="hr_manager", tenant_id=None)

    issued = await invitations.invite(_company_admin(), email="y@acme.com", role="hr_manager", tenant_id=None)
    await invitations.accept(issued.token, name=None, password=PASSWORD)
    with pytest.raises(Conflict):
        await invitations.invite(_company_admin(), email="y@acme.com", role="hr_manager", tenant_id=None)


async def test_expired_and_revoked_tokens_are_refused(session_factory, invitations, clock) -> None:
    await create_test_company(session_factory, tenant_id="acme")
    expiring = await invitations.invite(_company_admin(), email="late@acme.com", role="hr_manager", tenant_id=None)
    revoked = await invitations.invite(_company_admin(), email="gone@acme.com", role="hr_manager", tenant_id=None)

    await invitations.revoke(_company_admin(), revoked.invitation.id)
    with pytest.raises(Conflict):
        await invitations.revoke(_company_admin(), revoked.invitation.id)
    with pytest.raises(NotFound):
        await invitations.accept(revoked.token, name=None, password=PASSWORD)

    clock.advance(7 * DAY_S + 1)
    with pytest.raises(NotFound):
        await invitations.accept(expiring.token, name=None, password=PASSWORD)
    statuses = {item["email"]: item["status"] for item in await invitations.list_invitations(tenant_id="acme")}
    assert statuses == {"late@acme.com": "expired", "gone@acme.com": "revoked"}

    # An expired invitation no longer blocks a fresh one.
    renewed = await invitations.invite(_company_admin(), email="late@acme.com", role="hr_manager", tenant_id=None)
    assert renewed.token != expiring.token

    async with session_factory() as session:
        assert (await session.execute(select(User))).scalars().all() == []


async def test_revoke_is_tenant_scoped(session_factory, invitations) -> None:
    await create_test_company(session_factory, tenant_id="acme")
    await create_test_company(session_factory, tenant_id="globex")
    issued = await invitations.invite(_sys_admin(), email="x@globex.com", role="hr_manager", tenant_id="globex")

    with pytest.raises(NotFound):
        await invitations.revoke(_company_admin("acme"), issued.invitation.id)
    revoked = await invitations.revoke(_sys_admin(), issued.invitation.id)
    assert revoked.revoked_at is not None


async def test_accept_applies_the_password_policy(session_factory, invitations) -> None:
    await create_test_company(session_factory, tenant_id="acme")
    issued = await invitations.invite(_company_admin(), email="x@acme.com", role="hr_manager", tenant_id=None)
    with pytest.raises(MalformedInput):
        await invitations.accept(issued.token, name=None, password="short")
    # The invitation stays redeemable after a rejected attempt.
    accepted = await invitations.accept(issued.token, name=None, password=PASSWORD)
    assert accepted.user.email == "x@acme.com"
