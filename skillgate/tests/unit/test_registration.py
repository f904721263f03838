from __future__ import annotations

import pytest
from sqlalchemy import select

from skillgate.core.errors import Conflict, MalformedInput, NotFound, Unauthenticated
from skillgate.domain.identity import ApprovalOutcome, Role
from skillgate.domain.models import ApprovalRequest, Company, User
from skillgate.services.registration import RegistrationService
from skillgate.services.telemetry import counter_value
from skillgate.tests.utils.auth import create_test_company


PASSWORD = "s3cure-passphrase"


@pytest.fixture
def registration(session_factory) -> RegistrationService:
    return RegistrationService(session_factory=session_factory)


async def test_end_user_is_self_approved(session_factory, registration) -> None:
    await create_test_company(session_factory, tenant_id="acme", code="ACME-2024")
    result = await registration.register_user(
        email="Bob@Acme.com", password=PASSWORD, name="Bob", company_code="ACME-2024"
    )
    assert result.principal.role == Role.USER
    assert result.principal.tenant_id == "acme"
    assert result.principal.approved is True
    assert result.approval_request_id is None

    async with session_factory() as session:
        user = await session.get(User, result.principal.subject_id)
    assert user.email == "bob@acme.com"
    assert user.password_hash != PASSWORD


async def test_company_admin_waits_for_approval(session_factory, registration) -> None:
    await create_test_company(session_factory, tenant_id="acme", code="ACME-2024")
    result = await registration.register_admin(
        email="alice@acme.com",
        password=PASSWORD,
        name="Alice",
        role="company_admin",
        company_code="ACME-2024",
    )
    assert result.principal.approved is False
    assert result.principal.tenant_id == "acme"
    assert result.approval_request_id is not None

    async with session_factory() as session:
        request = await session.get(ApprovalRequest, result.approval_request_id)
    assert request.outcome == ApprovalOutcome.PENDING.value
    assert request.requested_role == "company_admin"
    assert request.tenant_id == "acme"


async def test_global_roles_cannot_self_register(session_factory, registration) -> None:
    for role in ("sys_admin", "super_admin"):
        with pytest.raises(MalformedInput):
            await registration.register_admin(
                email="ops@skillgate.com", password=PASSWORD, name=None, role=role, company_code=None
            )
    async with session_factory() as session:
        assert (await session.execute(select(User))).scalars().all() == []


async def test_admin_registration_rejects_bad_input(session_factory, registration) -> None:
    with pytest.raises(MalformedInput):
        await registration.register_admin(
            email="x@acme.com", password=PASSWORD, name=None, role="super_admin", company_code=None
        )
    with pytest.raises(MalformedInput):
        await registration.register_admin(
            email="x@acme.com", password=PASSWORD, name=None, role="root", company_code=None
        )
    with pytest.raises(MalformedInput):
        await registration.register_admin(
            email="x@acme.com", password=PASSWORD, name=None, role="hr_manager", company_code=None
        )
    with pytest.raises(NotFound):
        await registration.register_admin(
            email="x@acme.com", password=PASSWORD, name=None, role="hr_manager", company_code="nope"
        )
    with pytest.raises(MalformedInput):
        await registration.register_user(email="x@acme.com", password="short", name=None)


async def test_duplicate_email_conflicts(registration) -> None:
    await registration.register_user(email="dup@acme.com", password=PASSWORD, name=None)
    with pytest.raises(Conflict):
        await registration.register_user(email="DUP@acme.com", password=PASSWORD, name=None)


async def test_authenticate_checks_password_and_portal(session_factory, registration) -> None:
    await create_test_company(session_factory, tenant_id="acme", code="ACME-2024")
    await registration.register_user(email="user@acme.com", password=PASSWORD, name=None)
    await registration.register_admin(
        email="hr@acme.com", password=PASSWORD, name=None, role="hr_manager", company_code="ACME-2024"
    )

    principal = await registration.authenticate(email="user@acme.com", password=PASSWORD, admin=False)
    assert principal.role == Role.USER

    # Unapproved admins can still sign in to follow their approval.
    admin = await registration.authenticate(email="hr@acme.com", password=PASSWORD, admin=True)
    assert admin.approved is False

    for email, password, is_admin in (
        ("user@acme.com", "wrong-password", False),
        ("user@acme.com", PASSWORD, True),
        ("hr@acme.com", PASSWORD, False),
        ("ghost@acme.com", PASSWORD, False),
    ):
        with pytest.raises(Unauthenticated):
            await registration.authenticate(email=email, password=password, admin=is_admin)
    assert counter_value("auth.login_failed") == 4

    async with session_factory() as session:
        user = (await session.execute(select(User).where(User.email == "user@acme.com"))).scalar_one()
    assert user.last_login_at is not None


async def test_inactive_company_blocks_member_login(session_factory, registration) -> None:
    await create_test_company(session_factory, tenant_id="acme", code="ACME-2024")
    await registration.register_user(
        email="user@acme.com", password=PASSWORD, name=None, company_code="ACME-2024"
    )
    async with session_factory() as session:
        company = await session.get(Company, "acme")
        company.is_active = False
        await session.commit()

    with pytest.raises(Unauthenticated):
        await registration.authenticate(email="user@acme.com", password=PASSWORD, admin=False)
    # The join code stops working as well.
    with pytest.raises(NotFound):
        await registration.register_user(
            email="late@acme.com", password=PASSWORD, name=None, company_code="ACME-2024"
        )


async def test_change_password_needs_the_current_one(session_factory, registration) -> None:
    result = await registration.register_user(email="user@acme.com", password=PASSWORD, name=None)
    subject_id = result.principal.subject_id

    with pytest.raises(Unauthenticated):
        await registration.change_password(
            subject_id=subject_id, current_password="not-my-password", new_password="n3w-passphrase"
        )
    assert counter_value("auth.password_change_failed") == 1
    with pytest.raises(MalformedInput):
        await registration.change_password(
            subject_id=subject_id, current_password=PASSWORD, new_password=PASSWORD
        )
    with pytest.raises(MalformedInput):
        await registration.change_password(
            subject_id=subject_id, current_password=PASSWORD, new_password="short"
        )

    await registration.change_password(
        subject_id=subject_id, current_password=PASSWORD, new_password="n3w-passphrase"
    )
    with pytest.raises(Unauthenticated):
        await registration.authenticate(email="user@acme.com", password=PASSWORD, admin=False)
    principal = await registration.authenticate(email="user@acme.com", password="n3w-passphrase", admin=False)
    assert principal.subject_id == subject_id
