from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, model_validator


class Role(str, Enum):
    USER = "user"
    HR_MANAGER = "hr_manager"
    COMPANY_ADMIN = "company_admin"
    SYS_ADMIN = "sys_admin"
    SUPER_ADMIN = "super_admin"


# Seniority drives approval authority; tenant scoping is checked separately.
ROLE_SENIORITY: dict[Role, int] = {
    Role.USER: 1,
    Role.HR_MANAGER: 2,
    Role.COMPANY_ADMIN: 3,
    Role.SYS_ADMIN: 4,
    Role.SUPER_ADMIN: 5,
}

# Roles whose tenant scope is request-supplied and unrestricted.
GLOBAL_ROLES = frozenset({Role.SYS_ADMIN, Role.SUPER_ADMIN})
# Roles that must always be bound to a company.
TENANT_BOUND_ROLES = frozenset({Role.HR_MANAGER, Role.COMPANY_ADMIN})
# Roles trusted at registration time; everyone else waits for approval.
SELF_APPROVED_ROLES = frozenset({Role.USER, Role.SUPER_ADMIN})
# Roles subject to the idle session timeout.
SESSION_TIMEOUT_ROLES = frozenset({Role.SUPER_ADMIN, Role.COMPANY_ADMIN})


class Action(str, Enum):
    TAKE_ASSESSMENT = "assessment.take"
    VIEW_OWN_RESULTS = "results.view_own"
    VIEW_OWN_APPROVAL = "approval.view_own"
    VIEW_USERS = "users.view"
    MANAGE_USERS = "users.manage"
    VIEW_RESULTS = "results.view"
    EXPORT_RESULTS = "results.export"
    VIEW_APPROVALS = "approvals.view"
    DECIDE_APPROVALS = "approvals.decide"
    VIEW_COMPANY = "company.view"
    MANAGE_COMPANY = "company.manage"
    DELETE_COMPANY = "company.delete"
    TOGGLE_COMPANY = "company.toggle"
    MANAGE_INVITATIONS = "invitations.manage"
    LIST_COMPANIES = "companies.list"
    CREATE_COMPANY = "companies.create"
    VIEW_AUDIT_LOG = "audit.view"
    VIEW_SYSTEM_STATS = "system.stats"
    MANAGE_ADMINS = "admins.manage"


class ApprovalOutcome(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


def parse_role(value: str | Role) -> Role:
    # Validate role strings at every boundary instead of defaulting unknown values.
    if isinstance(value, Role):
        return value
    normalized = str(value).strip().lower()
    try:
        return Role(normalized)
    except ValueError as exc:
        raise ValueError(f"Unsupported role: {value}") from exc


def requires_approval(role: Role) -> bool:
    return role not in SELF_APPROVED_ROLES


class Principal(BaseModel):
    # Capture the authenticated identity used for tenant scoping and RBAC.
    model_config = ConfigDict(frozen=True)

    subject_id: str
    role: Role
    tenant_id: str | None = None
    approved: bool = False
    approved_by: str | None = None
    approved_at: datetime | None = None
    # Session identifier shared by a token and its rotations.
    session_id: str | None = None

    @model_validator(mode="after")
    def _check_tenant_binding(self) -> "Principal":
        if self.role in TENANT_BOUND_ROLES and not self.tenant_id:
            raise ValueError(f"{self.role.value} requires a tenant_id")
        if self.role in GLOBAL_ROLES and self.tenant_id is not None:
            raise ValueError(f"{self.role.value} must not carry a tenant_id")
        return self

    @property
    def is_global(self) -> bool:
        return self.role in GLOBAL_ROLES

    @property
    def seniority(self) -> int:
        return ROLE_SENIORITY[self.role]
