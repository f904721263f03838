from __future__ import annotations

from skillgate.domain.identity import (
    GLOBAL_ROLES,
    ROLE_SENIORITY,
    Action,
    Principal,
    Role,
)


_BASE_USER_ACTIONS = frozenset(
    {
        Action.TAKE_ASSESSMENT,
        Action.VIEW_OWN_RESULTS,
        Action.VIEW_OWN_APPROVAL,
    }
)

_HR_MANAGER_ACTIONS = _BASE_USER_ACTIONS | {
    Action.VIEW_USERS,
    Action.VIEW_RESULTS,
    Action.EXPORT_RESULTS,
    Action.VIEW_COMPANY,
}

_COMPANY_ADMIN_ACTIONS = _HR_MANAGER_ACTIONS | {
    Action.MANAGE_USERS,
    Action.MANAGE_COMPANY,
    Action.DELETE_COMPANY,
    Action.VIEW_APPROVALS,
    Action.DECIDE_APPROVALS,
    Action.VIEW_AUDIT_LOG,
    Action.MANAGE_INVITATIONS,
}

_SYS_ADMIN_ACTIONS = _COMPANY_ADMIN_ACTIONS | {
    Action.LIST_COMPANIES,
    Action.CREATE_COMPANY,
    Action.VIEW_SYSTEM_STATS,
    Action.TOGGLE_COMPANY,
}

# Static capability table; anything absent is a deny.
ROLE_CAPABILITIES: dict[Role, frozenset[Action]] = {
    Role.USER: _BASE_USER_ACTIONS,
    Role.HR_MANAGER: frozenset(_HR_MANAGER_ACTIONS),
    Role.COMPANY_ADMIN: frozenset(_COMPANY_ADMIN_ACTIONS),
    Role.SYS_ADMIN: frozenset(_SYS_ADMIN_ACTIONS),
    Role.SUPER_ADMIN: frozenset(Action),
}

CROSS_TENANT_ACTIONS = frozenset(
    {
        Action.LIST_COMPANIES,
        Action.CREATE_COMPANY,
        Action.VIEW_SYSTEM_STATS,
        Action.MANAGE_ADMINS,
    }
)


def role_allows(*, role: Role, minimum_role: Role) -> bool:
    # Compare roles using numeric ordering for least-privilege enforcement.
    return ROLE_SENIORITY.get(role, 0) >= ROLE_SENIORITY.get(minimum_role, 0)


def is_strictly_senior(actor_role: Role, target_role: Role) -> bool:
    return ROLE_SENIORITY.get(actor_role, 0) > ROLE_SENIORITY.get(target_role, 0)


def has_capability(role: Role, action: Action) -> bool:
    return action in ROLE_CAPABILITIES.get(role, frozenset())


def can_perform(principal: Principal, action: Action, target_tenant_id: str | None) -> bool:
    """Decide whether ``principal`` may run ``action`` against ``target_tenant_id``.

    Pure and total: unknown roles or actions deny instead of raising.
    """
    try:
        role = principal.role
        if role == Role.SUPER_ADMIN:
            return True
        if action in CROSS_TENANT_ACTIONS and role not in GLOBAL_ROLES:
            return False
        if not has_capability(role, action):
            return False
        if role in GLOBAL_ROLES:
            return True
        return principal.tenant_id == target_tenant_id
    except (AttributeError, TypeError, KeyError):
        return False


def can_decide_approval(
    actor: Principal,
    *,
    requested_role: Role,
    target_tenant_id: str | None,
) -> bool:
    # Approval authority needs strict seniority plus a matching or superseding tenant scope.
    if not is_strictly_senior(actor.role, requested_role):
        return False
    if actor.role in GLOBAL_ROLES:
        return True
    if target_tenant_id is None:
        return False
    return actor.tenant_id == target_tenant_id


def effective_tenant_scope(principal: Principal, requested_tenant_id: str | None) -> str | None:
    # Non-global principals are pinned to their own tenant regardless of the request.
    if principal.role in GLOBAL_ROLES:
        return requested_tenant_id
    return principal.tenant_id
