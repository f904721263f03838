from __future__ import annotations


class SkillGateError(Exception):
    """Base error for SkillGate."""


class ConfigError(SkillGateError):
    """Missing or invalid secret or policy configuration; fatal at startup."""


class TokenError(SkillGateError):
    """Bearer token could not be accepted."""


class ExpiredToken(TokenError):
    """Token signature is valid but its expiry has passed."""


class InvalidSignature(TokenError):
    """Token signature does not verify or the token cannot be decoded."""


class InvalidClaims(TokenError):
    """Token verified but carries claims outside the closed role/tenant model."""


class AccessError(SkillGateError):
    """Request rejected by the authorization guard."""


class Unauthenticated(AccessError):
    """No usable credential was presented."""


class Unapproved(AccessError):
    """Credential is valid but the principal has not been approved yet."""


class Forbidden(AccessError):
    """Principal is approved but lacks the capability or tenant scope."""


class TooManyRequests(SkillGateError):
    """Client exceeded the rate-limit window for a route class."""

    def __init__(self, message: str, *, retry_after_s: int, route_class: str) -> None:
        super().__init__(message)
        self.retry_after_s = retry_after_s
        self.route_class = route_class


class MalformedInput(SkillGateError):
    """Input failed sanitization or injection checks."""


class InvalidTransition(SkillGateError):
    """Approval request is no longer pending."""


class NotFound(SkillGateError):
    """Requested entity does not exist in the caller's scope."""


class Conflict(SkillGateError):
    """Entity already exists or conflicts with current state."""


class StoreUnavailable(SkillGateError):
    """Persistent store did not answer within the request deadline."""


class AuditWriteFailure(SkillGateError):
    """Audit append failed; degraded but never fatal to the primary action."""


class SessionExpired(Unauthenticated):
    """Privileged session idled past the timeout and was terminated."""
