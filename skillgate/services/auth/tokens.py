from __future__ import annotations

from dataclasses import dataclass
import logging
import secrets
import time
from typing import Any, Callable
from uuid import uuid4

import jwt

from skillgate.core.config import Settings
from skillgate.core.errors import ConfigError, ExpiredToken, InvalidClaims, InvalidSignature
from skillgate.domain.identity import Principal, Role, parse_role


logger = logging.getLogger(__name__)

_REQUIRED_CLAIMS = ["sub", "role", "iat", "exp", "sid"]

Clock = Callable[[], float]


@dataclass(frozen=True)
class TokenClaims:
    subject_id: str
    role: Role
    tenant_id: str | None
    approved: bool
    session_id: str
    issued_at: int
    expires_at: int

    @property
    def lifetime_s(self) -> int:
        return max(0, self.expires_at - self.issued_at)

    def remaining_s(self, now: float) -> float:
        return self.expires_at - now

    def principal(self) -> Principal:
        return Principal(
            subject_id=self.subject_id,
            role=self.role,
            tenant_id=self.tenant_id,
            approved=self.approved,
            session_id=self.session_id,
        )


class TokenCodec:
    """Issue and verify signed bearer tokens.

    The signing secret is fixed at construction and never changes for the life
    of the codec. Verification checks the signature first and the expiry second,
    so a tampered expired token is reported as a bad signature.
    """

    def __init__(
        self,
        secret: str | None,
        *,
        algorithm: str = "HS256",
        user_ttl_s: int = 7 * 24 * 3600,
        privileged_ttl_s: int = 30 * 60,
        clock: Clock | None = None,
    ) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._user_ttl_s = int(user_ttl_s)
        self._privileged_ttl_s = int(privileged_ttl_s)
        self._clock = clock or time.time

    @property
    def configured(self) -> bool:
        return bool(self._secret)

    def now(self) -> float:
        return self._clock()

    def default_ttl(self, role: Role) -> int:
        # End users get long-lived tokens; every admin tier gets a short sliding one.
        return self._user_ttl_s if role == Role.USER else self._privileged_ttl_s

    def _require_secret(self) -> str:
        if not self._secret:
            raise ConfigError("Token signing secret is not configured")
        return self._secret

    def issue(
        self,
        subject_id: str,
        role: Role | str,
        tenant_id: str | None,
        ttl: int | None = None,
        *,
        approved: bool,
        session_id: str | None = None,
    ) -> str:
        secret = self._require_secret()
        resolved_role = parse_role(role)
        # Validate the role/tenant binding before signing anything.
        Principal(subject_id=subject_id, role=resolved_role, tenant_id=tenant_id, approved=approved)
        issued_at = int(self._clock())
        lifetime = int(ttl) if ttl is not None else self.default_ttl(resolved_role)
        payload: dict[str, Any] = {
            "sub": subject_id,
            "role": resolved_role.value,
            "tenant_id": tenant_id,
            "approved": bool(approved),
            "sid": session_id or uuid4().hex,
            "iat": issued_at,
            "exp": issued_at + lifetime,
        }
        return jwt.encode(payload, secret, algorithm=self._algorithm)

    def decode_claims(self, token: str) -> TokenClaims:
        secret = self._require_secret()
        try:
            # Expiry is checked against the injected clock after the signature verifies.
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self._algorithm],
                options={"verify_exp": False, "verify_iat": False, "require": _REQUIRED_CLAIMS},
            )
        except jwt.MissingRequiredClaimError as exc:
            raise InvalidClaims(str(exc)) from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidSignature("Token signature could not be verified") from exc

        claims = self._parse_claims(payload)
        if self._clock() >= claims.expires_at:
            raise ExpiredToken("Token has expired")
        return claims

    def verify(self, token: str) -> Principal:
        return self.decode_claims(token).principal()

    def rotate(self, old_token: str) -> str:
        # Re-sign the same claims with a fresh window; expired tokens cannot be rotated.
        claims = self.decode_claims(old_token)
        return self.issue(
            claims.subject_id,
            claims.role,
            claims.tenant_id,
            claims.lifetime_s or None,
            approved=claims.approved,
            session_id=claims.session_id,
        )

    @staticmethod
    def _parse_claims(payload: dict[str, Any]) -> TokenClaims:
        try:
            role = parse_role(payload["role"])
            subject_id = payload["sub"]
            tenant_id = payload.get("tenant_id")
            approved = payload.get("approved", False)
            issued_at = payload["iat"]
            expires_at = payload["exp"]
            session_id = payload["sid"]
        except (KeyError, ValueError) as exc:
            raise InvalidClaims("Token claims are invalid") from exc
        if not isinstance(subject_id, str) or not subject_id:
            raise InvalidClaims("Token subject is invalid")
        if tenant_id is not None and not isinstance(tenant_id, str):
            raise InvalidClaims("Token tenant is invalid")
        if not isinstance(approved, bool):
            raise InvalidClaims("Token approval flag is invalid")
        if not isinstance(session_id, str) or not session_id:
            raise InvalidClaims("Token session is invalid")
        if not isinstance(issued_at, int) or not isinstance(expires_at, int):
            raise InvalidClaims("Token timestamps are invalid")
        claims = TokenClaims(
            subject_id=subject_id,
            role=role,
            tenant_id=tenant_id,
            approved=approved,
            session_id=session_id,
            issued_at=issued_at,
            expires_at=expires_at,
        )
        try:
            claims.principal()
        except ValueError as exc:
            raise InvalidClaims("Token role and tenant binding is invalid") from exc
        return claims


def build_token_codec(settings: Settings, *, clock: Clock | None = None) -> TokenCodec:
    secret = settings.auth_jwt_secret
    if not secret:
        if not settings.is_development:
            raise ConfigError("AUTH_JWT_SECRET must be set outside development")
        # Ephemeral per-process secret: tokens stop verifying after a restart.
        secret = secrets.token_urlsafe(48)
        logger.warning("auth_jwt_secret_missing using_ephemeral_secret=true environment=development")
    return TokenCodec(
        secret,
        algorithm=settings.auth_jwt_algorithm,
        user_ttl_s=settings.auth_user_token_ttl_s,
        privileged_ttl_s=settings.auth_privileged_token_ttl_s,
        clock=clock,
    )
