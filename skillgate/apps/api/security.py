from __future__ import annotations

from dataclasses import dataclass
import ipaddress
import json
import logging
from typing import Any
from urllib.parse import parse_qsl, quote, urlencode
from uuid import uuid4

from starlette.datastructures import Headers, MutableHeaders
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from skillgate.apps.api.errors import error_for_exception
from skillgate.apps.api.rate_limit import FixedWindowRateLimiter, enforce_rate_limit
from skillgate.apps.api.response import error_json
from skillgate.core.config import Settings
from skillgate.core.errors import (
    SessionExpired,
    StoreUnavailable,
    TokenError,
    TooManyRequests,
)
from skillgate.services.auth.tokens import TokenCodec
from skillgate.services.security.cors import CorsPolicy
from skillgate.services.security.injection import scan, truncate_payload
from skillgate.services.security.ip_allowlist import address_allowed, is_privileged_path
from skillgate.services.security.sanitizer import sanitize_pairs, sanitize_text, sanitize_value
from skillgate.services.security.session import SessionTimeoutPolicy
from skillgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


@dataclass
class SecurityComponents:
    settings: Settings
    limiter: FixedWindowRateLimiter
    cors: CorsPolicy
    session_policy: SessionTimeoutPolicy
    codec: TokenCodec
    admin_allowlist: list[ipaddress.IPv4Network | ipaddress.IPv6Network]


class _Rejected(Exception):
    # Internal short-circuit carrying the response to send.
    def __init__(self, response: Response) -> None:
        super().__init__()
        self.response = response


def security_headers(*, development: bool) -> list[tuple[str, str]]:
    headers = [
        ("X-Content-Type-Options", "nosniff"),
        ("X-Frame-Options", "DENY"),
        ("Referrer-Policy", "no-referrer"),
        ("Permissions-Policy", "geolocation=(), camera=(), microphone=()"),
        ("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"),
    ]
    if not development:
        headers.append(("Strict-Transport-Security", "max-age=31536000; includeSubDomains"))
    return headers


def client_address(scope: Scope, *, trust_forwarded_for: bool) -> str:
    headers = Headers(scope=scope)
    if trust_forwarded_for:
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            return forwarded.split(",")[0].strip()
    client = scope.get("client")
    if client:
        return str(client[0])
    return "unknown"


def bearer_token(scope: Scope, header_name: str) -> str | None:
    value = Headers(scope=scope).get(header_name)
    if not value:
        return None
    parts = value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]


class SecurityPipelineMiddleware:
    """Request security pipeline.

    Path segments are sanitized first, so the limiter, the admin allow-list
    and the router classify the same path. Every HTTP request then passes, in
    order: rate limiting, the allow-list, query and body sanitization,
    injection detection, CORS and the privileged session timeout.
    """

    def __init__(self, app: ASGIApp, *, components: SecurityComponents) -> None:
        self.app = app
        self.components = components

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        settings = self.components.settings
        headers = Headers(scope=scope)
        state = scope.setdefault("state", {})
        request_id = headers.get("x-request-id") or str(uuid4())
        state["request_id"] = request_id
        origin = headers.get("origin")
        extra_headers = security_headers(development=settings.is_development)

        async def send_with_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_headers = MutableHeaders(scope=message)
                for key, value in extra_headers:
                    response_headers.setdefault(key, value)
                if origin and self.components.cors.is_allowed(origin):
                    for key, value in self.components.cors.response_headers(origin):
                        response_headers[key] = value
                response_headers.setdefault("X-Request-Id", request_id)
            await send(message)

        try:
            receive = await self._run_stages(scope, receive, request_id=request_id, origin=origin)
        except _Rejected as rejected:
            await rejected.response(scope, receive, send_with_headers)
            return
        await self.app(scope, receive, send_with_headers)

    async def _run_stages(
        self,
        scope: Scope,
        receive: Receive,
        *,
        request_id: str,
        origin: str | None,
    ) -> Receive:
        settings = self.components.settings
        # Segments are cleaned before anything classifies the request: the limiter,
        # the allow-list and the router must all see the same path.
        segments = self._sanitize_path(scope)
        path = scope["path"]
        method = scope["method"].upper()
        client = client_address(scope, trust_forwarded_for=settings.rl_trust_forwarded_for)
        scope.setdefault("state", {})["client_address"] = client

        # 1. Rate limiting.
        try:
            await enforce_rate_limit(
                self.components.limiter,
                client=client,
                path=path,
                method=method,
                settings=settings,
            )
        except (TooManyRequests, StoreUnavailable) as exc:
            raise _Rejected(error_for_exception(exc, scope["path"], request_id)) from exc

        if is_privileged_path(path) and not address_allowed(client, self.components.admin_allowlist):
            increment_counter("security.ip_denied")
            logger.warning("admin_ip_denied client=%s path=%s", client, path)
            raise _Rejected(
                error_json(scope["path"], request_id, 403, "AUTH_FORBIDDEN", "Access denied")
            )

        # 2. Sanitization of query values and bodies.
        query_pairs = self._sanitize_query(scope)
        body_payload, receive = await self._sanitize_body(scope, receive, request_id)

        # 3. Injection detection on the sanitized values.
        candidates: list[tuple[str, Any]] = [
            ("path", segments),
            ("query", {key: value for key, value in query_pairs}),
        ]
        if body_payload is not None:
            candidates.append(("body", body_payload))
        for location, payload in candidates:
            match = scan(payload, location=location)
            if match is None:
                continue
            increment_counter("security.injection_blocked")
            logger.warning(
                "injection_detected rule=%s location=%s client=%s path=%s payload=%r",
                match.rule,
                match.location,
                client,
                path,
                truncate_payload(match.value, settings.security_log_payload_chars),
            )
            raise _Rejected(error_json(scope["path"], request_id, 400, "BAD_REQUEST", "Invalid input"))

        # 4. CORS.
        cors = self.components.cors
        if origin is not None and not cors.is_allowed(origin):
            increment_counter("security.cors_denied")
            logger.warning("cors_origin_denied origin=%s path=%s", origin, path)
            raise _Rejected(
                error_json(scope["path"], request_id, 403, "CORS_FORBIDDEN", "Origin not allowed")
            )
        request_headers = Headers(scope=scope)
        if (
            method == "OPTIONS"
            and origin is not None
            and request_headers.get("access-control-request-method")
        ):
            raise _Rejected(Response(status_code=200, headers=dict(cors.preflight_headers(origin))))

        # 5. Session timeout for privileged bearer tokens.
        token = bearer_token(scope, settings.auth_token_header)
        if token and self.components.codec.configured:
            try:
                claims = self.components.codec.decode_claims(token)
            except TokenError:
                # Unusable tokens are rejected by the authorization guard.
                claims = None
            if claims is not None:
                try:
                    await self.components.session_policy.check(claims)
                except (SessionExpired, StoreUnavailable) as exc:
                    raise _Rejected(error_for_exception(exc, scope["path"], request_id)) from exc
        return receive

    def _sanitize_path(self, scope: Scope) -> list[str]:
        path = scope["path"]
        segments = path.split("/")
        cleaned = [sanitize_text(segment) for segment in segments]
        if cleaned != segments:
            new_path = "/".join(cleaned)
            scope["path"] = new_path
            scope["raw_path"] = quote(new_path).encode("ascii")
        return [segment for segment in cleaned if segment]

    def _sanitize_query(self, scope: Scope) -> list[tuple[str, str]]:
        raw = scope.get("query_string", b"").decode("latin-1")
        if not raw:
            return []
        pairs = parse_qsl(raw, keep_blank_values=True)
        cleaned = sanitize_pairs(pairs)
        if cleaned != pairs:
            scope["query_string"] = urlencode(cleaned).encode("latin-1")
        return cleaned

    async def _sanitize_body(
        self,
        scope: Scope,
        receive: Receive,
        request_id: str,
    ) -> tuple[Any, Receive]:
        if scope["method"].upper() not in _BODY_METHODS:
            return None, receive
        max_bytes = self.components.settings.security_max_body_bytes
        chunks: list[bytes] = []
        total = 0
        more_body = True
        while more_body:
            message = await receive()
            if message["type"] == "http.disconnect":
                break
            chunk = message.get("body", b"")
            total += len(chunk)
            if total > max_bytes:
                raise _Rejected(
                    error_json(scope["path"], request_id, 413, "PAYLOAD_TOO_LARGE", "Payload too large")
                )
            chunks.append(chunk)
            more_body = message.get("more_body", False)
        body = b"".join(chunks)

        content_type = Headers(scope=scope).get("content-type", "").split(";")[0].strip().lower()
        payload: Any = None
        if body and (content_type == "application/json" or content_type.endswith("+json")):
            try:
                parsed = json.loads(body)
            except (UnicodeDecodeError, ValueError) as exc:
                raise _Rejected(
                    error_json(scope["path"], request_id, 400, "BAD_REQUEST", "Invalid input")
                ) from exc
            payload = sanitize_value(parsed)
            if payload != parsed:
                body = json.dumps(payload).encode("utf-8")
        elif body and content_type == "application/x-www-form-urlencoded":
            pairs = parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True)
            cleaned = sanitize_pairs(pairs)
            payload = {key: value for key, value in cleaned}
            if cleaned != pairs:
                body = urlencode(cleaned).encode("utf-8")

        self._set_content_length(scope, len(body))
        replayed = False

        async def replay_receive() -> Message:
            nonlocal replayed
            if not replayed:
                replayed = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        return payload, replay_receive

    @staticmethod
    def _set_content_length(scope: Scope, length: int) -> None:
        headers = [(key, value) for key, value in scope["headers"] if key.lower() != b"content-length"]
        headers.append((b"content-length", str(length).encode("latin-1")))
        scope["headers"] = headers

