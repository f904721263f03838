from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import math
import time
from typing import Awaitable, Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError

from skillgate.core.config import Settings, get_settings
from skillgate.core.errors import StoreUnavailable, TooManyRequests
from skillgate.core.redis import get_redis
from skillgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ROUTE_CLASS_ADMIN_LOGIN = "admin_login"
ROUTE_CLASS_LOGIN = "login"
ROUTE_CLASS_ADMIN_API = "admin_api"
ROUTE_CLASS_API = "api"
ROUTE_CLASS_EXEMPT = "exempt"

_ADMIN_PREFIXES = ("/v1/admin", "/v1/audit")
_EXEMPT_PATHS = ("/v1/health", "/v1/openapi.json", "/v1/docs")
# Non-login endpoints that check a secret share the login budget.
_CREDENTIAL_ROUTES = frozenset(
    {
        ("PUT", "/v1/auth/password"),
        ("POST", "/v1/auth/invitations/verify"),
        ("POST", "/v1/auth/invitations/accept"),
    }
)
# Drop closed windows once the in-process map grows past this size.
_MEMORY_PRUNE_THRESHOLD = 10000


@dataclass(frozen=True)
class WindowLimit:
    window_s: int
    max_requests: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    route_class: str
    count: int
    limit: int
    retry_after_s: int
    degraded: bool = False

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


# INCR then arm the expiry on the first hit so the window is anchored to it.
_FIXED_WINDOW_LUA = r"""
local current = redis.call("INCR", KEYS[1])
if current == 1 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
end
local ttl = redis.call("PTTL", KEYS[1])
if ttl < 0 then
  redis.call("PEXPIRE", KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {current, ttl}
"""


def route_class_for_path(path: str, method: str) -> str:
    # Map raw path/method inputs into the four throttling classes.
    normalized_method = method.upper()
    if path in _EXEMPT_PATHS:
        return ROUTE_CLASS_EXEMPT
    if normalized_method == "POST" and path == "/v1/auth/admin/login":
        return ROUTE_CLASS_ADMIN_LOGIN
    if normalized_method == "POST" and path == "/v1/auth/login":
        return ROUTE_CLASS_LOGIN
    if (normalized_method, path) in _CREDENTIAL_ROUTES:
        return ROUTE_CLASS_LOGIN
    if any(path == prefix or path.startswith(prefix + "/") for prefix in _ADMIN_PREFIXES):
        return ROUTE_CLASS_ADMIN_API
    return ROUTE_CLASS_API


def limits_for_route(route_class: str, settings: Settings | None = None) -> WindowLimit:
    settings = settings or get_settings()
    if route_class == ROUTE_CLASS_ADMIN_LOGIN:
        return WindowLimit(settings.rl_admin_login_window_s, settings.rl_admin_login_max)
    if route_class == ROUTE_CLASS_LOGIN:
        return WindowLimit(settings.rl_login_window_s, settings.rl_login_max)
    if route_class == ROUTE_CLASS_ADMIN_API:
        return WindowLimit(settings.rl_admin_api_window_s, settings.rl_admin_api_max)
    return WindowLimit(settings.rl_api_window_s, settings.rl_api_max)


class FixedWindowRateLimiter:
    """Count requests per (route class, client address) in fixed windows.

    The window opens on the first request and closes ``window_s`` later. With
    the redis backend counters are shared across workers through one atomic
    script; otherwise they live in-process behind an asyncio lock.
    """

    def __init__(
        self,
        *,
        backend: str = "memory",
        prefix: str = "skillgate:rl",
        fail_mode: str = "open",
        time_provider: Callable[[], float] | None = None,
        redis_factory: Callable[[], Awaitable[Redis]] | None = None,
        prune_threshold: int = _MEMORY_PRUNE_THRESHOLD,
    ) -> None:
        # Allow injecting time for deterministic tests.
        self._time_provider = time_provider or time.time
        self._backend = backend
        self._prefix = prefix
        self._fail_mode = fail_mode.lower()
        self._redis_factory = redis_factory or get_redis
        self._prune_threshold = prune_threshold
        # (route class, client) -> (window closes at, count)
        self._windows: dict[tuple[str, str], tuple[float, int]] = {}
        self._lock = asyncio.Lock()

    async def hit(self, *, client: str, route_class: str, limit: WindowLimit) -> RateLimitDecision:
        if self._backend == "redis":
            try:
                return await self._hit_redis(client=client, route_class=route_class, limit=limit)
            except (RedisError, OSError) as exc:
                increment_counter("rate_limit.backend_unavailable")
                if self._fail_mode == "closed":
                    raise StoreUnavailable("Rate limiting unavailable") from exc
                logger.warning(
                    "rate_limit_backend_unavailable route_class=%s fail_mode=open",
                    route_class,
                    exc_info=exc,
                )
                return RateLimitDecision(
                    allowed=True,
                    route_class=route_class,
                    count=0,
                    limit=limit.max_requests,
                    retry_after_s=0,
                    degraded=True,
                )
        return await self._hit_memory(client=client, route_class=route_class, limit=limit)

    async def _hit_memory(self, *, client: str, route_class: str, limit: WindowLimit) -> RateLimitDecision:
        now = self._time_provider()
        key = (route_class, client)
        async with self._lock:
            closes_at, count = self._windows.get(key, (now, 0))
            if now >= closes_at:
                closes_at, count = now + limit.window_s, 0
            count += 1
            self._windows[key] = (closes_at, count)
            if len(self._windows) > self._prune_threshold:
                self._prune(now)
        retry_after_s = max(1, int(math.ceil(closes_at - now)))
        return RateLimitDecision(
            allowed=count <= limit.max_requests,
            route_class=route_class,
            count=count,
            limit=limit.max_requests,
            retry_after_s=retry_after_s,
        )

    def _prune(self, now: float) -> None:
        closed = [key for key, (closes_at, _) in self._windows.items() if now >= closes_at]
        for key in closed:
            del self._windows[key]

    def __len__(self) -> int:
        return len(self._windows)

    async def _hit_redis(self, *, client: str, route_class: str, limit: WindowLimit) -> RateLimitDecision:
        redis = await self._redis_factory()
        key = f"{self._prefix}:{route_class}:{client}"
        result = await redis.eval(_FIXED_WINDOW_LUA, 1, key, int(limit.window_s * 1000))
        count = int(result[0])
        ttl_ms = int(result[1])
        return RateLimitDecision(
            allowed=count <= limit.max_requests,
            route_class=route_class,
            count=count,
            limit=limit.max_requests,
            retry_after_s=max(1, int(math.ceil(ttl_ms / 1000.0))),
        )

    async def reset(self) -> None:
        async with self._lock:
            self._windows.clear()


def build_rate_limiter(
    settings: Settings,
    *,
    time_provider: Callable[[], float] | None = None,
) -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(
        backend=settings.rl_backend,
        prefix=settings.rl_redis_prefix,
        fail_mode=settings.rl_fail_mode,
        time_provider=time_provider,
    )


async def enforce_rate_limit(
    limiter: FixedWindowRateLimiter,
    *,
    client: str,
    path: str,
    method: str,
    settings: Settings | None = None,
) -> RateLimitDecision | None:
    # Raise TooManyRequests once the window count passes the route class maximum.
    settings = settings or get_settings()
    if not settings.rate_limit_enabled:
        return None
    route_class = route_class_for_path(path, method)
    if route_class == ROUTE_CLASS_EXEMPT:
        return None
    decision = await limiter.hit(
        client=client,
        route_class=route_class,
        limit=limits_for_route(route_class, settings),
    )
    if not decision.allowed:
        increment_counter(f"rate_limit.rejected.{route_class}")
        logger.warning(
            "rate_limited route_class=%s client=%s count=%s limit=%s",
            route_class,
            client,
            decision.count,
            decision.limit,
        )
        raise TooManyRequests(
            "Rate limit exceeded",
            retry_after_s=decision.retry_after_s,
            route_class=route_class,
        )
    return decision
