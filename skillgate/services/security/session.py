from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from skillgate.core.errors import SessionExpired, StoreUnavailable
from skillgate.domain.identity import SESSION_TIMEOUT_ROLES
from skillgate.services.auth.tokens import TokenClaims
from skillgate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_TERMINATED = -1.0
# Prune expired entries once the in-process maps grow past this size.
_MEMORY_PRUNE_THRESHOLD = 10000


class SessionActivityStore(Protocol):
    async def last_activity(self, session_id: str) -> float | None:
        ...

    async def touch(self, session_id: str, now: float) -> None:
        ...

    async def terminate(self, session_id: str, now: float) -> None:
        ...

    async def is_terminated(self, session_id: str) -> bool:
        ...


class MemorySessionStore:
    def __init__(self, *, retention_s: float, prune_threshold: int = _MEMORY_PRUNE_THRESHOLD) -> None:
        self._retention_s = retention_s
        self._prune_threshold = prune_threshold
        self._activity: dict[str, float] = {}
        # session id -> time of termination
        self._terminated: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._activity) + len(self._terminated)

    def _prune(self, now: float) -> None:
        if len(self) <= self._prune_threshold:
            return
        # Tombstones live for the retention window, matching the Redis key TTL.
        cutoff = now - self._retention_s
        for entries in (self._activity, self._terminated):
            stale = [key for key, value in entries.items() if value < cutoff]
            for key in stale:
                del entries[key]

    async def last_activity(self, session_id: str) -> float | None:
        async with self._lock:
            if session_id in self._terminated:
                return None
            return self._activity.get(session_id)

    async def touch(self, session_id: str, now: float) -> None:
        async with self._lock:
            if session_id in self._terminated:
                return
            self._activity[session_id] = now
            self._prune(now)

    async def terminate(self, session_id: str, now: float) -> None:
        async with self._lock:
            self._activity.pop(session_id, None)
            self._terminated[session_id] = now
            self._prune(now)

    async def is_terminated(self, session_id: str) -> bool:
        async with self._lock:
            return session_id in self._terminated


class RedisSessionStore:
    def __init__(self, redis: Redis, *, prefix: str, retention_s: int) -> None:
        self._redis = redis
        self._prefix = prefix
        self._retention_s = max(1, int(retention_s))

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}:{session_id}"

    async def last_activity(self, session_id: str) -> float | None:
        raw = await self._redis.get(self._key(session_id))
        if raw is None:
            return None
        value = float(raw)
        return None if value == _TERMINATED else value

    async def touch(self, session_id: str, now: float) -> None:
        key = self._key(session_id)
        # Tombstoned sessions stay terminated until the key expires.
        current = await self._redis.get(key)
        if current is not None and float(current) == _TERMINATED:
            return
        await self._redis.set(key, str(now), ex=self._retention_s)

    async def terminate(self, session_id: str, now: float) -> None:
        await self._redis.set(self._key(session_id), str(_TERMINATED), ex=self._retention_s)

    async def is_terminated(self, session_id: str) -> bool:
        raw = await self._redis.get(self._key(session_id))
        return raw is not None and float(raw) == _TERMINATED


class SessionTimeoutPolicy:
    """Idle timeout for super_admin and company_admin sessions.

    Last activity defaults to the token's issue time. An idle session is
    terminated, and tokens sharing its session id stay rejected afterwards.
    A store that cannot be reached fails closed with StoreUnavailable.
    """

    def __init__(
        self,
        store: SessionActivityStore,
        *,
        timeout_minutes: int,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._timeout_s = timeout_minutes * 60
        self._clock = clock or time.time

    @property
    def timeout_s(self) -> int:
        return self._timeout_s

    @staticmethod
    def applies_to(claims: TokenClaims) -> bool:
        return claims.role in SESSION_TIMEOUT_ROLES

    async def check(self, claims: TokenClaims) -> None:
        if not self.applies_to(claims):
            return
        try:
            await self._check(claims)
        except (RedisError, OSError) as exc:
            increment_counter("security.session_store_unavailable")
            logger.error(
                "session_store_unavailable subject_id=%s role=%s",
                claims.subject_id,
                claims.role.value,
                exc_info=exc,
            )
            raise StoreUnavailable("Session store unavailable") from exc

    async def _check(self, claims: TokenClaims) -> None:
        now = self._clock()
        session_id = claims.session_id
        if await self._store.is_terminated(session_id):
            raise SessionExpired("Session expired")
        last_activity = await self._store.last_activity(session_id)
        if last_activity is None:
            last_activity = float(claims.issued_at)
        if now - last_activity > self._timeout_s:
            await self._store.terminate(session_id, now)
            increment_counter("security.session_expired")
            logger.info(
                "session_expired subject_id=%s role=%s idle_s=%d",
                claims.subject_id,
                claims.role.value,
                int(now - last_activity),
            )
            raise SessionExpired("Session expired")
        await self._store.touch(session_id, now)
