from __future__ import annotations

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from skillgate.core.errors import SessionExpired, StoreUnavailable
from skillgate.domain.identity import Role
from skillgate.services.auth.tokens import TokenCodec
from skillgate.services.security.session import MemorySessionStore, SessionTimeoutPolicy
from skillgate.services.telemetry import counter_value
from skillgate.tests.utils.clock import FakeClock


SECRET = "unit-test-secret-0123456789abcdef0123456789"


def _setup(clock: FakeClock) -> tuple[TokenCodec, SessionTimeoutPolicy]:
    codec = TokenCodec(SECRET, privileged_ttl_s=4 * 3600, clock=clock)
    policy = SessionTimeoutPolicy(MemorySessionStore(retention_s=3600), timeout_minutes=30, clock=clock)
    return codec, policy


async def test_activity_slides_the_idle_window() -> None:
    clock = FakeClock()
    codec, policy = _setup(clock)
    claims = codec.decode_claims(codec.issue("s1", Role.SUPER_ADMIN, None, approved=True))

    for _ in range(4):
        clock.advance(25 * 60)
        await policy.check(claims)


async def test_idle_session_is_terminated() -> None:
    clock = FakeClock()
    codec, policy = _setup(clock)
    token = codec.issue("s1", Role.COMPANY_ADMIN, "acme", approved=True)
    claims = codec.decode_claims(token)

    await policy.check(claims)
    clock.advance(31 * 60)
    with pytest.raises(SessionExpired):
        await policy.check(claims)
    assert counter_value("security.session_expired") == 1

    # A rotated token shares the session id and stays rejected.
    rotated = codec.decode_claims(codec.rotate(token))
    with pytest.raises(SessionExpired):
        await policy.check(rotated)


async def test_last_activity_defaults_to_issue_time() -> None:
    clock = FakeClock()
    codec, policy = _setup(clock)
    claims = codec.decode_claims(codec.issue("s1", Role.SUPER_ADMIN, None, approved=True))
    clock.advance(31 * 60)
    with pytest.raises(SessionExpired):
        await policy.check(claims)


async def test_other_roles_are_not_timed_out() -> None:
    clock = FakeClock()
    codec, policy = _setup(clock)
    for role, tenant_id in ((Role.USER, None), (Role.HR_MANAGER, "acme"), (Role.SYS_ADMIN, None)):
        claims = codec.decode_claims(codec.issue("s1", role, tenant_id, approved=True))
        clock.advance(3 * 3600)
        await policy.check(claims)


class _UnreachableStore:
    async def last_activity(self, session_id: str) -> float | None:
        raise RedisConnectionError("connection refused")

    async def touch(self, session_id: str, now: float) -> None:
        raise RedisConnectionError("connection refused")

    async def terminate(self, session_id: str, now: float) -> None:
        raise RedisConnectionError("connection refused")

    async def is_terminated(self, session_id: str) -> bool:
        raise RedisConnectionError("connection refused")


async def test_unreachable_store_fails_closed(caplog) -> None:
    clock = FakeClock()
    codec = TokenCodec(SECRET, privileged_ttl_s=4 * 3600, clock=clock)
    policy = SessionTimeoutPolicy(_UnreachableStore(), timeout_minutes=30, clock=clock)
    claims = codec.decode_claims(codec.issue("s1", Role.SUPER_ADMIN, None, approved=True))

    with caplog.at_level("ERROR", logger="skillgate.services.security.session"):
        with pytest.raises(StoreUnavailable):
            await policy.check(claims)
    assert counter_value("security.session_store_unavailable") == 1
    assert any("session_store_unavailable" in record.getMessage() for record in caplog.records)

    # Roles outside the timeout never touch the store.
    user_claims = codec.decode_claims(codec.issue("s2", Role.USER, None, approved=True))
    await policy.check(user_claims)


async def test_memory_store_prunes_expired_activity_and_tombstones() -> None:
    store = MemorySessionStore(retention_s=60, prune_threshold=2)
    await store.touch("idle", 0.0)
    await store.terminate("dead", 10.0)
    assert len(store) == 2

    # Within retention nothing is dropped even past the threshold.
    await store.touch("fresh", 30.0)
    assert len(store) == 3
    assert await store.is_terminated("dead")

    await store.touch("later", 200.0)
    assert len(store) == 1
    assert await store.last_activity("idle") is None
    assert not await store.is_terminated("dead")
    assert await store.last_activity("later") == 200.0


async def test_memory_store_keeps_tombstones_inside_retention() -> None:
    store = MemorySessionStore(retention_s=3600, prune_threshold=1)
    await store.terminate("dead", 0.0)
    await store.touch("dead", 10.0)
    await store.touch("other", 20.0)
    assert await store.is_terminated("dead")
    assert await store.last_activity("dead") is None
