from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from skillgate.core.config import get_settings


def build_engine_kwargs(database_url: str) -> dict[str, Any]:
    settings = get_settings()
    if database_url.startswith("sqlite"):
        # In-memory sqlite must share one connection across sessions.
        if ":memory:" in database_url:
            return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        return {}
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded asyncpg pools for predictable latency under load.
    engine_kwargs["pool_size"] = max(1, int(settings.api_db_pool_size))
    engine_kwargs["max_overflow"] = max(0, int(settings.api_db_max_overflow))
    engine_kwargs["pool_timeout"] = 30
    engine_kwargs["pool_recycle"] = 1800
    if settings.api_db_statement_timeout_ms > 0:
        engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.api_db_statement_timeout_ms))}
        }
    return engine_kwargs


settings = get_settings()
engine = create_async_engine(settings.database_url, **build_engine_kwargs(settings.database_url))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


def pool_stats(bind: AsyncEngine | None = None) -> dict[str, int | None]:
    # Expose DB pool counters for ops visibility on the system stats route.
    pool = (bind or engine).sync_engine.pool
    checked_out_fn = getattr(pool, "checkedout", None)
    checked_in_fn = getattr(pool, "checkedin", None)
    overflow_fn = getattr(pool, "overflow", None)
    size_fn = getattr(pool, "size", None)
    return {
        "size": int(size_fn()) if callable(size_fn) else None,
        "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
        "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
        "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
    }
