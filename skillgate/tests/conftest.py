from __future__ import annotations

import os

# Pin the environment before any skillgate module builds settings or engines.
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["AUTH_JWT_SECRET"] = "test-signing-secret-0123456789abcdef0123456789"
os.environ["RL_BACKEND"] = "memory"
os.environ["SESSION_BACKEND"] = "memory"
os.environ["PASSWORD_BCRYPT_ROUNDS"] = "4"
os.environ["RL_LOGIN_MAX"] = "50"
os.environ["RL_ADMIN_LOGIN_MAX"] = "50"
os.environ["RL_API_MAX"] = "500"
os.environ["RL_ADMIN_API_MAX"] = "500"
os.environ["CORS_ALLOWED_ORIGINS"] = "https://app.acme.com"
os.environ["ADMIN_ALLOWED_IPS"] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from skillgate.apps.api import main as api_main
from skillgate.core.config import Settings, get_settings
from skillgate.domain.models import Base
from skillgate.persistence.db import build_engine_kwargs
from skillgate.services.telemetry import reset_telemetry
from skillgate.tests.utils.clock import FakeClock


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Counters and cached settings are process-wide; isolate them per test.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def session_factory():
    # A fresh in-memory database per test keeps rows and connections on one event loop.
    database_url = "sqlite+aiosqlite:///:memory:"
    engine = create_async_engine(database_url, **build_engine_kwargs(database_url))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def alerts() -> list[tuple[str, dict]]:
    return []


@pytest.fixture
def app(settings, session_factory, clock, alerts):
    return api_main.create_app(
        settings=settings,
        session_factory=session_factory,
        clock=clock,
        alert_sink=lambda event, context: alerts.append((event, context)),
    )


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
