"""
Test configuration and fixtures.
Uses a throwaway SQLite file per test (aiosqlite). Mocks all external services.
"""
import hashlib
import hmac
import json
import time
import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from paywall.config import Settings, get_settings
from paywall.database import Base
import paywall.models  # noqa: F401 - registers every table on Base.metadata

WEBHOOK_SECRET = "whsec_test_secret"


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture(autouse=True)
def _isolate_environment():
    """Fresh settings, no alert cooldowns and no Redis for every test."""
    from paywall.utils import alerting

    get_settings.cache_clear()
    alerting._local_cooldowns.clear()
    with patch(
        "paywall.utils.redis_client.get_redis",
        new=AsyncMock(side_effect=ConnectionError("Redis unavailable in tests")),
    ):
        yield
    get_settings.cache_clear()


@pytest.fixture
async def engine(tmp_path):
    # File-backed so every session gets its own connection, as in production
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    """Session for seeding and assertions."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        app_env="test",
        stripe_webhook_secret=WEBHOOK_SECRET,
        webhook_monitor_enabled=False,
    )


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    redis_mock = AsyncMock()
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.get = AsyncMock(return_value=None)
    redis_mock.ping = AsyncMock(return_value=True)
    with patch("paywall.utils.redis_client.get_redis", new=AsyncMock(return_value=redis_mock)):
        yield redis_mock


@pytest.fixture
def sign():
    """Build a Stripe-Signature header for a raw body."""

    def _sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        ts = int(time.time()) if timestamp is None else timestamp
        signed = f"{ts}.".encode() + payload
        digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return f"t={ts},v1={digest}"

    return _sign


@pytest.fixture
def make_event():
    """Build a raw Stripe event body as the provider would send it."""

    def _make_event(event_id: str, event_type: str, obj: dict, livemode: bool = False) -> dict:
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": livemode,
            "data": {"object": obj},
        }

    return _make_event


@pytest.fixture
def encode():
    def _encode(event: dict) -> bytes:
        return json.dumps(event).encode()

    return _encode
