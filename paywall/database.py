"""
Database access for the membership read model and the webhook ledgers.

One lazily created async engine per process. Sessions never expire
attributes on commit, so ORM rows stay readable after the transaction
that loaded them has closed.
"""
import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class _Registry:
    engine: Optional[AsyncEngine] = None
    sessions: Optional[async_sessionmaker] = None


def build_engine(settings) -> AsyncEngine:
    """Create the engine described by settings. SQLite URLs get no pool sizing."""
    options = {"echo": settings.app_env == "development", "pool_pre_ping": True}
    if not settings.database_url.startswith("sqlite"):
        options["pool_size"] = settings.database_pool_size
        options["max_overflow"] = settings.database_max_overflow
    return create_async_engine(settings.database_url, **options)


def _sessions() -> async_sessionmaker:
    if _Registry.sessions is None:
        from paywall.config import get_settings

        _Registry.engine = build_engine(get_settings())
        _Registry.sessions = async_sessionmaker(
            _Registry.engine, class_=AsyncSession, expire_on_commit=False
        )
    return _Registry.sessions


def async_session_factory() -> AsyncSession:
    """Open a session outside a request (stores, loggers, the monitor worker)."""
    return _sessions()()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Request-scoped session; committed when the handler returns cleanly."""
    async with _sessions()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        else:
            await session.commit()


async def dispose_engine() -> None:
    """Drop pooled connections on shutdown."""
    engine = _Registry.engine
    _Registry.engine = None
    _Registry.sessions = None
    if engine is not None:
        await engine.dispose()
        logger.info("Database engine disposed")
