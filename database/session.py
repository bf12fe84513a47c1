"""
Async engine and session scopes for the dispatch tables.

Driver mapping:
  postgresql:// / postgres://  → postgresql+asyncpg://   (production)
  sqlite://                    → sqlite+aiosqlite://     (development, tests)

Every statement on PostgreSQL runs with asyncpg's command_timeout, so a
hung query surfaces as an error instead of stalling a run.

Usage:
    engine = create_engine_for(settings.database)
    await init_db(engine)
    async with session_scope(make_session_factory(engine)) as db:
        await db.execute(...)
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None

_ASYNC_DRIVERS = [
    ("postgresql+asyncpg://", "postgresql+asyncpg://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
    ("sqlite+aiosqlite://", "sqlite+aiosqlite://"),
    ("sqlite://", "sqlite+aiosqlite://"),
]


def _to_async_url(db_url: str) -> str:
    """Point a plain database URL at its async driver."""
    for prefix, async_prefix in _ASYNC_DRIVERS:
        if db_url.startswith(prefix):
            return async_prefix + db_url[len(prefix):]
    raise ValueError(f"Unsupported database URL (expected postgresql:// or sqlite://): {db_url.split('@')[-1]}")


def _engine_kwargs(db_url: str, config: DatabaseConfig) -> dict:
    if db_url.startswith("sqlite"):
        return {"echo": config.echo, "connect_args": {"check_same_thread": False}}

    return {
        "echo": config.echo,
        "pool_size": config.pool_size,
        "max_overflow": config.max_overflow,
        "pool_timeout": config.statement_timeout_seconds,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
        "connect_args": {
            "command_timeout": config.statement_timeout_seconds,
            "server_settings": {"application_name": "converse_dispatch"},
        },
    }


def _safe_url(engine: AsyncEngine) -> str:
    url = str(engine.url)
    return url.split("@")[-1] if "@" in url else url


def create_engine_for(config: DatabaseConfig | str) -> AsyncEngine:
    """Engine for a DatabaseConfig, or for a bare URL with default tuning."""
    if isinstance(config, str):
        config = DatabaseConfig(url=config)
    db_url = _to_async_url(config.url)
    engine = create_async_engine(db_url, **_engine_kwargs(db_url, config))
    logger.info("database_engine_created", dialect=engine.dialect.name, url=_safe_url(engine))
    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    """Process-wide engine built from settings on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine_for(get_settings().database)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def session_scope(
    factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """One transaction: commit on success, roll back on any error."""
    factory = factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine = None) -> None:
    """Create any missing tables."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=list(Base.metadata.tables.keys()))


async def close_db() -> None:
    """Dispose the process-wide engine. Call at shutdown."""
    global _engine, _session_factory
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None
        logger.info("database_closed")
