from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from contextrag.core.config import get_settings


settings = get_settings()
_engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
# Configure bounded asyncpg pools for predictable latency under load.
if not settings.database_url.startswith("sqlite"):
    _engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
    _engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
    _engine_kwargs["pool_timeout"] = 30
    _engine_kwargs["pool_recycle"] = 1800
engine = create_async_engine(settings.database_url, **_engine_kwargs)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncSession:
    async with SessionLocal() as session:
        yield session


def dialect_name(session: AsyncSession) -> str:
    return session.get_bind().dialect.name


def dialect_insert(session: AsyncSession, table: Any):
    # ON CONFLICT support differs per dialect; Postgres in production, SQLite in tests.
    if dialect_name(session) == "sqlite":
        return sqlite.insert(table)
    return postgresql.insert(table)


async def use_read_committed(session: AsyncSession) -> None:
    # Concurrent counter writers deadlock under stricter isolation; SQLite has no such level.
    if dialect_name(session) == "postgresql":
        await session.connection(execution_options={"isolation_level": "READ COMMITTED"})
