from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from medguard.core.config import Settings, get_settings


def _engine_options(settings: Settings, *, pool_size: int, max_overflow: int) -> dict[str, Any]:
    # SQLite (tests) runs on its own pool; only server databases get sizing knobs.
    options: dict[str, Any] = {"pool_pre_ping": True}
    if settings.database_url.startswith("sqlite"):
        return options
    options.update(
        pool_size=max(1, int(pool_size)),
        max_overflow=max(0, int(max_overflow)),
        pool_timeout=30,
        pool_recycle=1800,
    )
    timeout_ms = int(settings.api_db_statement_timeout_ms)
    if timeout_ms > 0:
        options["connect_args"] = {"server_settings": {"statement_timeout": str(timeout_ms)}}
    return options


settings = get_settings()
# Each tenant request leases one connection from this pool for its whole lifetime.
engine = create_async_engine(
    settings.database_url,
    **_engine_options(settings, pool_size=settings.api_db_pool_size, max_overflow=settings.api_db_max_overflow),
)
# Unpinned sessions only ever touch the shared public tables.
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

# Audit writes, anomaly counts and incident creation run while a request already holds
# its pinned connection, so they draw from a separate pool that requests never hold.
if settings.database_url.startswith("sqlite"):
    public_engine = engine
else:
    public_engine = create_async_engine(
        settings.database_url,
        **_engine_options(
            settings,
            pool_size=settings.api_db_public_pool_size,
            max_overflow=settings.api_db_public_max_overflow,
        ),
    )
PublicSessionLocal = async_sessionmaker(public_engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session
