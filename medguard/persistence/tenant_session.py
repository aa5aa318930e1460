from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
import logging
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession

from medguard.core.errors import TenantContextMissingError, TenantProvisioningError
from medguard.persistence import db
from medguard.persistence.tenant_schema import search_path_for


logger = logging.getLogger(__name__)

_current_session: ContextVar[AsyncSession | None] = ContextVar("medguard_tenant_session", default=None)


def bound_session() -> AsyncSession | None:
    return _current_session.get()


def current_tenant_session() -> AsyncSession:
    # Tenant-scoped code reads the pinned session of the surrounding request.
    session = _current_session.get()
    if session is None:
        raise TenantContextMissingError("No tenant database session is bound")
    return session


async def _reset_search_path(conn: AsyncConnection, schema_name: str) -> None:
    # A connection that cannot be reset must never return to the pool still pinned.
    try:
        await conn.rollback()
        await conn.execute(text("RESET search_path"))
        await conn.commit()
    except SQLAlchemyError as exc:
        logger.warning("tenant_search_path_reset_failed schema=%s", schema_name, exc_info=exc)
        await conn.invalidate()
    except BaseException:
        # Cancelled mid-reset: the connection may still carry the tenant search_path.
        logger.warning("tenant_search_path_reset_interrupted schema=%s", schema_name)
        await conn.invalidate()
        raise


@asynccontextmanager
async def pinned_session(schema_name: str, *, bind: AsyncEngine | None = None) -> AsyncIterator[AsyncSession]:
    """Lease one connection, pin its search_path to the tenant schema, and release it reset.

    Every statement of the yielded session runs on that single connection, so no
    query of the request can land on a connection pinned to another tenant.
    """
    target = bind or db.engine
    async with target.connect() as conn:
        try:
            await conn.execute(
                text("SELECT set_config('search_path', :path, false)"),
                {"path": search_path_for(schema_name)},
            )
            await conn.commit()
        except SQLAlchemyError as exc:
            logger.error("tenant_schema_switch_failed schema=%s", schema_name, exc_info=exc)
            await conn.invalidate()
            raise TenantProvisioningError() from exc

        session = AsyncSession(bind=conn, expire_on_commit=False)
        token = _current_session.set(session)
        try:
            yield session
        finally:
            _current_session.reset(token)
            await session.close()
            await _reset_search_path(conn, schema_name)
