from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from medguard.domain.models import Tenant


async def get_by_slug(session: AsyncSession, slug: str) -> Tenant | None:
    result = await session.execute(select(Tenant).where(Tenant.slug == slug))
    return result.scalar_one_or_none()


async def get_by_id(session: AsyncSession, tenant_id: str) -> Tenant | None:
    return await session.get(Tenant, tenant_id)


async def list_tenants(
    session: AsyncSession,
    *,
    status: str | None = None,
    offset: int = 0,
    limit: int = 100,
) -> list[Tenant]:
    # Stable ordering keeps admin pagination deterministic.
    stmt = select(Tenant)
    if status:
        stmt = stmt.where(Tenant.status == status)
    stmt = stmt.order_by(Tenant.created_at.asc(), Tenant.id.asc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def find_conflict(session: AsyncSession, *, slug: str, name: str, schema_name: str) -> Tenant | None:
    result = await session.execute(
        select(Tenant).where(
            (Tenant.slug == slug) | (Tenant.name == name) | (Tenant.schema_name == schema_name)
        )
    )
    return result.scalars().first()
