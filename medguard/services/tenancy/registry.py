from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from medguard.core.config import get_settings
from medguard.core.errors import (
    TenantConflictError,
    TenantError,
    TenantNotFoundError,
    TenantProvisioningError,
)
from medguard.domain.models import Tenant
from medguard.persistence import db, tenant_schema
from medguard.persistence.repos import tenants as tenants_repo


logger = logging.getLogger(__name__)

TENANT_STATUS_PROVISIONING = "provisioning"
TENANT_STATUS_ACTIVE = "active"
TENANT_STATUS_SUSPENDED = "suspended"
TENANT_STATUS_INACTIVE = "inactive"
TENANT_STATUSES = (
    TENANT_STATUS_PROVISIONING,
    TENANT_STATUS_ACTIVE,
    TENANT_STATUS_SUSPENDED,
    TENANT_STATUS_INACTIVE,
)

# Schemas dropped by this process; re-provisioning them is refused unless slug reuse is enabled.
_retired_schemas: set[str] = set()


class TenantRegistry:
    """Tenant rows in the public schema plus the lifecycle of each tenant schema.

    Provisioning and deletion each run in a single Postgres transaction: the
    registry row and the schema DDL commit together or not at all.
    """

    def __init__(
        self,
        *,
        engine: AsyncEngine | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self._engine = engine or db.engine
        self._session_factory = session_factory or db.SessionLocal

    async def get_by_slug(self, slug: str) -> Tenant | None:
        async with self._session_factory() as session:
            return await tenants_repo.get_by_slug(session, slug)

    async def get(self, tenant_id: str) -> Tenant:
        async with self._session_factory() as session:
            tenant = await tenants_repo.get_by_id(session, tenant_id)
        if tenant is None:
            raise TenantNotFoundError()
        return tenant

    async def list_tenants(self, *, status: str | None = None, offset: int = 0, limit: int = 100) -> list[Tenant]:
        async with self._session_factory() as session:
            return await tenants_repo.list_tenants(session, status=status, offset=offset, limit=limit)

    async def create(self, *, name: str, slug: str) -> Tenant:
        schema_name = tenant_schema.schema_name_for(slug)
        if schema_name in _retired_schemas and not get_settings().tenant_allow_slug_reuse:
            raise TenantConflictError("Tenant slug was retired and cannot be reused")

        tenant_id = str(uuid4())
        try:
            async with self._engine.begin() as conn:
                async with AsyncSession(bind=conn) as lookup:
                    conflict = await tenants_repo.find_conflict(
                        lookup, slug=slug, name=name, schema_name=schema_name
                    )
                if conflict is not None:
                    raise TenantConflictError()
                await conn.execute(
                    insert(Tenant).values(
                        id=tenant_id,
                        slug=slug,
                        name=name,
                        schema_name=schema_name,
                        status=TENANT_STATUS_PROVISIONING,
                    )
                )
                await tenant_schema.create_tenant_schema(conn, schema_name)
                await tenant_schema.seed_tenant_schema(conn, schema_name)
                await conn.execute(
                    update(Tenant).where(Tenant.id == tenant_id).values(status=TENANT_STATUS_ACTIVE)
                )
        except TenantError:
            raise
        except IntegrityError as exc:
            raise TenantConflictError() from exc
        except SQLAlchemyError as exc:
            logger.error("tenant_provisioning_failed slug=%s schema=%s", slug, schema_name, exc_info=exc)
            raise TenantProvisioningError() from exc

        _retired_schemas.discard(schema_name)
        logger.info("tenant_provisioned tenant_id=%s slug=%s schema=%s", tenant_id, slug, schema_name)
        return await self.get(tenant_id)

    async def update(self, tenant_id: str, *, name: str | None = None, status: str | None = None) -> Tenant:
        if status is not None and status not in TENANT_STATUSES:
            raise ValueError(f"invalid tenant status: {status}")
        values: dict[str, str] = {}
        if name is not None:
            values["name"] = name
        if status is not None:
            values["status"] = status
        await self.get(tenant_id)
        if values:
            try:
                async with self._session_factory() as session:
                    await session.execute(update(Tenant).where(Tenant.id == tenant_id).values(**values))
                    await session.commit()
            except IntegrityError as exc:
                raise TenantConflictError() from exc
        return await self.get(tenant_id)

    async def delete(self, tenant_id: str) -> Tenant:
        tenant = await self.get(tenant_id)
        try:
            async with self._engine.begin() as conn:
                await tenant_schema.drop_tenant_schema(conn, tenant.schema_name)
                await conn.execute(delete(Tenant).where(Tenant.id == tenant_id))
        except SQLAlchemyError as exc:
            logger.error("tenant_delete_failed tenant_id=%s schema=%s", tenant_id, tenant.schema_name, exc_info=exc)
            raise TenantProvisioningError() from exc
        _retired_schemas.add(tenant.schema_name)
        logger.info("tenant_deleted tenant_id=%s schema=%s", tenant_id, tenant.schema_name)
        return tenant


def retired_schemas() -> frozenset[str]:
    return frozenset(_retired_schemas)


def reset_retired_schemas() -> None:
    _retired_schemas.clear()


_tenant_registry: TenantRegistry | None = None


def get_tenant_registry() -> TenantRegistry:
    global _tenant_registry
    if _tenant_registry is None:
        _tenant_registry = TenantRegistry()
    return _tenant_registry


def set_tenant_registry(registry: TenantRegistry | None) -> None:
    global _tenant_registry
    _tenant_registry = registry
