from __future__ import annotations

from contextlib import asynccontextmanager
import ipaddress
from typing import AsyncIterator, Mapping

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from medguard.core.config import excluded_subdomains, get_settings
from medguard.core.errors import TenantNotIdentifiedError, TenantUnavailableError
from medguard.persistence.tenant_schema import is_valid_slug
from medguard.persistence.tenant_session import pinned_session
from medguard.services.tenancy import context
from medguard.services.tenancy.context import TenantContext
from medguard.services.tenancy.registry import TENANT_STATUS_ACTIVE, TenantRegistry, get_tenant_registry


def _host_label(host: str | None) -> str | None:
    if not host:
        return None
    host = host.strip().lower()
    if host.startswith("["):
        return None
    hostname = host.rsplit(":", 1)[0] if host.count(":") == 1 else host
    try:
        ipaddress.ip_address(hostname)
    except ValueError:
        pass
    else:
        return None
    label = hostname.split(".", 1)[0]
    return label or None


def extract_tenant_slug(headers: Mapping[str, str]) -> str | None:
    # Explicit header wins over the Host subdomain.
    settings = get_settings()
    header_value = headers.get(settings.tenant_header)
    if header_value and header_value.strip():
        return header_value.strip()
    label = _host_label(headers.get("host"))
    if label is None or label in excluded_subdomains(settings):
        return None
    return label


async def resolve_tenant(slug: str | None, *, registry: TenantRegistry | None = None) -> TenantContext:
    if not slug:
        raise TenantNotIdentifiedError()
    # Malformed, unknown and inactive slugs share one response so slugs cannot be enumerated.
    if not is_valid_slug(slug):
        raise TenantUnavailableError()
    tenant = await (registry or get_tenant_registry()).get_by_slug(slug)
    if tenant is None or tenant.status != TENANT_STATUS_ACTIVE:
        raise TenantUnavailableError()
    return TenantContext(tenant_id=tenant.id, tenant_slug=tenant.slug, schema_name=tenant.schema_name)


@asynccontextmanager
async def tenant_scope(tenant: TenantContext, *, bind: AsyncEngine | None = None) -> AsyncIterator[AsyncSession]:
    """Bind the tenant context and a schema-pinned session for the enclosed work."""
    with context.bind(tenant):
        async with pinned_session(tenant.schema_name, bind=bind) as session:
            yield session
