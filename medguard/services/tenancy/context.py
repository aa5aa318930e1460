from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Iterator

from medguard.core.errors import TenantContextMissingError


@dataclass(frozen=True)
class TenantContext:
    # Immutable for the lifetime of one request.
    tenant_id: str
    tenant_slug: str
    schema_name: str


_current_tenant: ContextVar[TenantContext | None] = ContextVar("medguard_tenant", default=None)


def current() -> TenantContext | None:
    # Each asyncio task sees the binding of the request that spawned it.
    return _current_tenant.get()


def require_current() -> TenantContext:
    tenant = _current_tenant.get()
    if tenant is None:
        raise TenantContextMissingError()
    return tenant


def current_tenant_id() -> str | None:
    tenant = _current_tenant.get()
    return tenant.tenant_id if tenant else None


@contextmanager
def bind(tenant: TenantContext) -> Iterator[TenantContext]:
    # Released on every exit path, including exceptions and cancellation.
    token = _current_tenant.set(tenant)
    try:
        yield tenant
    finally:
        _current_tenant.reset(token)
