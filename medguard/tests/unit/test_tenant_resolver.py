from __future__ import annotations

from types import SimpleNamespace

import pytest

from medguard.core.errors import TenantNotIdentifiedError, TenantUnavailableError
from medguard.services.tenancy.resolver import extract_tenant_slug, resolve_tenant


class _FakeRegistry:
    def __init__(self, tenants: dict[str, SimpleNamespace]) -> None:
        self._tenants = tenants
        self.lookups: list[str] = []

    async def get_by_slug(self, slug: str):
        self.lookups.append(slug)
        return self._tenants.get(slug)


def _tenant(slug: str, status: str = "active") -> SimpleNamespace:
    return SimpleNamespace(id=f"id-{slug}", slug=slug, schema_name=f"tenant_{slug}", status=status)


def test_header_takes_precedence_over_host() -> None:
    headers = {"X-Tenant-ID": "acme", "host": "other.example.com"}
    assert extract_tenant_slug(headers) == "acme"


def test_host_subdomain_is_used_without_header() -> None:
    assert extract_tenant_slug({"host": "acme.medguard.io"}) == "acme"
    assert extract_tenant_slug({"host": "acme.medguard.io:8443"}) == "acme"


@pytest.mark.parametrize("host", ["localhost", "localhost:8000", "api.medguard.io", "127.0.0.1:8000", "[::1]:8000", ""])
def test_excluded_hosts_do_not_name_a_tenant(host: str) -> None:
    assert extract_tenant_slug({"host": host}) is None


def test_blank_header_falls_back_to_host() -> None:
    assert extract_tenant_slug({"X-Tenant-ID": "  ", "host": "acme.medguard.io"}) == "acme"


@pytest.mark.asyncio
async def test_missing_slug_is_not_identified() -> None:
    with pytest.raises(TenantNotIdentifiedError) as excinfo:
        await resolve_tenant(None, registry=_FakeRegistry({}))
    assert excinfo.value.status_code == 400


@pytest.mark.asyncio
async def test_active_tenant_resolves_to_context() -> None:
    tenant = await resolve_tenant("acme", registry=_FakeRegistry({"acme": _tenant("acme")}))
    assert tenant.tenant_id == "id-acme"
    assert tenant.schema_name == "tenant_acme"


@pytest.mark.parametrize(
    "slug,tenants",
    [
        ("unknown", {}),
        ("paused", {"paused": _tenant("paused", status="suspended")}),
        ("half", {"half": _tenant("half", status="provisioning")}),
    ],
)
@pytest.mark.asyncio
async def test_unknown_and_inactive_tenants_share_one_error(slug: str, tenants: dict) -> None:
    with pytest.raises(TenantUnavailableError) as excinfo:
        await resolve_tenant(slug, registry=_FakeRegistry(tenants))
    assert excinfo.value.message == "Invalid or inactive tenant"


@pytest.mark.asyncio
async def test_malformed_slug_never_reaches_the_registry() -> None:
    registry = _FakeRegistry({})
    with pytest.raises(TenantUnavailableError):
        await resolve_tenant("Robert'); DROP TABLE tenants;--", registry=registry)
    assert registry.lookups == []
