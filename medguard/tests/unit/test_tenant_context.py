from __future__ import annotations

import asyncio
import dataclasses

import pytest

from medguard.core.errors import TenantContextMissingError
from medguard.services.tenancy import context
from medguard.services.tenancy.context import TenantContext


def _tenant(slug: str) -> TenantContext:
    return TenantContext(tenant_id=f"id-{slug}", tenant_slug=slug, schema_name=f"tenant_{slug}")


def test_unbound_context_is_empty() -> None:
    assert context.current() is None
    assert context.current_tenant_id() is None
    with pytest.raises(TenantContextMissingError):
        context.require_current()


def test_binding_is_released_after_exception() -> None:
    with pytest.raises(RuntimeError):
        with context.bind(_tenant("acme")):
            assert context.require_current().tenant_slug == "acme"
            raise RuntimeError("boom")
    assert context.current() is None


def test_nested_binding_restores_outer() -> None:
    with context.bind(_tenant("outer")):
        with context.bind(_tenant("inner")):
            assert context.current_tenant_id() == "id-inner"
        assert context.current_tenant_id() == "id-outer"


def test_context_is_immutable() -> None:
    tenant = _tenant("acme")
    with pytest.raises(dataclasses.FrozenInstanceError):
        tenant.schema_name = "public"  # type: ignore[misc]


@pytest.mark.asyncio
async def test_concurrent_tasks_see_only_their_own_tenant() -> None:
    async def _request(slug: str) -> list[str | None]:
        seen: list[str | None] = []
        with context.bind(_tenant(slug)):
            for _ in range(5):
                await asyncio.sleep(0)
                seen.append(context.current_tenant_id())
        return seen

    results = await asyncio.gather(*(_request(slug) for slug in ("a", "b", "c")))
    for slug, seen in zip(("a", "b", "c"), results):
        assert seen == [f"id-{slug}"] * 5
    assert context.current() is None
