from __future__ import annotations

from contextlib import asynccontextmanager
from types import SimpleNamespace

from fastapi import FastAPI, Response
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError

from medguard.apps.api import security
from medguard.apps.api.headers import SECURITY_HEADERS, security_headers_middleware
from medguard.apps.api.security import find_suspicious_patterns, security_pipeline_middleware
from medguard.core.config import get_settings
from medguard.core.errors import TenantProvisioningError
from medguard.services.audit import set_audit_trail
from medguard.services.rate_limiting import reset_rate_limiter_state
from medguard.services.tenancy import context
from medguard.services.tenancy.context import current_tenant_id
from medguard.services.tenancy.registry import set_tenant_registry
from medguard.tests.utils.audit import make_trail


class _FakeRegistry:
    def __init__(self) -> None:
        self._tenants = {
            "acme": SimpleNamespace(id="id-acme", slug="acme", schema_name="tenant_acme", status="active"),
            "dormant": SimpleNamespace(id="id-dormant", slug="dormant", schema_name="tenant_dormant", status="suspended"),
        }

    async def get_by_slug(self, slug: str):
        return self._tenants.get(slug)


@asynccontextmanager
async def _scope_without_database(tenant, *, bind=None):
    # Bind the tenant context only; these tests never touch a tenant schema.
    with context.bind(tenant):
        yield None


def _build_app() -> FastAPI:
    app = FastAPI()

    @app.get("/v1/health")
    async def health() -> dict:
        return {"status": "ok", "tenant": current_tenant_id()}

    @app.get("/v1/admin/ping")
    async def admin_ping() -> dict:
        return {"ok": True}

    @app.get("/v1/whoami")
    async def whoami(response: Response) -> dict:
        response.headers["X-Powered-By"] = "framework"
        return {"tenant": current_tenant_id()}

    @app.post("/v1/notes")
    async def notes() -> dict:
        return {"stored": True}

    @app.get("/v1/medical-records")
    async def records() -> dict:
        return {"items": []}

    @app.get("/v1/health/boom")
    async def health_boom() -> dict:
        raise RuntimeError("disk on fire")

    @app.get("/v1/explode")
    async def explode() -> dict:
        raise RuntimeError("handler bug")

    app.middleware("http")(security_pipeline_middleware)
    app.middleware("http")(security_headers_middleware)
    return app


@pytest.fixture
def store(monkeypatch):
    monkeypatch.setattr(security, "tenant_scope", _scope_without_database)
    set_tenant_registry(_FakeRegistry())
    trail, audit_store = make_trail(buffer_size=1)
    set_audit_trail(trail)
    return audit_store


def _client(app: FastAPI) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://localhost")


@pytest.mark.asyncio
async def test_exempt_path_skips_tenant_binding_and_sets_headers(store) -> None:
    async with _client(_build_app()) as client:
        response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "tenant": None}
    for key, value in SECURITY_HEADERS.items():
        assert response.headers[key] == value
    assert response.headers["X-Correlation-ID"]
    assert "X-RateLimit-Limit" in response.headers


@pytest.mark.asyncio
async def test_tenant_header_binds_context_and_strips_framework_headers(store) -> None:
    async with _client(_build_app()) as client:
        response = await client.get("/v1/whoami", headers={"X-Tenant-ID": "acme"})
    assert response.status_code == 200
    assert response.json() == {"tenant": "id-acme"}
    assert "x-powered-by" not in response.headers


@pytest.mark.asyncio
async def test_subdomain_identifies_tenant(store) -> None:
    async with AsyncClient(transport=ASGITransport(app=_build_app()), base_url="http://acme.medguard.io") as client:
        response = await client.get("/v1/whoami")
    assert response.json() == {"tenant": "id-acme"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("headers", "code"),
    [
        ({}, "TENANT_NOT_IDENTIFIED"),
        ({"X-Tenant-ID": "ghost"}, "TENANT_UNAVAILABLE"),
        ({"X-Tenant-ID": "dormant"}, "TENANT_UNAVAILABLE"),
        ({"X-Tenant-ID": "Bad Slug!"}, "TENANT_UNAVAILABLE"),
    ],
)
async def test_unresolvable_tenants_get_error_envelope(store, headers, code) -> None:
    async with _client(_build_app()) as client:
        response = await client.get("/v1/whoami", headers=headers)
    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == code
    assert body["meta"]["request_id"] == response.headers["X-Correlation-ID"]
    assert response.headers["X-Frame-Options"] == "DENY"


@pytest.mark.asyncio
async def test_correlation_id_is_echoed_only_when_well_formed(store) -> None:
    async with _client(_build_app()) as client:
        echoed = await client.get("/v1/health", headers={"X-Correlation-ID": "req-123.abc"})
        replaced = await client.get("/v1/health", headers={"X-Correlation-ID": "bad id <x>"})
    assert echoed.headers["X-Correlation-ID"] == "req-123.abc"
    assert replaced.headers["X-Correlation-ID"] != "bad id <x>"


@pytest.mark.asyncio
async def test_suspicious_requests_are_audited_not_blocked(store) -> None:
    async with _client(_build_app()) as client:
        query = await client.get(
            "/v1/whoami", params={"q": "1 UNION ALL SELECT password"}, headers={"X-Tenant-ID": "acme"}
        )
        body = await client.post(
            "/v1/notes", json={"note": "<script>alert(1)</script>"}, headers={"X-Tenant-ID": "acme"}
        )
    assert query.status_code == 200
    assert body.status_code == 200
    violations = [entry for entry in store.entries if entry.action == "SECURITY_VIOLATION"]
    assert [entry.metadata_json["patterns"] for entry in violations] == [["sql_injection"], ["script_injection"]]
    assert all(entry.tenant_id == "id-acme" for entry in violations)


def test_find_suspicious_patterns_names_each_match() -> None:
    assert find_suspicious_patterns("/files/../../etc/passwd") == ["path_traversal"]
    assert find_suspicious_patterns("x", "eval(payload)", "base64_decode(y)") == ["encoded_payload", "code_evaluation"]
    assert find_suspicious_patterns("/v1/patients", "name=union station") == []


@pytest.mark.asyncio
async def test_phi_paths_are_audited_for_authenticated_callers(store) -> None:
    async with _client(_build_app()) as client:
        await client.get(
            "/v1/medical-records",
            params={"patient_id": "p-77"},
            headers={"X-Tenant-ID": "acme", "X-User-Id": "dr-1", "X-User-Role": "physician"},
        )
        await client.get("/v1/medical-records", headers={"X-Tenant-ID": "acme"})
    phi = [entry for entry in store.entries if entry.action == "PHI_ACCESS"]
    assert len(phi) == 1
    assert phi[0].user_id == "dr-1"
    assert phi[0].user_role == "physician"
    assert phi[0].patient_id_hash and phi[0].patient_id_hash != "p-77"


@pytest.mark.asyncio
async def test_endpoint_profile_throttles_with_envelope(store) -> None:
    async with _client(_build_app()) as client:
        responses = [await client.get("/v1/admin/ping") for _ in range(11)]
    assert [item.status_code for item in responses[:10]] == [200] * 10
    throttled = responses[10]
    assert throttled.status_code == 429
    body = throttled.json()
    assert body["error"]["code"] == "RATE_LIMITED"
    assert body["error"]["details"]["profile"] == "ADMIN"
    assert "retryAfter" in body["error"]["details"]
    assert int(throttled.headers["Retry-After"]) >= 1
    assert throttled.headers["X-RateLimit-Remaining"] == "0"
    assert throttled.headers["Cache-Control"].startswith("no-store")
    assert any(entry.action == "RATE_LIMIT_EXCEEDED" for entry in store.entries)


@pytest.mark.asyncio
async def test_ip_ceiling_applies_before_tenant_resolution(store, monkeypatch) -> None:
    monkeypatch.setenv("RL_IP_MAX_REQUESTS", "2")
    get_settings.cache_clear()
    reset_rate_limiter_state()
    async with _client(_build_app()) as client:
        first = await client.get("/v1/whoami", headers={"X-Tenant-ID": "acme"})
        second = await client.get("/v1/whoami")
        third = await client.get("/v1/whoami", headers={"X-Tenant-ID": "acme"})
    assert first.status_code == 200
    assert second.status_code == 400
    assert third.status_code == 429
    assert third.json()["error"]["message"] == "Too many requests from this IP address"
    assert third.json()["error"]["details"]["profile"] == "IP"


@pytest.mark.asyncio
async def test_rate_limiting_can_be_disabled(store, monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "false")
    get_settings.cache_clear()
    async with _client(_build_app()) as client:
        responses = [await client.get("/v1/admin/ping") for _ in range(12)]
    assert {item.status_code for item in responses} == {200}
    assert "X-RateLimit-Limit" not in responses[-1].headers


class _BrokenRegistry:
    async def get_by_slug(self, slug: str):
        raise OperationalError("SELECT tenants", {}, Exception("connection refused"))


@asynccontextmanager
async def _scope_with_failed_switch(tenant, *, bind=None):
    raise TenantProvisioningError()
    yield None


def _assert_hardened(response) -> None:
    for key, value in SECURITY_HEADERS.items():
        assert response.headers[key] == value
    assert response.headers["X-Correlation-ID"]
    assert "X-RateLimit-Limit" in response.headers
    assert "X-RateLimit-Remaining" in response.headers


@pytest.mark.asyncio
@pytest.mark.parametrize(("path", "headers"), [("/v1/health/boom", {}), ("/v1/explode", {"X-Tenant-ID": "acme"})])
async def test_unhandled_errors_keep_security_headers(store, path, headers) -> None:
    async with _client(_build_app()) as client:
        response = await client.get(path, headers={**headers, "X-Correlation-ID": "boom-1"})
    assert response.status_code == 500
    body = response.json()
    assert body["error"] == {"code": "INTERNAL_ERROR", "message": "Internal server error"}
    assert body["meta"]["request_id"] == "boom-1"
    assert "disk on fire" not in response.text and "handler bug" not in response.text
    _assert_hardened(response)
    assert response.headers["X-Correlation-ID"] == "boom-1"


@pytest.mark.asyncio
async def test_tenant_lookup_failure_keeps_rate_limit_headers(store) -> None:
    set_tenant_registry(_BrokenRegistry())
    async with _client(_build_app()) as client:
        response = await client.get("/v1/whoami", headers={"X-Tenant-ID": "acme"})
    assert response.status_code == 500
    assert response.json()["error"]["code"] == "TENANT_PROVISIONING_FAILED"
    _assert_hardened(response)


@pytest.mark.asyncio
async def test_schema_switch_failure_keeps_rate_limit_headers(store, monkeypatch) -> None:
    monkeypatch.setattr(security, "tenant_scope", _scope_with_failed_switch)
    async with _client(_build_app()) as client:
        response = await client.get("/v1/whoami", headers={"X-Tenant-ID": "acme"})
    assert response.status_code == 500
    assert response.json()["error"]["code"] == "TENANT_PROVISIONING_FAILED"
    _assert_hardened(response)
