from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from medguard.apps.api.deps import get_db
from medguard.core.errors import TenantContextMissingError, TenantProvisioningError
from medguard.persistence import tenant_session
from medguard.persistence.tenant_session import current_tenant_session, pinned_session


class _FakeConnection:
    def __init__(self, *, fail_on: str | None = None, error: BaseException | None = None) -> None:
        self.statements: list[tuple[str, dict | None]] = []
        self.commits = 0
        self.rollbacks = 0
        self.invalidated = False
        self._fail_on = fail_on
        self._error = error

    async def execute(self, statement, params=None):
        sql = str(statement)
        self.statements.append((sql, params))
        if self._fail_on and self._fail_on in sql:
            raise self._error or OperationalError(sql, params, Exception("connection reset"))

    async def commit(self) -> None:
        self.commits += 1

    async def rollback(self) -> None:
        self.rollbacks += 1

    async def invalidate(self) -> None:
        self.invalidated = True


class _FakeConnect:
    def __init__(self, conn: _FakeConnection) -> None:
        self._conn = conn

    async def __aenter__(self) -> _FakeConnection:
        return self._conn

    async def __aexit__(self, *exc) -> None:
        return None


class _FakeEngine:
    def __init__(self, conn: _FakeConnection) -> None:
        self.conn = conn

    def connect(self) -> _FakeConnect:
        return _FakeConnect(self.conn)


class _FakeSession:
    def __init__(self, *, bind, expire_on_commit: bool) -> None:
        self.bind = bind
        self.closed = False

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def fake_session_class(monkeypatch) -> None:
    monkeypatch.setattr(tenant_session, "AsyncSession", _FakeSession)


@pytest.mark.asyncio
async def test_search_path_is_pinned_and_reset() -> None:
    conn = _FakeConnection()
    async with pinned_session("tenant_acme", bind=_FakeEngine(conn)) as session:
        assert current_tenant_session() is session
        assert session.bind is conn

    sql, params = conn.statements[0]
    assert "set_config('search_path'" in sql
    assert params == {"path": '"tenant_acme", public'}
    assert conn.statements[-1][0] == "RESET search_path"
    assert session.closed
    assert not conn.invalidated
    with pytest.raises(TenantContextMissingError):
        current_tenant_session()


@pytest.mark.asyncio
async def test_search_path_is_reset_when_handler_raises() -> None:
    conn = _FakeConnection()
    with pytest.raises(RuntimeError):
        async with pinned_session("tenant_acme", bind=_FakeEngine(conn)):
            raise RuntimeError("handler failed")
    assert conn.statements[-1][0] == "RESET search_path"
    assert conn.rollbacks == 1


@pytest.mark.asyncio
async def test_failed_schema_switch_is_a_provisioning_error() -> None:
    conn = _FakeConnection(fail_on="set_config")
    with pytest.raises(TenantProvisioningError):
        async with pinned_session("tenant_acme", bind=_FakeEngine(conn)):
            pytest.fail("body must not run without a pinned search_path")
    assert conn.invalidated


@pytest.mark.asyncio
async def test_failed_reset_invalidates_connection() -> None:
    conn = _FakeConnection(fail_on="RESET")
    async with pinned_session("tenant_acme", bind=_FakeEngine(conn)):
        pass
    assert conn.invalidated


@pytest.mark.asyncio
async def test_malformed_schema_name_is_rejected_before_sql() -> None:
    conn = _FakeConnection()
    with pytest.raises(ValueError):
        async with pinned_session('tenant_x"; DROP SCHEMA public; --', bind=_FakeEngine(conn)):
            pass
    assert conn.statements == []


@pytest.mark.asyncio
async def test_cancelled_reset_invalidates_connection() -> None:
    conn = _FakeConnection(fail_on="RESET", error=asyncio.CancelledError())
    with pytest.raises(asyncio.CancelledError):
        async with pinned_session("tenant_acme", bind=_FakeEngine(conn)):
            pass
    assert conn.invalidated


@pytest.mark.asyncio
async def test_shared_table_dependency_reuses_pinned_session(monkeypatch) -> None:
    def _no_second_checkout():
        pytest.fail("a pinned request must not lease a second pooled connection")

    monkeypatch.setattr("medguard.apps.api.deps.get_session", _no_second_checkout)
    conn = _FakeConnection()
    async with pinned_session("tenant_acme", bind=_FakeEngine(conn)) as session:
        dependency = get_db()
        assert await dependency.__anext__() is session
        await dependency.aclose()
    assert session.closed
