from __future__ import annotations

from typing import AsyncGenerator, Awaitable, Callable

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from medguard.core.config import get_settings
from medguard.core.errors import DeviceAuthenticationError
from medguard.persistence.db import get_session
from medguard.persistence.tenant_session import bound_session, current_tenant_session
from medguard.services.access_control import get_access_control
from medguard.services.audit import client_ip, get_request_context
from medguard.services.devices import DeviceSession, get_device_auth_service
from medguard.services.tenancy import context
from medguard.services.tenancy.context import TenantContext

DEVICE_ID_HEADER = "X-Device-Id"
DEVICE_TOKEN_HEADER = "X-Device-Token"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # Shared tables (devices, incidents). Inside a tenant request the pinned session
    # already reaches them through the trailing public entry of its search_path.
    pinned = bound_session()
    if pinned is not None:
        yield pinned
        return
    async with get_session() as session:
        yield session


def get_tenant_db() -> AsyncSession:
    # Pinned by the security pipeline for the lifetime of the request.
    return current_tenant_session()


def get_tenant() -> TenantContext:
    return context.require_current()


class Principal(BaseModel):
    # Identity asserted by the upstream authentication gateway.
    user_id: str
    role: str
    tenant_slug: str | None = None


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def principal_from_headers(request: Request) -> Principal | None:
    settings = get_settings()
    user_id = (request.headers.get(settings.auth_user_header) or "").strip()
    if not user_id:
        return None
    role = (request.headers.get(settings.auth_role_header) or "").strip().lower()
    tenant_slug = (request.headers.get(settings.auth_tenant_header) or "").strip() or None
    return Principal(user_id=user_id, role=role, tenant_slug=tenant_slug)


async def get_optional_principal(request: Request) -> Principal | None:
    principal = principal_from_headers(request)
    tenant = context.current()
    # A caller scoped to one tenant never acts inside another.
    if principal and principal.tenant_slug and tenant and principal.tenant_slug != tenant.tenant_slug:
        raise _forbidden_error("Principal is not a member of this tenant")
    return principal


async def get_principal(principal: Principal | None = Depends(get_optional_principal)) -> Principal:
    if principal is None:
        raise _auth_error("Authenticated user required")
    return principal


def require_operation(operation: str) -> Callable[..., Awaitable[Principal | None]]:
    # Resolve the role requirement for an operation from the access control table.
    async def _dependency(
        request: Request,
        principal: Principal | None = Depends(get_optional_principal),
    ) -> Principal | None:
        request_ctx = get_request_context(request)
        await get_access_control().authorize(
            operation,
            principal,
            ip_address=request_ctx["ip_address"],
            user_agent=request_ctx["user_agent"],
            correlation_id=request_ctx["correlation_id"],
        )
        return principal

    return _dependency


async def require_device(request: Request, db: AsyncSession = Depends(get_db)) -> DeviceSession:
    # Both headers are mandatory; a partial credential is a hard failure.
    device_id = request.headers.get(DEVICE_ID_HEADER)
    api_key = request.headers.get(DEVICE_TOKEN_HEADER)
    if not device_id or not api_key:
        raise DeviceAuthenticationError("Device credentials required")
    return await get_device_auth_service().authenticate_by_api_key(
        db,
        device_id,
        api_key,
        ip_address=client_ip(request),
        tenant_id=context.current_tenant_id(),
    )
