from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field

from medguard.apps.api.deps import Principal, require_operation
from medguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from medguard.apps.api.response import SuccessEnvelope, success_response
from medguard.apps.api.schemas import SanitizedModel
from medguard.domain.models import Tenant
from medguard.services.audit import AuditAction, AuditSeverity, get_audit_trail, get_request_context
from medguard.services.tenancy.registry import get_tenant_registry


router = APIRouter(prefix="/admin/tenants", tags=["tenants"], responses=DEFAULT_ERROR_RESPONSES)


class TenantCreateRequest(SanitizedModel):
    name: str = Field(min_length=1, max_length=200)
    slug: str = Field(min_length=1, max_length=48)


class TenantUpdateRequest(SanitizedModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    status: Literal["active", "suspended", "inactive"] | None = None


class TenantResponse(BaseModel):
    id: str
    slug: str
    name: str
    schema_name: str
    status: str
    created_at: str | None
    updated_at: str | None


def _to_payload(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        slug=tenant.slug,
        name=tenant.name,
        schema_name=tenant.schema_name,
        status=tenant.status,
        created_at=tenant.created_at.isoformat() if tenant.created_at else None,
        updated_at=tenant.updated_at.isoformat() if tenant.updated_at else None,
    )


async def _audit_tenant_change(
    request: Request,
    principal: Principal | None,
    action: AuditAction,
    tenant: Tenant,
    metadata: dict,
) -> None:
    request_ctx = get_request_context(request)
    await get_audit_trail().log(
        action,
        "tenant",
        severity=AuditSeverity.WARNING if action == AuditAction.TENANT_DELETED else AuditSeverity.INFO,
        user_id=principal.user_id if principal else None,
        user_role=principal.role if principal else None,
        resource_id=tenant.id,
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        correlation_id=request_ctx["correlation_id"],
        metadata={"slug": tenant.slug, "schema_name": tenant.schema_name, **metadata},
        immediate=True,
    )


@router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    response_model=SuccessEnvelope[TenantResponse],
)
async def create_tenant(
    request: Request,
    payload: TenantCreateRequest,
    principal: Principal | None = Depends(require_operation("tenants.manage")),
) -> dict:
    # Provisioning is all-or-nothing: row, schema, tables and seed data.
    tenant = await get_tenant_registry().create(name=payload.name, slug=payload.slug)
    await _audit_tenant_change(request, principal, AuditAction.TENANT_CREATED, tenant, {"name": tenant.name})
    return success_response(request=request, data=_to_payload(tenant))


@router.get("", response_model=SuccessEnvelope[list[TenantResponse]])
async def list_tenants(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=500),
    principal: Principal | None = Depends(require_operation("tenants.manage")),
) -> dict:
    _ = principal
    tenants = await get_tenant_registry().list_tenants(status=status_filter, offset=offset, limit=limit)
    return success_response(request=request, data=[_to_payload(tenant) for tenant in tenants])


@router.get("/{tenant_id}", response_model=SuccessEnvelope[TenantResponse])
async def get_tenant(
    request: Request,
    tenant_id: str,
    principal: Principal | None = Depends(require_operation("tenants.manage")),
) -> dict:
    _ = principal
    tenant = await get_tenant_registry().get(tenant_id)
    return success_response(request=request, data=_to_payload(tenant))


@router.patch("/{tenant_id}", response_model=SuccessEnvelope[TenantResponse])
async def update_tenant(
    request: Request,
    tenant_id: str,
    payload: TenantUpdateRequest,
    principal: Principal | None = Depends(require_operation("tenants.manage")),
) -> dict:
    tenant = await get_tenant_registry().update(tenant_id, name=payload.name, status=payload.status)
    await _audit_tenant_change(
        request,
        principal,
        AuditAction.TENANT_UPDATED,
        tenant,
        payload.model_dump(exclude_none=True),
    )
    return success_response(request=request, data=_to_payload(tenant))


@router.delete("/{tenant_id}", response_model=SuccessEnvelope[TenantResponse])
async def delete_tenant(
    request: Request,
    tenant_id: str,
    principal: Principal | None = Depends(require_operation("tenants.manage")),
) -> dict:
    # Drops the schema with all tenant data; the slug is retired afterwards.
    tenant = await get_tenant_registry().delete(tenant_id)
    await _audit_tenant_change(request, principal, AuditAction.TENANT_DELETED, tenant, {})
    return success_response(request=request, data=_to_payload(tenant))
