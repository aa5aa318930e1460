from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from medguard.apps.api.deps import Principal, require_operation
from medguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from medguard.apps.api.response import SuccessEnvelope, success_response
from medguard.apps.api.schemas import SanitizedModel
from medguard.services import rate_limiting
from medguard.services.audit import AuditAction, AuditSeverity, get_audit_trail, get_request_context
from medguard.services.rate_limiting import RateLimitProfile, get_rate_limiter


router = APIRouter(prefix="/admin/rate-limits", tags=["rate-limits"], responses=DEFAULT_ERROR_RESPONSES)


class RateLimitStatusResponse(BaseModel):
    key: str
    profile: str
    tracked: bool
    blocked: bool
    limit: int | None
    remaining: int | None
    reset_at: str | None


class UnblockRequest(SanitizedModel):
    key: str = Field(min_length=1, max_length=512)


class UnblockResponse(BaseModel):
    key: str
    unblocked: bool


def _profile_or_400(name: str) -> RateLimitProfile:
    if name == rate_limiting.IP_CEILING:
        return rate_limiting.ip_profile()
    try:
        return rate_limiting.resolve_profile(name)
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "RATE_LIMIT_PROFILE_UNKNOWN", "message": str(exc)},
        ) from exc


@router.get("/status", response_model=SuccessEnvelope[RateLimitStatusResponse])
async def rate_limit_status(
    request: Request,
    key: str = Query(min_length=1, max_length=512),
    profile: str = Query(default=rate_limiting.API_GENERAL),
    principal: Principal | None = Depends(require_operation("rate_limits.manage")),
) -> dict:
    # Read-only view: inspecting a key never consumes quota.
    _ = principal
    limiter = get_rate_limiter()
    result = limiter.get_status(key, _profile_or_400(profile))
    payload = RateLimitStatusResponse(
        key=key,
        profile=profile,
        tracked=result is not None,
        blocked=limiter.is_blocked(key),
        limit=result.limit if result else None,
        remaining=result.remaining if result else None,
        reset_at=result.reset_at.isoformat() if result else None,
    )
    return success_response(request=request, data=payload)


@router.post("/unblock", response_model=SuccessEnvelope[UnblockResponse])
async def unblock_key(
    request: Request,
    payload: UnblockRequest,
    principal: Principal | None = Depends(require_operation("rate_limits.manage")),
) -> dict:
    unblocked = get_rate_limiter().unblock(payload.key)
    request_ctx = get_request_context(request)
    await get_audit_trail().log(
        AuditAction.RATE_LIMIT_UNBLOCKED,
        "rate_limit",
        severity=AuditSeverity.WARNING,
        user_id=principal.user_id if principal else None,
        user_role=principal.role if principal else None,
        resource_id=payload.key,
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        correlation_id=request_ctx["correlation_id"],
        metadata={"unblocked": unblocked},
    )
    return success_response(request=request, data=UnblockResponse(key=payload.key, unblocked=unblocked))
