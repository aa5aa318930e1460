from __future__ import annotations

import logging
import re
import time
from urllib.parse import unquote

from fastapi import Request, Response
from sqlalchemy.exc import SQLAlchemyError

from medguard.apps.api.deps import Principal, principal_from_headers
from medguard.apps.api.errors import medguard_error_response, unhandled_exception_handler
from medguard.apps.api.rate_limit import apply_rate_limit_headers, is_phi_path, profile_for_path, throttle_response
from medguard.core.config import get_settings, tenant_exempt_prefixes
from medguard.core.errors import TenantError, TenantProvisioningError
from medguard.services import rate_limiting
from medguard.services.audit import AuditAction, AuditSeverity, client_ip, get_audit_trail
from medguard.services.rate_limiting import RateLimitResult, build_key, get_rate_limiter
from medguard.services.tenancy.resolver import extract_tenant_slug, resolve_tenant, tenant_scope


logger = logging.getLogger(__name__)

SUSPICIOUS_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("path_traversal", re.compile(r"\.\.[/\\]")),
    ("script_injection", re.compile(r"<script", re.IGNORECASE)),
    ("sql_injection", re.compile(r"union[\s\S]*select", re.IGNORECASE)),
    ("encoded_payload", re.compile(r"base64_decode", re.IGNORECASE)),
    ("code_evaluation", re.compile(r"eval\(", re.IGNORECASE)),
)

_SCANNABLE_CONTENT_TYPES = ("application/json", "text/", "application/x-www-form-urlencoded")


def find_suspicious_patterns(*parts: str) -> list[str]:
    matches: list[str] = []
    for name, pattern in SUSPICIOUS_PATTERNS:
        if any(part and pattern.search(part) for part in parts):
            matches.append(name)
    return matches


async def _scannable_body(request: Request) -> str:
    # Only bounded, declared-length text bodies are inspected.
    if request.method in {"GET", "HEAD", "OPTIONS", "DELETE"}:
        return ""
    content_type = (request.headers.get("content-type") or "").lower()
    if not content_type.startswith(_SCANNABLE_CONTENT_TYPES):
        return ""
    try:
        length = int(request.headers.get("content-length") or "0")
    except ValueError:
        return ""
    if length <= 0 or length > get_settings().security_scan_max_body_bytes:
        return ""
    body = await request.body()
    return body.decode("utf-8", errors="replace")


def _is_tenant_exempt(path: str) -> bool:
    return path.startswith(tenant_exempt_prefixes(get_settings()))


def _with_limit_headers(response: Response, result: RateLimitResult | None) -> Response:
    if result is not None:
        apply_rate_limit_headers(response, result)
    return response


async def _run_guarded(
    request: Request,
    call_next,  # type: ignore[no-untyped-def]
    *,
    ip: str,
    principal: Principal | None,
    limit_result: RateLimitResult | None,
) -> Response:
    settings = get_settings()
    audit = get_audit_trail()
    path = request.url.path
    user_id = principal.user_id if principal else None
    user_role = principal.role if principal else None
    user_agent = request.headers.get("user-agent")
    correlation_id = getattr(request.state, "correlation_id", None)

    if settings.rate_limit_enabled:
        profile = profile_for_path(path)
        limit_result = get_rate_limiter().check(build_key(ip, user_id, profile), profile)
        if not limit_result.allowed:
            await audit.log(
                AuditAction.RATE_LIMIT_EXCEEDED,
                path,
                severity=AuditSeverity.WARNING,
                user_id=user_id,
                user_role=user_role,
                ip_address=ip,
                user_agent=user_agent,
                correlation_id=correlation_id,
                metadata={"profile": profile, "blocked": limit_result.blocked, "method": request.method},
            )
            return throttle_response(
                request,
                limit_result,
                message="Too many requests, please try again later",
                profile=profile,
            )

    # Suspicious input is recorded, not blocked.
    matches = find_suspicious_patterns(path, unquote(request.url.query or ""), await _scannable_body(request))
    if matches:
        logger.warning("suspicious_request path=%s ip=%s patterns=%s", path, ip, ",".join(matches))
        await audit.log_security_violation(
            "Suspicious request pattern detected",
            user_id=user_id,
            user_role=user_role,
            resource=path,
            ip_address=ip,
            user_agent=user_agent,
            correlation_id=correlation_id,
            metadata={"patterns": matches, "method": request.method},
        )

    if principal is not None and is_phi_path(path):
        await audit.log_phi_access(
            user_id=user_id,
            patient_id=request.query_params.get("patient_id"),
            resource=path,
            user_role=user_role,
            ip_address=ip,
            user_agent=user_agent,
            correlation_id=correlation_id,
            metadata={"method": request.method},
        )

    start = time.monotonic()
    try:
        response = await call_next(request)
    except Exception as exc:  # noqa: BLE001
        response = await unhandled_exception_handler(request, exc)
    elapsed_ms = (time.monotonic() - start) * 1000.0
    if elapsed_ms > settings.slow_request_ms:
        logger.warning("slow_request path=%s method=%s elapsed_ms=%.0f", path, request.method, elapsed_ms)
    return _with_limit_headers(response, limit_result)


async def security_pipeline_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """IP ceiling, tenant binding, endpoint limit, pattern scan, PHI audit, then the handler."""
    settings = get_settings()
    ip = client_ip(request)
    principal = principal_from_headers(request)

    ip_result: RateLimitResult | None = None
    if settings.rate_limit_enabled:
        ip_result = get_rate_limiter().check_ip_limit(ip)
        if not ip_result.allowed:
            logger.warning("ip_rate_limited ip=%s blocked=%s", ip, ip_result.blocked)
            return throttle_response(
                request,
                ip_result,
                message="Too many requests from this IP address",
                profile=rate_limiting.IP_CEILING,
            )

    if _is_tenant_exempt(request.url.path):
        return await _run_guarded(request, call_next, ip=ip, principal=principal, limit_result=ip_result)

    try:
        tenant = await resolve_tenant(extract_tenant_slug(request.headers))
    except TenantError as exc:
        return _with_limit_headers(medguard_error_response(request, exc), ip_result)
    except SQLAlchemyError as exc:
        logger.error("tenant_lookup_failed path=%s", request.url.path, exc_info=exc)
        return _with_limit_headers(medguard_error_response(request, TenantProvisioningError()), ip_result)

    try:
        async with tenant_scope(tenant):
            request.state.tenant = tenant
            return await _run_guarded(request, call_next, ip=ip, principal=principal, limit_result=ip_result)
    except TenantProvisioningError as exc:
        return _with_limit_headers(medguard_error_response(request, exc), ip_result)
