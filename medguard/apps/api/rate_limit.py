from __future__ import annotations

import math
import time

from fastapi import Request, Response
from fastapi.responses import JSONResponse

from medguard.apps.api.response import API_VERSION, error_response
from medguard.services import rate_limiting
from medguard.services.rate_limiting import RateLimitResult


_AUTH_PATHS = ("/auth/login", "/auth/register", "/auth/forgot-password")
_PHI_PATHS = ("/patients", "/medical-records", "/prescriptions", "/lab-results", "/diagnoses")
_VERSION_PREFIX = f"/{API_VERSION}"


def _strip_version(path: str) -> str:
    if path == _VERSION_PREFIX or path.startswith(f"{_VERSION_PREFIX}/"):
        return path[len(_VERSION_PREFIX):] or "/"
    return path


def _matches(path: str, prefixes: tuple[str, ...]) -> bool:
    return any(path == prefix or path.startswith(f"{prefix}/") for prefix in prefixes)


def is_phi_path(path: str) -> bool:
    return _matches(_strip_version(path), _PHI_PATHS)


def profile_for_path(path: str) -> str:
    # First match wins; auth and admin outrank the broader PHI and general buckets.
    normalized = _strip_version(path)
    if _matches(normalized, _AUTH_PATHS):
        return rate_limiting.AUTH
    if _matches(normalized, ("/admin",)):
        return rate_limiting.ADMIN
    if _matches(normalized, _PHI_PATHS):
        return rate_limiting.PHI_ACCESS
    if _matches(normalized, ("/audit",)):
        return rate_limiting.AUDIT_QUERY
    if _matches(normalized, ("/incidents",)):
        return rate_limiting.INCIDENT_REPORT
    if _matches(normalized, ("/devices/telemetry",)):
        return rate_limiting.DEVICE_TELEMETRY
    return rate_limiting.API_GENERAL


def rate_limit_headers(result: RateLimitResult) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(result.limit),
        "X-RateLimit-Remaining": str(result.remaining),
        "X-RateLimit-Reset": result.reset_at.isoformat(),
    }


def apply_rate_limit_headers(response: Response, result: RateLimitResult) -> None:
    for key, value in rate_limit_headers(result).items():
        response.headers[key] = value


def throttle_response(
    request: Request,
    result: RateLimitResult,
    *,
    message: str,
    profile: str,
    now_ms: int | None = None,
) -> JSONResponse:
    # Stable 429 envelope with an absolute retryAfter and a Retry-After hint in seconds.
    current_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    retry_after_ms = result.retry_after_ms(current_ms)
    payload = error_response(
        request=request,
        code="RATE_LIMITED",
        message=message,
        details={
            "retryAfter": result.reset_at.isoformat(),
            "profile": profile,
            "blocked": result.blocked,
        },
    )
    headers = rate_limit_headers(result)
    headers["Retry-After"] = str(max(1, int(math.ceil(retry_after_ms / 1000.0))))
    return JSONResponse(content=payload, status_code=429, headers=headers)
