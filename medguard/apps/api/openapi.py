from __future__ import annotations

from typing import Any

from medguard.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Tenant missing or unavailable", code="TENANT_UNAVAILABLE", message="Invalid or inactive tenant"),
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Authenticated user required"),
    403: _response("Forbidden", code="AUTH_FORBIDDEN", message="Insufficient permissions"),
    404: _response("Not found", code="NOT_FOUND", message="Resource not found"),
    422: _response(
        "Validation error",
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": [{"loc": ["body", "field"], "msg": "Field required", "type": "missing"}]},
    ),
    429: _response(
        "Rate limited",
        code="RATE_LIMITED",
        message="Too many requests",
        details={"retryAfter": "2026-01-01T00:05:00+00:00", "profile": "PHI_ACCESS", "blocked": True},
    ),
    500: _response("Internal error", code="INTERNAL_ERROR", message="Internal server error"),
}
