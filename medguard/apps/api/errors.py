from __future__ import annotations

import logging
from typing import Any, Mapping

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from medguard.apps.api.response import error_response
from medguard.core.errors import MedguardError


logger = logging.getLogger(__name__)

# Fallback codes for framework errors raised without a MedguardError.
_STATUS_CODES: Mapping[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}


def _envelope(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    *,
    details: dict[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=dict(headers or {}))


def _from_detail(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Route handlers may raise HTTPException(detail={"code": ..., "message": ..., **extra}).
    code = _STATUS_CODES.get(exc.status_code, "UNKNOWN_ERROR")
    message = "Request failed"
    details: dict[str, Any] | None = None
    detail = exc.detail
    if isinstance(detail, str):
        message = detail
    elif isinstance(detail, dict):
        code = str(detail.get("code") or code)
        message = str(detail.get("message") or message)
        details = {k: v for k, v in detail.items() if k not in ("code", "message")} or None
    return _envelope(request, exc.status_code, code, message, details=details, headers=exc.headers)


def medguard_error_response(request: Request, exc: MedguardError) -> JSONResponse:
    # Only the class-level message leaves the process; internals stay in logs.
    return _envelope(request, exc.status_code, exc.code, exc.message)


async def medguard_exception_handler(request: Request, exc: MedguardError) -> JSONResponse:
    if exc.status_code < 500:
        return medguard_error_response(request, exc)
    logger.error("request_failed path=%s code=%s", request.url.path, exc.code, exc_info=exc)
    return _envelope(request, exc.status_code, exc.code, exc.default_message)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _from_detail(request, exc)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Unknown routes and wrong methods come from the router, not from handlers.
    return _from_detail(request, exc)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return _envelope(
        request,
        422,
        "REQUEST_VALIDATION_ERROR",
        "Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Stack traces go to the log only.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 500, "INTERNAL_ERROR", "Internal server error")
