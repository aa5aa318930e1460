from __future__ import annotations

import re
from uuid import uuid4

from fastapi import Request, Response

from medguard.apps.api.errors import unhandled_exception_handler
from medguard.apps.api.response import CORRELATION_HEADER


_CORRELATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

CONTENT_SECURITY_POLICY = "; ".join(
    [
        "default-src 'self'",
        "script-src 'self'",
        "style-src 'self'",
        "img-src 'self' data:",
        "font-src 'self'",
        "connect-src 'self'",
        "frame-ancestors 'none'",
        "form-action 'self'",
        "base-uri 'self'",
        "object-src 'none'",
    ]
)

SECURITY_HEADERS: dict[str, str] = {
    # PHI responses must never be cached by browsers or intermediaries.
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "X-Content-Type-Options": "nosniff",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=(), payment=()",
    "X-Healthcare-Security": "HIPAA-Compliant",
}

_STRIPPED_HEADERS = ("server", "x-powered-by")


def resolve_correlation_id(request: Request) -> str:
    # Echo well-formed caller ids; anything else gets a fresh one.
    incoming = request.headers.get(CORRELATION_HEADER)
    if incoming and _CORRELATION_ID_PATTERN.match(incoming):
        return incoming
    return str(uuid4())


def apply_security_headers(response: Response, correlation_id: str) -> None:
    for key, value in SECURITY_HEADERS.items():
        response.headers[key] = value
    response.headers[CORRELATION_HEADER] = correlation_id
    for key in _STRIPPED_HEADERS:
        if key in response.headers:
            del response.headers[key]


async def security_headers_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    # Outermost layer: every response, including throttled and error responses, carries the headers.
    correlation_id = resolve_correlation_id(request)
    request.state.correlation_id = correlation_id
    try:
        response = await call_next(request)
    except Exception as exc:  # noqa: BLE001
        # Uncaught errors would otherwise reach the server error layer and leave without headers.
        response = await unhandled_exception_handler(request, exc)
    apply_security_headers(response, correlation_id)
    return response
