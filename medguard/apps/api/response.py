from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field

API_VERSION = "v1"
CORRELATION_HEADER = "X-Correlation-ID"

T = TypeVar("T")

class ResponseMeta(BaseModel):
    # Include request/version metadata for consistent client tracing.
    request_id: str
    api_version: str = Field(default=API_VERSION)

class ErrorDetail(BaseModel):
    # Standardize error codes/messages with optional structured details.
    code: str
    message: str
    details: dict[str, Any] | None = None

class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta

class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta

def get_request_id(request: Request) -> str:
    # The correlation id doubles as the request id across logs, audit rows and responses.
    request_id = getattr(request.state, "correlation_id", None)
    if request_id:
        return request_id
    header_value = request.headers.get(CORRELATION_HEADER)
    if header_value:
        request.state.correlation_id = header_value
        return header_value
    generated = str(uuid4())
    request.state.correlation_id = generated
    return generated

def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    meta = ResponseMeta(request_id=get_request_id(request))
    return {"data": data, "meta": meta.model_dump()}

def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    # Return the standard error envelope with request metadata.
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": meta.model_dump()}
