from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from medguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from medguard.apps.api.response import SuccessEnvelope, success_response

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    # Exempt from tenant resolution so load balancers can check it without a tenant.
    payload = HealthResponse(status="ok")
    return success_response(request=request, data=payload)
