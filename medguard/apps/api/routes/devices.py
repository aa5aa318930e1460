from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from medguard.apps.api.deps import Principal, get_db, require_device, require_operation
from medguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from medguard.apps.api.response import SuccessEnvelope, success_response
from medguard.apps.api.schemas import SanitizedModel, sanitize_payload
from medguard.domain.models import MedicalDevice
from medguard.services.audit import client_ip
from medguard.services.devices import DeviceSession, DeviceTrustLevel, get_device_auth_service
from medguard.services.tenancy.context import current_tenant_id


router = APIRouter(prefix="/devices", tags=["devices"], responses=DEFAULT_ERROR_RESPONSES)


class DeviceRegisterRequest(BaseModel):
    serial_number: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=200)
    device_type: str = Field(min_length=1, max_length=100)
    manufacturer: str | None = None
    model: str | None = None
    firmware_version: str | None = None
    department: str | None = None
    # Key material is passed through untouched; text cleaning would corrupt it.
    public_key_pem: str | None = None
    certificate_expires_at: datetime | None = None

    @field_validator(
        "serial_number", "name", "device_type", "manufacturer", "model", "firmware_version", "department",
        mode="before",
    )
    @classmethod
    def _sanitize_text_fields(cls, value: Any) -> Any:
        return sanitize_payload(value)


class ChallengeVerifyRequest(BaseModel):
    signature: str = Field(min_length=1)


class RevokeRequest(SanitizedModel):
    reason: str = Field(min_length=1, max_length=1000)


class TrustUpdateRequest(SanitizedModel):
    trust_level: DeviceTrustLevel


class TelemetryRequest(SanitizedModel):
    readings: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime | None = None


class DeviceResponse(BaseModel):
    id: str
    tenant_id: str | None
    serial_number: str
    name: str
    device_type: str
    manufacturer: str | None
    model: str | None
    department: str | None
    status: str
    trust_level: str
    failed_auth_attempts: int
    suspended_until: str | None
    last_seen_at: str | None


class DeviceRegistrationResponse(BaseModel):
    device: DeviceResponse
    api_key: str


class ChallengeResponse(BaseModel):
    device_id: str
    challenge: str
    expires_at: str


class DeviceSessionResponse(BaseModel):
    device_id: str
    authenticated: bool
    session_token: str
    expires_at: str
    trust_level: str


class TelemetryAck(BaseModel):
    device_id: str
    accepted: int


def _to_response(device: MedicalDevice) -> DeviceResponse:
    return DeviceResponse(
        id=device.id,
        tenant_id=device.tenant_id,
        serial_number=device.serial_number,
        name=device.name,
        device_type=device.device_type,
        manufacturer=device.manufacturer,
        model=device.model,
        department=device.department,
        status=device.status,
        trust_level=device.trust_level,
        failed_auth_attempts=device.failed_auth_attempts,
        suspended_until=device.suspended_until.isoformat() if device.suspended_until else None,
        last_seen_at=device.last_seen_at.isoformat() if device.last_seen_at else None,
    )


def _session_response(session: DeviceSession) -> DeviceSessionResponse:
    return DeviceSessionResponse(
        device_id=session.device_id,
        authenticated=session.authenticated,
        session_token=session.session_token,
        expires_at=session.expires_at.isoformat(),
        trust_level=session.trust_level,
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[DeviceRegistrationResponse])
async def register_device(
    request: Request,
    payload: DeviceRegisterRequest,
    principal: Principal | None = Depends(require_operation("devices.register")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # The raw API key is returned exactly once.
    registration = await get_device_auth_service().register_device(
        db,
        **payload.model_dump(),
        tenant_id=current_tenant_id(),
        registered_by=principal.user_id if principal else None,
    )
    data = DeviceRegistrationResponse(device=_to_response(registration.device), api_key=registration.api_key)
    return success_response(request=request, data=data)


@router.post("/telemetry", response_model=SuccessEnvelope[TelemetryAck])
async def submit_telemetry(
    request: Request,
    payload: TelemetryRequest,
    device: DeviceSession = Depends(require_device),
) -> dict:
    return success_response(request=request, data=TelemetryAck(device_id=device.device_id, accepted=len(payload.readings)))


@router.post("/{device_id}/challenge", response_model=SuccessEnvelope[ChallengeResponse])
async def issue_challenge(
    request: Request,
    device_id: str,
    db: AsyncSession = Depends(get_db),
) -> dict:
    challenge = await get_device_auth_service().generate_challenge(db, device_id, tenant_id=current_tenant_id())
    data = ChallengeResponse(
        device_id=challenge.device_id,
        challenge=challenge.challenge,
        expires_at=challenge.expires_at.isoformat(),
    )
    return success_response(request=request, data=data)


@router.post("/{device_id}/challenge/verify", response_model=SuccessEnvelope[DeviceSessionResponse])
async def verify_challenge(
    request: Request,
    device_id: str,
    payload: ChallengeVerifyRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    session = await get_device_auth_service().verify_challenge(
        db,
        device_id,
        payload.signature,
        ip_address=client_ip(request),
        tenant_id=current_tenant_id(),
    )
    return success_response(request=request, data=_session_response(session))


@router.post("/{device_id}/revoke", response_model=SuccessEnvelope[DeviceResponse])
async def revoke_device(
    request: Request,
    device_id: str,
    payload: RevokeRequest,
    principal: Principal | None = Depends(require_operation("devices.manage")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    device = await get_device_auth_service().revoke_device(
        db,
        device_id,
        actor=principal.user_id if principal else "anonymous",
        reason=payload.reason,
        tenant_id=current_tenant_id(),
    )
    return success_response(request=request, data=_to_response(device))


@router.patch("/{device_id}/trust", response_model=SuccessEnvelope[DeviceResponse])
async def update_trust(
    request: Request,
    device_id: str,
    payload: TrustUpdateRequest,
    principal: Principal | None = Depends(require_operation("devices.manage")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    device = await get_device_auth_service().update_trust_level(
        db,
        device_id,
        payload.trust_level,
        actor=principal.user_id if principal else "anonymous",
        tenant_id=current_tenant_id(),
    )
    return success_response(request=request, data=_to_response(device))
