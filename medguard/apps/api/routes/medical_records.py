from __future__ import annotations

import json
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from medguard.apps.api.deps import Principal, get_tenant, get_tenant_db, require_operation
from medguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from medguard.apps.api.response import SuccessEnvelope, success_response
from medguard.apps.api.schemas import SanitizedModel
from medguard.domain.models import MedicalRecord
from medguard.persistence.repos import medical_records as records_repo
from medguard.services.audit import AuditAction, get_audit_trail, get_request_context
from medguard.services.crypto.encryption import EncryptedData, get_encryption_service
from medguard.services.tenancy.context import TenantContext


router = APIRouter(prefix="/medical-records", tags=["medical-records"], responses=DEFAULT_ERROR_RESPONSES)


class MedicalRecordCreateRequest(SanitizedModel):
    patient_id: str = Field(min_length=1, max_length=128)
    record_type: str = Field(min_length=1, max_length=100)
    content: dict[str, Any]


class MedicalRecordResponse(BaseModel):
    id: str
    patient_id: str
    record_type: str
    content: dict[str, Any]
    created_by: str | None
    created_at: str | None


def _encryption_context(tenant: TenantContext, patient_id: str) -> dict[str, str]:
    # Ciphertext is bound to its tenant and patient; moving it elsewhere fails authentication.
    return {"tenant_id": tenant.tenant_id, "patient_id": patient_id}


def _to_response(record: MedicalRecord, tenant: TenantContext) -> MedicalRecordResponse:
    encryption = get_encryption_service()
    try:
        plaintext = encryption.decrypt(
            EncryptedData.from_dict(record.content_encrypted),
            _encryption_context(tenant, record.patient_id),
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=500,
            detail={"code": "RECORD_DECRYPTION_FAILED", "message": "Medical record could not be decrypted"},
        ) from exc
    return MedicalRecordResponse(
        id=record.id,
        patient_id=record.patient_id,
        record_type=record.record_type,
        content=json.loads(plaintext),
        created_by=record.created_by,
        created_at=record.created_at.isoformat() if record.created_at else None,
    )


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[MedicalRecordResponse])
async def create_record(
    request: Request,
    payload: MedicalRecordCreateRequest,
    principal: Principal | None = Depends(require_operation("medical_records.write")),
    tenant: TenantContext = Depends(get_tenant),
    db: AsyncSession = Depends(get_tenant_db),
) -> dict:
    encryption = get_encryption_service()
    encrypted = encryption.encrypt(
        json.dumps(payload.content, sort_keys=True),
        _encryption_context(tenant, payload.patient_id),
    )
    record = await records_repo.add_record(
        db,
        MedicalRecord(
            id=str(uuid4()),
            patient_id=payload.patient_id,
            record_type=payload.record_type,
            content_encrypted=encrypted.to_dict(),
            created_by=principal.user_id if principal else None,
        ),
    )
    await db.refresh(record)
    request_ctx = get_request_context(request)
    await get_audit_trail().log_phi_access(
        action=AuditAction.PHI_CREATE,
        resource="medical_record",
        user_id=principal.user_id if principal else None,
        user_role=principal.role if principal else None,
        resource_id=record.id,
        patient_id=payload.patient_id,
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        correlation_id=request_ctx["correlation_id"],
        metadata={"record_type": payload.record_type},
    )
    return success_response(request=request, data=_to_response(record, tenant))


@router.get("", response_model=SuccessEnvelope[list[MedicalRecordResponse]])
async def list_records(
    request: Request,
    patient_id: str = Query(min_length=1, max_length=128),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal | None = Depends(require_operation("medical_records.read")),
    tenant: TenantContext = Depends(get_tenant),
    db: AsyncSession = Depends(get_tenant_db),
) -> dict:
    _ = principal
    records = await records_repo.list_for_patient(db, patient_id, offset=offset, limit=limit)
    return success_response(request=request, data=[_to_response(record, tenant) for record in records])


@router.get("/{record_id}", response_model=SuccessEnvelope[MedicalRecordResponse])
async def get_record(
    request: Request,
    record_id: str,
    principal: Principal | None = Depends(require_operation("medical_records.read")),
    tenant: TenantContext = Depends(get_tenant),
    db: AsyncSession = Depends(get_tenant_db),
) -> dict:
    _ = principal
    record = await records_repo.get_record(db, record_id)
    if record is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "MEDICAL_RECORD_NOT_FOUND", "message": "Medical record not found"},
        )
    return success_response(request=request, data=_to_response(record, tenant))
