from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from medguard.apps.api.deps import Principal, require_operation
from medguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from medguard.apps.api.response import SuccessEnvelope, success_response
from medguard.services.audit import (
    AuditAction,
    AuditEntry,
    AuditQuery,
    AuditSeverity,
    get_audit_trail,
    get_request_context,
)


router = APIRouter(prefix="/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


class AuditEntryResponse(BaseModel):
    id: str
    tenant_id: str | None
    user_id: str | None
    user_role: str | None
    action: str
    severity: str
    resource: str
    resource_id: str | None
    patient_id_hash: str | None
    ip_address: str | None
    user_agent: str | None
    device_id: str | None
    correlation_id: str | None
    metadata_json: dict[str, Any] | None
    is_anomaly: bool
    created_at: str


class AuditLogsPage(BaseModel):
    items: list[AuditEntryResponse]
    total: int
    next_offset: int | None


class IntegrityResponse(BaseModel):
    id: str
    valid: bool


class AnomalyCheckResponse(BaseModel):
    user_id: str
    anomalous: bool
    window_minutes: int


def _to_response(entry: AuditEntry) -> AuditEntryResponse:
    return AuditEntryResponse(
        id=entry.id,
        tenant_id=entry.tenant_id,
        user_id=entry.user_id,
        user_role=entry.user_role,
        action=entry.action,
        severity=entry.severity,
        resource=entry.resource,
        resource_id=entry.resource_id,
        patient_id_hash=entry.patient_id_hash,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        device_id=entry.device_id,
        correlation_id=entry.correlation_id,
        metadata_json=entry.metadata_json,
        is_anomaly=entry.is_anomaly,
        created_at=entry.created_at.isoformat(),
    )


@router.get("/logs", response_model=SuccessEnvelope[AuditLogsPage])
async def list_audit_logs(
    request: Request,
    user_id: str | None = None,
    patient_id: str | None = None,
    action: AuditAction | None = None,
    severity: AuditSeverity | None = None,
    resource: str | None = None,
    is_anomaly: bool | None = None,
    start_date: datetime | None = Query(default=None, alias="from"),
    end_date: datetime | None = Query(default=None, alias="to"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    principal: Principal | None = Depends(require_operation("audit.query")),
) -> dict:
    trail = get_audit_trail()
    result = await trail.query(
        AuditQuery(
            user_id=user_id,
            patient_id=patient_id,
            action=action,
            severity=severity,
            resource=resource,
            is_anomaly=is_anomaly,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=offset,
        )
    )
    # Reading the trail is itself an auditable act.
    request_ctx = get_request_context(request)
    await trail.log(
        AuditAction.AUDIT_QUERY,
        "audit_logs",
        user_id=principal.user_id if principal else None,
        user_role=principal.role if principal else None,
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        correlation_id=request_ctx["correlation_id"],
        metadata={
            "filters": {
                "user_id": user_id,
                "action": action.value if action else None,
                "severity": severity.value if severity else None,
                "resource": resource,
                "is_anomaly": is_anomaly,
                "patient_filter": patient_id is not None,
            },
            "returned": len(result.records),
        },
    )
    next_offset = offset + len(result.records) if offset + len(result.records) < result.total else None
    page = AuditLogsPage(
        items=[_to_response(entry) for entry in result.records],
        total=result.total,
        next_offset=next_offset,
    )
    return success_response(request=request, data=page)


@router.get("/logs/{entry_id}/verify", response_model=SuccessEnvelope[IntegrityResponse])
async def verify_audit_log(
    request: Request,
    entry_id: str,
    principal: Principal | None = Depends(require_operation("audit.verify")),
) -> dict:
    _ = principal
    trail = get_audit_trail()
    entry = await trail.get(entry_id)
    if entry is None:
        raise HTTPException(status_code=404, detail={"code": "AUDIT_ENTRY_NOT_FOUND", "message": "Audit entry not found"})
    return success_response(request=request, data=IntegrityResponse(id=entry.id, valid=trail.verify_integrity(entry)))


@router.get("/report", response_model=SuccessEnvelope[dict[str, Any]])
async def activity_report(
    request: Request,
    start_date: datetime | None = Query(default=None, alias="from"),
    end_date: datetime | None = Query(default=None, alias="to"),
    principal: Principal | None = Depends(require_operation("audit.report")),
) -> dict:
    _ = principal
    end = end_date or datetime.now(timezone.utc)
    start = start_date or end - timedelta(days=1)
    if start > end:
        raise HTTPException(
            status_code=400,
            detail={"code": "AUDIT_REPORT_RANGE_INVALID", "message": "Report start must precede its end"},
        )
    report = await get_audit_trail().generate_activity_report(start, end)
    return success_response(request=request, data=report)


@router.post("/anomalies/{user_id}", response_model=SuccessEnvelope[AnomalyCheckResponse])
async def check_anomalies(
    request: Request,
    user_id: str,
    window_minutes: int | None = Query(default=None, ge=1, le=1440),
    principal: Principal | None = Depends(require_operation("audit.query")),
) -> dict:
    _ = principal
    trail = get_audit_trail()
    anomalous = await trail.detect_anomalies(user_id, window_minutes)
    payload = AnomalyCheckResponse(
        user_id=user_id,
        anomalous=anomalous,
        window_minutes=window_minutes or trail.anomaly_window_minutes,
    )
    return success_response(request=request, data=payload)
