from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from medguard.apps.api.deps import Principal, get_db, require_operation
from medguard.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from medguard.apps.api.response import SuccessEnvelope, success_response
from medguard.apps.api.schemas import SanitizedModel
from medguard.domain.models import BreachNotification, SecurityIncident
from medguard.services import incidents as incident_service
from medguard.services.incidents import IncidentSeverity, IncidentStatus, IncidentType
from medguard.services.tenancy.context import current_tenant_id


router = APIRouter(prefix="/incidents", tags=["incidents"], responses=DEFAULT_ERROR_RESPONSES)


class IncidentCreateRequest(SanitizedModel):
    incident_type: IncidentType
    severity: IncidentSeverity
    title: str = Field(min_length=1, max_length=300)
    description: str = Field(min_length=1, max_length=10_000)
    affected_systems: list[str] = Field(default_factory=list)
    affected_patient_count: int = Field(default=0, ge=0)
    phi_involved: bool = False


class IncidentUpdateRequest(SanitizedModel):
    status: IncidentStatus | None = None
    severity: IncidentSeverity | None = None
    assigned_to: str | None = None
    root_cause: str | None = None
    remediation_steps: str | None = None
    affected_patient_count: int | None = Field(default=None, ge=0)


class IncidentResponse(BaseModel):
    id: str
    tenant_id: str | None
    incident_type: str
    severity: str
    status: str
    title: str
    description: str
    affected_systems: list[str]
    affected_patient_count: int
    phi_involved: bool
    reported_by: str
    assigned_to: str | None
    root_cause: str | None
    remediation_steps: str | None
    timeline: list[dict[str, Any]]
    detected_at: str
    contained_at: str | None
    remediated_at: str | None
    closed_at: str | None


class NotificationResponse(BaseModel):
    id: str
    incident_id: str
    channel: str
    status: str
    recipient: str
    subject: str
    scheduled_at: str
    deadline_at: str
    sent_at: str | None
    retry_count: int
    error_message: str | None


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _to_response(incident: SecurityIncident) -> IncidentResponse:
    return IncidentResponse(
        id=incident.id,
        tenant_id=incident.tenant_id,
        incident_type=incident.incident_type,
        severity=incident.severity,
        status=incident.status,
        title=incident.title,
        description=incident.description,
        affected_systems=list(incident.affected_systems or []),
        affected_patient_count=incident.affected_patient_count,
        phi_involved=incident.phi_involved,
        reported_by=incident.reported_by,
        assigned_to=incident.assigned_to,
        root_cause=incident.root_cause,
        remediation_steps=incident.remediation_steps,
        timeline=list(incident.timeline_json or []),
        detected_at=incident.detected_at.isoformat(),
        contained_at=_iso(incident.contained_at),
        remediated_at=_iso(incident.remediated_at),
        closed_at=_iso(incident.closed_at),
    )


def _notification_response(row: BreachNotification) -> NotificationResponse:
    return NotificationResponse(
        id=row.id,
        incident_id=row.incident_id,
        channel=row.channel,
        status=row.status,
        recipient=row.recipient,
        subject=row.subject,
        scheduled_at=row.scheduled_at.isoformat(),
        deadline_at=row.deadline_at.isoformat(),
        sent_at=_iso(row.sent_at),
        retry_count=row.retry_count,
        error_message=row.error_message,
    )


def _actor(principal: Principal | None) -> str:
    return principal.user_id if principal else "anonymous"


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[IncidentResponse])
async def report_incident(
    request: Request,
    payload: IncidentCreateRequest,
    principal: Principal | None = Depends(require_operation("incidents.report")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # PHI incidents schedule their breach notifications in the same transaction.
    incident = await incident_service.create_incident(
        db,
        incident_type=payload.incident_type,
        severity=payload.severity,
        title=payload.title,
        description=payload.description,
        reported_by=_actor(principal),
        tenant_id=current_tenant_id(),
        affected_systems=payload.affected_systems,
        affected_patient_count=payload.affected_patient_count,
        phi_involved=payload.phi_involved,
    )
    return success_response(request=request, data=_to_response(incident))


@router.get("", response_model=SuccessEnvelope[list[IncidentResponse]])
async def list_incidents(
    request: Request,
    status_filter: IncidentStatus | None = Query(default=None, alias="status"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal | None = Depends(require_operation("incidents.read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _ = principal
    rows = await incident_service.list_incidents(
        db,
        tenant_id=current_tenant_id(),
        status=status_filter,
        offset=offset,
        limit=limit,
    )
    return success_response(request=request, data=[_to_response(row) for row in rows])


@router.get("/{incident_id}", response_model=SuccessEnvelope[IncidentResponse])
async def get_incident(
    request: Request,
    incident_id: str,
    principal: Principal | None = Depends(require_operation("incidents.read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _ = principal
    incident = await incident_service.get_incident(db, incident_id, tenant_id=current_tenant_id())
    return success_response(request=request, data=_to_response(incident))


@router.patch("/{incident_id}", response_model=SuccessEnvelope[IncidentResponse])
async def update_incident(
    request: Request,
    incident_id: str,
    payload: IncidentUpdateRequest,
    principal: Principal | None = Depends(require_operation("incidents.manage")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    incident = await incident_service.update_incident(
        db,
        incident_id,
        changes=payload.model_dump(exclude_none=True),
        actor=_actor(principal),
        tenant_id=current_tenant_id(),
    )
    return success_response(request=request, data=_to_response(incident))


@router.get("/{incident_id}/notifications", response_model=SuccessEnvelope[list[NotificationResponse]])
async def list_incident_notifications(
    request: Request,
    incident_id: str,
    principal: Principal | None = Depends(require_operation("incidents.read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _ = principal
    incident = await incident_service.get_incident(db, incident_id, tenant_id=current_tenant_id())
    rows = await incident_service.list_notifications(db, incident.id)
    return success_response(request=request, data=[_notification_response(row) for row in rows])
