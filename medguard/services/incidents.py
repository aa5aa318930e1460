from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
import logging
from typing import Any, Protocol
from uuid import uuid4

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from medguard.core.config import get_settings
from medguard.core.errors import IncidentNotFoundError
from medguard.domain.models import BreachNotification, SecurityIncident
from medguard.persistence.db import PublicSessionLocal
from medguard.services import events as event_names
from medguard.services.audit import AuditAction, AuditSeverity, AuditTrail, get_audit_trail
from medguard.services.events import EventBus, get_event_bus


logger = logging.getLogger(__name__)

AUTOMATED_MONITORING = "AUTOMATED_MONITORING"


class IncidentType(str, Enum):
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    DATA_BREACH = "data_breach"
    MALWARE = "malware"
    PHISHING = "phishing"
    DEVICE_COMPROMISE = "device_compromise"
    INSIDER_THREAT = "insider_threat"
    SYSTEM_INTRUSION = "system_intrusion"
    DENIAL_OF_SERVICE = "denial_of_service"
    LOST_OR_STOLEN_DEVICE = "lost_or_stolen_device"
    OTHER = "other"


class IncidentSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IncidentStatus(str, Enum):
    DETECTED = "detected"
    INVESTIGATING = "investigating"
    CONTAINED = "contained"
    REMEDIATED = "remediated"
    CLOSED = "closed"
    ESCALATED = "escalated"


class NotificationChannel(str, Enum):
    EMAIL = "email"
    MAIL = "mail"
    PHONE = "phone"
    MEDIA = "media"
    HHS_PORTAL = "hhs_portal"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    ACKNOWLEDGED = "acknowledged"


# First transition into these statuses stamps the matching timestamp column.
_STATUS_TIMESTAMPS = {
    IncidentStatus.CONTAINED.value: "contained_at",
    IncidentStatus.REMEDIATED.value: "remediated_at",
    IncidentStatus.CLOSED.value: "closed_at",
}

_UPDATABLE_FIELDS = ("status", "severity", "assigned_to", "root_cause", "remediation_steps", "affected_patient_count")


def _utc_now() -> datetime:
    # Use UTC timestamps to keep incident ordering deterministic across nodes.
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _value(raw: Any) -> Any:
    return raw.value if isinstance(raw, Enum) else raw


def timeline_event(action: str, actor: str, details: str | None = None, *, at: datetime | None = None) -> dict[str, Any]:
    return {
        "timestamp": (at or _utc_now()).isoformat(),
        "action": action,
        "actor": actor,
        "details": details,
    }


def _append_timeline_event(incident: SecurityIncident, event: dict[str, Any]) -> None:
    # Reassign rather than mutate so the JSON column change is tracked; entries are never rewritten.
    incident.timeline_json = [*(incident.timeline_json or []), event]


def plan_breach_notifications(incident: SecurityIncident) -> list[BreachNotification]:
    """Notifications owed for a PHI incident; the deadline is fixed from incident creation."""
    if not incident.phi_involved:
        return []
    settings = get_settings()
    created_at = _as_utc(incident.created_at)
    deadline = created_at + timedelta(days=settings.breach_notification_deadline_days)
    targets: list[tuple[NotificationChannel, str]] = [
        (NotificationChannel.EMAIL, "affected_individuals"),
        (NotificationChannel.HHS_PORTAL, "hhs_ocr"),
    ]
    if incident.affected_patient_count >= settings.breach_large_threshold:
        targets.append((NotificationChannel.MEDIA, "prominent_media_outlets"))

    notifications = []
    for channel, recipient in targets:
        notifications.append(
            BreachNotification(
                id=str(uuid4()),
                incident_id=incident.id,
                tenant_id=incident.tenant_id,
                channel=channel.value,
                status=NotificationStatus.PENDING.value,
                recipient=recipient,
                subject=f"Notice of data security incident: {incident.title}",
                content=(
                    f"A security incident affecting protected health information was detected on "
                    f"{created_at.date().isoformat()}. Affected individuals: {incident.affected_patient_count}."
                ),
                scheduled_at=created_at,
                deadline_at=deadline,
                retry_count=0,
                created_at=created_at,
            )
        )
    return notifications


def apply_incident_changes(
    incident: SecurityIncident,
    changes: dict[str, Any],
    *,
    actor: str,
    now: datetime | None = None,
) -> list[str]:
    """Apply allowed field changes and record each one on the timeline.

    Returns the names of the fields that actually changed.
    """
    at = now or _utc_now()
    changed: list[str] = []
    for field in _UPDATABLE_FIELDS:
        if field not in changes or changes[field] is None:
            continue
        new_value = _value(changes[field])
        old_value = getattr(incident, field)
        if new_value == old_value:
            continue
        setattr(incident, field, new_value)
        changed.append(field)
        if field == "status":
            timestamp_field = _STATUS_TIMESTAMPS.get(new_value)
            if timestamp_field and getattr(incident, timestamp_field) is None:
                setattr(incident, timestamp_field, at)
            details = f"Status changed from {old_value} to {new_value}"
        else:
            details = f"{field} updated"
        _append_timeline_event(incident, timeline_event(f"{field}_changed", actor, details, at=at))
    if changed:
        incident.updated_at = at
    return changed


def incident_payload(incident: SecurityIncident) -> dict[str, Any]:
    return {
        "id": incident.id,
        "tenant_id": incident.tenant_id,
        "incident_type": incident.incident_type,
        "severity": incident.severity,
        "status": incident.status,
        "title": incident.title,
        "phi_involved": incident.phi_involved,
        "affected_patient_count": incident.affected_patient_count,
    }


async def create_incident(
    session: AsyncSession,
    *,
    incident_type: IncidentType | str,
    severity: IncidentSeverity | str,
    title: str,
    description: str,
    reported_by: str,
    tenant_id: str | None = None,
    affected_systems: list[str] | None = None,
    affected_patient_count: int = 0,
    phi_involved: bool = False,
    audit: AuditTrail | None = None,
    events: EventBus | None = None,
) -> SecurityIncident:
    bus = events or get_event_bus()
    now = _utc_now()
    incident = SecurityIncident(
        id=str(uuid4()),
        tenant_id=tenant_id,
        incident_type=_value(incident_type),
        severity=_value(severity),
        status=IncidentStatus.DETECTED.value,
        title=title,
        description=description,
        affected_systems=list(affected_systems or []),
        affected_patient_count=max(0, int(affected_patient_count)),
        phi_involved=phi_involved,
        reported_by=reported_by,
        timeline_json=[timeline_event("created", reported_by, "Incident detected and created", at=now)],
        detected_at=now,
        created_at=now,
        updated_at=now,
    )
    session.add(incident)
    notifications = plan_breach_notifications(incident)
    session.add_all(notifications)
    if notifications:
        _append_timeline_event(
            incident,
            timeline_event(
                "breach_response_initiated",
                AUTOMATED_MONITORING,
                f"{len(notifications)} breach notifications scheduled",
                at=now,
            ),
        )
    await session.commit()

    is_critical = incident.severity == IncidentSeverity.CRITICAL.value
    await (audit or get_audit_trail()).log(
        AuditAction.INCIDENT_CREATED,
        "security_incident",
        severity=AuditSeverity.CRITICAL if is_critical else AuditSeverity.WARNING,
        user_id=reported_by,
        resource_id=incident.id,
        tenant_id=tenant_id,
        metadata={
            "incident_type": incident.incident_type,
            "severity": incident.severity,
            "phi_involved": phi_involved,
            "notifications": len(notifications),
        },
    )
    payload = incident_payload(incident)
    bus.emit(event_names.INCIDENT_CREATED, payload)
    if is_critical:
        bus.emit(event_names.INCIDENT_CRITICAL, payload)
    for notification in notifications:
        bus.emit(
            event_names.BREACH_NOTIFICATION_SCHEDULED,
            {
                "incident_id": incident.id,
                "notification_id": notification.id,
                "channel": notification.channel,
                "deadline_at": notification.deadline_at.isoformat(),
            },
        )
    logger.info(
        "incident_created incident_id=%s type=%s severity=%s notifications=%s",
        incident.id,
        incident.incident_type,
        incident.severity,
        len(notifications),
    )
    return incident


async def get_incident(session: AsyncSession, incident_id: str, *, tenant_id: str | None) -> SecurityIncident:
    stmt = select(SecurityIncident).where(SecurityIncident.id == incident_id)
    if tenant_id is not None:
        stmt = stmt.where(SecurityIncident.tenant_id == tenant_id)
    incident = (await session.execute(stmt)).scalar_one_or_none()
    if incident is None:
        raise IncidentNotFoundError()
    return incident


async def update_incident(
    session: AsyncSession,
    incident_id: str,
    *,
    changes: dict[str, Any],
    actor: str,
    tenant_id: str | None = None,
    audit: AuditTrail | None = None,
    events: EventBus | None = None,
) -> SecurityIncident:
    incident = await get_incident(session, incident_id, tenant_id=tenant_id)
    changed = apply_incident_changes(incident, changes, actor=actor)
    if not changed:
        return incident
    await session.commit()
    await (audit or get_audit_trail()).log(
        AuditAction.INCIDENT_UPDATED,
        "security_incident",
        user_id=actor,
        resource_id=incident.id,
        tenant_id=tenant_id,
        metadata={"changed": changed, "status": incident.status},
    )
    (events or get_event_bus()).emit(event_names.INCIDENT_UPDATED, {**incident_payload(incident), "changed": changed})
    return incident


async def list_incidents(
    session: AsyncSession,
    *,
    tenant_id: str | None,
    status: IncidentStatus | str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[SecurityIncident]:
    stmt = select(SecurityIncident)
    if tenant_id is not None:
        stmt = stmt.where(SecurityIncident.tenant_id == tenant_id)
    if status is not None:
        stmt = stmt.where(SecurityIncident.status == _value(status))
    stmt = stmt.order_by(SecurityIncident.created_at.desc(), SecurityIncident.id.desc()).offset(offset).limit(limit)
    return list((await session.execute(stmt)).scalars().all())


async def list_notifications(session: AsyncSession, incident_id: str) -> list[BreachNotification]:
    stmt = (
        select(BreachNotification)
        .where(BreachNotification.incident_id == incident_id)
        .order_by(BreachNotification.created_at.asc(), BreachNotification.channel.asc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def handle_audit_anomaly(
    session: AsyncSession,
    *,
    user_id: str,
    count: int,
    window_minutes: int,
    tenant_id: str | None = None,
    audit: AuditTrail | None = None,
    events: EventBus | None = None,
) -> SecurityIncident:
    # Anomalous PHI volume is treated as possible unauthorized access to PHI.
    return await create_incident(
        session,
        incident_type=IncidentType.UNAUTHORIZED_ACCESS,
        severity=IncidentSeverity.HIGH,
        title=f"Anomalous PHI access by user {user_id}",
        description=f"User {user_id} accessed PHI {count} times within {window_minutes} minutes.",
        reported_by=AUTOMATED_MONITORING,
        tenant_id=tenant_id,
        affected_systems=["phi_access"],
        phi_involved=True,
        audit=audit,
        events=events,
    )


class NotificationSender(Protocol):
    async def send(self, notification: BreachNotification) -> None: ...


class LogNotificationSender:
    # Delivery stand-in when no receiver is configured.
    async def send(self, notification: BreachNotification) -> None:
        logger.info(
            "breach_notification_dispatched notification_id=%s channel=%s recipient=%s",
            notification.id,
            notification.channel,
            notification.recipient,
        )


class WebhookNotificationSender:
    def __init__(self, url: str, *, timeout_ms: int | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._url = url
        self._timeout_s = (timeout_ms or get_settings().notification_timeout_ms) / 1000.0
        self._client = client

    async def send(self, notification: BreachNotification) -> None:
        payload = {
            "notification_id": notification.id,
            "incident_id": notification.incident_id,
            "tenant_id": notification.tenant_id,
            "channel": notification.channel,
            "recipient": notification.recipient,
            "subject": notification.subject,
            "content": notification.content,
            "deadline_at": _as_utc(notification.deadline_at).isoformat(),
        }
        if self._client is not None:
            response = await self._client.post(self._url, json=payload, timeout=self._timeout_s)
            response.raise_for_status()
            return
        async with httpx.AsyncClient(timeout=self._timeout_s) as client:
            response = await client.post(self._url, json=payload)
            response.raise_for_status()


def default_notification_sender() -> NotificationSender:
    url = get_settings().notification_webhook_url
    if url:
        return WebhookNotificationSender(url)
    return LogNotificationSender()


@dataclass(frozen=True)
class NotificationRunResult:
    sent: int
    failed: int
    retried: int


async def process_notifications(
    session: AsyncSession,
    *,
    sender: NotificationSender | None = None,
    now: datetime | None = None,
    batch_size: int = 100,
    audit: AuditTrail | None = None,
    events: EventBus | None = None,
) -> NotificationRunResult:
    settings = get_settings()
    delivery = sender or default_notification_sender()
    at = now or _utc_now()
    due = (
        await session.execute(
            select(BreachNotification)
            .where(
                BreachNotification.status == NotificationStatus.PENDING.value,
                BreachNotification.scheduled_at <= at,
            )
            .order_by(BreachNotification.deadline_at.asc(), BreachNotification.id.asc())
            .limit(batch_size)
        )
    ).scalars().all()

    sent = failed = retried = 0
    for notification in due:
        try:
            await delivery.send(notification)
        except Exception as exc:  # noqa: BLE001 - record the failure and keep draining the batch
            notification.retry_count = (notification.retry_count or 0) + 1
            notification.error_message = str(exc)[:500] or exc.__class__.__name__
            if notification.retry_count >= settings.notification_max_retries:
                notification.status = NotificationStatus.FAILED.value
                failed += 1
                logger.error(
                    "breach_notification_failed notification_id=%s retries=%s",
                    notification.id,
                    notification.retry_count,
                )
            else:
                retried += 1
                logger.warning(
                    "breach_notification_retry notification_id=%s retries=%s",
                    notification.id,
                    notification.retry_count,
                )
            await session.commit()
            continue

        notification.status = NotificationStatus.SENT.value
        notification.sent_at = at
        notification.error_message = None
        await session.commit()
        sent += 1
        await (audit or get_audit_trail()).log(
            AuditAction.BREACH_NOTIFICATION_SENT,
            "breach_notification",
            resource_id=notification.id,
            tenant_id=notification.tenant_id,
            metadata={"incident_id": notification.incident_id, "channel": notification.channel},
        )
        (events or get_event_bus()).emit(
            event_names.BREACH_NOTIFICATION_SENT,
            {"notification_id": notification.id, "incident_id": notification.incident_id},
        )
    return NotificationRunResult(sent=sent, failed=failed, retried=retried)


def subscribe_anomaly_handler(
    bus: EventBus,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> None:
    # Every audit anomaly opens an incident on its own public-schema session.
    async def _on_anomaly(payload: dict[str, Any]) -> None:
        async with (session_factory or PublicSessionLocal)() as session:
            await handle_audit_anomaly(
                session,
                user_id=str(payload["user_id"]),
                count=int(payload["count"]),
                window_minutes=int(payload["window_minutes"]),
                tenant_id=payload.get("tenant_id"),
                events=bus,
            )

    bus.subscribe(event_names.AUDIT_ANOMALY, _on_anomaly)
