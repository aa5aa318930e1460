from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from medguard.core.config import get_settings
from medguard.core.errors import IncidentNotFoundError
from medguard.domain.models import BreachNotification, SecurityIncident
from medguard.services import events as event_names
from medguard.services.audit import set_audit_trail
from medguard.services.events import EventBus
from medguard.services.incidents import (
    AUTOMATED_MONITORING,
    IncidentSeverity,
    IncidentStatus,
    IncidentType,
    NotificationChannel,
    NotificationStatus,
    create_incident,
    get_incident,
    handle_audit_anomaly,
    list_incidents,
    list_notifications,
    process_notifications,
    subscribe_anomaly_handler,
    update_incident,
)
from medguard.tests.utils.audit import make_trail
from medguard.tests.utils.db import create_sqlite_engine, session_factory


class RecordingSender:
    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send(self, notification: BreachNotification) -> None:
        self.sent.append(notification.channel)


class FailingSender:
    async def send(self, notification: BreachNotification) -> None:
        raise ConnectionError("receiver unavailable")


@pytest.fixture
async def factory():
    engine = await create_sqlite_engine()
    yield session_factory(engine)
    await engine.dispose()


async def _phi_incident(session, trail, *, patients: int, tenant_id: str = "t1") -> SecurityIncident:
    return await create_incident(
        session,
        incident_type=IncidentType.DATA_BREACH,
        severity=IncidentSeverity.HIGH,
        title="Laptop stolen",
        description="Unencrypted laptop stolen from clinic",
        reported_by="officer-1",
        tenant_id=tenant_id,
        affected_patient_count=patients,
        phi_involved=True,
        audit=trail,
        events=EventBus(),
    )


@pytest.mark.asyncio
async def test_small_breach_schedules_individual_and_hhs_notices(factory) -> None:
    trail, _store = make_trail()
    async with factory() as session:
        incident = await _phi_incident(session, trail, patients=5)
        notifications = await list_notifications(session, incident.id)

    channels = sorted(item.channel for item in notifications)
    assert channels == sorted([NotificationChannel.EMAIL.value, NotificationChannel.HHS_PORTAL.value])
    assert all(item.status == NotificationStatus.PENDING.value for item in notifications)
    assert [event["action"] for event in incident.timeline_json] == ["created", "breach_response_initiated"]


@pytest.mark.asyncio
async def test_large_breach_adds_media_notice_with_fixed_deadline(factory) -> None:
    trail, _store = make_trail()
    async with factory() as session:
        incident = await _phi_incident(session, trail, patients=600)
        notifications = await list_notifications(session, incident.id)

    assert NotificationChannel.MEDIA.value in {item.channel for item in notifications}
    created_at = incident.created_at.replace(tzinfo=None) if incident.created_at.tzinfo else incident.created_at
    for item in notifications:
        deadline = item.deadline_at.replace(tzinfo=None) if item.deadline_at.tzinfo else item.deadline_at
        assert deadline - created_at == timedelta(days=60)


@pytest.mark.asyncio
async def test_incident_without_phi_has_no_notifications(factory) -> None:
    trail, store = make_trail()
    async with factory() as session:
        incident = await create_incident(
            session,
            incident_type=IncidentType.PHISHING,
            severity=IncidentSeverity.LOW,
            title="Phishing email",
            description="Reported by staff",
            reported_by="nurse-1",
            tenant_id="t1",
            audit=trail,
            events=EventBus(),
        )
        assert await list_notifications(session, incident.id) == []
    await trail.flush()
    assert [entry.action for entry in store.entries] == ["INCIDENT_CREATED"]


@pytest.mark.asyncio
async def test_critical_incident_is_audited_immediately_and_escalated(factory) -> None:
    bus = EventBus()
    critical: list[dict] = []
    bus.subscribe(event_names.INCIDENT_CRITICAL, critical.append)
    trail, store = make_trail()
    async with factory() as session:
        await create_incident(
            session,
            incident_type=IncidentType.SYSTEM_INTRUSION,
            severity=IncidentSeverity.CRITICAL,
            title="Intrusion",
            description="Unknown process on EHR host",
            reported_by="soc",
            tenant_id="t1",
            audit=trail,
            events=bus,
        )
    assert [entry.severity for entry in store.entries] == ["CRITICAL"]
    assert len(critical) == 1


@pytest.mark.asyncio
async def test_status_updates_append_timeline_and_stamp_once(factory) -> None:
    trail, _store = make_trail()
    async with factory() as session:
        incident = await _phi_incident(session, trail, patients=1)
        updated = await update_incident(
            session,
            incident.id,
            changes={"status": IncidentStatus.CONTAINED, "assigned_to": "analyst-7"},
            actor="analyst-7",
            tenant_id="t1",
            audit=trail,
            events=EventBus(),
        )
        first_contained = updated.contained_at
        assert first_contained is not None

        await update_incident(
            session, incident.id, changes={"status": IncidentStatus.INVESTIGATING}, actor="a", tenant_id="t1", audit=trail
        )
        again = await update_incident(
            session, incident.id, changes={"status": IncidentStatus.CONTAINED}, actor="a", tenant_id="t1", audit=trail
        )

    assert again.contained_at == first_contained
    actions = [event["action"] for event in again.timeline_json]
    assert actions[:2] == ["created", "breach_response_initiated"]
    assert actions.count("status_changed") == 3
    assert "assigned_to_changed" in actions


@pytest.mark.asyncio
async def test_incidents_are_tenant_scoped(factory) -> None:
    trail, _store = make_trail()
    async with factory() as session:
        incident = await _phi_incident(session, trail, patients=1, tenant_id="t1")
        await _phi_incident(session, trail, patients=1, tenant_id="t2")
        with pytest.raises(IncidentNotFoundError):
            await get_incident(session, incident.id, tenant_id="t2")
        listed = await list_incidents(session, tenant_id="t1")
    assert [item.id for item in listed] == [incident.id]


@pytest.mark.asyncio
async def test_anomaly_opens_unauthorized_access_incident(factory) -> None:
    trail, _store = make_trail()
    async with factory() as session:
        incident = await handle_audit_anomaly(
            session, user_id="u9", count=150, window_minutes=60, tenant_id="t1", audit=trail, events=EventBus()
        )
    assert incident.incident_type == IncidentType.UNAUTHORIZED_ACCESS.value
    assert incident.reported_by == AUTOMATED_MONITORING
    assert incident.phi_involved is True
    assert "150" in incident.description


@pytest.mark.asyncio
async def test_anomaly_subscription_creates_incident(factory) -> None:
    bus = EventBus()
    trail, _store = make_trail(events=bus, anomaly_threshold=2)
    set_audit_trail(trail)
    subscribe_anomaly_handler(bus, factory)

    for index in range(3):
        await trail.log_phi_access(user_id="u1", patient_id=f"p{index}", resource="patient")
    await bus.drain()

    async with factory() as session:
        incidents = (await session.execute(select(SecurityIncident))).scalars().all()
    assert len(incidents) == 1
    assert incidents[0].title == "Anomalous PHI access by user u1"


@pytest.mark.asyncio
async def test_process_notifications_marks_sent_and_audits(factory) -> None:
    trail, store = make_trail()
    sender = RecordingSender()
    async with factory() as session:
        incident = await _phi_incident(session, trail, patients=5)
        result = await process_notifications(
            session, sender=sender, now=datetime.now(timezone.utc) + timedelta(seconds=1), audit=trail, events=EventBus()
        )
        notifications = await list_notifications(session, incident.id)

    assert result.sent == 2 and result.failed == 0 and result.retried == 0
    assert sorted(sender.sent) == sorted([NotificationChannel.EMAIL.value, NotificationChannel.HHS_PORTAL.value])
    assert all(item.status == NotificationStatus.SENT.value for item in notifications)
    await trail.flush()
    assert [entry.action for entry in store.entries].count("BREACH_NOTIFICATION_SENT") == 2


@pytest.mark.asyncio
async def test_process_notifications_retries_then_fails(factory, monkeypatch) -> None:
    monkeypatch.setenv("NOTIFICATION_MAX_RETRIES", "2")
    get_settings.cache_clear()
    trail, _store = make_trail()
    later = datetime.now(timezone.utc) + timedelta(seconds=1)
    async with factory() as session:
        incident = await _phi_incident(session, trail, patients=5)
        first = await process_notifications(session, sender=FailingSender(), now=later, audit=trail)
        second = await process_notifications(session, sender=FailingSender(), now=later, audit=trail)
        third = await process_notifications(session, sender=RecordingSender(), now=later, audit=trail)
        notifications = await list_notifications(session, incident.id)

    assert (first.retried, first.failed) == (2, 0)
    assert (second.retried, second.failed) == (0, 2)
    assert third.sent == 0
    for item in notifications:
        assert item.status == NotificationStatus.FAILED.value
        assert item.retry_count == 2
        assert item.error_message == "receiver unavailable"
