from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from medguard.services.audit import AuditAction, AuditQuery, AuditSeverity, AuditTrail, SqlAuditStore
from medguard.services.events import EventBus
from medguard.tests.utils.audit import make_encryption
from medguard.tests.utils.db import create_sqlite_engine, session_factory


@pytest.fixture
async def sql_trail():
    engine = await create_sqlite_engine()
    store = SqlAuditStore(session_factory(engine))
    trail = AuditTrail(store, make_encryption(), events=EventBus(), buffer_size=10)
    yield trail
    await engine.dispose()


@pytest.mark.asyncio
async def test_persisted_entries_keep_valid_signatures(sql_trail: AuditTrail) -> None:
    entry = await sql_trail.log(
        AuditAction.PHI_ACCESS,
        "medical_record",
        user_id="u1",
        patient_id="p1",
        metadata={"method": "GET", "fields": ["allergies"]},
        tenant_id="tenant-a",
    )
    stored = await sql_trail.query(AuditQuery(tenant_id="tenant-a"))
    assert stored.total == 1
    [row] = stored.records
    assert row.id == entry.id
    assert sql_trail.verify_integrity(row)


@pytest.mark.asyncio
async def test_filters_and_paging(sql_trail: AuditTrail) -> None:
    for index in range(5):
        await sql_trail.log(AuditAction.PHI_ACCESS, "patient", user_id="u1", tenant_id="t1", patient_id=f"p{index}")
    await sql_trail.log(AuditAction.LOGIN_FAILED, "auth", user_id="u2", severity=AuditSeverity.WARNING, tenant_id="t1")
    await sql_trail.log(AuditAction.LOGIN, "auth", user_id="u3", tenant_id="t2")

    page = await sql_trail.query(AuditQuery(tenant_id="t1", user_id="u1", limit=2, offset=1))
    assert page.total == 5
    assert len(page.records) == 2

    warnings = await sql_trail.query(AuditQuery(tenant_id="t1", severity=AuditSeverity.WARNING))
    assert [entry.action for entry in warnings.records] == ["LOGIN_FAILED"]

    by_patient = await sql_trail.query(AuditQuery(tenant_id="t1", patient_id="p3"))
    assert by_patient.total == 1


@pytest.mark.asyncio
async def test_counts_and_summaries_from_storage(sql_trail: AuditTrail) -> None:
    for _ in range(3):
        await sql_trail.log(AuditAction.PHI_ACCESS, "patient", user_id="u1", tenant_id="t1")
    await sql_trail.log_security_violation("port scan", user_id="u1")
    await sql_trail.flush()

    assert await sql_trail.detect_anomalies("u1") is False
    now = datetime.now(timezone.utc)
    report = await sql_trail.generate_activity_report(now - timedelta(hours=1), now + timedelta(minutes=1), tenant_id="t1")
    assert report["phi_access_events"] == 3
    assert report["total_events"] == 3


@pytest.mark.asyncio
async def test_get_respects_tenant_scope(sql_trail: AuditTrail) -> None:
    entry = await sql_trail.log(AuditAction.LOGIN, "auth", tenant_id="t1", immediate=True)
    assert (await sql_trail.get(entry.id)) is not None


@pytest.mark.asyncio
async def test_anomaly_flag_is_stored_and_reported(sql_trail: AuditTrail) -> None:
    sql_trail.anomaly_threshold = 2
    for index in range(3):
        await sql_trail.log_phi_access(user_id="u5", patient_id=f"p{index}", resource="patient")

    flagged = await sql_trail.query(AuditQuery(is_anomaly=True))
    assert [entry.action for entry in flagged.records] == ["SECURITY_VIOLATION"]
    assert sql_trail.verify_integrity(flagged.records[0])

    now = datetime.now(timezone.utc)
    report = await sql_trail.generate_activity_report(now - timedelta(hours=1), now + timedelta(minutes=1))
    assert report["anomaly_events"] == 1
    assert report["security_violations"] == 1
