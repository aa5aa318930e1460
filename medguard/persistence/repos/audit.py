from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from medguard.domain.models import AuditLog


def build_query_filters(
    *,
    tenant_id: str | None = None,
    user_id: str | None = None,
    patient_id_hash: str | None = None,
    action: str | None = None,
    severity: str | None = None,
    resource: str | None = None,
    is_anomaly: bool | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> list[Any]:
    # Patient filters arrive pre-hashed; the raw identifier never reaches SQL.
    filters: list[Any] = []
    if tenant_id:
        filters.append(AuditLog.tenant_id == tenant_id)
    if user_id:
        filters.append(AuditLog.user_id == user_id)
    if patient_id_hash:
        filters.append(AuditLog.patient_id_hash == patient_id_hash)
    if action:
        filters.append(AuditLog.action == action)
    if severity:
        filters.append(AuditLog.severity == severity)
    if resource:
        filters.append(AuditLog.resource == resource)
    if is_anomaly is not None:
        filters.append(AuditLog.is_anomaly.is_(is_anomaly))
    if start_date:
        filters.append(AuditLog.created_at >= start_date)
    if end_date:
        filters.append(AuditLog.created_at <= end_date)
    return filters


def build_page_statement(filters: Sequence[Any], *, offset: int, limit: int) -> Select:
    return (
        select(AuditLog)
        .where(*filters)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset(offset)
        .limit(limit)
    )


async def insert_entries(session: AsyncSession, rows: Sequence[AuditLog]) -> None:
    session.add_all(list(rows))
    await session.commit()


async def list_entries(
    session: AsyncSession, filters: Sequence[Any], *, offset: int, limit: int
) -> tuple[list[AuditLog], int]:
    total = await session.scalar(select(func.count()).select_from(AuditLog).where(*filters))
    result = await session.execute(build_page_statement(filters, offset=offset, limit=limit))
    return list(result.scalars().all()), int(total or 0)


async def get_entry(session: AsyncSession, entry_id: str, *, tenant_id: str | None) -> AuditLog | None:
    stmt = select(AuditLog).where(AuditLog.id == entry_id)
    if tenant_id:
        stmt = stmt.where(AuditLog.tenant_id == tenant_id)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def count_actions(
    session: AsyncSession,
    *,
    user_id: str,
    action: str,
    since: datetime,
    tenant_id: str | None = None,
) -> int:
    stmt = select(func.count()).select_from(AuditLog).where(
        AuditLog.user_id == user_id,
        AuditLog.action == action,
        AuditLog.created_at >= since,
    )
    if tenant_id:
        stmt = stmt.where(AuditLog.tenant_id == tenant_id)
    return int(await session.scalar(stmt) or 0)


async def summarize(
    session: AsyncSession,
    *,
    start: datetime,
    end: datetime,
    tenant_id: str | None = None,
) -> list[tuple[str, str, int]]:
    # Group counts by action and severity for activity reports.
    stmt = (
        select(AuditLog.action, AuditLog.severity, func.count())
        .where(AuditLog.created_at >= start, AuditLog.created_at <= end)
        .group_by(AuditLog.action, AuditLog.severity)
    )
    if tenant_id:
        stmt = stmt.where(AuditLog.tenant_id == tenant_id)
    result = await session.execute(stmt)
    return [(str(action), str(severity), int(count)) for action, severity, count in result.all()]
