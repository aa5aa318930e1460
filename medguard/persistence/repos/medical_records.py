from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from medguard.domain.models import MedicalRecord


# The session is schema-pinned; unqualified table names resolve inside the tenant schema.
async def add_record(session: AsyncSession, record: MedicalRecord) -> MedicalRecord:
    session.add(record)
    await session.commit()
    return record


async def get_record(session: AsyncSession, record_id: str) -> MedicalRecord | None:
    result = await session.execute(select(MedicalRecord).where(MedicalRecord.id == record_id))
    return result.scalar_one_or_none()


async def list_for_patient(
    session: AsyncSession, patient_id: str, *, offset: int = 0, limit: int = 50
) -> list[MedicalRecord]:
    result = await session.execute(
        select(MedicalRecord)
        .where(MedicalRecord.patient_id == patient_id)
        .order_by(MedicalRecord.created_at.desc(), MedicalRecord.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())
