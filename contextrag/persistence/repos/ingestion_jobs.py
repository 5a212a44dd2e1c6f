from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from contextrag.core.errors import IngestionJobNotFoundError
from contextrag.domain.models import IngestionJob
from contextrag.persistence.db import dialect_insert, use_read_committed


@dataclass(frozen=True)
class JobCounters:
    job_id: str
    total_documents: int
    documents_processed: int

    @property
    def is_complete(self) -> bool:
        return self.total_documents > 0 and self.documents_processed >= self.total_documents


async def create_job(
    session: AsyncSession,
    *,
    job_id: str,
    organization_id: str,
    namespace_id: str,
) -> bool:
    # Idempotent: replays of batch creation leave the existing counters untouched.
    stmt = (
        dialect_insert(session, IngestionJob)
        .values(
            id=job_id,
            organization_id=organization_id,
            namespace_id=namespace_id,
            total_documents=0,
            documents_processed=0,
        )
        .on_conflict_do_nothing(index_elements=[IngestionJob.id])
    )
    result = await session.execute(stmt)
    return bool(result.rowcount)


async def get_job(session: AsyncSession, job_id: str) -> IngestionJob | None:
    result = await session.execute(select(IngestionJob).where(IngestionJob.id == job_id))
    return result.scalar_one_or_none()


async def increment_total_documents(session: AsyncSession, job_id: str) -> JobCounters:
    # Atomic x = x + 1 in the database; no read-then-write in application code.
    await use_read_committed(session)
    result = await session.execute(
        update(IngestionJob)
        .where(IngestionJob.id == job_id)
        .values(total_documents=IngestionJob.total_documents + 1)
        .returning(IngestionJob.total_documents, IngestionJob.documents_processed)
    )
    row = result.first()
    if row is None:
        await session.rollback()
        raise IngestionJobNotFoundError(f"ingestion job {job_id} does not exist")
    await session.commit()
    return JobCounters(job_id=job_id, total_documents=row[0], documents_processed=row[1])


async def increment_documents_processed(session: AsyncSession, job_id: str) -> JobCounters:
    # Guarded so the processed counter never overtakes the total.
    await use_read_committed(session)
    result = await session.execute(
        update(IngestionJob)
        .where(
            IngestionJob.id == job_id,
            IngestionJob.documents_processed < IngestionJob.total_documents,
        )
        .values(documents_processed=IngestionJob.documents_processed + 1)
        .returning(IngestionJob.total_documents, IngestionJob.documents_processed)
    )
    row = result.first()
    if row is not None:
        await session.commit()
        return JobCounters(job_id=job_id, total_documents=row[0], documents_processed=row[1])

    job = await get_job(session, job_id)
    await session.rollback()
    if job is None:
        raise IngestionJobNotFoundError(f"ingestion job {job_id} does not exist")
    return JobCounters(
        job_id=job_id,
        total_documents=job.total_documents,
        documents_processed=job.documents_processed,
    )
