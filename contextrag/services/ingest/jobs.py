from __future__ import annotations

import logging
from typing import Any

from contextrag.domain.events import CreateBatchEvent, parse_event
from contextrag.persistence.repos import ingestion_jobs as jobs_repo
from contextrag.services.ingest.deps import IngestDeps
from contextrag.workflow.base import WorkflowContext


logger = logging.getLogger(__name__)


async def create_batch(ctx: WorkflowContext, data: Any, *, deps: IngestDeps) -> dict[str, Any]:
    event = parse_event(CreateBatchEvent, data)

    async def _create() -> bool:
        async with deps.session_factory() as session:
            created = await jobs_repo.create_job(
                session,
                job_id=event.batch_id,
                organization_id=event.organization_id,
                namespace_id=event.namespace_id,
            )
            await session.commit()
        return created

    created = await ctx.run_step("create-ingestion-job", _create)
    logger.info(
        "ingestion_job_created batch_id=%s organization_id=%s namespace_id=%s created=%s",
        event.batch_id,
        event.organization_id,
        event.namespace_id,
        created,
    )
    return {"batchId": event.batch_id, "created": created}


async def get_batch_progress(deps: IngestDeps, batch_id: str) -> jobs_repo.JobCounters | None:
    async with deps.session_factory() as session:
        job = await jobs_repo.get_job(session, batch_id)
    if job is None:
        return None
    return jobs_repo.JobCounters(
        job_id=job.id,
        total_documents=job.total_documents,
        documents_processed=job.documents_processed,
    )
