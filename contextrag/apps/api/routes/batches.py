from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel

from contextrag.apps.api.deps import get_ingest_deps
from contextrag.apps.api.response import SuccessEnvelope, success_response
from contextrag.services.ingest.deps import IngestDeps
from contextrag.services.ingest.jobs import get_batch_progress

router = APIRouter(prefix="/batches", tags=["batches"])


class BatchProgressResponse(BaseModel):
    batch_id: str
    total_documents: int
    documents_processed: int
    is_complete: bool


@router.get("/{batch_id}", response_model=SuccessEnvelope[BatchProgressResponse])
async def get_batch(
    request: Request,
    batch_id: str,
    deps: IngestDeps = Depends(get_ingest_deps),
) -> dict:
    counters = await get_batch_progress(deps, batch_id)
    if counters is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "BATCH_NOT_FOUND", "message": f"Batch {batch_id} not found"},
        )
    payload = BatchProgressResponse(
        batch_id=counters.job_id,
        total_documents=counters.total_documents,
        documents_processed=counters.documents_processed,
        is_complete=counters.is_complete,
    )
    return success_response(request=request, data=payload.model_dump())
