from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from contextrag.apps.api.deps import get_ingest_deps
from contextrag.apps.api.response import SuccessEnvelope, success_response
from contextrag.providers.index.base import SearchResults
from contextrag.services.ingest.deps import IngestDeps
from contextrag.services.search import search_index

router = APIRouter(prefix="/search", tags=["search"])


class SearchRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    organization_id: str = Field(min_length=1)
    namespace_id: str = Field(min_length=1)
    text_query: str | None = None
    # Either raw text to embed or a precomputed query vector.
    vector_query: str | list[float] | None = None
    top_k: int = Field(default=10, ge=1)


@router.post("", response_model=SuccessEnvelope[dict])
async def search(
    request: Request,
    payload: SearchRequest,
    deps: IngestDeps = Depends(get_ingest_deps),
) -> dict:
    results: SearchResults = await search_index(
        deps.index,
        deps.embeddings,
        organization_id=payload.organization_id,
        namespace_id=payload.namespace_id,
        text_query=payload.text_query,
        vector_query=payload.vector_query,
        top_k=payload.top_k,
        max_top_k=deps.settings.search_max_top_k,
    )
    return success_response(request=request, data=results.as_dict())
