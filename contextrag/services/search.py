from __future__ import annotations

import logging

from contextrag.core.errors import PayloadValidationError
from contextrag.providers.embeddings.base import EmbeddingProvider
from contextrag.providers.index.base import SearchResults, VectorIndex


logger = logging.getLogger(__name__)


async def search_index(
    index: VectorIndex,
    embeddings: EmbeddingProvider,
    *,
    organization_id: str,
    namespace_id: str,
    text_query: str | None = None,
    vector_query: str | list[float] | None = None,
    top_k: int = 10,
    max_top_k: int = 100,
) -> SearchResults:
    """BM25, vector, or hybrid lookup over one namespace.

    A string ``vector_query`` is embedded with the query task type first.
    Hybrid results come back as two parallel lists; merging them is up to
    the caller.
    """
    text_query = (text_query or "").strip() or None
    if isinstance(vector_query, str):
        vector_query = vector_query.strip() or None
    if text_query is None and not vector_query:
        raise PayloadValidationError("search needs a text query, a vector query, or both")
    # Clamp to a bounded range to avoid unbounded queries.
    top_k = max(1, min(int(top_k), max_top_k))

    if isinstance(vector_query, str):
        vectors = await embeddings.embed_many([vector_query], "RETRIEVAL_QUERY")
        vector_query = vectors[0]

    logger.info(
        "search_index organization_id=%s namespace_id=%s text=%s vector=%s top_k=%s",
        organization_id,
        namespace_id,
        text_query is not None,
        vector_query is not None,
        top_k,
    )
    if text_query is not None and vector_query:
        return await index.hybrid_search(organization_id, namespace_id, text_query, vector_query, top_k)
    if text_query is not None:
        return SearchResults(bm25=await index.bm25_search(organization_id, namespace_id, text_query, top_k))
    return SearchResults(vector=await index.vector_search(organization_id, namespace_id, vector_query, top_k))
