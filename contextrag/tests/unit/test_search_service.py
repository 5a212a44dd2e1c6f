from __future__ import annotations

import pytest

from contextrag.core.errors import PayloadValidationError
from contextrag.providers.embeddings.local import LocalHashEmbeddingProvider, hash_embedding
from contextrag.providers.index.base import IndexChunk
from contextrag.services.search import search_index
from contextrag.tests.utils.fakes import InMemoryVectorIndex


async def _seeded_index() -> InMemoryVectorIndex:
    index = InMemoryVectorIndex()
    texts = ["rotate the api keys monthly", "invoices are emailed on the first", "keys live in the vault"]
    await index.upsert(
        "org",
        "ns",
        [
            IndexChunk(
                chunk_index=i,
                embedding=hash_embedding(text),
                document_path="ops.md",
                content=text,
                contextualized_content="",
            )
            for i, text in enumerate(texts)
        ],
    )
    return index


@pytest.mark.asyncio
async def test_text_query_runs_bm25_only() -> None:
    index = await _seeded_index()

    results = await search_index(
        index, LocalHashEmbeddingProvider(), organization_id="org", namespace_id="ns", text_query="keys"
    )

    assert results.vector is None
    assert [row["id"] for row in results.bm25] == ["ops.md-0", "ops.md-2"]


@pytest.mark.asyncio
async def test_string_vector_query_is_embedded() -> None:
    index = await _seeded_index()

    results = await search_index(
        index,
        LocalHashEmbeddingProvider(),
        organization_id="org",
        namespace_id="ns",
        vector_query="invoices are emailed on the first",
        top_k=1,
    )

    assert results.bm25 is None
    assert results.vector[0]["id"] == "ops.md-1"
    assert results.vector[0]["score"] == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_hybrid_query_returns_both_lists_and_clamps_top_k() -> None:
    index = await _seeded_index()

    results = await search_index(
        index,
        LocalHashEmbeddingProvider(),
        organization_id="org",
        namespace_id="ns",
        text_query="vault",
        vector_query=hash_embedding("vault"),
        top_k=500,
        max_top_k=2,
    )

    assert [row["id"] for row in results.bm25] == ["ops.md-2"]
    assert len(results.vector) == 2


@pytest.mark.asyncio
async def test_query_is_required() -> None:
    with pytest.raises(PayloadValidationError):
        await search_index(
            InMemoryVectorIndex(),
            LocalHashEmbeddingProvider(),
            organization_id="org",
            namespace_id="ns",
            text_query="  ",
        )
