from __future__ import annotations

import dataclasses
import logging

import pytest

from contextrag.core.errors import BatchConsistencyError, ProviderContractError
from contextrag.domain.events import EMBEDDING_RESULT, BatchEmbedChunkEvent
from contextrag.providers.embeddings.local import LocalHashEmbeddingProvider, hash_embedding
from contextrag.services.ingest.functions import build_engine
from contextrag.tests.utils.fakes import CountingEmbeddingProvider


def _signal(index: int, *, organization_id: str = "org", namespace_id: str = "ns") -> dict:
    return BatchEmbedChunkEvent(
        organization_id=organization_id,
        namespace_id=namespace_id,
        document_path="guide.md",
        chunk_index=index,
        chunk_content=f"chunk {index}",
        chunk_contextualized_content=f"context {index}",
        metadata={"title": "Guide"},
        correlation_id=f"batch-1:guide.md:{index}",
    ).to_event_data()


@pytest.mark.asyncio
async def test_batch_processes_valid_signals_and_drops_invalid(deps, engine, caplog) -> None:
    valid = [_signal(index) for index in range(3)]
    invalid = [{"organizationId": "org"}, {"correlationId": "x", "chunkIndex": "not-an-int"}]

    with caplog.at_level(logging.ERROR):
        result = await engine.run("batch-embed-chunk", valid + invalid)

    assert result["processed"] == 3
    assert result["dropped"] == 2
    dropped_logs = [r for r in caplog.records if r.getMessage().startswith("batch_embed_signal_dropped")]
    assert len(dropped_logs) == 2

    rows = deps.index.namespaces["org-ns"]
    assert sorted(rows) == ["guide.md-0", "guide.md-1", "guide.md-2"]
    assert rows["guide.md-1"]["embedding"] == hash_embedding("context 1")
    assert rows["guide.md-1"]["attributes"] == {"title": "Guide"}

    for index in range(3):
        delivered = await engine.wait_for(EMBEDDING_RESULT, "correlationId", f"batch-1:guide.md:{index}", 0.1)
        assert delivered["embedding"] == hash_embedding(f"context {index}")
    assert await engine.wait_for(EMBEDDING_RESULT, "correlationId", "batch-1:guide.md:0", 0.01) is None


@pytest.mark.asyncio
async def test_batch_with_only_invalid_signals_does_nothing(deps, engine) -> None:
    result = await engine.run("batch-embed-chunk", [{"bogus": True}])

    assert result == {"processed": 0, "dropped": 1, "organization_id": None, "namespace_id": None}
    assert deps.index.upsert_calls == 0


@pytest.mark.asyncio
async def test_batch_mixing_namespaces_fails(engine) -> None:
    with pytest.raises(BatchConsistencyError):
        await engine.run("batch-embed-chunk", [_signal(0), _signal(1, namespace_id="other")])


@pytest.mark.asyncio
async def test_replayed_signals_are_embedded_once(deps) -> None:
    embeddings = CountingEmbeddingProvider(LocalHashEmbeddingProvider())
    counted = dataclasses.replace(deps, embeddings=embeddings)

    result = await build_engine(counted).run("batch-embed-chunk", [_signal(0), _signal(0), _signal(1)])

    assert result["processed"] == 2
    assert embeddings.calls == [2]


@pytest.mark.asyncio
async def test_embedding_count_mismatch_is_a_contract_error(deps) -> None:
    short = dataclasses.replace(
        deps,
        embeddings=CountingEmbeddingProvider(LocalHashEmbeddingProvider(), drop_last=True),
    )

    with pytest.raises(ProviderContractError):
        await build_engine(short).run("embed-chunk", {"chunks": {"b": "two", "a": "one"}})

    assert deps.index.upsert_calls == 0


@pytest.mark.asyncio
async def test_embedder_keys_results_by_sorted_correlation_id(engine) -> None:
    result = await engine.run("embed-chunk", {"chunks": {"b": "two", "a": "one"}})

    assert list(result) == ["a", "b"]
    assert result["a"] == hash_embedding("one")
    assert result["b"] == hash_embedding("two")


@pytest.mark.asyncio
async def test_signals_for_one_row_under_two_batches_upsert_it_once(deps, engine) -> None:
    first = _signal(0)
    second = {**_signal(0), "correlationId": "batch-2:guide.md:0", "chunkContextualizedContent": "context newer"}

    result = await engine.run("batch-embed-chunk", [first, second, _signal(1)])

    assert result["processed"] == 3
    assert deps.index.upserted == [["guide.md-0", "guide.md-1"]]
    assert deps.index.namespaces["org-ns"]["guide.md-0"]["contextualized_content"] == "context newer"
    for correlation_id in ("batch-1:guide.md:0", "batch-2:guide.md:0", "batch-1:guide.md:1"):
        assert await engine.wait_for(EMBEDDING_RESULT, "correlationId", correlation_id, 0.1) is not None
