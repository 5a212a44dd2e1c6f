from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, ValidationError

from contextrag.core.errors import BatchConsistencyError, ProviderContractError
from contextrag.domain.events import (
    EMBEDDING_RESULT,
    BatchEmbedChunkEvent,
    EmbedChunksEvent,
    EmbeddingResultEvent,
)
from contextrag.providers.index.base import IndexChunk, row_id
from contextrag.services.ingest.deps import IngestDeps
from contextrag.workflow.base import WorkflowContext


logger = logging.getLogger(__name__)

EMBED_FUNCTION = "embed-chunk"


class BatchEmbedResult(BaseModel):
    processed: int
    dropped: int
    organization_id: str | None = None
    namespace_id: str | None = None


def _validate_signals(events: list[Any]) -> tuple[list[BatchEmbedChunkEvent], int]:
    # Invalid signals are dropped one by one so they cannot sink the whole window.
    valid: list[BatchEmbedChunkEvent] = []
    dropped = 0
    for raw in events:
        try:
            valid.append(BatchEmbedChunkEvent.model_validate(raw))
        except ValidationError as exc:
            dropped += 1
            logger.error(
                "batch_embed_signal_dropped errors=%s",
                exc.errors(include_url=False, include_input=False),
            )
    return valid, dropped


async def batch_embed_chunks(ctx: WorkflowContext, events: list[Any], *, deps: IngestDeps) -> dict[str, Any]:
    valid, dropped = _validate_signals(list(events or []))
    if not valid:
        logger.error("batch_embed_no_valid_signals dropped=%s", dropped)
        return BatchEmbedResult(processed=0, dropped=dropped).model_dump()

    organization_id = valid[0].organization_id
    namespace_id = valid[0].namespace_id
    for signal in valid:
        if signal.organization_id != organization_id or signal.namespace_id != namespace_id:
            logger.error(
                "batch_embed_key_mismatch expected=%s/%s got=%s/%s",
                organization_id,
                namespace_id,
                signal.organization_id,
                signal.namespace_id,
            )
            raise BatchConsistencyError("embedding batch mixes organizations or namespaces")

    # Replayed signals share a correlation id; the latest one wins.
    signals = {signal.correlation_id: signal for signal in valid}
    keys = {correlation_id: signal.chunk_contextualized_content for correlation_id, signal in signals.items()}
    logger.info(
        "batch_embed_start organization_id=%s namespace_id=%s chunks=%s dropped=%s",
        organization_id,
        namespace_id,
        len(keys),
        dropped,
    )

    embeddings = await ctx.invoke("embed-chunks", EMBED_FUNCTION, EmbedChunksEvent(chunks=keys).to_event_data())
    if not embeddings:
        raise ProviderContractError("no result from embedding chunks")
    missing = sorted(set(keys) - set(embeddings))
    if missing:
        raise ProviderContractError(f"embeddings missing for {len(missing)} chunks")

    # Runs under different batches can share an index row; one upsert may touch each row once.
    rows: dict[str, tuple[str, BatchEmbedChunkEvent]] = {}
    for correlation_id, signal in signals.items():
        rows[row_id(signal.document_path, signal.chunk_index)] = (correlation_id, signal)
    if len(rows) < len(signals):
        logger.info("batch_embed_rows_collapsed signals=%s rows=%s", len(signals), len(rows))

    async def _upsert() -> int:
        return await deps.index.upsert(
            organization_id,
            namespace_id,
            [
                IndexChunk(
                    chunk_index=signal.chunk_index,
                    embedding=embeddings[correlation_id],
                    document_path=signal.document_path,
                    content=signal.chunk_content,
                    contextualized_content=signal.chunk_contextualized_content,
                    metadata=signal.metadata,
                )
                for correlation_id, signal in rows.values()
            ],
        )

    await ctx.run_step("upsert-into-index", _upsert)

    for correlation_id in signals:
        await ctx.send_event(
            f"send-embedding-result:{correlation_id}",
            EMBEDDING_RESULT,
            EmbeddingResultEvent(
                correlation_id=correlation_id,
                embedding=embeddings[correlation_id],
            ).to_event_data(),
        )
    logger.info("batch_embed_results_sent count=%s", len(signals))
    return BatchEmbedResult(
        processed=len(signals),
        dropped=dropped,
        organization_id=organization_id,
        namespace_id=namespace_id,
    ).model_dump()
