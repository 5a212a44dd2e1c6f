from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, Collection, Literal

from pydantic import BaseModel, Field

from contextrag.core.errors import EmbeddingTimeoutError, UnsupportedContentError
from contextrag.documents.storage import DocumentKey
from contextrag.domain.events import (
    BATCH_EMBED_CHUNK,
    EMBEDDING_RESULT,
    BatchEmbedChunkEvent,
    ContextualizeChunkEvent,
    ContextualizeChunkResult,
    IngestDocumentEvent,
    ProcessChunkEvent,
    ProcessChunkResult,
    chunk_correlation_id,
    parse_event,
)
from contextrag.ingestion.chunking import DocumentKind, chunk_document, classify_document_path
from contextrag.ingestion.preprocessing import extract_front_matter
from contextrag.persistence.repos import chunks as chunks_repo
from contextrag.persistence.repos import ingestion_jobs as jobs_repo
from contextrag.providers.index.base import row_id
from contextrag.services.ingest.contextualize import decode_document_text
from contextrag.services.ingest.deps import IngestDeps
from contextrag.workflow.base import WorkflowContext


logger = logging.getLogger(__name__)

CONTEXTUALIZE_FUNCTION = "contextualize-chunk"
PROCESS_CHUNK_FUNCTION = "process-chunk"


class IngestDocumentResult(BaseModel):
    document_path: str
    status: Literal["ingested", "skipped"]
    skipped_reason: str | None = None
    chunk_count: int = 0
    processed_chunks: list[int] = Field(default_factory=list)
    failed_chunks: list[int] = Field(default_factory=list)
    orphans_removed: int = 0


@dataclass(frozen=True)
class ChunkDiff:
    # (index, chunk text) for positions that need contextualizing and embedding.
    changed: list[tuple[int, str]]
    # Stored positions at or beyond the new chunk count.
    orphan_indexes: list[int]


def diff_chunks(
    new_chunks: list[str],
    existing: dict[int, str],
    pending: Collection[int] = (),
) -> ChunkDiff:
    # Pending rows were stored by a run whose embedding never landed; redo them even if unchanged.
    changed = [
        (index, chunk)
        for index, chunk in enumerate(new_chunks)
        if index not in existing or index in pending or existing[index].strip() != chunk.strip()
    ]
    orphans = sorted(index for index in existing if index >= len(new_chunks))
    return ChunkDiff(changed=changed, orphan_indexes=orphans)


async def process_chunk(ctx: WorkflowContext, data: Any, *, deps: IngestDeps) -> dict[str, Any]:
    event = parse_event(ProcessChunkEvent, data)
    contextualized = ContextualizeChunkResult.model_validate(
        await ctx.invoke(
            "contextualize-chunk",
            CONTEXTUALIZE_FUNCTION,
            ContextualizeChunkEvent(
                organization_id=event.organization_id,
                namespace_id=event.namespace_id,
                document_path=event.document_path,
                chunk_index=event.chunk_index,
                chunk_content=event.chunk_content,
            ).to_event_data(),
        )
    )

    await ctx.send_event(
        "batch-embed-chunk",
        BATCH_EMBED_CHUNK,
        BatchEmbedChunkEvent(
            **contextualized.model_dump(),
            correlation_id=event.correlation_id,
        ).to_event_data(),
    )

    result = await ctx.wait_for_event(
        "wait-for-chunk-result",
        event=EMBEDDING_RESULT,
        match_key="correlationId",
        match_value=event.correlation_id,
        timeout_s=deps.settings.embedding_result_timeout_s,
    )
    if result is None:
        logger.error(
            "embedding_result_timeout document_path=%s chunk_index=%s correlation_id=%s",
            event.document_path,
            event.chunk_index,
            event.correlation_id,
        )
        raise EmbeddingTimeoutError(f"no embedding result for {event.correlation_id}")

    return ProcessChunkResult(
        chunk_index=event.chunk_index,
        contextualized_content=contextualized.chunk_contextualized_content,
        metadata=contextualized.metadata,
    ).to_event_data()


async def ingest_document(ctx: WorkflowContext, data: Any, *, deps: IngestDeps) -> dict[str, Any]:
    """Bring the chunks and search rows of one document in line with storage.

    Only chunks whose trimmed text differs from the stored row at the same
    position are re-contextualized and re-embedded. A failed chunk is
    reported in ``failed_chunks`` and does not fail the document; its row is
    left without contextualized text so the next run retries it. Job counters
    are bumped around the work so a batch completes when every document has
    passed through here.
    """
    event = parse_event(IngestDocumentEvent, data)
    key = DocumentKey(event.organization_id, event.namespace_id, event.document_path)
    log_ctx = f"batch_id={event.batch_id} key={key.object_key}"

    async def _fetch() -> str:
        raw = await deps.store.get(key)
        return base64.b64encode(raw).decode("ascii")

    raw = base64.b64decode(await ctx.run_step("get-document-from-storage", _fetch))

    kind = classify_document_path(event.document_path)
    if kind is DocumentKind.IMAGE:
        logger.warning("ingest_image_skipped %s", log_ctx)
        return IngestDocumentResult(
            document_path=event.document_path,
            status="skipped",
            skipped_reason="IMAGE_NOT_SUPPORTED_YET",
        ).model_dump(mode="json")
    if kind is DocumentKind.UNSUPPORTED:
        logger.error("ingest_unsupported_type %s", log_ctx)
        raise UnsupportedContentError(f"unable to ingest {event.document_path}: only markdown-like text is supported")

    text = decode_document_text(raw, key)

    async def _cache() -> None:
        # Must land before chunk processing so contextualizers skip storage.
        await deps.cache.set(key, text, "text")

    await ctx.run_step("cache-document", _cache)

    async def _increment_total() -> dict[str, int]:
        async with deps.session_factory() as session:
            counters = await jobs_repo.increment_total_documents(session, event.batch_id)
        logger.info("batch_total_incremented %s total=%s", log_ctx, counters.total_documents)
        return {"total": counters.total_documents, "processed": counters.documents_processed}

    await ctx.run_step("increment-batch-total-documents", _increment_total)

    async def _split() -> list[str]:
        return chunk_document(text)

    new_chunks: list[str] = await ctx.run_step("split-document-into-chunks", _split)
    logger.info("document_chunked %s chunks=%s", log_ctx, len(new_chunks))

    async def _load_existing() -> list[dict[str, Any]]:
        async with deps.session_factory() as session:
            rows = await chunks_repo.list_document_chunks(
                session,
                organization_id=event.organization_id,
                namespace_id=event.namespace_id,
                document_path=event.document_path,
            )
        return [
            {
                "index": row.order_in_document,
                "original_content": row.original_content,
                "pending": not (row.contextualized_content or "").strip(),
            }
            for row in rows
        ]

    existing_rows = await ctx.run_step("get-existing-chunks-from-db", _load_existing)
    diff = diff_chunks(
        new_chunks,
        {row["index"]: row["original_content"] for row in existing_rows},
        pending={row["index"] for row in existing_rows if row.get("pending")},
    )
    logger.info(
        "chunk_diff %s existing=%s changed=%s orphans=%s",
        log_ctx,
        len(existing_rows),
        len(diff.changed),
        len(diff.orphan_indexes),
    )

    # Fan out every changed chunk and collect each outcome; one failure never cancels siblings.
    outcomes = await asyncio.gather(
        *(
            ctx.invoke(
                f"process-chunk:{index}",
                PROCESS_CHUNK_FUNCTION,
                ProcessChunkEvent(
                    organization_id=event.organization_id,
                    namespace_id=event.namespace_id,
                    document_path=event.document_path,
                    chunk_index=index,
                    chunk_content=chunk,
                    correlation_id=chunk_correlation_id(event.batch_id, event.document_path, index, ctx.run_id),
                ).to_event_data(),
            )
            for index, chunk in diff.changed
        ),
        return_exceptions=True,
    )

    writes: list[chunks_repo.ChunkWrite] = []
    # Failed chunks are stored without contextualized text so the next diff picks them up again.
    pending_writes: list[chunks_repo.ChunkWrite] = []
    failed: list[int] = []
    for (index, chunk), outcome in zip(diff.changed, outcomes):
        if isinstance(outcome, BaseException):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            failed.append(index)
            logger.error(
                "chunk_processing_failed %s chunk_index=%s error=%s",
                log_ctx,
                index,
                outcome.__class__.__name__,
                exc_info=outcome,
            )
            pending_writes.append(
                chunks_repo.ChunkWrite(
                    order_in_document=index,
                    original_content=chunk,
                    contextualized_content="",
                    metadata_json=extract_front_matter(text).as_metadata(),
                )
            )
            continue
        processed = ProcessChunkResult.model_validate(outcome)
        writes.append(
            chunks_repo.ChunkWrite(
                order_in_document=index,
                original_content=chunk,
                contextualized_content=processed.contextualized_content,
                metadata_json=processed.metadata,
            )
        )

    async def _persist() -> int:
        async with deps.session_factory() as session:
            written = await chunks_repo.upsert_chunks(
                session,
                organization_id=event.organization_id,
                namespace_id=event.namespace_id,
                document_path=event.document_path,
                chunks=writes + pending_writes,
            )
            await session.commit()
        return written

    if writes or pending_writes:
        await ctx.run_step("insert-chunks-into-db", _persist)
    elif not diff.changed:
        logger.info("no_chunks_to_process %s", log_ctx)

    async def _increment_processed() -> dict[str, int]:
        async with deps.session_factory() as session:
            counters = await jobs_repo.increment_documents_processed(session, event.batch_id)
        logger.info(
            "batch_processed_incremented %s processed=%s total=%s",
            log_ctx,
            counters.documents_processed,
            counters.total_documents,
        )
        return {"total": counters.total_documents, "processed": counters.documents_processed}

    await ctx.run_step("increment-batch-processed-documents", _increment_processed)

    async def _delete_orphans() -> int:
        if not diff.orphan_indexes:
            return 0
        first_orphan = len(new_chunks)
        async with deps.session_factory() as session:
            removed = await chunks_repo.delete_chunks_from(
                session,
                organization_id=event.organization_id,
                namespace_id=event.namespace_id,
                document_path=event.document_path,
                first_orphan_index=first_orphan,
            )
            await session.commit()
        await deps.index.delete_rows(
            event.organization_id,
            event.namespace_id,
            [row_id(event.document_path, index) for index in diff.orphan_indexes],
        )
        logger.info("orphaned_chunks_deleted %s from_index=%s removed=%s", log_ctx, first_orphan, removed)
        return removed

    async def _clear_cache() -> None:
        await deps.cache.remove(key)

    orphans_removed, _ = await asyncio.gather(
        ctx.run_step("delete-orphaned-chunks", _delete_orphans),
        ctx.run_step("clear-document-from-cache", _clear_cache),
    )

    return IngestDocumentResult(
        document_path=event.document_path,
        status="ingested",
        chunk_count=len(new_chunks),
        processed_chunks=[write.order_in_document for write in writes],
        failed_chunks=failed,
        orphans_removed=orphans_removed,
    ).model_dump(mode="json")
