from __future__ import annotations

import logging
from typing import Any

from contextrag.core.errors import DocumentNotFoundError, ProviderContractError, UnsupportedContentError
from contextrag.documents.storage import DocumentKey
from contextrag.domain.events import (
    ContextualizeChunkEvent,
    ContextualizeChunkResult,
    parse_event,
)
from contextrag.ingestion.preprocessing import extract_front_matter
from contextrag.persistence.repos import chunks as chunks_repo
from contextrag.services.ingest.deps import IngestDeps
from contextrag.workflow.base import WorkflowContext


logger = logging.getLogger(__name__)

CONTEXTUALIZE_PROMPT = """
Here is a document enclosed in <document></document> XML tags:
<document>
{document}
</document>

Here is a chunk from that document enclosed in <chunk></chunk> XML tags:
<chunk>
{chunk}
</chunk>

Please give a short succinct context to situate this chunk within the overall document for the purposes of improving search retrieval of the chunk.
Answer only with the succinct context and nothing else.
"""


def build_contextualize_prompt(document_text: str, chunk_content: str) -> str:
    return CONTEXTUALIZE_PROMPT.format(document=document_text, chunk=chunk_content)


def decode_document_text(content: bytes, key: DocumentKey) -> str:
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise UnsupportedContentError(f"document {key.object_key} is not UTF-8 text") from exc


async def read_document_text(deps: IngestDeps, key: DocumentKey) -> str:
    return decode_document_text(await deps.store.get(key), key)


async def contextualize_chunk(ctx: WorkflowContext, data: Any, *, deps: IngestDeps) -> dict[str, Any]:
    event = parse_event(ContextualizeChunkEvent, data)
    key = DocumentKey(event.organization_id, event.namespace_id, event.document_path)

    async def _from_cache() -> str | None:
        cached = await deps.cache.get(key)
        if cached is None:
            return None
        if cached.type == "binary":
            logger.error("contextualize_binary_document key=%s", key.object_key)
            raise UnsupportedContentError(
                "binary documents cannot be contextualized; images are not supported yet"
            )
        return cached.content

    document_text = await ctx.run_step("maybe-get-document-from-cache", _from_cache)

    if document_text is None:
        logger.info("contextualize_cache_miss key=%s chunk_index=%s", key.object_key, event.chunk_index)

        async def _from_storage() -> str:
            try:
                return await read_document_text(deps, key)
            except DocumentNotFoundError:
                logger.error("contextualize_document_missing key=%s", key.object_key)
                raise

        document_text = await ctx.run_step("get-document-from-storage", _from_storage)

        async def _populate_cache() -> None:
            await deps.cache.set(key, document_text, "text")

        await ctx.run_step("set-document-in-cache", _populate_cache)

    metadata = extract_front_matter(document_text).as_metadata()

    async def _generate() -> str:
        answer = await deps.llm.generate(build_contextualize_prompt(document_text, event.chunk_content))
        if not answer or not answer.strip():
            raise ProviderContractError(
                f"empty contextualization for {key.object_key} chunk {event.chunk_index}"
            )
        return answer.strip()

    contextualized = await ctx.run_step("contextualize-chunk", _generate)

    async def _upsert() -> int:
        async with deps.session_factory() as session:
            written = await chunks_repo.upsert_chunks(
                session,
                organization_id=event.organization_id,
                namespace_id=event.namespace_id,
                document_path=event.document_path,
                chunks=[
                    chunks_repo.ChunkWrite(
                        order_in_document=event.chunk_index,
                        original_content=event.chunk_content,
                        contextualized_content=contextualized,
                        metadata_json=metadata,
                    )
                ],
            )
            await session.commit()
            return written

    await ctx.run_step("upsert-chunk", _upsert)
    logger.info(
        "chunk_contextualized key=%s chunk_index=%s chars=%s",
        key.object_key,
        event.chunk_index,
        len(contextualized),
    )
    return ContextualizeChunkResult(
        organization_id=event.organization_id,
        namespace_id=event.namespace_id,
        document_path=event.document_path,
        chunk_index=event.chunk_index,
        chunk_content=event.chunk_content,
        chunk_contextualized_content=contextualized,
        metadata=metadata,
    ).to_event_data()
