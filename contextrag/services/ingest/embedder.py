from __future__ import annotations

import logging
from typing import Any

from contextrag.core.errors import ProviderContractError
from contextrag.domain.events import EmbedChunksEvent, parse_event
from contextrag.services.ingest.deps import IngestDeps
from contextrag.workflow.base import WorkflowContext


logger = logging.getLogger(__name__)


async def embed_chunks(ctx: WorkflowContext, data: Any, *, deps: IngestDeps) -> dict[str, list[float]]:
    """Embed contextualized chunk texts keyed by correlation id.

    This function carries the embedding throttle; the batcher feeding it
    cannot, since batching and throttling do not compose on one function.
    Keys are sorted first so replays issue the same provider call.
    """
    event = parse_event(EmbedChunksEvent, data)
    keys = sorted(event.chunks)
    if not keys:
        return {}
    texts = [event.chunks[key] for key in keys]

    async def _embed() -> list[list[float]]:
        return await deps.embeddings.embed_many(texts, "RETRIEVAL_DOCUMENT")

    vectors = await ctx.run_step("embed-chunks", _embed)
    if len(vectors) != len(keys):
        logger.error("embed_count_mismatch expected=%s got=%s", len(keys), len(vectors))
        raise ProviderContractError("number of embeddings does not match number of keys")
    return dict(zip(keys, vectors))
