from __future__ import annotations

from functools import partial

from arq.connections import ArqRedis

from contextrag.core.errors import WorkflowError
from contextrag.domain import events
from contextrag.services.ingest.batching import EMBED_FUNCTION, batch_embed_chunks
from contextrag.services.ingest.contextualize import contextualize_chunk
from contextrag.services.ingest.deps import IngestDeps
from contextrag.services.ingest.embedder import embed_chunks
from contextrag.services.ingest.jobs import create_batch
from contextrag.services.ingest.orchestrator import (
    CONTEXTUALIZE_FUNCTION,
    PROCESS_CHUNK_FUNCTION,
    ingest_document,
    process_chunk,
)
from contextrag.services.ingest.upload import upload_document
from contextrag.services.resilience import ThrottleConfig
from contextrag.workflow.base import BatchConfig, FunctionRegistry, WorkflowEngine, WorkflowFunction
from contextrag.workflow.inline import InlineWorkflowEngine
from contextrag.workflow.redis_engine import RedisWorkflowEngine


def build_registry(deps: IngestDeps) -> FunctionRegistry:
    settings = deps.settings
    return FunctionRegistry(
        [
            WorkflowFunction(
                name="create-batch",
                trigger=events.CREATE_BATCH,
                handler=partial(create_batch, deps=deps),
            ),
            WorkflowFunction(
                name="upload-document",
                trigger=events.UPLOAD_DOCUMENT,
                handler=partial(upload_document, deps=deps),
            ),
            WorkflowFunction(
                name="ingest-document",
                trigger=events.INGEST_DOCUMENT,
                handler=partial(ingest_document, deps=deps),
            ),
            WorkflowFunction(
                name=PROCESS_CHUNK_FUNCTION,
                trigger=events.PROCESS_CHUNK,
                handler=partial(process_chunk, deps=deps),
                waits_for=((events.EMBEDDING_RESULT, "correlationId"),),
            ),
            WorkflowFunction(
                name=CONTEXTUALIZE_FUNCTION,
                trigger=events.CONTEXTUALIZE_CHUNK,
                handler=partial(contextualize_chunk, deps=deps),
                throttle=ThrottleConfig(
                    limit=settings.contextualize_throttle_limit,
                    period_s=settings.contextualize_throttle_period_s,
                ),
            ),
            WorkflowFunction(
                name="batch-embed-chunk",
                trigger=events.BATCH_EMBED_CHUNK,
                handler=partial(batch_embed_chunks, deps=deps),
                # Batch per organization and namespace so one embed call never mixes indexes.
                batch=BatchConfig(
                    max_size=settings.embed_batch_max_size,
                    timeout_s=settings.embed_batch_gather_period_s,
                    key_fields=("organizationId", "namespaceId"),
                ),
            ),
            WorkflowFunction(
                name=EMBED_FUNCTION,
                trigger=events.EMBED_CHUNK,
                handler=partial(embed_chunks, deps=deps),
                throttle=ThrottleConfig(
                    limit=settings.embed_throttle_limit,
                    period_s=settings.embed_throttle_period_s,
                ),
            ),
        ]
    )


def build_engine(deps: IngestDeps, *, redis: ArqRedis | None = None) -> WorkflowEngine:
    settings = deps.settings
    registry = build_registry(deps)
    if settings.ingest_execution_mode.lower() == "inline":
        return InlineWorkflowEngine(registry, settings)
    if redis is None:
        raise WorkflowError("queue execution mode needs an arq Redis pool")
    return RedisWorkflowEngine(registry, settings, redis=redis)
