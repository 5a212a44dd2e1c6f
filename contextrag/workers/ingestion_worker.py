from __future__ import annotations

import logging
from typing import Any

from arq.connections import RedisSettings

from contextrag.core.config import get_settings
from contextrag.core.logging import configure_logging
from contextrag.services.ingest.deps import build_deps
from contextrag.services.ingest.functions import build_registry
from contextrag.workflow.redis_engine import RedisWorkflowEngine


logger = logging.getLogger(__name__)


async def run_function(ctx, name: str, data: Any, run_id: str) -> Any:
    engine: RedisWorkflowEngine = ctx["engine"]
    return await engine.run_job(name, data, run_id, job_try=ctx.get("job_try", 1))


async def flush_batch(ctx, name: str, batch_key: str) -> Any:
    engine: RedisWorkflowEngine = ctx["engine"]
    # The arq job id keys the taken events, so a retried flush replays the same window.
    return await engine.flush_job(
        name,
        batch_key,
        flush_id=ctx["job_id"],
        job_try=ctx.get("job_try", 1),
    )


async def _startup(ctx) -> None:
    # Build clients once per worker process and share them across jobs.
    configure_logging()
    settings = get_settings()
    deps = build_deps(settings, redis=ctx["redis"])
    ctx["engine"] = RedisWorkflowEngine(build_registry(deps), settings, redis=ctx["redis"])
    logger.info("ingestion_worker_started queue=%s", settings.ingest_queue_name)


async def _shutdown(ctx) -> None:
    logger.info("ingestion_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.ingest_queue_name
    # Retries are decided per failure in RedisWorkflowEngine.run_job.
    max_tries = settings.ingest_max_retries
    # Chunk runs block on embedding results while flush jobs must still get a slot.
    max_jobs = 100
    job_timeout = int(settings.embedding_result_timeout_s) + 600
    functions = [run_function, flush_batch]
    on_startup = _startup
    on_shutdown = _shutdown
