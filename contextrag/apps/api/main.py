from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from contextrag.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from contextrag.apps.api.response import API_VERSION
from contextrag.apps.api.routes.batches import router as batches_router
from contextrag.apps.api.routes.events import router as events_router
from contextrag.apps.api.routes.health import router as health_router
from contextrag.apps.api.routes.search import router as search_router
from contextrag.core.config import Settings, get_settings
from contextrag.core.errors import ContextRagError
from contextrag.core.logging import configure_logging
from contextrag.services.ingest.deps import IngestDeps, build_deps
from contextrag.services.ingest.functions import build_engine
from contextrag.workflow.base import WorkflowEngine


logger = logging.getLogger(__name__)


def create_app(
    *,
    settings: Settings | None = None,
    deps: IngestDeps | None = None,
    engine: WorkflowEngine | None = None,
) -> FastAPI:
    """Build the HTTP app.

    Passing ``deps`` and ``engine`` skips the Redis pool the lifespan would
    otherwise open; tests use this to run against in-memory doubles.
    """
    configure_logging()
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if app.state.ingest_deps is not None:
            yield
            return
        redis = await create_pool(RedisSettings.from_dsn(settings.redis_url))
        app.state.ingest_deps = build_deps(settings, redis=redis)
        app.state.workflow_engine = build_engine(app.state.ingest_deps, redis=redis)
        logger.info("api_started execution_mode=%s", settings.ingest_execution_mode)
        try:
            yield
        finally:
            app.state.workflow_engine = None
            app.state.ingest_deps = None
            await redis.aclose()
            logger.info("api_stopped")

    app = FastAPI(title="contextrag API", version=API_VERSION, lifespan=lifespan)
    app.state.ingest_deps = deps
    app.state.workflow_engine = engine

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ContextRagError, domain_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(events_router, prefix=f"/{API_VERSION}")
    app.include_router(search_router, prefix=f"/{API_VERSION}")
    app.include_router(batches_router, prefix=f"/{API_VERSION}")
    return app
