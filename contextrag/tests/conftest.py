from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from contextrag.core.config import Settings
from contextrag.documents.cache import DocumentCache
from contextrag.domain.models import Base
from contextrag.providers.embeddings.local import LocalHashEmbeddingProvider
from contextrag.providers.llm.fake import FakeLLMProvider
from contextrag.services.ingest.deps import IngestDeps
from contextrag.services.ingest.functions import build_engine
from contextrag.tests.utils.fakes import InMemoryContentStore, InMemoryVectorIndex, StubRedis


@pytest.fixture
def settings() -> Settings:
    # Small windows and timeouts keep the inline engine fast and deterministic.
    return Settings(
        _env_file=None,
        ingest_execution_mode="inline",
        ingest_max_retries=2,
        retry_backoff_ms=1,
        storage_backend="local",
        llm_provider="fake",
        embedding_provider="local",
        embed_batch_max_size=100,
        embed_batch_gather_period_s=0.05,
        embedding_result_timeout_s=5.0,
        embed_throttle_limit=10_000,
        contextualize_throttle_limit=10_000,
    )


@pytest.fixture
async def session_factory(tmp_path):
    # File-backed SQLite so concurrent sessions see each other's commits.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'contextrag.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def redis() -> StubRedis:
    return StubRedis()


@pytest.fixture
def deps(settings, session_factory, redis) -> IngestDeps:
    return IngestDeps(
        settings=settings,
        session_factory=session_factory,
        store=InMemoryContentStore(),
        cache=DocumentCache(redis, ttl_s=settings.document_cache_ttl_s),
        llm=FakeLLMProvider(),
        embeddings=LocalHashEmbeddingProvider(),
        index=InMemoryVectorIndex(),
    )


@pytest.fixture
def engine(deps):
    return build_engine(deps)
