from __future__ import annotations

from dataclasses import dataclass

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contextrag.core.config import Settings
from contextrag.documents.cache import DocumentCache
from contextrag.documents.storage import ContentStore, build_content_store
from contextrag.providers.embeddings.base import EmbeddingProvider
from contextrag.providers.embeddings.factory import get_embedding_provider
from contextrag.providers.index.base import VectorIndex
from contextrag.providers.index.pgvector import PgVectorIndex
from contextrag.providers.llm.base import LLMProvider
from contextrag.providers.llm.factory import get_llm_provider


@dataclass
class IngestDeps:
    """Clients shared by every workflow function, built once per process."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    store: ContentStore
    cache: DocumentCache
    llm: LLMProvider
    embeddings: EmbeddingProvider
    index: VectorIndex


def build_deps(
    settings: Settings,
    *,
    redis: Redis,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> IngestDeps:
    if session_factory is None:
        from contextrag.persistence.db import SessionLocal

        session_factory = SessionLocal
    return IngestDeps(
        settings=settings,
        session_factory=session_factory,
        store=build_content_store(settings),
        cache=DocumentCache(
            redis,
            ttl_s=settings.document_cache_ttl_s,
            prefix=settings.document_cache_prefix,
        ),
        llm=get_llm_provider(settings),
        embeddings=get_embedding_provider(settings),
        index=PgVectorIndex(session_factory),
    )
