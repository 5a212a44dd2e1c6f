from __future__ import annotations

from contextrag.core.config import Settings
from contextrag.core.errors import ProviderConfigError
from contextrag.providers.embeddings.base import EmbeddingProvider
from contextrag.providers.embeddings.local import LocalHashEmbeddingProvider
from contextrag.providers.embeddings.vertex import VertexEmbeddingProvider


def get_embedding_provider(settings: Settings) -> EmbeddingProvider:
    provider = (settings.embedding_provider or "vertex").lower()

    if provider == "local":
        return LocalHashEmbeddingProvider()
    if provider == "vertex":
        return VertexEmbeddingProvider(settings)
    raise ProviderConfigError(f"unknown embedding provider {settings.embedding_provider!r}")
