from __future__ import annotations

from contextrag.core.config import Settings
from contextrag.core.errors import ProviderConfigError
from contextrag.providers.llm.base import LLMProvider
from contextrag.providers.llm.fake import FakeLLMProvider
from contextrag.providers.llm.gemini_vertex import GeminiVertexProvider


def get_llm_provider(settings: Settings) -> LLMProvider:
    provider = (settings.llm_provider or "vertex").lower()

    if provider == "fake":
        return FakeLLMProvider()
    if provider == "vertex":
        return GeminiVertexProvider(settings)
    raise ProviderConfigError(f"unknown llm provider {settings.llm_provider!r}")
