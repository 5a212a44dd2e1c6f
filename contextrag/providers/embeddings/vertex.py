from __future__ import annotations

import asyncio
import logging
from typing import Any

from contextrag.core.config import EMBED_DIM, Settings
from contextrag.core.errors import ProviderConfigError, ProviderError
from contextrag.providers.embeddings.base import EmbeddingTaskType
from contextrag.providers.llm.gemini_vertex import validate_vertex_config

logger = logging.getLogger(__name__)

# gemini-embedding models accept a single input per request; older text-embedding models take batches.
_GEMINI_INPUTS_PER_REQUEST = 1
_DEFAULT_INPUTS_PER_REQUEST = 100


class VertexEmbeddingProvider:
    def __init__(self, settings: Settings, model: Any | None = None) -> None:
        self._settings = settings
        self._model = model

    def _get_model(self) -> Any:
        if self._model is not None:
            return self._model
        project, location, model_name = validate_vertex_config(self._settings, "gemini_embedding_model")
        try:
            from vertexai import init
            from vertexai.language_models import TextEmbeddingModel
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError(
                "Vertex AI SDK not available. Install google-cloud-aiplatform."
            ) from exc

        init(project=project, location=location)
        self._model = TextEmbeddingModel.from_pretrained(model_name)
        return self._model

    def _inputs_per_request(self) -> int:
        if (self._settings.gemini_embedding_model or "").startswith("gemini-embedding"):
            return _GEMINI_INPUTS_PER_REQUEST
        return _DEFAULT_INPUTS_PER_REQUEST

    async def embed_many(self, texts: list[str], task_type: EmbeddingTaskType) -> list[list[float]]:
        if not texts:
            return []
        model = self._get_model()
        try:
            from vertexai.language_models import TextEmbeddingInput
            from google.api_core.exceptions import GoogleAPICallError
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError(
                "Vertex AI SDK not available. Install google-cloud-aiplatform."
            ) from exc

        size = self._inputs_per_request()
        vectors: list[list[float]] = []
        for start in range(0, len(texts), size):
            inputs = [TextEmbeddingInput(text=text, task_type=task_type) for text in texts[start:start + size]]
            try:
                embeddings = await asyncio.to_thread(
                    model.get_embeddings,
                    inputs,
                    output_dimensionality=EMBED_DIM,
                )
            except GoogleAPICallError as exc:
                logger.warning(
                    "vertex_embed_error model=%s code=%s inputs=%s",
                    self._settings.gemini_embedding_model,
                    exc.code,
                    len(inputs),
                )
                raise ProviderError("Vertex AI embedding request failed.") from exc
            vectors.extend(list(embedding.values) for embedding in embeddings)
        return vectors
