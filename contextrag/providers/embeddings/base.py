from __future__ import annotations

from typing import Literal, Protocol


EmbeddingTaskType = Literal["RETRIEVAL_DOCUMENT", "RETRIEVAL_QUERY"]


class EmbeddingProvider(Protocol):
    async def embed_many(self, texts: list[str], task_type: EmbeddingTaskType) -> list[list[float]]:
        ...
