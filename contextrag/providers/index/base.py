from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


# Attributes every query returns, regardless of the query variant.
INCLUDE_ATTRIBUTES = ("content", "document_path", "id", "contextualized_content")
# Column names that flattened metadata must never shadow.
RESERVED_ATTRIBUTES = frozenset(INCLUDE_ATTRIBUTES) | {"chunk_index", "embedding", "namespace", "score"}


@dataclass(frozen=True)
class IndexChunk:
    chunk_index: int
    embedding: list[float]
    document_path: str
    content: str
    contextualized_content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SearchResults:
    # Hybrid queries return both lists side by side; ranking across them is left to callers.
    bm25: list[dict[str, Any]] | None = None
    vector: list[dict[str, Any]] | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.bm25 is not None:
            data["bm25"] = self.bm25
        if self.vector is not None:
            data["vector"] = self.vector
        return data


class VectorIndex(Protocol):
    async def upsert(self, organization_id: str, namespace_id: str, chunks: list[IndexChunk]) -> int:
        ...

    async def delete_rows(self, organization_id: str, namespace_id: str, ids: list[str]) -> int:
        ...

    async def bm25_search(
        self, organization_id: str, namespace_id: str, text_query: str, top_k: int
    ) -> list[dict[str, Any]]:
        ...

    async def vector_search(
        self, organization_id: str, namespace_id: str, vector_query: list[float], top_k: int
    ) -> list[dict[str, Any]]:
        ...

    async def hybrid_search(
        self,
        organization_id: str,
        namespace_id: str,
        text_query: str,
        vector_query: list[float],
        top_k: int,
    ) -> SearchResults:
        ...

    async def delete_namespace(self, organization_id: str, namespace_id: str) -> None:
        ...


def namespace_name(organization_id: str, namespace_id: str) -> str:
    return f"{organization_id}-{namespace_id}"


def row_id(document_path: str, chunk_index: int) -> str:
    return f"{document_path}-{chunk_index}"


def flatten_metadata(metadata: dict[str, Any] | None, prefix: str = "") -> dict[str, Any]:
    """Flatten nested metadata into top-level attributes joined with dots.

    ``{"author": {"name": "a"}}`` becomes ``{"author.name": "a"}``. Keys that
    would collide with a reserved row attribute are dropped.
    """
    flat: dict[str, Any] = {}
    for key, value in (metadata or {}).items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(flatten_metadata(value, prefix=f"{name}."))
            continue
        if name in RESERVED_ATTRIBUTES:
            continue
        flat[name] = value
    return flat


def build_index_row(namespace: str, chunk: IndexChunk) -> dict[str, Any]:
    return {
        "namespace": namespace,
        "id": row_id(chunk.document_path, chunk.chunk_index),
        "document_path": chunk.document_path,
        "chunk_index": chunk.chunk_index,
        "content": chunk.content,
        "contextualized_content": chunk.contextualized_content,
        "attributes": flatten_metadata(chunk.metadata),
        "embedding": chunk.embedding,
    }
