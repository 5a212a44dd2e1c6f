from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Computed,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, TSVECTOR
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from pgvector.sqlalchemy import Vector

from contextrag.core.config import EMBED_DIM


# Use JSONB on Postgres while keeping the relational core portable to SQLite for tests.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    pass


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        UniqueConstraint(
            "organization_id",
            "namespace_id",
            "file_path",
            name="uq_documents_identity",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    namespace_id: Mapped[str] = mapped_column(String, index=True)
    # Path relative to the namespace root, e.g. "docs/guides/setup.md".
    file_path: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    content_type: Mapped[str] = mapped_column(String, default="text/markdown")
    # Extracted front matter; empty dict when the document has none.
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # SHA-1 hex digest of the raw bytes; drives re-ingestion decisions.
    content_hash: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Chunk(Base):
    __tablename__ = "chunks"
    __table_args__ = (
        # Upserts target this tuple; chunks are never updated by primary key alone.
        UniqueConstraint(
            "organization_id",
            "namespace_id",
            "document_path",
            "order_in_document",
            name="uq_chunks_identity",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String)
    namespace_id: Mapped[str] = mapped_column(String)
    document_path: Mapped[str] = mapped_column(String)
    # Dense 0-based position within the current chunking of the document.
    order_in_document: Mapped[int] = mapped_column(Integer)
    original_content: Mapped[str] = mapped_column(Text)
    contextualized_content: Mapped[str] = mapped_column(Text)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class IngestionJob(Base):
    __tablename__ = "ingestion_jobs"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    namespace_id: Mapped[str] = mapped_column(String, index=True)
    # Counters only move through atomic increments; see repos.ingestion_jobs.
    total_documents: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    documents_processed: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @property
    def is_complete(self) -> bool:
        return self.total_documents > 0 and self.documents_processed >= self.total_documents


class SearchIndexBase(DeclarativeBase):
    # The search index lives outside the relational core metadata (pgvector only).
    pass


class SearchIndexRow(SearchIndexBase):
    __tablename__ = "search_index_rows"

    # Namespace is "{organization_id}-{namespace_id}".
    namespace: Mapped[str] = mapped_column(String, primary_key=True)
    # Row id is "{document_path}-{chunk_index}" so re-upserts overwrite in place.
    id: Mapped[str] = mapped_column(String, primary_key=True)
    document_path: Mapped[str] = mapped_column(String)
    chunk_index: Mapped[int] = mapped_column(Integer)
    content: Mapped[str] = mapped_column(Text)
    contextualized_content: Mapped[str] = mapped_column(Text)
    # Flattened document metadata returned as top-level row attributes.
    attributes: Mapped[dict[str, Any]] = mapped_column(JSONB, default=dict)
    embedding: Mapped[list[float]] = mapped_column(Vector(EMBED_DIM))
    search_vector: Mapped[str] = mapped_column(
        TSVECTOR,
        Computed(
            "to_tsvector('english', coalesce(content, '') || ' ' || coalesce(contextualized_content, ''))",
            persisted=True,
        ),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


Index("ix_chunks_document", Chunk.organization_id, Chunk.namespace_id, Chunk.document_path)
Index("ix_search_index_rows_document", SearchIndexRow.namespace, SearchIndexRow.document_path)
Index("ix_search_index_rows_search_vector", SearchIndexRow.search_vector, postgresql_using="gin")
Index(
    "ix_search_index_rows_embedding",
    SearchIndexRow.embedding,
    postgresql_using="hnsw",
    postgresql_ops={"embedding": "vector_cosine_ops"},
)
