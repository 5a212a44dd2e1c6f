from __future__ import annotations

import asyncio
import logging
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from contextrag.core.config import EMBED_DIM
from contextrag.core.errors import PayloadValidationError, SearchIndexError
from contextrag.domain.models import SearchIndexRow
from contextrag.providers.index.base import (
    IndexChunk,
    SearchResults,
    build_index_row,
    namespace_name,
)


logger = logging.getLogger(__name__)

_TS_CONFIG = "english"


def _row_payload(row: SearchIndexRow, score: float) -> dict[str, Any]:
    return {
        "id": row.id,
        "document_path": row.document_path,
        "content": row.content,
        "contextualized_content": row.contextualized_content,
        "score": score,
    }


class PgVectorIndex:
    """Namespaced search index on a pgvector table.

    Lexical search ranks the generated ``tsvector`` with ``ts_rank_cd``; vector
    search orders by cosine distance. Every call opens its own session so the
    two halves of a hybrid query can run concurrently.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def upsert(self, organization_id: str, namespace_id: str, chunks: list[IndexChunk]) -> int:
        if not chunks:
            return 0
        namespace = namespace_name(organization_id, namespace_id)
        rows = [build_index_row(namespace, chunk) for chunk in chunks]
        for row in rows:
            if len(row["embedding"]) != EMBED_DIM:
                raise PayloadValidationError(
                    f"embedding for {row['id']} has {len(row['embedding'])} dims, expected {EMBED_DIM}"
                )
        stmt = insert(SearchIndexRow).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=[SearchIndexRow.namespace, SearchIndexRow.id],
            set_={
                "document_path": stmt.excluded.document_path,
                "chunk_index": stmt.excluded.chunk_index,
                "content": stmt.excluded.content,
                "contextualized_content": stmt.excluded.contextualized_content,
                "attributes": stmt.excluded.attributes,
                "embedding": stmt.excluded.embedding,
                "updated_at": func.now(),
            },
        )
        try:
            async with self._session_factory() as session:
                await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.warning("index_upsert_failed namespace=%s rows=%s", namespace, len(rows))
            raise SearchIndexError("search index upsert failed") from exc
        logger.info("index_upserted namespace=%s rows=%s", namespace, len(rows))
        return len(rows)

    async def delete_rows(self, organization_id: str, namespace_id: str, ids: list[str]) -> int:
        if not ids:
            return 0
        namespace = namespace_name(organization_id, namespace_id)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(SearchIndexRow).where(
                        SearchIndexRow.namespace == namespace,
                        SearchIndexRow.id.in_(ids),
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise SearchIndexError("search index delete failed") from exc
        return int(result.rowcount or 0)

    async def bm25_search(
        self, organization_id: str, namespace_id: str, text_query: str, top_k: int
    ) -> list[dict[str, Any]]:
        namespace = namespace_name(organization_id, namespace_id)
        ts_query = func.websearch_to_tsquery(_TS_CONFIG, text_query)
        rank_expr = func.ts_rank_cd(SearchIndexRow.search_vector, ts_query)
        stmt = (
            select(SearchIndexRow, rank_expr.label("rank"))
            .where(
                SearchIndexRow.namespace == namespace,
                SearchIndexRow.search_vector.op("@@")(ts_query),
            )
            # Secondary ordering keeps tie-breaking deterministic.
            .order_by(rank_expr.desc(), SearchIndexRow.id.asc())
            .limit(top_k)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise SearchIndexError("full-text query failed") from exc
        return [_row_payload(row, float(rank)) for row, rank in rows]

    async def vector_search(
        self, organization_id: str, namespace_id: str, vector_query: list[float], top_k: int
    ) -> list[dict[str, Any]]:
        if len(vector_query) != EMBED_DIM:
            raise PayloadValidationError("query embedding dimension mismatch")
        namespace = namespace_name(organization_id, namespace_id)
        distance_expr = SearchIndexRow.embedding.cosine_distance(vector_query)
        stmt = (
            select(SearchIndexRow, distance_expr.label("distance"))
            .where(SearchIndexRow.namespace == namespace)
            .order_by(distance_expr.asc(), SearchIndexRow.id.asc())
            .limit(top_k)
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise SearchIndexError("vector query failed") from exc
        # Convert cosine distance to similarity and clamp to a sane [0, 1] range.
        return [_row_payload(row, max(0.0, min(1.0, 1.0 - float(distance)))) for row, distance in rows]

    async def hybrid_search(
        self,
        organization_id: str,
        namespace_id: str,
        text_query: str,
        vector_query: list[float],
        top_k: int,
    ) -> SearchResults:
        bm25, vector = await asyncio.gather(
            self.bm25_search(organization_id, namespace_id, text_query, top_k),
            self.vector_search(organization_id, namespace_id, vector_query, top_k),
        )
        return SearchResults(bm25=bm25, vector=vector)

    async def delete_namespace(self, organization_id: str, namespace_id: str) -> None:
        namespace = namespace_name(organization_id, namespace_id)
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(SearchIndexRow).where(SearchIndexRow.namespace == namespace)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise SearchIndexError("namespace delete failed") from exc
        # Deleting an empty or unknown namespace is a successful no-op.
        logger.info("index_namespace_deleted namespace=%s rows=%s", namespace, result.rowcount)
