from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from contextrag.domain.models import Chunk
from contextrag.persistence.db import dialect_insert


@dataclass(frozen=True)
class ChunkWrite:
    order_in_document: int
    original_content: str
    contextualized_content: str
    metadata_json: dict[str, Any] | None


async def list_document_chunks(
    session: AsyncSession,
    *,
    organization_id: str,
    namespace_id: str,
    document_path: str,
) -> list[Chunk]:
    result = await session.execute(
        select(Chunk)
        .where(
            Chunk.organization_id == organization_id,
            Chunk.namespace_id == namespace_id,
            Chunk.document_path == document_path,
        )
        .order_by(Chunk.order_in_document.asc())
    )
    return list(result.scalars().all())


async def upsert_chunks(
    session: AsyncSession,
    *,
    organization_id: str,
    namespace_id: str,
    document_path: str,
    chunks: list[ChunkWrite],
) -> int:
    # Conflicts resolve on the chunk identity tuple; metadata is overwritten with the latest front matter.
    if not chunks:
        return 0
    stmt = dialect_insert(session, Chunk).values(
        [
            {
                "organization_id": organization_id,
                "namespace_id": namespace_id,
                "document_path": document_path,
                "order_in_document": chunk.order_in_document,
                "original_content": chunk.original_content,
                "contextualized_content": chunk.contextualized_content,
                "metadata_json": chunk.metadata_json,
            }
            for chunk in chunks
        ]
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[
            Chunk.organization_id,
            Chunk.namespace_id,
            Chunk.document_path,
            Chunk.order_in_document,
        ],
        set_={
            "original_content": stmt.excluded.original_content,
            "contextualized_content": stmt.excluded.contextualized_content,
            "metadata_json": stmt.excluded.metadata_json,
            "updated_at": func.now(),
        },
    )
    await session.execute(stmt)
    return len(chunks)


async def delete_chunks_from(
    session: AsyncSession,
    *,
    organization_id: str,
    namespace_id: str,
    document_path: str,
    first_orphan_index: int,
) -> int:
    # Remove trailing rows beyond the current chunk count of the document.
    result = await session.execute(
        delete(Chunk).where(
            Chunk.organization_id == organization_id,
            Chunk.namespace_id == namespace_id,
            Chunk.document_path == document_path,
            Chunk.order_in_document >= first_orphan_index,
        )
    )
    return int(result.rowcount or 0)
