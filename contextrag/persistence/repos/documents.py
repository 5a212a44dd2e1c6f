from __future__ import annotations

from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from contextrag.domain.models import Document
from contextrag.persistence.db import dialect_insert


async def get_document_by_path(
    session: AsyncSession,
    *,
    organization_id: str,
    namespace_id: str,
    file_path: str,
) -> Document | None:
    result = await session.execute(
        select(Document).where(
            Document.organization_id == organization_id,
            Document.namespace_id == namespace_id,
            Document.file_path == file_path,
        )
    )
    return result.scalar_one_or_none()


async def upsert_document(
    session: AsyncSession,
    *,
    organization_id: str,
    namespace_id: str,
    file_path: str,
    title: str,
    metadata_json: dict[str, Any] | None,
    content_hash: str,
    content_type: str = "text/markdown",
) -> None:
    # One row per (organization, namespace, path); re-uploads refresh metadata and hash.
    stmt = dialect_insert(session, Document).values(
        organization_id=organization_id,
        namespace_id=namespace_id,
        file_path=file_path,
        title=title,
        metadata_json=metadata_json,
        content_hash=content_hash,
        content_type=content_type,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Document.organization_id, Document.namespace_id, Document.file_path],
        set_={
            "title": stmt.excluded.title,
            "metadata_json": stmt.excluded.metadata_json,
            "content_hash": stmt.excluded.content_hash,
            "content_type": stmt.excluded.content_type,
            "updated_at": func.now(),
        },
    )
    await session.execute(stmt)
