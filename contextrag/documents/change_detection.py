from __future__ import annotations

import hashlib
from typing import Literal

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from contextrag.documents.storage import DocumentKey
from contextrag.persistence.repos import documents as documents_repo


ReingestReason = Literal["CONTENT_HASH_MATCH", "DOCUMENT_NOT_FOUND", "CONTENT_HASH_MISMATCH"]


class ReingestDecision(BaseModel):
    should_reingest: bool
    reason: ReingestReason
    # Present whenever should_reingest is true; callers persist it after ingestion.
    content_hash: str | None = None


def compute_content_hash(content: bytes) -> str:
    # SHA-1 is for change detection only, not integrity against adversaries.
    return hashlib.sha1(content).hexdigest()


async def should_reingest_document(
    session: AsyncSession,
    key: DocumentKey,
    content: bytes,
) -> ReingestDecision:
    document = await documents_repo.get_document_by_path(
        session,
        organization_id=key.organization_id,
        namespace_id=key.namespace_id,
        file_path=key.document_path,
    )
    content_hash = compute_content_hash(content)
    if document is None:
        return ReingestDecision(should_reingest=True, reason="DOCUMENT_NOT_FOUND", content_hash=content_hash)
    if document.content_hash == content_hash:
        return ReingestDecision(should_reingest=False, reason="CONTENT_HASH_MATCH")
    return ReingestDecision(should_reingest=True, reason="CONTENT_HASH_MISMATCH", content_hash=content_hash)
