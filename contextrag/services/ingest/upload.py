from __future__ import annotations

import base64
import binascii
import logging
from pathlib import PurePosixPath
from typing import Any, Literal

from pydantic import BaseModel

from contextrag.core.errors import PayloadValidationError
from contextrag.documents.change_detection import should_reingest_document
from contextrag.documents.storage import DocumentKey
from contextrag.domain.events import INGEST_DOCUMENT, IngestDocumentEvent, UploadDocumentEvent, parse_event
from contextrag.ingestion.chunking import DocumentKind, classify_document_path
from contextrag.ingestion.preprocessing import extract_front_matter
from contextrag.persistence.repos import documents as documents_repo
from contextrag.services.ingest.contextualize import decode_document_text
from contextrag.services.ingest.deps import IngestDeps
from contextrag.workflow.base import WorkflowContext


logger = logging.getLogger(__name__)

_CONTENT_TYPES = {
    ".md": "text/markdown",
    ".markdown": "text/markdown",
    ".mdx": "text/markdown",
    ".txt": "text/plain",
}


class UploadDocumentResult(BaseModel):
    document_path: str
    status: Literal["unchanged", "stored", "uploaded"]
    reason: str
    content_hash: str | None = None
    ingestion_queued: bool = False


def document_title(front_matter_title: str | None, document_path: str) -> str:
    if front_matter_title and front_matter_title.strip():
        return front_matter_title.strip()
    return PurePosixPath(document_path).stem or document_path


async def upload_document(ctx: WorkflowContext, data: Any, *, deps: IngestDeps) -> dict[str, Any]:
    event = parse_event(UploadDocumentEvent, data)
    try:
        content = base64.b64decode(event.document_buffer_base64, validate=True)
    except (binascii.Error, ValueError) as exc:
        logger.error("upload_invalid_base64 document_path=%s", event.document_path)
        raise PayloadValidationError("documentBufferBase64 is not valid base64") from exc
    key = DocumentKey(event.organization_id, event.namespace_id, event.document_path)

    async def _decide() -> dict[str, Any]:
        async with deps.session_factory() as session:
            decision = await should_reingest_document(session, key, content)
        return decision.model_dump(mode="json")

    decision = await ctx.run_step("make-reingestion-decision", _decide)
    if not decision["should_reingest"]:
        logger.info("upload_unchanged key=%s", key.object_key)
        return UploadDocumentResult(
            document_path=event.document_path,
            status="unchanged",
            reason=decision["reason"],
        ).model_dump()

    async def _store() -> None:
        await deps.store.put(key, content)

    await ctx.run_step("upload-document", _store)

    kind = classify_document_path(event.document_path)
    if kind is not DocumentKind.TEXT:
        # Stored for later, but only text documents get metadata rows and ingestion.
        logger.info("upload_non_text_skipped key=%s kind=%s", key.object_key, kind.value)
        return UploadDocumentResult(
            document_path=event.document_path,
            status="stored",
            reason=f"{kind.value.upper()}_NOT_INGESTED",
            content_hash=decision["content_hash"],
        ).model_dump()

    text = decode_document_text(content, key)
    front_matter = extract_front_matter(text)

    async def _upsert_document() -> None:
        async with deps.session_factory() as session:
            await documents_repo.upsert_document(
                session,
                organization_id=event.organization_id,
                namespace_id=event.namespace_id,
                file_path=event.document_path,
                title=document_title(front_matter.title, event.document_path),
                metadata_json=front_matter.as_metadata(),
                content_hash=decision["content_hash"],
                content_type=_CONTENT_TYPES.get(PurePosixPath(event.document_path).suffix.lower(), "text/markdown"),
            )
            await session.commit()

    await ctx.run_step("upsert-document", _upsert_document)

    queued = False
    if event.batch_id:
        await ctx.send_event(
            "ingest-document",
            INGEST_DOCUMENT,
            IngestDocumentEvent(
                organization_id=event.organization_id,
                namespace_id=event.namespace_id,
                document_path=event.document_path,
                batch_id=event.batch_id,
            ).to_event_data(),
        )
        queued = True

    logger.info(
        "document_uploaded key=%s reason=%s bytes=%s ingestion_queued=%s",
        key.object_key,
        decision["reason"],
        len(content),
        queued,
    )
    return UploadDocumentResult(
        document_path=event.document_path,
        status="uploaded",
        reason=decision["reason"],
        content_hash=decision["content_hash"],
        ingestion_queued=queued,
    ).model_dump()
