from __future__ import annotations

import hashlib
import json
import logging
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from contextrag.core.errors import PayloadValidationError


logger = logging.getLogger(__name__)


CREATE_BATCH = "retrieval/create-batch"
UPLOAD_DOCUMENT = "retrieval/upload-document"
INGEST_DOCUMENT = "retrieval/ingest-document"
CONTEXTUALIZE_CHUNK = "retrieval/contextualize-chunk"
PROCESS_CHUNK = "retrieval/process-chunk"
BATCH_EMBED_CHUNK = "retrieval/batch-embed-chunk"
EMBED_CHUNK = "retrieval/embed-chunk"
EMBEDDING_RESULT = "retrieval/embedding-result"


class EventModel(BaseModel):
    # Wire payloads are camelCase; Python code uses snake_case attributes.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_event_data(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class DocumentRef(EventModel):
    organization_id: str = Field(min_length=1)
    namespace_id: str = Field(min_length=1)
    document_path: str = Field(min_length=1)


class CreateBatchEvent(EventModel):
    organization_id: str = Field(min_length=1)
    namespace_id: str = Field(min_length=1)
    batch_id: str = Field(min_length=1)


class UploadDocumentEvent(DocumentRef):
    document_buffer_base64: str
    # Optional: when present, a changed text document is queued for ingestion in this batch.
    batch_id: str | None = None


class IngestDocumentEvent(DocumentRef):
    batch_id: str = Field(min_length=1)


class ContextualizeChunkEvent(DocumentRef):
    chunk_index: int = Field(ge=0)
    chunk_content: str


class ContextualizeChunkResult(ContextualizeChunkEvent):
    chunk_contextualized_content: str
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _decode_metadata(cls, value: Any) -> Any:
        # Older producers send metadata as a JSON-encoded string.
        if value is None:
            return {}
        if isinstance(value, str):
            try:
                return json.loads(value) if value.strip() else {}
            except ValueError as exc:
                raise ValueError("metadata must be a JSON object") from exc
        return value


class ProcessChunkEvent(ContextualizeChunkEvent):
    correlation_id: str = Field(min_length=1)


class ProcessChunkResult(EventModel):
    chunk_index: int
    contextualized_content: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class BatchEmbedChunkEvent(ContextualizeChunkResult):
    correlation_id: str = Field(min_length=1)


class EmbedChunksEvent(EventModel):
    # correlation id -> contextualized chunk text
    chunks: dict[str, str]


class EmbeddingResultEvent(EventModel):
    correlation_id: str
    embedding: list[float]


EventT = TypeVar("EventT", bound=EventModel)


def parse_event(model: type[EventT], data: Any) -> EventT:
    # Malformed payloads are terminal: retrying cannot fix them.
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.error(
            "invalid_event_payload model=%s errors=%s",
            model.__name__,
            exc.errors(include_url=False, include_input=False),
        )
        raise PayloadValidationError(f"invalid {model.__name__} payload") from exc


def chunk_correlation_id(batch_id: str, document_path: str, chunk_index: int, run_id: str) -> str:
    # Stable for replays of one ingest run, distinct across runs of the same document and batch.
    run_digest = hashlib.sha1(run_id.encode("utf-8")).hexdigest()[:12]
    return f"{batch_id}:{document_path}:{chunk_index}:{run_digest}"


# Events clients may send through the HTTP surface; internal fan-out events stay private.
PUBLIC_EVENTS: dict[str, type[EventModel]] = {
    CREATE_BATCH: CreateBatchEvent,
    UPLOAD_DOCUMENT: UploadDocumentEvent,
    INGEST_DOCUMENT: IngestDocumentEvent,
}
