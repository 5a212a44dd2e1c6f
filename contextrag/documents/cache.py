from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Literal

from redis.asyncio import Redis

from contextrag.documents.storage import DocumentKey


logger = logging.getLogger(__name__)

CachedDocumentType = Literal["text", "binary"]


@dataclass(frozen=True)
class CachedDocument:
    type: CachedDocumentType
    # str for text entries, bytes for binary entries.
    content: str | bytes


def _field(raw: dict, name: str) -> str | None:
    value = raw.get(name)
    if value is None:
        value = raw.get(name.encode("utf-8"))
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    return value or None


class DocumentCache:
    """Short-lived cache of raw document content keyed like the content store.

    Entries are a Redis hash with base64 ``content`` and a ``type`` of text or
    binary. The orchestrator removes the entry once a document finishes
    ingesting, so the cache never outlives one run's staleness window.
    """

    def __init__(self, redis: Redis, *, ttl_s: int, prefix: str = "document") -> None:
        self._redis = redis
        self._ttl_s = ttl_s
        self._prefix = prefix

    def cache_key(self, key: DocumentKey) -> str:
        return f"{self._prefix}:{key.organization_id}:{key.namespace_id}:{key.document_path}"

    async def get(self, key: DocumentKey) -> CachedDocument | None:
        cache_key = self.cache_key(key)
        raw = await self._redis.hgetall(cache_key)
        content = _field(raw or {}, "content")
        doc_type = _field(raw or {}, "type")
        if content is None or doc_type is None:
            logger.info("document_cache_miss key=%s", cache_key)
            return None
        try:
            decoded = base64.b64decode(content, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("document_cache_corrupt key=%s", cache_key)
            return None
        if doc_type == "text":
            return CachedDocument(type="text", content=decoded.decode("utf-8"))
        if doc_type == "binary":
            return CachedDocument(type="binary", content=decoded)
        logger.warning("document_cache_unknown_type key=%s type=%s", cache_key, doc_type)
        return None

    async def set(self, key: DocumentKey, content: str | bytes, doc_type: CachedDocumentType = "text") -> None:
        cache_key = self.cache_key(key)
        data = content.encode("utf-8") if isinstance(content, str) else content
        encoded = base64.b64encode(data).decode("ascii")
        # Write fields and TTL together so a partially written entry never lingers without expiry.
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(cache_key, mapping={"content": encoded, "type": doc_type})
            pipe.expire(cache_key, self._ttl_s)
            await pipe.execute()
        logger.info("document_cached key=%s type=%s bytes=%s ttl_s=%s", cache_key, doc_type, len(data), self._ttl_s)

    async def remove(self, key: DocumentKey) -> None:
        await self._redis.delete(self.cache_key(key))
