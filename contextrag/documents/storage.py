from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from contextrag.core.config import Settings
from contextrag.core.errors import DocumentNotFoundError, ProviderConfigError, StorageError


logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


@dataclass(frozen=True)
class DocumentKey:
    organization_id: str
    namespace_id: str
    document_path: str

    @property
    def object_key(self) -> str:
        return f"{self.organization_id}/{self.namespace_id}/{self.document_path}"

    def __str__(self) -> str:
        return self.object_key


class ContentStore(Protocol):
    async def put(self, key: DocumentKey, data: bytes) -> None:
        ...

    async def get(self, key: DocumentKey) -> bytes:
        ...


class S3ContentStore:
    def __init__(self, bucket: str, region: str | None = None, client: Any | None = None) -> None:
        if not bucket:
            raise ProviderConfigError("S3 bucket is required; set S3_BUCKET in .env.")
        self._bucket = bucket
        self._region = region
        self._client = client

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            import boto3
        except Exception as exc:  # pragma: no cover - environment-specific import
            raise ProviderConfigError("AWS SDK not available. Install boto3.") from exc

        self._client = boto3.client("s3", region_name=self._region)
        return self._client

    async def put(self, key: DocumentKey, data: bytes) -> None:
        client = self._get_client()
        try:
            await asyncio.to_thread(
                client.put_object,
                Bucket=self._bucket,
                Key=key.object_key,
                Body=data,
            )
        except (BotoCoreError, ClientError) as exc:
            logger.warning("s3_put_failed key=%s", key.object_key)
            raise StorageError(f"failed to store {key.object_key}") from exc

    async def get(self, key: DocumentKey) -> bytes:
        client = self._get_client()
        try:
            def _read() -> bytes:
                response = client.get_object(Bucket=self._bucket, Key=key.object_key)
                return response["Body"].read()

            return await asyncio.to_thread(_read)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                raise DocumentNotFoundError(f"document {key.object_key} not found in storage") from exc
            logger.warning("s3_get_failed key=%s code=%s", key.object_key, code)
            raise StorageError(f"failed to read {key.object_key}") from exc
        except BotoCoreError as exc:
            logger.warning("s3_get_failed key=%s", key.object_key)
            raise StorageError(f"failed to read {key.object_key}") from exc

    async def upload_url(self, key: DocumentKey, expires_s: int = 3600) -> str:
        """Presigned PUT URL so a client can upload the document bytes directly."""
        client = self._get_client()
        try:
            return await asyncio.to_thread(
                client.generate_presigned_url,
                "put_object",
                Params={"Bucket": self._bucket, "Key": key.object_key},
                ExpiresIn=int(expires_s),
            )
        except (BotoCoreError, ClientError) as exc:
            logger.warning("s3_presign_failed key=%s", key.object_key)
            raise StorageError(f"failed to presign upload for {key.object_key}") from exc


class LocalContentStore:
    """Filesystem-backed store for development; mirrors the S3 key layout under a root dir."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()

    def _path_for(self, key: DocumentKey) -> Path:
        path = (self._root / key.object_key).resolve()
        # Reject "../" segments that would escape the storage root.
        if self._root not in path.parents:
            raise DocumentNotFoundError(f"invalid document key {key.object_key}")
        return path

    async def put(self, key: DocumentKey, data: bytes) -> None:
        path = self._path_for(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)

    async def get(self, key: DocumentKey) -> bytes:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise DocumentNotFoundError(f"document {key.object_key} not found in storage") from exc


def build_content_store(settings: Settings) -> ContentStore:
    backend = (settings.storage_backend or "s3").lower()
    if backend == "local":
        return LocalContentStore(settings.local_storage_dir)
    if backend == "s3":
        return S3ContentStore(settings.s3_bucket or "", region=settings.s3_region)
    raise ProviderConfigError(f"unknown storage backend {settings.storage_backend!r}")
