from __future__ import annotations

import io

import pytest
from botocore.exceptions import ClientError

from contextrag.core.errors import DocumentNotFoundError, ProviderConfigError, StorageError
from contextrag.documents.storage import DocumentKey, LocalContentStore, S3ContentStore


KEY = DocumentKey("org", "ns", "docs/guide.md")


class FakeS3Client:
    def __init__(self, error_code: str | None = None) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}
        self._error_code = error_code
        self.presigned: list[tuple[str, dict, int]] = []

    def put_object(self, *, Bucket: str, Key: str, Body: bytes) -> dict:
        self.objects[(Bucket, Key)] = Body
        return {}

    def get_object(self, *, Bucket: str, Key: str) -> dict:
        if self._error_code is not None:
            raise ClientError({"Error": {"Code": self._error_code, "Message": "x"}}, "GetObject")
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}

    def generate_presigned_url(self, ClientMethod: str, Params: dict, ExpiresIn: int) -> str:
        self.presigned.append((ClientMethod, Params, ExpiresIn))
        return f"https://{Params['Bucket']}.s3.example.com/{Params['Key']}?X-Amz-Expires={ExpiresIn}"


@pytest.mark.asyncio
async def test_s3_store_uses_org_namespace_path_keys() -> None:
    client = FakeS3Client()
    store = S3ContentStore("bucket", client=client)

    await store.put(KEY, b"hello")

    assert client.objects == {("bucket", "org/ns/docs/guide.md"): b"hello"}
    assert await store.get(KEY) == b"hello"


@pytest.mark.asyncio
async def test_s3_store_maps_errors() -> None:
    with pytest.raises(DocumentNotFoundError):
        await S3ContentStore("bucket", client=FakeS3Client()).get(KEY)
    with pytest.raises(StorageError):
        await S3ContentStore("bucket", client=FakeS3Client(error_code="SlowDown")).get(KEY)
    with pytest.raises(ProviderConfigError):
        S3ContentStore("")


@pytest.mark.asyncio
async def test_local_store_round_trips_and_rejects_escapes(tmp_path) -> None:
    store = LocalContentStore(tmp_path)

    await store.put(KEY, b"bytes")

    assert (tmp_path / "org" / "ns" / "docs" / "guide.md").read_bytes() == b"bytes"
    assert await store.get(KEY) == b"bytes"
    with pytest.raises(DocumentNotFoundError):
        await store.get(DocumentKey("org", "ns", "missing.md"))
    with pytest.raises(DocumentNotFoundError):
        await store.get(DocumentKey("org", "ns", "../../../etc/passwd"))


@pytest.mark.asyncio
async def test_s3_upload_url_presigns_a_put_for_the_document_key() -> None:
    client = FakeS3Client()
    store = S3ContentStore("bucket", client=client)

    url = await store.upload_url(KEY, expires_s=600)

    assert url == "https://bucket.s3.example.com/org/ns/docs/guide.md?X-Amz-Expires=600"
    assert client.presigned == [("put_object", {"Bucket": "bucket", "Key": "org/ns/docs/guide.md"}, 600)]
