from __future__ import annotations

import base64

import pytest
from httpx import ASGITransport, AsyncClient

from contextrag.apps.api.main import create_app


DOCUMENT = "# Keys\n\nRotate the signing keys every month.\n\n# Billing\n\nInvoices go out on the first."


@pytest.fixture
def client_app(settings, deps, engine):
    return create_app(settings=settings, deps=deps, engine=engine)


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health(client_app) -> None:
    async with _client(client_app) as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["X-Request-Id"]


@pytest.mark.asyncio
async def test_events_drive_ingestion_and_search(client_app, engine) -> None:
    async with _client(client_app) as client:
        created = await client.post(
            "/v1/events",
            json={
                "name": "retrieval/create-batch",
                "data": {"organizationId": "org", "namespaceId": "ns", "batchId": "batch-1"},
            },
            headers={"X-Request-Id": "req-1"},
        )
        await engine.drain(timeout_s=10.0)
        uploaded = await client.post(
            "/v1/events",
            json={
                "name": "retrieval/upload-document",
                "data": {
                    "organizationId": "org",
                    "namespaceId": "ns",
                    "documentPath": "ops.md",
                    "documentBufferBase64": base64.b64encode(DOCUMENT.encode()).decode(),
                    "batchId": "batch-1",
                },
            },
        )
        await engine.drain(timeout_s=10.0)
        progress = await client.get("/v1/batches/batch-1")
        search = await client.post(
            "/v1/search",
            json={"organizationId": "org", "namespaceId": "ns", "textQuery": "signing keys", "topK": 5},
        )

    assert created.status_code == 202
    body = created.json()
    assert body["meta"] == {"request_id": "req-1", "api_version": "v1"}
    assert body["data"]["name"] == "retrieval/create-batch"
    assert len(body["data"]["run_ids"]) == 1
    assert uploaded.status_code == 202

    assert progress.status_code == 200
    assert progress.json()["data"] == {
        "batch_id": "batch-1",
        "total_documents": 1,
        "documents_processed": 1,
        "is_complete": True,
    }

    assert search.status_code == 200
    hits = search.json()["data"]["bm25"]
    assert hits[0]["id"] == "ops.md-0"
    assert "vector" not in search.json()["data"]


@pytest.mark.asyncio
async def test_unknown_and_internal_events_are_rejected(client_app) -> None:
    async with _client(client_app) as client:
        unknown = await client.post("/v1/events", json={"name": "retrieval/nope", "data": {}})
        internal = await client.post("/v1/events", json={"name": "retrieval/embed-chunk", "data": {}})

    for response in (unknown, internal):
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "UNKNOWN_EVENT"


@pytest.mark.asyncio
async def test_invalid_payloads_use_the_error_envelope(client_app) -> None:
    async with _client(client_app) as client:
        bad_event = await client.post(
            "/v1/events",
            json={"name": "retrieval/create-batch", "data": {"organizationId": "org"}},
        )
        no_query = await client.post("/v1/search", json={"organizationId": "org", "namespaceId": "ns"})
        missing_field = await client.post("/v1/search", json={"organizationId": "org"})
        missing_batch = await client.get("/v1/batches/nope")

    assert bad_event.status_code == 400
    assert bad_event.json()["error"]["code"] == "PAYLOAD_INVALID"
    assert no_query.status_code == 400
    assert no_query.json()["error"]["code"] == "PAYLOAD_INVALID"
    assert missing_field.status_code == 422
    assert missing_field.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"
    assert missing_batch.status_code == 404
    assert missing_batch.json()["error"]["code"] == "BATCH_NOT_FOUND"
    assert missing_batch.json()["meta"]["api_version"] == "v1"
