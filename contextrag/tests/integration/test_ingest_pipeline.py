from __future__ import annotations

import base64
import dataclasses
import logging

import pytest

from contextrag.core.errors import UnsupportedContentError
from contextrag.documents.storage import DocumentKey
from contextrag.domain.events import INGEST_DOCUMENT
from contextrag.persistence.repos import chunks as chunks_repo
from contextrag.persistence.repos import documents as documents_repo
from contextrag.persistence.repos import ingestion_jobs as jobs_repo
from contextrag.providers.embeddings.local import LocalHashEmbeddingProvider
from contextrag.services.ingest.functions import build_engine
from contextrag.tests.utils.fakes import CountingEmbeddingProvider, FailingLLMProvider


ORG = "acme"
NS = "handbook"
PATH = "guides/setup.md"

ORIGINAL = """---
title: Setup guide
tags: [onboarding]
---
# Install

Run the installer and accept the defaults.

## Configure

Edit the config file and set the region.

## Verify

Open the dashboard and check the status page.
"""

EDITED = ORIGINAL.replace("set the region.", "set the region and the project id.")

SHRUNK = """---
title: Setup guide
tags: [onboarding]
---
# Install

Run the installer and accept the defaults.
"""


async def _create_batch(engine, batch_id: str) -> None:
    await engine.run("create-batch", {"organizationId": ORG, "namespaceId": NS, "batchId": batch_id})


async def _upload(engine, text: str | bytes, *, batch_id: str | None, path: str = PATH) -> dict:
    raw = text.encode("utf-8") if isinstance(text, str) else text
    result = await engine.run(
        "upload-document",
        {
            "organizationId": ORG,
            "namespaceId": NS,
            "documentPath": path,
            "documentBufferBase64": base64.b64encode(raw).decode("ascii"),
            "batchId": batch_id,
        },
    )
    await engine.drain(timeout_s=10.0)
    return result


async def _chunks(deps, path: str = PATH):
    async with deps.session_factory() as session:
        return await chunks_repo.list_document_chunks(session, organization_id=ORG, namespace_id=NS, document_path=path)


async def _job(deps, batch_id: str):
    async with deps.session_factory() as session:
        return await jobs_repo.get_job(session, batch_id)


def _ingest_results(engine) -> list:
    return [record for record in engine.runs.values() if record.function == "ingest-document"]


@pytest.mark.asyncio
async def test_upload_and_ingest_new_document(deps, engine) -> None:
    await _create_batch(engine, "batch-a")

    result = await _upload(engine, ORIGINAL, batch_id="batch-a")

    assert result["status"] == "uploaded"
    assert result["reason"] == "DOCUMENT_NOT_FOUND"
    assert result["ingestion_queued"] is True

    rows = await _chunks(deps)
    assert [row.order_in_document for row in rows] == [0, 1, 2]
    assert all(row.contextualized_content.strip() for row in rows)
    assert rows[1].original_content.startswith("## Configure")
    assert rows[0].metadata_json == {"title": "Setup guide", "tags": ["onboarding"]}

    job = await _job(deps, "batch-a")
    assert (job.total_documents, job.documents_processed) == (1, 1)

    index_rows = deps.index.namespaces[f"{ORG}-{NS}"]
    assert sorted(index_rows) == [f"{PATH}-0", f"{PATH}-1", f"{PATH}-2"]
    assert index_rows[f"{PATH}-0"]["attributes"] == {"title": "Setup guide", "tags": ["onboarding"]}

    async with deps.session_factory() as session:
        document = await documents_repo.get_document_by_path(
            session, organization_id=ORG, namespace_id=NS, file_path=PATH
        )
    assert document.title == "Setup guide"
    assert document.content_type == "text/markdown"
    assert document.content_hash == result["content_hash"]

    # The hot copy is dropped once the document is done.
    assert await deps.cache.get(DocumentKey(ORG, NS, PATH)) is None
    records = _ingest_results(engine)
    assert len(records) == 1
    assert records[0].status == "completed"
    assert records[0].result["processed_chunks"] == [0, 1, 2]


@pytest.mark.asyncio
async def test_reupload_of_identical_content_is_skipped(deps, engine) -> None:
    await _create_batch(engine, "batch-a")
    await _upload(engine, ORIGINAL, batch_id="batch-a")
    prompts = len(deps.llm.prompts)

    result = await _upload(engine, ORIGINAL, batch_id="batch-a")

    assert result == {
        "document_path": PATH,
        "status": "unchanged",
        "reason": "CONTENT_HASH_MATCH",
        "content_hash": None,
        "ingestion_queued": False,
    }
    assert len(deps.llm.prompts) == prompts
    job = await _job(deps, "batch-a")
    assert (job.total_documents, job.documents_processed) == (1, 1)


@pytest.mark.asyncio
async def test_editing_one_section_rewrites_only_that_chunk(deps, engine) -> None:
    await _create_batch(engine, "batch-a")
    await _upload(engine, ORIGINAL, batch_id="batch-a")
    before = {row.order_in_document: (row.original_content, row.contextualized_content) for row in await _chunks(deps)}
    prompts = len(deps.llm.prompts)

    await _create_batch(engine, "batch-b")
    result = await _upload(engine, EDITED, batch_id="batch-b")

    assert result["reason"] == "CONTENT_HASH_MISMATCH"
    after = {row.order_in_document: (row.original_content, row.contextualized_content) for row in await _chunks(deps)}
    assert sorted(after) == [0, 1, 2]
    assert after[0] == before[0]
    assert after[2] == before[2]
    assert after[1] != before[1]
    assert "project id" in after[1][0]
    assert len(deps.llm.prompts) == prompts + 1

    job = await _job(deps, "batch-b")
    assert (job.total_documents, job.documents_processed) == (1, 1)
    assert "project id" in deps.index.namespaces[f"{ORG}-{NS}"][f"{PATH}-1"]["content"]


@pytest.mark.asyncio
async def test_shrinking_a_document_removes_trailing_chunks(deps, engine) -> None:
    await _create_batch(engine, "batch-a")
    await _upload(engine, ORIGINAL, batch_id="batch-a")

    await _create_batch(engine, "batch-c")
    await _upload(engine, SHRUNK, batch_id="batch-c")

    rows = await _chunks(deps)
    assert [row.order_in_document for row in rows] == [0]
    assert sorted(deps.index.namespaces[f"{ORG}-{NS}"]) == [f"{PATH}-0"]
    result = _ingest_results(engine)[-1].result
    assert result["orphans_removed"] == 2
    assert result["processed_chunks"] == []


@pytest.mark.asyncio
async def test_pdf_ingestion_is_rejected_without_counting(deps, engine) -> None:
    await _create_batch(engine, "batch-pdf")
    await deps.store.put(DocumentKey(ORG, NS, "report.pdf"), b"%PDF-1.7")

    with pytest.raises(UnsupportedContentError):
        await engine.run(
            "ingest-document",
            {"organizationId": ORG, "namespaceId": NS, "documentPath": "report.pdf", "batchId": "batch-pdf"},
        )

    job = await _job(deps, "batch-pdf")
    assert job.documents_processed == 0
    assert job.total_documents == 0


@pytest.mark.asyncio
async def test_non_text_uploads_are_stored_but_not_ingested(deps, engine) -> None:
    await _create_batch(engine, "batch-img")

    result = await _upload(engine, b"\x89PNG\r\n", batch_id="batch-img", path="img/logo.png")

    assert result["status"] == "stored"
    assert result["reason"] == "IMAGE_NOT_INGESTED"
    assert deps.store.objects[f"{ORG}/{NS}/img/logo.png"] == b"\x89PNG\r\n"
    assert _ingest_results(engine) == []


@pytest.mark.asyncio
async def test_image_ingestion_is_skipped(deps, engine) -> None:
    await _create_batch(engine, "batch-img")
    await deps.store.put(DocumentKey(ORG, NS, "img/logo.png"), b"\x89PNG")

    result = await engine.run(
        "ingest-document",
        {"organizationId": ORG, "namespaceId": NS, "documentPath": "img/logo.png", "batchId": "batch-img"},
    )

    assert result["status"] == "skipped"
    assert result["skipped_reason"] == "IMAGE_NOT_SUPPORTED_YET"


@pytest.mark.asyncio
async def test_failed_chunks_do_not_fail_the_document(deps) -> None:
    flaky = dataclasses.replace(deps, llm=FailingLLMProvider(marker="## Configure"))
    engine = build_engine(flaky)
    await _create_batch(engine, "batch-a")

    await _upload(engine, ORIGINAL, batch_id="batch-a")

    record = _ingest_results(engine)[0]
    assert record.status == "completed"
    assert record.result["failed_chunks"] == [1]
    assert record.result["processed_chunks"] == [0, 2]
    rows = await _chunks(flaky)
    assert [row.order_in_document for row in rows] == [0, 1, 2]
    assert rows[1].contextualized_content == ""
    assert "## Configure" in rows[1].original_content
    job = await _job(flaky, "batch-a")
    assert job.documents_processed == 1


@pytest.mark.asyncio
async def test_reingest_retries_chunks_left_pending_by_a_failed_run(deps) -> None:
    flaky_engine = build_engine(dataclasses.replace(deps, llm=FailingLLMProvider(marker="## Configure")))
    await _create_batch(flaky_engine, "batch-a")
    await _upload(flaky_engine, ORIGINAL, batch_id="batch-a")
    prompts = len(deps.llm.prompts)

    engine = build_engine(deps)
    await _create_batch(engine, "batch-b")
    result = await engine.run(
        "ingest-document",
        {"organizationId": ORG, "namespaceId": NS, "documentPath": PATH, "batchId": "batch-b"},
    )

    assert result["processed_chunks"] == [1]
    assert result["failed_chunks"] == []
    assert len(deps.llm.prompts) == prompts + 1
    rows = await _chunks(deps)
    assert all(row.contextualized_content.strip() for row in rows)
    assert f"{PATH}-1" in deps.index.namespaces[f"{ORG}-{NS}"]


@pytest.mark.asyncio
async def test_embedding_timeout_fails_chunks_and_finishes_the_document(deps, caplog) -> None:
    # The embedder returns one vector short, so no embedding result is ever sent.
    silent = dataclasses.replace(
        deps,
        settings=deps.settings.model_copy(update={"embedding_result_timeout_s": 0.3}),
        embeddings=CountingEmbeddingProvider(LocalHashEmbeddingProvider(), drop_last=True),
    )
    engine = build_engine(silent)
    await _create_batch(engine, "batch-a")

    with caplog.at_level(logging.WARNING):
        await _upload(engine, ORIGINAL, batch_id="batch-a")

    record = _ingest_results(engine)[0]
    assert record.status == "completed"
    assert record.result["failed_chunks"] == [0, 1, 2]
    assert record.result["processed_chunks"] == []
    job = await _job(silent, "batch-a")
    assert (job.total_documents, job.documents_processed) == (1, 1)
    # A timed-out wait is final; process-chunk is not retried.
    retries = [r for r in caplog.records if r.getMessage().startswith("workflow_retry function=process-chunk")]
    assert retries == []
    assert all(row.contextualized_content == "" for row in await _chunks(silent))


@pytest.mark.asyncio
async def test_concurrent_runs_for_one_document_and_batch_each_get_their_results(deps, engine) -> None:
    await _create_batch(engine, "batch-a")
    await deps.store.put(DocumentKey(ORG, NS, PATH), ORIGINAL.encode("utf-8"))
    payload = {"organizationId": ORG, "namespaceId": NS, "documentPath": PATH, "batchId": "batch-a"}

    first = await engine.send(INGEST_DOCUMENT, payload)
    second = await engine.send(INGEST_DOCUMENT, payload)
    await engine.drain(timeout_s=10.0)

    assert len(first) == len(second) == 1
    records = _ingest_results(engine)
    assert len(records) == 2
    assert [record.status for record in records] == ["completed", "completed"]
    assert [record.result["failed_chunks"] for record in records] == [[], []]
    # The later run may find some chunks already written by the earlier one.
    processed = {index for record in records for index in record.result["processed_chunks"]}
    assert processed == {0, 1, 2}
    job = await _job(deps, "batch-a")
    assert (job.total_documents, job.documents_processed) == (2, 2)
