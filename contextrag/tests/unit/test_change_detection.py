from __future__ import annotations

import pytest

from contextrag.documents.change_detection import compute_content_hash, should_reingest_document
from contextrag.documents.storage import DocumentKey
from contextrag.persistence.repos import documents as documents_repo


KEY = DocumentKey("org", "ns", "guide.md")


@pytest.mark.asyncio
async def test_reingest_decisions_follow_content_hash(session_factory) -> None:
    original = b"# Guide\n\nfirst version"

    async with session_factory() as session:
        decision = await should_reingest_document(session, KEY, original)
    assert decision.should_reingest is True
    assert decision.reason == "DOCUMENT_NOT_FOUND"
    assert decision.content_hash == compute_content_hash(original)

    async with session_factory() as session:
        await documents_repo.upsert_document(
            session,
            organization_id=KEY.organization_id,
            namespace_id=KEY.namespace_id,
            file_path=KEY.document_path,
            title="Guide",
            metadata_json={},
            content_hash=decision.content_hash,
        )
        await session.commit()

    async with session_factory() as session:
        unchanged = await should_reingest_document(session, KEY, original)
        changed = await should_reingest_document(session, KEY, b"# Guide\n\nsecond version")

    assert unchanged.should_reingest is False
    assert unchanged.reason == "CONTENT_HASH_MATCH"
    assert unchanged.content_hash is None
    assert changed.should_reingest is True
    assert changed.reason == "CONTENT_HASH_MISMATCH"
    assert changed.content_hash == compute_content_hash(b"# Guide\n\nsecond version")
    assert changed.content_hash != decision.content_hash


def test_content_hash_is_sha1_hex() -> None:
    assert compute_content_hash(b"abc") == "a9993e364706816aba3e25717850c26c9cd0d89d"
