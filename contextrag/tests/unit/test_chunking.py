from __future__ import annotations

from contextrag.ingestion.chunking import (
    CHUNK_OVERLAP_CHARS,
    CHUNK_SIZE_CHARS,
    DocumentKind,
    chunk_document,
    chunk_text,
    classify_document_path,
)


THREE_SECTIONS = """---
title: Setup guide
---
# Install

Run the installer and accept the defaults.

## Configure

Edit the config file and set the region.

## Verify

Open the dashboard and check the status page.
"""


def test_chunk_document_is_deterministic() -> None:
    first = chunk_document(THREE_SECTIONS)
    second = chunk_document(THREE_SECTIONS)

    assert first == second
    assert [len(chunk) for chunk in first] == [len(chunk) for chunk in second]


def test_chunk_document_splits_on_headings_and_strips_front_matter() -> None:
    chunks = chunk_document(THREE_SECTIONS)

    assert len(chunks) == 3
    assert chunks[0].startswith("# Install")
    assert chunks[1].startswith("## Configure")
    assert chunks[2].startswith("## Verify")
    assert all("title: Setup guide" not in chunk for chunk in chunks)


def test_chunk_document_keeps_preamble_as_its_own_chunk() -> None:
    chunks = chunk_document("Intro paragraph.\n\n# First\n\nBody.")

    assert chunks == ["Intro paragraph.", "# First\n\nBody."]


def test_headings_inside_code_fences_do_not_split() -> None:
    text = "# Script\n\n```bash\n# not a heading\necho hi\n```\n\n# Next\n\nDone."

    chunks = chunk_document(text)

    assert len(chunks) == 2
    assert "# not a heading" in chunks[0]


def test_long_sections_are_windowed_with_overlap() -> None:
    body = "x" * (CHUNK_SIZE_CHARS * 2)
    chunks = chunk_document(f"# Long\n\n{body}")

    assert len(chunks) > 1
    assert all(len(chunk) <= CHUNK_SIZE_CHARS for chunk in chunks)
    assert chunks[0][-CHUNK_OVERLAP_CHARS:] == chunks[1][:CHUNK_OVERLAP_CHARS]


def test_documents_without_headings_split_on_paragraphs() -> None:
    assert chunk_text("one\n\n\n\ntwo\n\nthree") == ["one", "two", "three"]
    assert chunk_document("one\r\n\r\ntwo") == ["one", "two"]


def test_empty_document_yields_no_chunks() -> None:
    assert chunk_document("---\ntitle: x\n---\n   \n") == []


def test_classify_document_path() -> None:
    assert classify_document_path("docs/readme.MD") is DocumentKind.TEXT
    assert classify_document_path("notes.txt") is DocumentKind.TEXT
    assert classify_document_path("img/logo.png") is DocumentKind.IMAGE
    assert classify_document_path("report.pdf") is DocumentKind.UNSUPPORTED
    assert classify_document_path("Makefile") is DocumentKind.UNSUPPORTED
