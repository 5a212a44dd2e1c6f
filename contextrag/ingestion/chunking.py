from __future__ import annotations

import re
from enum import Enum
from pathlib import PurePosixPath
from typing import Iterable

from contextrag.ingestion.preprocessing import split_front_matter


# Chunking constants keep ingestion deterministic across runs.
CHUNK_SIZE_CHARS = 1200
CHUNK_OVERLAP_CHARS = 150

TEXT_EXTENSIONS = frozenset({".md", ".markdown", ".txt", ".mdx"})
IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".gif", ".webp"})

# H1-H3 headings at the start of a line.
_HEADING_RE = re.compile(r"^#{1,3}[ \t]+\S.*$", re.MULTILINE)
_FENCE_RE = re.compile(r"^(```|~~~)", re.MULTILINE)


class DocumentKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    UNSUPPORTED = "unsupported"


def classify_document_path(document_path: str) -> DocumentKind:
    suffix = PurePosixPath(document_path).suffix.lower()
    if suffix in TEXT_EXTENSIONS:
        return DocumentKind.TEXT
    if suffix in IMAGE_EXTENSIONS:
        return DocumentKind.IMAGE
    return DocumentKind.UNSUPPORTED


def _window_text(text: str, size: int, overlap: int) -> Iterable[str]:
    # Use a stable sliding window for long sections to preserve order.
    start = 0
    length = len(text)
    while start < length:
        end = min(length, start + size)
        yield text[start:end]
        if end == length:
            break
        start = max(0, end - overlap)


def _fenced_ranges(text: str) -> list[tuple[int, int]]:
    ranges: list[tuple[int, int]] = []
    opened: int | None = None
    for match in _FENCE_RE.finditer(text):
        if opened is None:
            opened = match.start()
        else:
            ranges.append((opened, match.end()))
            opened = None
    if opened is not None:
        ranges.append((opened, len(text)))
    return ranges


def _heading_offsets(text: str) -> list[int]:
    # "# comment" lines inside code fences are not headings.
    fenced = _fenced_ranges(text)
    offsets = []
    for match in _HEADING_RE.finditer(text):
        position = match.start()
        if any(start <= position < end for start, end in fenced):
            continue
        offsets.append(position)
    return offsets


def _split_on_headings(text: str) -> list[str]:
    offsets = _heading_offsets(text)
    if not offsets:
        return []
    sections: list[str] = []
    preamble = text[: offsets[0]].strip()
    if preamble:
        sections.append(preamble)
    bounds = offsets + [len(text)]
    for start, end in zip(bounds, bounds[1:]):
        section = text[start:end].strip()
        if section:
            sections.append(section)
    return sections


def chunk_text(
    text: str,
    *,
    chunk_size: int = CHUNK_SIZE_CHARS,
    chunk_overlap: int = CHUNK_OVERLAP_CHARS,
) -> list[str]:
    # Prefer paragraph boundaries for readability; fall back to windows for long blocks.
    chunks: list[str] = []
    for paragraph in (p.strip() for p in text.split("\n\n")):
        if not paragraph:
            continue
        if len(paragraph) <= chunk_size:
            chunks.append(paragraph)
        else:
            chunks.extend(_window_text(paragraph, chunk_size, chunk_overlap))
    return chunks


def chunk_document(
    text: str,
    *,
    chunk_size: int = CHUNK_SIZE_CHARS,
    chunk_overlap: int = CHUNK_OVERLAP_CHARS,
) -> list[str]:
    """Split a markdown-like document into ordered chunks.

    Front matter is stripped first. Each H1-H3 heading starts a section and any
    text before the first heading is its own chunk; sections longer than
    ``chunk_size`` are windowed with ``chunk_overlap``. Documents without
    headings are split on paragraphs. The output depends only on ``text``, so
    index-aligned diffs against stored chunks stay meaningful across runs.
    """
    _, body = split_front_matter(text.replace("\r\n", "\n"))
    if not body.strip():
        return []

    sections = _split_on_headings(body)
    if not sections:
        return chunk_text(body, chunk_size=chunk_size, chunk_overlap=chunk_overlap)

    chunks: list[str] = []
    for section in sections:
        if len(section) <= chunk_size:
            chunks.append(section)
        else:
            chunks.extend(_window_text(section, chunk_size, chunk_overlap))
    return [chunk for chunk in chunks if chunk.strip()]
