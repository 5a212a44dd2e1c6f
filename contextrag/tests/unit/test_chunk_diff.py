from __future__ import annotations

from contextrag.domain.events import chunk_correlation_id
from contextrag.services.ingest.orchestrator import diff_chunks


def test_only_changed_or_new_positions_are_processed() -> None:
    diff = diff_chunks(["a", "b changed", "c", "d"], {0: "a", 1: "b", 2: " c \n"})

    assert diff.changed == [(1, "b changed"), (3, "d")]
    assert diff.orphan_indexes == []


def test_shrinking_documents_report_trailing_orphans() -> None:
    diff = diff_chunks(["a"], {0: "a", 1: "b", 2: "c"})

    assert diff.changed == []
    assert diff.orphan_indexes == [1, 2]


def test_first_ingest_processes_everything() -> None:
    assert diff_chunks(["x", "y"], {}).changed == [(0, "x"), (1, "y")]


def test_pending_rows_are_processed_again_even_when_text_matches() -> None:
    diff = diff_chunks(["a", "b", "c"], {0: "a", 1: "b", 2: "c"}, pending={1})

    assert diff.changed == [(1, "b")]


def test_correlation_ids_are_stable_per_run_and_distinct_across_runs() -> None:
    first = chunk_correlation_id("batch-1", "guide.md", 0, "ingest-document:run-a")

    assert first == chunk_correlation_id("batch-1", "guide.md", 0, "ingest-document:run-a")
    assert first.startswith("batch-1:guide.md:0:")
    assert first != chunk_correlation_id("batch-1", "guide.md", 0, "ingest-document:run-b")
