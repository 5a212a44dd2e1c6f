from __future__ import annotations

import argparse
import asyncio
import base64
import logging
import sys
from pathlib import Path
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings

from contextrag.core.config import get_settings
from contextrag.core.errors import ContextRagError
from contextrag.core.logging import configure_logging
from contextrag.domain.events import UPLOAD_DOCUMENT, UploadDocumentEvent
from contextrag.persistence.repos import ingestion_jobs as jobs_repo
from contextrag.services.ingest.deps import build_deps
from contextrag.services.ingest.functions import build_engine
from contextrag.services.ingest.jobs import get_batch_progress
from contextrag.workflow.inline import InlineWorkflowEngine


logger = logging.getLogger("ingest_directory")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Upload every file under a directory into one namespace as a single ingestion batch."
    )
    parser.add_argument("directory", type=Path, help="Root directory; file paths are stored relative to it")
    parser.add_argument("--organization", required=True, help="Organization id")
    parser.add_argument("--namespace", required=True, help="Namespace id")
    parser.add_argument("--batch-id", default=None, help="Batch id (default: random uuid)")
    parser.add_argument(
        "--drain-timeout",
        type=float,
        default=600.0,
        help="Seconds to wait for inline ingestion to settle",
    )
    return parser


def _iter_files(root: Path) -> list[Path]:
    # Hidden files and directories (e.g. .git) are never documents.
    return sorted(
        path
        for path in root.rglob("*")
        if path.is_file() and not any(part.startswith(".") for part in path.relative_to(root).parts)
    )


async def _run(args: argparse.Namespace) -> int:
    settings = get_settings()
    root: Path = args.directory
    if not root.is_dir():
        print(f"NOT_A_DIRECTORY: {root}", file=sys.stderr)
        return 2
    batch_id = args.batch_id or str(uuid4())

    redis = await create_pool(RedisSettings.from_dsn(settings.redis_url))
    try:
        deps = build_deps(settings, redis=redis)
        engine = build_engine(deps, redis=redis)

        # The job row must exist before any upload can bump its counters.
        async with deps.session_factory() as session:
            await jobs_repo.create_job(
                session,
                job_id=batch_id,
                organization_id=args.organization,
                namespace_id=args.namespace,
            )
            await session.commit()

        files = _iter_files(root)
        for path in files:
            event = UploadDocumentEvent(
                organization_id=args.organization,
                namespace_id=args.namespace,
                document_path=path.relative_to(root).as_posix(),
                document_buffer_base64=base64.b64encode(path.read_bytes()).decode("ascii"),
                batch_id=batch_id,
            )
            await engine.send(UPLOAD_DOCUMENT, event.to_event_data())
        logger.info("directory_queued batch_id=%s files=%s", batch_id, len(files))

        if isinstance(engine, InlineWorkflowEngine):
            await engine.drain(timeout_s=args.drain_timeout)
        counters = await get_batch_progress(deps, batch_id)
    finally:
        await redis.aclose()

    print(f"batch_id={batch_id} files={len(files)}")
    if counters is not None:
        print(
            f"documents_processed={counters.documents_processed} "
            f"total_documents={counters.total_documents} complete={counters.is_complete}"
        )
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_run(args))
    except ContextRagError as exc:
        print(f"{exc.__class__.__name__}: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
