from __future__ import annotations

from fastapi import HTTPException, Request, status

from contextrag.services.ingest.deps import IngestDeps
from contextrag.workflow.base import WorkflowEngine


def get_ingest_deps(request: Request) -> IngestDeps:
    deps = getattr(request.app.state, "ingest_deps", None)
    if deps is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Ingestion dependencies are not initialised"},
        )
    return deps


def get_engine(request: Request) -> WorkflowEngine:
    engine = getattr(request.app.state, "workflow_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Workflow engine is not initialised"},
        )
    return engine
