from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from contextrag.apps.api.deps import get_engine
from contextrag.apps.api.response import SuccessEnvelope, success_response
from contextrag.domain.events import PUBLIC_EVENTS, parse_event
from contextrag.workflow.base import WorkflowEngine


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/events", tags=["events"])


class SendEventRequest(BaseModel):
    name: str = Field(min_length=1)
    data: dict[str, Any]


class SendEventResponse(BaseModel):
    name: str
    run_ids: list[str]


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[SendEventResponse],
)
async def send_event(
    request: Request,
    payload: SendEventRequest,
    engine: WorkflowEngine = Depends(get_engine),
) -> dict:
    model = PUBLIC_EVENTS.get(payload.name)
    if model is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "UNKNOWN_EVENT",
                "message": f"Unknown event {payload.name!r}",
                "accepted": sorted(PUBLIC_EVENTS),
            },
        )
    # Reject bad payloads here instead of letting a run fail later.
    event = parse_event(model, payload.data)
    run_ids = await engine.send(payload.name, event.to_event_data())
    logger.info("event_accepted name=%s runs=%s", payload.name, len(run_ids))
    return success_response(
        request=request,
        data=SendEventResponse(name=payload.name, run_ids=run_ids).model_dump(),
    )
