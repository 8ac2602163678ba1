from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from supportai.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from supportai.apps.api.response import SuccessEnvelope, success_response
from supportai.services.ingest_queue import get_queue_depth

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    # None when the ingestion queue cannot be reached.
    ingest_queue_depth: int | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    depth = await get_queue_depth()
    payload = HealthResponse(status="ok" if depth is not None else "degraded", ingest_queue_depth=depth)
    return success_response(request=request, data=payload.model_dump())
