from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.apps.api.deps import (
    OrchestratorFactory,
    get_client_ip,
    get_current_tenant,
    get_db,
    get_orchestrator_factory,
)
from supportai.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from supportai.apps.api.response import success_response
from supportai.domain.types import Channel, Tenant
from supportai.services.channels import InboundMessage, handle_incoming


router = APIRouter(prefix="/channels", tags=["channels"], responses=DEFAULT_ERROR_RESPONSES)


class ChannelInboundRequest(BaseModel):
    # Adapters (email, sms, whatsapp, voice) post this after decoding their own wire format.
    channel: Channel
    content: str = Field(min_length=1)
    conversation_id: str | None = None
    session_key: str | None = Field(default=None, max_length=256)
    user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


@router.post("/inbound")
async def inbound(
    payload: ChannelInboundRequest,
    request: Request,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
    orchestrator_factory: OrchestratorFactory = Depends(get_orchestrator_factory),
    client_ip: str = Depends(get_client_ip),
) -> dict:
    if not payload.conversation_id and not payload.session_key:
        raise HTTPException(
            status_code=422,
            detail={
                "code": "CHANNEL_SESSION_REQUIRED",
                "message": "conversation_id or session_key is required",
            },
        )
    result = await handle_incoming(
        db,
        InboundMessage(tenant_id=tenant.id, **payload.model_dump()),
        orchestrator=orchestrator_factory(db),
        client_ip=client_ip,
    )
    if result.outcome == "rate_limited":
        retry_after = result.retry_after_s or 1
        raise HTTPException(
            status_code=429,
            detail={"code": "RATE_LIMITED", "message": result.reply, "retry_after_s": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
    return success_response(
        request=request,
        data={
            "conversation_id": result.conversation_id,
            "reply": result.reply,
            "confidence": result.confidence,
            "escalated": result.escalated,
            "outcome": result.outcome,
        },
    )
