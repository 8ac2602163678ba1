from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
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
from supportai.apps.api.response import SuccessEnvelope, resolve_request_id, success_response
from supportai.core.errors import ConversationNotFoundError
from supportai.domain.events import BlockedEvent, DeltaEvent, DoneEvent, ErrorEvent, EscalatedEvent
from supportai.domain.types import Channel, Tenant
from supportai.persistence.db import get_session
from supportai.services.orchestrator import OrchestrateRequest, OrchestrateResult


logger = logging.getLogger(__name__)
router = APIRouter(tags=["chat"], responses=DEFAULT_ERROR_RESPONSES)

_GENERIC_STREAM_ERROR = "Something went wrong while generating a reply."


class ChatRequest(BaseModel):
    message: str = Field(min_length=1, max_length=8000)
    conversation_id: str | None = None
    session_key: str | None = Field(default=None, max_length=256)
    channel: Channel = "web"
    user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChatResponse(BaseModel):
    conversation_id: str
    message_id: str | None
    reply: str
    confidence: float
    citations: list[str]
    escalated: bool
    outcome: str


def _orchestrate_request(
    payload: ChatRequest, tenant: Tenant, *, client_ip: str, request_id: str
) -> OrchestrateRequest:
    return OrchestrateRequest(
        tenant_id=tenant.id,
        user_message=payload.message,
        channel=payload.channel,
        conversation_id=payload.conversation_id,
        session_key=payload.session_key,
        user_id=payload.user_id,
        client_ip=client_ip,
        metadata=payload.metadata,
        request_id=request_id,
    )


def _rate_limited(result: OrchestrateResult) -> HTTPException:
    retry_after = result.retry_after_s or 1
    return HTTPException(
        status_code=429,
        detail={
            "code": "RATE_LIMITED",
            "message": result.reply,
            "retry_after_s": retry_after,
            "conversation_id": result.conversation_id,
        },
        headers={"Retry-After": str(retry_after)},
    )


@router.post("/chat/messages", response_model=SuccessEnvelope[ChatResponse])
async def post_message(
    payload: ChatRequest,
    request: Request,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
    orchestrator_factory: OrchestratorFactory = Depends(get_orchestrator_factory),
    client_ip: str = Depends(get_client_ip),
) -> dict:
    result = await orchestrator_factory(db).orchestrate(
        _orchestrate_request(payload, tenant, client_ip=client_ip, request_id=resolve_request_id(request))
    )
    if result.outcome == "rate_limited":
        raise _rate_limited(result)
    data = ChatResponse(
        conversation_id=result.conversation_id,
        message_id=result.message_id,
        reply=result.reply,
        confidence=result.confidence,
        citations=result.citations,
        escalated=result.escalated,
        outcome=result.outcome,
    )
    return success_response(request=request, data=data.model_dump())


def _sse_message(payload: dict) -> str:
    # One compact JSON line per event keeps SSE framing intact.
    data = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"event: message\ndata: {data}\n\n"


def _stream_error_message(exc: Exception) -> str:
    if isinstance(exc, ConversationNotFoundError):
        return "Conversation not found."
    return _GENERIC_STREAM_ERROR


def final_events(result: OrchestrateResult | None, error: Exception | None, *, streamed: bool) -> list[dict]:
    """Events that close a stream once the turn has settled."""
    if error is not None or result is None:
        failure: ErrorEvent = {
            "type": "error",
            "message": _stream_error_message(error) if error else _GENERIC_STREAM_ERROR,
        }
        return [failure]
    if result.outcome == "cancelled":
        return []
    if result.outcome == "blocked":
        blocked: BlockedEvent = {"type": "blocked", "message": result.reply}
        return [blocked]
    if result.outcome in ("rate_limited", "fallback"):
        failed: ErrorEvent = {"type": "error", "message": result.reply}
        return [failed]
    if result.escalated:
        escalated: EscalatedEvent = {
            "type": "escalated",
            "message": result.reply,
            "conversation_id": result.conversation_id,
        }
        return [escalated]
    events: list[dict] = []
    if not streamed and result.reply:
        # Cached and procedure replies arrive whole; send them as a single delta.
        whole: DeltaEvent = {"type": "delta", "content": result.reply}
        events.append(whole)
    done: DoneEvent = {
        "type": "done",
        "conversation_id": result.conversation_id,
        "confidence": result.confidence,
        "citations": result.citations,
    }
    events.append(done)
    return events


@router.post("/chat/stream")
async def stream_message(
    payload: ChatRequest,
    http_request: Request,
    tenant: Tenant = Depends(get_current_tenant),
    orchestrator_factory: OrchestratorFactory = Depends(get_orchestrator_factory),
    client_ip: str = Depends(get_client_ip),
) -> StreamingResponse:
    request = _orchestrate_request(
        payload, tenant, client_ip=client_ip, request_id=resolve_request_id(http_request)
    )
    queue: asyncio.Queue[dict] = asyncio.Queue()
    done = asyncio.Event()
    # Thread-safe so the blocking provider stream can stop promptly.
    cancel_event = threading.Event()
    result: OrchestrateResult | None = None
    error: Exception | None = None
    loop = asyncio.get_running_loop()

    def on_delta(delta: str) -> None:
        if cancel_event.is_set():
            return
        event: DeltaEvent = {"type": "delta", "content": delta}
        loop.call_soon_threadsafe(queue.put_nowait, event)

    async def run_turn() -> None:
        nonlocal result, error
        try:
            # The stream outlives the request scope, so the turn owns its session.
            async with get_session() as session:
                result = await orchestrator_factory(session).orchestrate(
                    request, on_delta=on_delta, cancel_event=cancel_event
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001 - reported to the client as an error event
            error = exc
            logger.exception("chat_stream_failed tenant_id=%s", tenant.id)
        finally:
            done.set()

    async def event_stream() -> AsyncGenerator[str, None]:
        task = asyncio.create_task(run_turn())
        streamed = False
        try:
            while not done.is_set() or not queue.empty():
                if await http_request.is_disconnected():
                    cancel_event.set()
                    break
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=0.1)
                except asyncio.TimeoutError:
                    continue
                streamed = True
                yield _sse_message(item)

            if cancel_event.is_set():
                # No closing events after the client has gone.
                return

            await task
            for event in final_events(result, error, streamed=streamed):
                yield _sse_message(event)
        finally:
            if not task.done():
                task.cancel()

    headers = {
        "Cache-Control": "no-cache",
        "Content-Type": "text/event-stream",
        "Connection": "keep-alive",
    }
    return StreamingResponse(event_stream(), headers=headers, media_type="text/event-stream")
