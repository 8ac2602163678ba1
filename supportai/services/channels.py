from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.domain.types import Channel
from supportai.services.audit import AuditLogger, get_audit_logger
from supportai.services.orchestrator import OrchestrateRequest, OrchestrateResult, Orchestrator


logger = logging.getLogger(__name__)


class InboundMessage(BaseModel):
    # Uniform shape every channel adapter hands over.
    tenant_id: str
    content: str = Field(min_length=1)
    channel: Channel
    conversation_id: str | None = None
    session_key: str | None = None
    user_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class OutboundMessage:
    channel: str
    conversation_id: str
    content: str
    session_key: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


Sender = Callable[[OutboundMessage], Awaitable[None]]


async def handle_incoming(
    session: AsyncSession,
    payload: InboundMessage,
    sender: Sender | None = None,
    *,
    orchestrator: Orchestrator | None = None,
    client_ip: str | None = None,
    audit: AuditLogger | None = None,
) -> OrchestrateResult:
    """Run one inbound channel message through the pipeline and deliver the reply."""
    audit_logger = audit or get_audit_logger()
    runner = orchestrator or Orchestrator(session, audit=audit_logger)
    result = await runner.orchestrate(
        OrchestrateRequest(
            tenant_id=payload.tenant_id,
            user_message=payload.content,
            channel=payload.channel,
            conversation_id=payload.conversation_id,
            session_key=payload.session_key,
            user_id=payload.user_id,
            client_ip=client_ip,
            metadata=payload.metadata,
        )
    )

    if result.escalated:
        audit_logger.emit(
            payload.tenant_id,
            "handover.triggered",
            {
                "conversation_id": result.conversation_id,
                "channel": payload.channel,
                "reason": result.escalation_reason,
            },
            user_id=payload.user_id,
        )

    if sender is None or not result.reply or result.outcome in ("cancelled", "rate_limited"):
        return result
    try:
        await sender(
            OutboundMessage(
                channel=payload.channel,
                conversation_id=result.conversation_id,
                content=result.reply,
                session_key=payload.session_key,
                metadata=payload.metadata,
            )
        )
    except Exception:  # noqa: BLE001 - a transport failure must not undo the persisted turn
        logger.warning(
            "channel_send_failed channel=%s conversation_id=%s",
            payload.channel,
            result.conversation_id,
            exc_info=True,
        )
        audit_logger.emit(
            payload.tenant_id,
            "message.failed",
            {"conversation_id": result.conversation_id, "channel": payload.channel, "stage": "send"},
            user_id=payload.user_id,
        )
    return result
