from __future__ import annotations

import pytest
from pydantic import ValidationError

from supportai.services.channels import InboundMessage, OutboundMessage, handle_incoming
from supportai.tests.utils.orchestrator import StaticVectorIndex, build_orchestrator, match


@pytest.mark.asyncio
async def test_reply_is_delivered_through_sender(session, tenant, audit) -> None:
    sent: list[OutboundMessage] = []

    async def sender(message: OutboundMessage) -> None:
        sent.append(message)

    payload = InboundMessage(tenant_id=tenant.id, content="Refund timing?", channel="whatsapp", session_key="+4915100")
    result = await handle_incoming(
        session, payload, sender, orchestrator=build_orchestrator(session, audit=audit.logger), audit=audit.logger
    )

    assert result.outcome == "answered"
    assert len(sent) == 1
    assert sent[0].channel == "whatsapp"
    assert sent[0].content == result.reply
    assert sent[0].session_key == "+4915100"
    assert sent[0].conversation_id == result.conversation_id


@pytest.mark.asyncio
async def test_escalation_is_sent_and_audited(session, tenant, audit) -> None:
    sent: list[OutboundMessage] = []

    async def sender(message: OutboundMessage) -> None:
        sent.append(message)

    orchestrator = build_orchestrator(session, audit=audit.logger, index=StaticVectorIndex([match(0.1)]))
    payload = InboundMessage(tenant_id=tenant.id, content="Can I talk to someone?", channel="email", session_key="a@b.co")

    result = await handle_incoming(session, payload, sender, orchestrator=orchestrator, audit=audit.logger)

    assert result.escalated is True
    assert len(sent) == 1
    handovers = await audit.events("handover.triggered")
    assert handovers[0].payload["reason"] == "low_confidence"
    assert handovers[0].payload["channel"] == "email"


@pytest.mark.asyncio
async def test_sender_failure_keeps_the_turn(session, tenant, audit) -> None:
    async def sender(message: OutboundMessage) -> None:
        raise ConnectionError("provider down")

    payload = InboundMessage(tenant_id=tenant.id, content="Refund timing?", channel="sms", session_key="+15550101")
    result = await handle_incoming(
        session, payload, sender, orchestrator=build_orchestrator(session, audit=audit.logger), audit=audit.logger
    )

    assert result.outcome == "answered"
    failed = await audit.events("message.failed")
    assert failed[0].payload["stage"] == "send"


@pytest.mark.asyncio
async def test_same_session_key_continues_conversation(session, tenant, audit) -> None:
    orchestrator = build_orchestrator(session, audit=audit.logger)
    first = await handle_incoming(
        session,
        InboundMessage(tenant_id=tenant.id, content="Hi", channel="sms", session_key="+15550102"),
        orchestrator=orchestrator,
        audit=audit.logger,
    )
    second = await handle_incoming(
        session,
        InboundMessage(tenant_id=tenant.id, content="Still there?", channel="sms", session_key="+15550102"),
        orchestrator=orchestrator,
        audit=audit.logger,
    )
    other_channel = await handle_incoming(
        session,
        InboundMessage(tenant_id=tenant.id, content="Hi", channel="whatsapp", session_key="+15550102"),
        orchestrator=orchestrator,
        audit=audit.logger,
    )
    assert second.conversation_id == first.conversation_id
    assert other_channel.conversation_id != first.conversation_id


def test_inbound_message_validation() -> None:
    with pytest.raises(ValidationError):
        InboundMessage(tenant_id="t1", content="", channel="sms")
    with pytest.raises(ValidationError):
        InboundMessage(tenant_id="t1", content="hi", channel="fax")
