from __future__ import annotations

import threading

import fakeredis.aioredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from supportai.agent.prompts import LOW_CONFIDENCE_MESSAGE, PROCEDURE_HANDOVER_MESSAGE, fallback_message
from supportai.core.config import get_settings
from supportai.core.errors import ConversationNotFoundError
from supportai.persistence.repos import conversations as conversations_repo
from supportai.persistence.repos import messages as messages_repo
from supportai.persistence.repos import tenants as tenants_repo
from supportai.persistence.repos.policies import create_policy
from supportai.persistence.repos.procedures import create_procedure
from supportai.providers.llm.fake import FakeLLMProvider
from supportai.services.orchestrator import OrchestrateRequest
from supportai.services.policy_engine import POST_POLICY_FALLBACK_MESSAGE
from supportai.services.rate_limit import SlidingWindowRateLimiter
from supportai.services.semantic_cache import CachedResponse, SemanticCache
from supportai.tests.utils.orchestrator import StaticVectorIndex, build_orchestrator, match


ANSWER = "Refunds are processed within five business days."


@pytest.mark.asyncio
async def test_confident_answer_is_persisted_resolved_and_cached(session, tenant, audit) -> None:
    cache = SemanticCache(fakeredis.aioredis.FakeRedis(), enabled=True)
    llm = FakeLLMProvider(ANSWER)
    deltas: list[str] = []
    orchestrator = build_orchestrator(session, audit=audit.logger, llm=llm, cache=cache)

    result = await orchestrator.orchestrate(
        OrchestrateRequest(tenant_id=tenant.id, user_message="How long do refunds take?"),
        on_delta=deltas.append,
    )

    assert result.outcome == "answered"
    assert result.reply == ANSWER
    assert result.confidence == pytest.approx(0.9)
    assert result.citations == ["src-1"]
    assert result.resolved is True
    assert result.escalated is False
    assert "".join(deltas).strip() == ANSWER

    history = await messages_repo.list_messages(session, tenant.id, result.conversation_id)
    assert [(record.role, record.content) for record in history] == [
        ("user", "How long do refunds take?"),
        ("assistant", ANSWER),
    ]
    conversation = await conversations_repo.get_conversation(session, tenant.id, result.conversation_id)
    assert conversation.status == "resolved"

    cached = await cache.lookup(tenant.id, "how long do refunds   take?")
    assert cached is not None
    assert cached.content == ANSWER

    types = await audit.event_types()
    assert types[:3] == ["conversation.created", "message.received", "cache.miss"]
    assert "conversation.resolved" in types
    assert types[-1] == "message.sent"


@pytest.mark.asyncio
async def test_cache_hit_skips_retrieval_and_generation(session, tenant, audit) -> None:
    cache = SemanticCache(fakeredis.aioredis.FakeRedis(), enabled=True)
    await cache.store(tenant.id, "What are your hours?", CachedResponse(content="9 to 5", confidence=0.95, citations=["s9"]))
    index = StaticVectorIndex([match(0.9)])
    llm = FakeLLMProvider(ANSWER)
    orchestrator = build_orchestrator(session, audit=audit.logger, llm=llm, cache=cache, index=index)

    result = await orchestrator.orchestrate(OrchestrateRequest(tenant_id=tenant.id, user_message="what are your hours?"))

    assert result.outcome == "cached"
    assert result.reply == "9 to 5"
    assert result.confidence == 0.95
    assert result.citations == ["s9"]
    assert index.queries == 0
    assert llm.calls == []
    assert "cache.hit" in await audit.event_types()


@pytest.mark.asyncio
async def test_low_confidence_escalates_without_generation(session, tenant, audit) -> None:
    llm = FakeLLMProvider(ANSWER)
    orchestrator = build_orchestrator(
        session, audit=audit.logger, llm=llm, index=StaticVectorIndex([match(0.4), match(0.5, "src-2")])
    )

    result = await orchestrator.orchestrate(OrchestrateRequest(tenant_id=tenant.id, user_message="Do you sell boats?"))

    assert result.outcome == "escalated"
    assert result.escalated is True
    assert result.escalation_reason == "low_confidence"
    assert result.reply == LOW_CONFIDENCE_MESSAGE
    assert result.confidence == pytest.approx(0.45)
    assert llm.calls == []
    conversation = await conversations_repo.get_conversation(session, tenant.id, result.conversation_id)
    assert conversation.status == "escalated"
    assert "conversation.escalated" in await audit.event_types()


@pytest.mark.asyncio
async def test_empty_knowledge_base_escalates(session, tenant, audit) -> None:
    orchestrator = build_orchestrator(session, audit=audit.logger, index=StaticVectorIndex([]))
    result = await orchestrator.orchestrate(OrchestrateRequest(tenant_id=tenant.id, user_message="Anything?"))
    assert result.outcome == "escalated"
    assert result.confidence == 0.0


@pytest.mark.asyncio
async def test_uncited_answer_is_neither_resolved_nor_cached(session, tenant, audit) -> None:
    await tenants_repo.update_config(session, tenant.id, {"confidence_threshold": 0})
    await session.commit()
    cache = SemanticCache(fakeredis.aioredis.FakeRedis(), enabled=True)
    orchestrator = build_orchestrator(
        session, audit=audit.logger, llm=FakeLLMProvider("I have no information on that."), cache=cache, index=StaticVectorIndex([])
    )

    result = await orchestrator.orchestrate(OrchestrateRequest(tenant_id=tenant.id, user_message="Do you sell boats?"))

    assert result.outcome == "answered"
    assert result.citations == []
    assert result.resolved is False
    conversation = await conversations_repo.get_conversation(session, tenant.id, result.conversation_id)
    assert conversation.status == "active"
    assert await cache.lookup(tenant.id, "Do you sell boats?") is None
    assert "conversation.resolved" not in await audit.event_types()


@pytest.mark.asyncio
async def test_pre_policy_blocks_before_any_work(session, tenant, audit) -> None:
    await create_policy(
        session,
        tenant_id=tenant.id,
        name="No competitors",
        policy_type="topic_filter",
        mode="pre",
        config={"blocked_topics": ["competitor"], "message": "I can only help with our products."},
    )
    await session.commit()
    index = StaticVectorIndex([match(0.9)])
    llm = FakeLLMProvider(ANSWER)
    orchestrator = build_orchestrator(session, audit=audit.logger, llm=llm, index=index)

    result = await orchestrator.orchestrate(
        OrchestrateRequest(tenant_id=tenant.id, user_message="Is your competitor cheaper?")
    )

    assert result.outcome == "blocked"
    assert result.reply == "I can only help with our products."
    assert result.confidence == 0.0
    assert result.policy_violations[0]["reason"] == "blocked topic: competitor"
    assert index.queries == 0
    assert llm.calls == []
    violations = await audit.events("policy.violated")
    assert violations[0].payload["mode"] == "pre"


@pytest.mark.asyncio
async def test_pii_redaction_reaches_the_model(session, tenant, audit) -> None:
    await create_policy(
        session,
        tenant_id=tenant.id,
        name="Redact emails",
        policy_type="pii_filter",
        mode="pre",
        config={"detect": ["email"], "action": "redact"},
    )
    await session.commit()
    llm = FakeLLMProvider(ANSWER)
    orchestrator = build_orchestrator(session, audit=audit.logger, llm=llm)

    await orchestrator.orchestrate(
        OrchestrateRequest(tenant_id=tenant.id, user_message="My email is ada@example.com, where is my refund?")
    )

    prompt_user_turn = llm.calls[0][-1]["content"]
    assert "ada@example.com" not in prompt_user_turn
    assert "[REDACTED]" in prompt_user_turn


@pytest.mark.asyncio
async def test_post_policy_violation_replaces_reply(session, tenant, audit) -> None:
    await create_policy(
        session,
        tenant_id=tenant.id,
        name="Short replies",
        policy_type="length",
        mode="post",
        config={"max_length": 10},
    )
    await session.commit()
    cache = SemanticCache(fakeredis.aioredis.FakeRedis(), enabled=True)
    orchestrator = build_orchestrator(session, audit=audit.logger, cache=cache)

    result = await orchestrator.orchestrate(OrchestrateRequest(tenant_id=tenant.id, user_message="Refund timing?"))

    assert result.outcome == "escalated"
    assert result.reply == POST_POLICY_FALLBACK_MESSAGE
    assert result.escalation_reason == "post_policy_violation"
    assert await cache.lookup(tenant.id, "Refund timing?") is None


@pytest.mark.asyncio
async def test_completed_procedure_answers_with_full_confidence(session, tenant, audit) -> None:
    await create_procedure(
        session,
        tenant_id=tenant.id,
        name="Refund request",
        trigger={"type": "keyword", "condition": "refund"},
        steps=[
            {"type": "message", "template": "I've started your refund."},
            {"type": "notify", "action": "audit", "target": "billing", "message": "refund requested"},
        ],
    )
    await session.commit()
    cache = SemanticCache(fakeredis.aioredis.FakeRedis(), enabled=True)
    llm = FakeLLMProvider(ANSWER)
    orchestrator = build_orchestrator(session, audit=audit.logger, llm=llm, cache=cache)

    result = await orchestrator.orchestrate(OrchestrateRequest(tenant_id=tenant.id, user_message="I want a refund"))

    assert result.outcome == "procedure"
    assert result.reply == "I've started your refund."
    assert result.confidence == 1.0
    assert result.procedure["status"] == "completed"
    assert result.resolved is True
    assert llm.calls == []
    assert await cache.lookup(tenant.id, "I want a refund") is None
    types = await audit.event_types()
    assert "procedure.completed" in types
    assert "procedure.notify" in types


@pytest.mark.asyncio
async def test_failed_procedure_hands_over(session, tenant, audit) -> None:
    await create_procedure(
        session,
        tenant_id=tenant.id,
        name="Refund request",
        trigger={"type": "keyword", "condition": "refund"},
        steps=[{"type": "notify", "action": "escalate", "fail": True}],
    )
    await session.commit()
    orchestrator = build_orchestrator(session, audit=audit.logger)

    result = await orchestrator.orchestrate(OrchestrateRequest(tenant_id=tenant.id, user_message="refund please"))

    assert result.outcome == "escalated"
    assert result.escalated is True
    assert result.reply == PROCEDURE_HANDOVER_MESSAGE
    assert result.escalation_reason == "procedure_failed"
    assert result.procedure["status"] == "failed"
    assert len(await audit.events("procedure.failed")) == 1


@pytest.mark.asyncio
async def test_generation_failure_returns_channel_fallback(session, tenant, audit) -> None:
    orchestrator = build_orchestrator(session, audit=audit.logger, llm=FakeLLMProvider(fail=True))

    result = await orchestrator.orchestrate(
        OrchestrateRequest(tenant_id=tenant.id, user_message="Hello?", channel="sms")
    )

    assert result.outcome == "fallback"
    assert result.reply == fallback_message("sms")
    assert result.message_id is not None
    failed = await audit.events("message.failed")
    assert failed[0].payload["error"] == "GenerationError"


@pytest.mark.asyncio
async def test_cancelled_turn_persists_no_reply(session, tenant, audit) -> None:
    cancel = threading.Event()
    cancel.set()
    cache = SemanticCache(fakeredis.aioredis.FakeRedis(), enabled=True)
    orchestrator = build_orchestrator(session, audit=audit.logger, cache=cache)

    result = await orchestrator.orchestrate(
        OrchestrateRequest(tenant_id=tenant.id, user_message="Refund timing?"), cancel_event=cancel
    )

    assert result.outcome == "cancelled"
    history = await messages_repo.list_messages(session, tenant.id, result.conversation_id)
    assert [record.role for record in history] == ["user"]
    assert await cache.lookup(tenant.id, "Refund timing?") is None
    assert "message.sent" not in await audit.event_types()


@pytest.mark.asyncio
async def test_rate_limited_turn_keeps_user_message(session, tenant, audit, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RL_PLAN_TRIAL", "1")
    get_settings.cache_clear()
    limiter = SlidingWindowRateLimiter(fakeredis.aioredis.FakeRedis(), enabled=True)
    llm = FakeLLMProvider(ANSWER)
    orchestrator = build_orchestrator(session, audit=audit.logger, llm=llm, rate_limiter=limiter)

    first = await orchestrator.orchestrate(OrchestrateRequest(tenant_id=tenant.id, user_message="first"))
    second = await orchestrator.orchestrate(
        OrchestrateRequest(tenant_id=tenant.id, user_message="second", conversation_id=first.conversation_id)
    )

    assert first.outcome == "answered"
    assert second.outcome == "rate_limited"
    assert 1 <= second.retry_after_s <= 60
    history = await messages_repo.list_messages(session, tenant.id, first.conversation_id)
    assert [record.content for record in history][-1] == "second"
    assert len(llm.calls) == 1
    limited = await audit.events("rate_limit.exceeded")
    assert limited[0].payload["scope"] == "tenant"


@pytest.mark.asyncio
async def test_inbound_markup_is_stripped_before_any_stage(session, tenant, audit) -> None:
    llm = FakeLLMProvider(ANSWER)
    orchestrator = build_orchestrator(session, audit=audit.logger, llm=llm)

    result = await orchestrator.orchestrate(
        OrchestrateRequest(tenant_id=tenant.id, user_message="<script>alert(1)</script><b>refund</b>?")
    )

    assert llm.calls[0][-1]["content"] == "refund?"
    history = await messages_repo.list_messages(session, tenant.id, result.conversation_id)
    assert history[0].content == "refund?"


class _UnreachableRedis:
    def pipeline(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")


@pytest.mark.asyncio
async def test_turn_is_answered_while_limiter_store_is_down(session, tenant, audit) -> None:
    limiter = SlidingWindowRateLimiter(_UnreachableRedis(), enabled=True)
    orchestrator = build_orchestrator(session, audit=audit.logger, rate_limiter=limiter)

    result = await orchestrator.orchestrate(OrchestrateRequest(tenant_id=tenant.id, user_message="Refund timing?"))

    assert result.outcome == "answered"
    assert "rate_limit.exceeded" not in await audit.event_types()


@pytest.mark.asyncio
async def test_conversation_continuity_and_history(session, tenant, audit) -> None:
    llm = FakeLLMProvider(ANSWER)
    orchestrator = build_orchestrator(session, audit=audit.logger, llm=llm)

    first = await orchestrator.orchestrate(
        OrchestrateRequest(tenant_id=tenant.id, user_message="Refund timing?", channel="sms", session_key="+15550100")
    )
    second = await orchestrator.orchestrate(
        OrchestrateRequest(tenant_id=tenant.id, user_message="And for exchanges?", channel="sms", session_key="+15550100")
    )

    assert second.conversation_id == first.conversation_id
    second_prompt = llm.calls[1]
    assert [message["role"] for message in second_prompt] == ["system", "user", "assistant", "user"]
    assert second_prompt[1]["content"] == "Refund timing?"
    assert second_prompt[-1]["content"] == "And for exchanges?"


@pytest.mark.asyncio
async def test_unknown_conversation_id_is_rejected(session, tenant, audit) -> None:
    orchestrator = build_orchestrator(session, audit=audit.logger)
    with pytest.raises(ConversationNotFoundError):
        await orchestrator.orchestrate(
            OrchestrateRequest(tenant_id=tenant.id, user_message="hi", conversation_id="does-not-exist")
        )
