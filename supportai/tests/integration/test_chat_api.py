from __future__ import annotations

import fakeredis.aioredis
import pytest

from supportai.agent.prompts import LOW_CONFIDENCE_MESSAGE
from supportai.apps.api.deps import get_orchestrator_factory
from supportai.core.config import get_settings
from supportai.persistence.repos.policies import create_policy
from supportai.providers.llm.fake import FakeLLMProvider
from supportai.services.rate_limit import SlidingWindowRateLimiter
from supportai.tests.utils.api import bearer, parse_sse
from supportai.tests.utils.orchestrator import StaticVectorIndex, build_orchestrator, match


ANSWER = "Refunds are processed within five business days."


def _override(app, audit, **kwargs) -> None:
    app.dependency_overrides[get_orchestrator_factory] = lambda: (
        lambda session: build_orchestrator(session, audit=audit.logger, **kwargs)
    )


@pytest.mark.asyncio
async def test_post_message_returns_answer(app, client, tenant_with_key, audit) -> None:
    _override(app, audit, llm=FakeLLMProvider(ANSWER))

    response = await client.post(
        "/v1/chat/messages",
        json={"message": "How long do refunds take?", "session_key": "web-42"},
        headers=bearer(tenant_with_key[1]),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["reply"] == ANSWER
    assert data["outcome"] == "answered"
    assert data["confidence"] == pytest.approx(0.9)
    assert data["citations"] == ["src-1"]
    assert data["message_id"]


@pytest.mark.asyncio
async def test_low_confidence_is_reported_as_escalation(app, client, tenant_with_key, audit) -> None:
    _override(app, audit, index=StaticVectorIndex([match(0.3)]))

    response = await client.post(
        "/v1/chat/messages", json={"message": "Do you sell boats?"}, headers=bearer(tenant_with_key[1])
    )

    data = response.json()["data"]
    assert data["escalated"] is True
    assert data["outcome"] == "escalated"
    assert data["reply"] == LOW_CONFIDENCE_MESSAGE


@pytest.mark.asyncio
async def test_rate_limited_message_is_429(app, client, tenant_with_key, audit, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RL_PLAN_TRIAL", "1")
    get_settings.cache_clear()
    limiter = SlidingWindowRateLimiter(fakeredis.aioredis.FakeRedis(), enabled=True)
    _override(app, audit, rate_limiter=limiter)
    headers = bearer(tenant_with_key[1])

    first = await client.post("/v1/chat/messages", json={"message": "first"}, headers=headers)
    second = await client.post("/v1/chat/messages", json={"message": "second"}, headers=headers)

    assert first.status_code == 200
    assert second.status_code == 429
    assert 1 <= int(second.headers["Retry-After"]) <= 60
    error = second.json()["error"]
    assert error["code"] == "RATE_LIMITED"
    assert error["details"]["conversation_id"]


@pytest.mark.asyncio
async def test_stream_sends_deltas_then_done(app, client, tenant_with_key, audit) -> None:
    _override(app, audit, llm=FakeLLMProvider(ANSWER))

    response = await client.post(
        "/v1/chat/stream", json={"message": "How long do refunds take?"}, headers=bearer(tenant_with_key[1])
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = parse_sse(response.text)
    deltas = [event for event in events if event["type"] == "delta"]
    assert len(deltas) == len(ANSWER.split())
    assert "".join(event["content"] for event in deltas).strip() == ANSWER
    done = events[-1]
    assert done["type"] == "done"
    assert done["citations"] == ["src-1"]
    assert done["confidence"] == pytest.approx(0.9)
    assert done["conversation_id"]


@pytest.mark.asyncio
async def test_stream_reports_blocked_message(app, client, session, tenant_with_key, audit) -> None:
    tenant, raw_key = tenant_with_key
    await create_policy(
        session,
        tenant_id=tenant.id,
        name="No competitors",
        policy_type="topic_filter",
        mode="pre",
        config={"blocked_topics": ["competitor"], "message": "I can only help with our products."},
    )
    await session.commit()
    _override(app, audit)

    response = await client.post(
        "/v1/chat/stream", json={"message": "Is your competitor cheaper?"}, headers=bearer(raw_key)
    )

    assert parse_sse(response.text) == [{"type": "blocked", "message": "I can only help with our products."}]


@pytest.mark.asyncio
async def test_stream_reports_escalation(app, client, tenant_with_key, audit) -> None:
    _override(app, audit, index=StaticVectorIndex([]))

    response = await client.post(
        "/v1/chat/stream", json={"message": "Anything?"}, headers=bearer(tenant_with_key[1])
    )

    events = parse_sse(response.text)
    assert len(events) == 1
    assert events[0]["type"] == "escalated"
    assert events[0]["message"] == LOW_CONFIDENCE_MESSAGE


@pytest.mark.asyncio
async def test_stream_reports_unknown_conversation(app, client, tenant_with_key, audit) -> None:
    _override(app, audit)

    response = await client.post(
        "/v1/chat/stream",
        json={"message": "hello", "conversation_id": "missing"},
        headers=bearer(tenant_with_key[1]),
    )

    assert parse_sse(response.text) == [{"type": "error", "message": "Conversation not found."}]
