from __future__ import annotations

import pytest

from supportai.tests.utils.api import bearer


POLICY_TEXT = "Refunds are issued to the original payment method within five business days."


@pytest.mark.asyncio
async def test_health_reports_inline_queue(client) -> None:
    response = await client.get("/v1/health")
    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok", "ingest_queue_depth": 0}
    assert body["meta"]["api_version"] == "v1"
    assert response.headers["X-Request-Id"] == body["meta"]["request_id"]


@pytest.mark.asyncio
async def test_request_id_header_is_echoed(client) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": "req-123"})
    assert response.headers["X-Request-Id"] == "req-123"
    assert response.json()["meta"]["request_id"] == "req-123"


@pytest.mark.asyncio
@pytest.mark.parametrize("supplied", ["not a valid id", "x" * 200, "req<script>"])
async def test_malformed_request_id_is_replaced(client, supplied: str) -> None:
    response = await client.get("/v1/health", headers={"X-Request-Id": supplied})
    request_id = response.headers["X-Request-Id"]
    assert request_id != supplied
    assert len(request_id) == 36
    assert response.json()["meta"]["request_id"] == request_id


@pytest.mark.asyncio
async def test_error_envelope_carries_request_id(client) -> None:
    response = await client.post(
        "/v1/chat/messages", json={"message": "hi"}, headers={"X-Request-Id": "req-err-1"}
    )
    assert response.status_code == 401
    body = response.json()
    assert set(body) == {"error", "meta"}
    assert body["meta"] == {"request_id": "req-err-1", "api_version": "v1"}
    assert response.headers["X-Request-Id"] == "req-err-1"


@pytest.mark.asyncio
async def test_missing_and_invalid_keys_are_rejected(client, tenant_with_key) -> None:
    missing = await client.post("/v1/chat/messages", json={"message": "hi"})
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

    wrong = await client.post("/v1/chat/messages", json={"message": "hi"}, headers=bearer("sk_live_nope"))
    assert wrong.status_code == 401

    not_bearer = await client.get("/v1/tenant", headers={"Authorization": tenant_with_key[1]})
    assert not_bearer.status_code == 401


@pytest.mark.asyncio
async def test_ingest_then_chat_end_to_end(client, tenant_with_key, audit) -> None:
    tenant, raw_key = tenant_with_key
    headers = bearer(raw_key)

    created = await client.post(
        "/v1/knowledge/manual", json={"text": POLICY_TEXT, "title": "Refund policy"}, headers=headers
    )
    assert created.status_code == 202
    source = created.json()["data"]
    assert source["status"] == "ready"
    assert source["job_id"] == f"{source['id']}:v1"
    assert source["metadata"]["chunks_count"] == 1

    reply = await client.post("/v1/chat/messages", json={"message": POLICY_TEXT}, headers=headers)
    assert reply.status_code == 200
    data = reply.json()["data"]
    assert data["outcome"] == "answered"
    assert data["reply"] == "This is a fake response."
    assert data["citations"] == [source["id"]]
    assert data["confidence"] >= 0.99
    assert data["escalated"] is False

    follow_up = await client.post(
        "/v1/chat/messages",
        json={"message": "Something unrelated entirely", "conversation_id": data["conversation_id"]},
        headers=headers,
    )
    assert follow_up.json()["data"]["conversation_id"] == data["conversation_id"]

    types = await audit.event_types()
    assert "knowledge.created" in types
    assert "knowledge.processed" in types


@pytest.mark.asyncio
async def test_unknown_conversation_is_404(client, tenant_with_key) -> None:
    response = await client.post(
        "/v1/chat/messages",
        json={"message": "hello", "conversation_id": "missing"},
        headers=bearer(tenant_with_key[1]),
    )
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "CONVERSATION_NOT_FOUND"


@pytest.mark.asyncio
async def test_chat_request_validation(client, tenant_with_key) -> None:
    headers = bearer(tenant_with_key[1])
    empty = await client.post("/v1/chat/messages", json={"message": ""}, headers=headers)
    assert empty.status_code == 422
    assert empty.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"

    bad_channel = await client.post("/v1/chat/messages", json={"message": "hi", "channel": "fax"}, headers=headers)
    assert bad_channel.status_code == 422


@pytest.mark.asyncio
async def test_tenant_config_and_key_rotation(client, tenant_with_key, audit) -> None:
    tenant, raw_key = tenant_with_key

    current = await client.get("/v1/tenant", headers=bearer(raw_key))
    assert current.json()["data"]["id"] == tenant.id
    assert current.json()["data"]["plan"] == "trial"

    patched = await client.patch(
        "/v1/tenant/config", json={"config": {"confidence_threshold": 0.55, "top_k": 4}}, headers=bearer(raw_key)
    )
    assert patched.status_code == 200
    assert patched.json()["data"]["config"]["confidence_threshold"] == 0.55

    invalid = await client.patch(
        "/v1/tenant/config", json={"config": {"confidence_threshold": 5}}, headers=bearer(raw_key)
    )
    assert invalid.status_code == 422
    assert invalid.json()["error"]["code"] == "TENANT_CONFIG_INVALID"

    rotated = await client.post("/v1/tenant/api-key/rotate", headers=bearer(raw_key))
    assert rotated.status_code == 200
    new_key = rotated.json()["data"]["api_key"]
    assert new_key != raw_key
    assert rotated.json()["data"]["previous_valid_until"] is not None

    # Both keys work during the grace window.
    assert (await client.get("/v1/tenant", headers=bearer(new_key))).status_code == 200
    assert (await client.get("/v1/tenant", headers=bearer(raw_key))).status_code == 200
    assert "apikey.rotated" in await audit.event_types()


@pytest.mark.asyncio
async def test_openapi_is_versioned(client) -> None:
    response = await client.get("/v1/openapi.json")
    assert response.status_code == 200
    paths = response.json()["paths"]
    assert "/v1/chat/messages" in paths
    assert "/v1/knowledge/files" in paths
