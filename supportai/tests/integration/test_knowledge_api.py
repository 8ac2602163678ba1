from __future__ import annotations

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from supportai.apps.api.routes import knowledge as knowledge_routes
from supportai.services.tenants import create_tenant
from supportai.tests.utils.api import bearer


@pytest.mark.asyncio
async def test_file_upload_is_processed_inline(client, tenant_with_key) -> None:
    headers = bearer(tenant_with_key[1])
    response = await client.post(
        "/v1/knowledge/files",
        files={"file": ("faq.md", b"# Shipping\n\nWe ship worldwide within 3 days.", "text/markdown")},
        data={"title": "Shipping FAQ"},
        headers=headers,
    )
    assert response.status_code == 202
    source = response.json()["data"]
    assert source["type"] == "file"
    assert source["status"] == "ready"
    assert source["title"] == "Shipping FAQ"
    assert source["file_name"] == "faq.md"

    listed = await client.get("/v1/knowledge", headers=headers)
    assert [item["id"] for item in listed.json()["data"]] == [source["id"]]


@pytest.mark.asyncio
async def test_unsupported_upload_settles_as_failed(client, tenant_with_key, audit) -> None:
    headers = bearer(tenant_with_key[1])
    response = await client.post(
        "/v1/knowledge/files",
        files={"file": ("blob.bin", b"\x00\x01\x02", "application/octet-stream")},
        headers=headers,
    )
    assert response.status_code == 202
    source = response.json()["data"]
    assert source["status"] == "failed"
    assert "Unsupported file type" in source["metadata"]["error"]
    assert "knowledge.failed" in await audit.event_types()


@pytest.mark.asyncio
async def test_empty_upload_is_rejected(client, tenant_with_key) -> None:
    response = await client.post(
        "/v1/knowledge/files",
        files={"file": ("empty.txt", b"", "text/plain")},
        headers=bearer(tenant_with_key[1]),
    )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "KNOWLEDGE_INVALID"


@pytest.mark.asyncio
async def test_reingest_get_and_delete(client, tenant_with_key, audit) -> None:
    headers = bearer(tenant_with_key[1])
    created = await client.post("/v1/knowledge/manual", json={"text": "Our store opens at 9am."}, headers=headers)
    source_id = created.json()["data"]["id"]

    reingested = await client.post(f"/v1/knowledge/{source_id}/reingest", headers=headers)
    assert reingested.status_code == 202
    assert reingested.json()["data"]["version"] == 2
    assert reingested.json()["data"]["status"] == "ready"
    assert reingested.json()["data"]["job_id"] == f"{source_id}:v2"

    fetched = await client.get(f"/v1/knowledge/{source_id}", headers=headers)
    assert fetched.status_code == 200
    assert fetched.json()["data"]["version"] == 2

    deleted = await client.delete(f"/v1/knowledge/{source_id}", headers=headers)
    assert deleted.status_code == 200
    assert deleted.json()["data"] == {"id": source_id, "deleted": True}

    missing = await client.get(f"/v1/knowledge/{source_id}", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "KNOWLEDGE_SOURCE_NOT_FOUND"

    types = await audit.event_types()
    assert "knowledge.reingested" in types
    assert "knowledge.deleted" in types


@pytest.mark.asyncio
async def test_sources_are_tenant_scoped(client, session, tenant_with_key) -> None:
    _, other_issued = await create_tenant(session, name="Other Co")
    await session.commit()

    created = await client.post(
        "/v1/knowledge/manual", json={"text": "Private note."}, headers=bearer(tenant_with_key[1])
    )
    source_id = created.json()["data"]["id"]

    foreign = await client.get(f"/v1/knowledge/{source_id}", headers=bearer(other_issued.raw_key))
    assert foreign.status_code == 404
    assert (await client.get("/v1/knowledge", headers=bearer(other_issued.raw_key))).json()["data"] == []


@pytest.mark.asyncio
async def test_url_validation(client, tenant_with_key) -> None:
    response = await client.post(
        "/v1/knowledge/urls", json={"url": "not a url"}, headers=bearer(tenant_with_key[1])
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unreachable_queue_settles_source_as_failed(
    client, tenant_with_key, audit, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def refuse(job) -> str:
        raise RedisConnectionError("connection refused")

    monkeypatch.setattr(knowledge_routes, "enqueue_ingestion_job", refuse)
    headers = bearer(tenant_with_key[1])

    response = await client.post("/v1/knowledge/manual", json={"text": "Opening hours are 9 to 5."}, headers=headers)

    assert response.status_code == 503
    error = response.json()["error"]
    assert error["code"] == "INGEST_QUEUE_UNAVAILABLE"
    source_id = error["details"]["source_id"]

    stored = (await client.get(f"/v1/knowledge/{source_id}", headers=headers)).json()["data"]
    assert stored["status"] == "failed"
    assert stored["metadata"]["error"] == "Could not queue ingestion"
    failed = await audit.events("knowledge.failed")
    assert failed[0].payload["source_id"] == source_id
