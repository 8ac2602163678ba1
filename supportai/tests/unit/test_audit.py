from __future__ import annotations

import asyncio

import pytest

from supportai.persistence.repos import audit as audit_repo
from supportai.services.audit import AuditLogger, AuditRecord, sanitize_metadata


def test_sanitize_metadata_redacts_nested_secrets() -> None:
    payload = {
        "api_key": "sk",
        "nested": {"Authorization": "Bearer x", "count": 2},
        "items": [{"password": "p"}, {"name": "ok"}],
        "content": "user text",
        "source_id": "s1",
    }
    assert sanitize_metadata(payload) == {
        "api_key": "[REDACTED]",
        "nested": {"Authorization": "[REDACTED]", "count": 2},
        "items": [{"password": "[REDACTED]"}, {"name": "ok"}],
        "content": "[REDACTED]",
        "source_id": "s1",
    }


@pytest.mark.asyncio
async def test_emit_is_written_in_background_batches() -> None:
    batches: list[list[AuditRecord]] = []

    async def writer(records: list[AuditRecord]) -> None:
        batches.append(list(records))

    audit = AuditLogger(writer=writer, max_queue=100, batch_size=10)
    for index in range(5):
        audit.emit("t1", "message.received", {"index": index, "token": "secret"})
    await audit.drain()

    written = [record for batch in batches for record in batch]
    assert [record.payload["index"] for record in written] == [0, 1, 2, 3, 4]
    assert all(record.payload["token"] == "[REDACTED]" for record in written)
    await audit.close()


@pytest.mark.asyncio
async def test_writer_failures_do_not_propagate() -> None:
    async def writer(records: list[AuditRecord]) -> None:
        raise RuntimeError("database down")

    audit = AuditLogger(writer=writer, max_queue=10, batch_size=5)
    audit.emit("t1", "message.sent", {})
    await audit.drain()
    await audit.close()


@pytest.mark.asyncio
async def test_full_queue_drops_records() -> None:
    release = asyncio.Event()

    async def writer(records: list[AuditRecord]) -> None:
        await release.wait()

    audit = AuditLogger(writer=writer, max_queue=1, batch_size=1)
    for _ in range(5):
        audit.emit("t1", "cache.hit", {})
    assert audit.dropped >= 3
    release.set()
    await audit.drain()
    await audit.close()


def test_emit_without_running_loop_is_dropped() -> None:
    audit = AuditLogger(writer=None, max_queue=10, batch_size=5)
    audit.emit("t1", "cache.miss", {})
    assert audit.dropped == 1


@pytest.mark.asyncio
async def test_default_writer_persists_tenant_scoped_rows(session, tenant) -> None:
    audit = AuditLogger(max_queue=10, batch_size=10)
    audit.emit(tenant.id, "knowledge.created", {"source_id": "s1", "api_key": "sk_live_x"})
    audit.emit(tenant.id, "knowledge.deleted", {"source_id": "s1"})
    audit.emit("someone-else", "cache.hit", {})
    await audit.close()

    rows = await audit_repo.list_events(session, tenant_id=tenant.id)
    assert sorted(row.event_type for row in rows) == ["knowledge.created", "knowledge.deleted"]

    created = await audit_repo.list_events(session, tenant_id=tenant.id, event_type="knowledge.created")
    assert created[0].payload_json == {"source_id": "s1", "api_key": "[REDACTED]"}
