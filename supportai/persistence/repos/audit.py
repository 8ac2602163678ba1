from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.domain.models import AuditEvent
from supportai.persistence.guards import tenant_predicate


async def insert_events(session: AsyncSession, events: list[dict[str, Any]]) -> None:
    # Audit rows are write-once; there is no update or delete here.
    for event in events:
        session.add(
            AuditEvent(
                tenant_id=event.get("tenant_id"),
                event_type=event["event_type"],
                user_id=event.get("user_id"),
                payload_json=event.get("payload") or {},
                occurred_at=event["occurred_at"],
            )
        )
    await session.flush()


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str | None = None,
    occurred_from: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    stmt = select(AuditEvent).where(tenant_predicate(AuditEvent, tenant_id))
    if event_type:
        stmt = stmt.where(AuditEvent.event_type == event_type)
    if occurred_from:
        stmt = stmt.where(AuditEvent.occurred_at >= occurred_from)
    stmt = stmt.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all())
