from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.domain import models
from supportai.domain.types import MessageRecord
from supportai.persistence.guards import tenant_predicate


def to_entity(row: models.Message) -> MessageRecord:
    created_at = row.created_at
    if created_at is not None and created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return MessageRecord(
        id=row.id,
        conversation_id=row.conversation_id,
        role=row.role,  # type: ignore[arg-type]
        content=row.content,
        confidence=row.confidence,
        citations=list(row.citations_json or []),
        created_at=created_at,
    )


async def add_message(
    session: AsyncSession,
    *,
    tenant_id: str,
    conversation_id: str,
    role: str,
    content: str,
    confidence: float | None = None,
    citations: list[str] | None = None,
    created_at: datetime | None = None,
) -> MessageRecord:
    # Messages are append-only; there is no update path.
    row = models.Message(
        tenant_id=tenant_id,
        conversation_id=conversation_id,
        role=role,
        content=content,
        confidence=confidence,
        citations_json=list(citations or []),
    )
    if created_at is not None:
        row.created_at = created_at
    session.add(row)
    await session.flush()
    return to_entity(row)


async def list_messages(
    session: AsyncSession, tenant_id: str, conversation_id: str
) -> list[MessageRecord]:
    result = await session.execute(
        select(models.Message)
        .where(
            tenant_predicate(models.Message, tenant_id),
            models.Message.conversation_id == conversation_id,
        )
        .order_by(models.Message.created_at.asc(), models.Message.id.asc())
    )
    return [to_entity(row) for row in result.scalars().all()]


async def list_recent_messages(
    session: AsyncSession,
    tenant_id: str,
    conversation_id: str,
    *,
    limit: int,
    exclude_id: str | None = None,
) -> list[MessageRecord]:
    # Newest-first window, returned oldest-first for prompt building.
    if limit <= 0:
        return []
    stmt = select(models.Message).where(
        tenant_predicate(models.Message, tenant_id),
        models.Message.conversation_id == conversation_id,
    )
    if exclude_id:
        stmt = stmt.where(models.Message.id != exclude_id)
    stmt = stmt.order_by(models.Message.created_at.desc(), models.Message.id.desc()).limit(limit)
    result = await session.execute(stmt)
    rows = list(result.scalars().all())
    rows.reverse()
    return [to_entity(row) for row in rows]
