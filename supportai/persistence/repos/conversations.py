from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.domain import models
from supportai.domain.types import Conversation
from supportai.persistence.guards import tenant_predicate


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_entity(row: models.Conversation) -> Conversation:
    return Conversation(
        id=row.id,
        tenant_id=row.tenant_id,
        channel=row.channel,  # type: ignore[arg-type]
        status=row.status,  # type: ignore[arg-type]
        session_key=row.session_key,
        resolved_at=_as_utc(row.resolved_at),
        metadata=dict(row.metadata_json or {}),
    )


async def get_conversation(
    session: AsyncSession, tenant_id: str, conversation_id: str
) -> Conversation | None:
    # A foreign tenant's conversation id resolves to None, never to the row.
    result = await session.execute(
        select(models.Conversation).where(
            models.Conversation.id == conversation_id,
            tenant_predicate(models.Conversation, tenant_id),
        )
    )
    row = result.scalar_one_or_none()
    return to_entity(row) if row else None


async def find_by_session_key(
    session: AsyncSession, tenant_id: str, channel: str, session_key: str
) -> Conversation | None:
    # Most recent conversation for this channel identity, whatever its status.
    result = await session.execute(
        select(models.Conversation)
        .where(
            tenant_predicate(models.Conversation, tenant_id),
            models.Conversation.channel == channel,
            models.Conversation.session_key == session_key,
        )
        .order_by(models.Conversation.created_at.desc(), models.Conversation.id.desc())
        .limit(1)
    )
    row = result.scalar_one_or_none()
    return to_entity(row) if row else None


async def create_conversation(
    session: AsyncSession,
    *,
    tenant_id: str,
    channel: str,
    session_key: str | None = None,
    user_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    conversation_id: str | None = None,
) -> Conversation:
    row = models.Conversation(
        tenant_id=tenant_id,
        channel=channel,
        status="active",
        session_key=session_key,
        user_id=user_id,
        metadata_json=metadata or {},
    )
    if conversation_id:
        row.id = conversation_id
    session.add(row)
    await session.flush()
    return to_entity(row)


async def update_status(
    session: AsyncSession,
    tenant_id: str,
    conversation_id: str,
    status: str,
    *,
    now: datetime | None = None,
) -> Conversation | None:
    result = await session.execute(
        select(models.Conversation).where(
            models.Conversation.id == conversation_id,
            tenant_predicate(models.Conversation, tenant_id),
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        return None
    row.status = status
    # resolved_at tracks the latest resolution; reopening clears it.
    if status == "resolved":
        row.resolved_at = now or datetime.now(timezone.utc)
    elif status == "active":
        row.resolved_at = None
    await session.flush()
    return to_entity(row)
