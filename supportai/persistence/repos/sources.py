from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.domain import models
from supportai.domain.types import KnowledgeSource
from supportai.persistence.guards import tenant_predicate


def to_entity(row: models.KnowledgeSource) -> KnowledgeSource:
    return KnowledgeSource(
        id=row.id,
        tenant_id=row.tenant_id,
        type=row.type,  # type: ignore[arg-type]
        status=row.status,  # type: ignore[arg-type]
        version=row.version,
        title=row.title,
        file_name=row.file_name,
        url=row.url,
        storage_path=row.storage_path,
        metadata=dict(row.metadata_json or {}),
    )


async def create_source(
    session: AsyncSession,
    *,
    tenant_id: str,
    source_type: str,
    title: str | None = None,
    file_name: str | None = None,
    content_type: str | None = None,
    url: str | None = None,
    storage_path: str | None = None,
    source_id: str | None = None,
) -> models.KnowledgeSource:
    # New sources start in processing until the ingestion job settles them.
    row = models.KnowledgeSource(
        tenant_id=tenant_id,
        type=source_type,
        status="processing",
        version=1,
        title=title,
        file_name=file_name,
        content_type=content_type,
        url=url,
        storage_path=storage_path,
        metadata_json={},
    )
    if source_id:
        row.id = source_id
    session.add(row)
    await session.flush()
    return row


async def get_source_row(
    session: AsyncSession, tenant_id: str, source_id: str
) -> models.KnowledgeSource | None:
    result = await session.execute(
        select(models.KnowledgeSource).where(
            models.KnowledgeSource.id == source_id,
            tenant_predicate(models.KnowledgeSource, tenant_id),
        )
    )
    return result.scalar_one_or_none()


async def get_source(session: AsyncSession, tenant_id: str, source_id: str) -> KnowledgeSource | None:
    row = await get_source_row(session, tenant_id, source_id)
    return to_entity(row) if row else None


async def list_sources(session: AsyncSession, tenant_id: str) -> list[KnowledgeSource]:
    result = await session.execute(
        select(models.KnowledgeSource)
        .where(tenant_predicate(models.KnowledgeSource, tenant_id))
        .order_by(models.KnowledgeSource.created_at, models.KnowledgeSource.id)
    )
    return [to_entity(row) for row in result.scalars().all()]


async def mark_ready(
    session: AsyncSession,
    tenant_id: str,
    source_id: str,
    *,
    title: str | None,
    chunks_count: int,
    vectors_count: int,
    processed_at: datetime,
) -> KnowledgeSource | None:
    row = await get_source_row(session, tenant_id, source_id)
    if row is None:
        return None
    row.status = "ready"
    if title and not row.title:
        row.title = title
    row.metadata_json = {
        "chunks_count": chunks_count,
        "vectors_count": vectors_count,
        "processed_at": processed_at.isoformat(),
        "version": row.version,
    }
    await session.flush()
    return to_entity(row)


async def mark_failed(
    session: AsyncSession,
    tenant_id: str,
    source_id: str,
    *,
    error: str,
    failed_at: datetime,
) -> KnowledgeSource | None:
    row = await get_source_row(session, tenant_id, source_id)
    if row is None:
        return None
    row.status = "failed"
    metadata: dict[str, Any] = dict(row.metadata_json or {})
    metadata.update({"error": error, "failed_at": failed_at.isoformat()})
    row.metadata_json = metadata
    await session.flush()
    return to_entity(row)


async def reset_for_reingest(
    session: AsyncSession, tenant_id: str, source_id: str
) -> KnowledgeSource | None:
    # Re-ingestion is the only transition back to processing.
    row = await get_source_row(session, tenant_id, source_id)
    if row is None:
        return None
    row.status = "processing"
    row.version = (row.version or 1) + 1
    row.metadata_json = {"previous_version": row.version - 1}
    await session.flush()
    return to_entity(row)


async def delete_source(session: AsyncSession, tenant_id: str, source_id: str) -> bool:
    result = await session.execute(
        delete(models.KnowledgeSource).where(
            models.KnowledgeSource.id == source_id,
            tenant_predicate(models.KnowledgeSource, tenant_id),
        )
    )
    return bool(result.rowcount)
