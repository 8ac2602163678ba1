from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.domain import models
from supportai.domain.types import Tenant, TenantConfig


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; stored values are always UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_entity(row: models.Tenant) -> Tenant:
    return Tenant(
        id=row.id,
        name=row.name,
        plan=row.plan,  # type: ignore[arg-type]
        config=TenantConfig.model_validate(row.config_json or {}),
        created_at=_as_utc(row.created_at),
    )


async def create_tenant(
    session: AsyncSession,
    *,
    name: str,
    plan: str = "trial",
    api_key_hash: str | None = None,
    api_key_prefix: str | None = None,
    config: dict[str, Any] | None = None,
    tenant_id: str | None = None,
) -> models.Tenant:
    row = models.Tenant(
        name=name,
        plan=plan,
        api_key_hash=api_key_hash,
        api_key_prefix=api_key_prefix,
        config_json=config or {},
    )
    if tenant_id:
        row.id = tenant_id
    session.add(row)
    await session.flush()
    return row


async def get_tenant_row(session: AsyncSession, tenant_id: str) -> models.Tenant | None:
    result = await session.execute(select(models.Tenant).where(models.Tenant.id == tenant_id))
    return result.scalar_one_or_none()


async def get_tenant(session: AsyncSession, tenant_id: str) -> Tenant | None:
    row = await get_tenant_row(session, tenant_id)
    return to_entity(row) if row else None


async def find_by_api_key_hash(
    session: AsyncSession, key_hash: str, *, now: datetime | None = None
) -> Tenant | None:
    # Match the current key, or the previous key while its grace window is open.
    result = await session.execute(
        select(models.Tenant).where(
            or_(
                models.Tenant.api_key_hash == key_hash,
                models.Tenant.previous_api_key_hash == key_hash,
            )
        )
    )
    current = now or datetime.now(timezone.utc)
    for row in result.scalars().all():
        if row.api_key_hash == key_hash:
            return to_entity(row)
        expires_at = _as_utc(row.previous_api_key_expires_at)
        if expires_at is not None and expires_at > current:
            return to_entity(row)
    return None


async def set_api_key(
    session: AsyncSession,
    tenant_id: str,
    *,
    key_hash: str,
    key_prefix: str,
    previous_expires_at: datetime | None,
) -> models.Tenant | None:
    row = await get_tenant_row(session, tenant_id)
    if row is None:
        return None
    row.previous_api_key_hash = row.api_key_hash if previous_expires_at else None
    row.previous_api_key_expires_at = previous_expires_at if row.previous_api_key_hash else None
    row.api_key_hash = key_hash
    row.api_key_prefix = key_prefix
    await session.flush()
    return row


async def update_config(session: AsyncSession, tenant_id: str, config: dict[str, Any]) -> Tenant | None:
    row = await get_tenant_row(session, tenant_id)
    if row is None:
        return None
    # Reassign so the JSON column is marked dirty.
    row.config_json = dict(config)
    await session.flush()
    return to_entity(row)
