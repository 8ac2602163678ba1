from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.domain import models
from supportai.domain.types import Policy, dump_model, parse_policy_config
from supportai.persistence.guards import tenant_predicate


logger = logging.getLogger(__name__)


def to_entity(row: models.Policy) -> Policy:
    return Policy(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        type=row.type,  # type: ignore[arg-type]
        mode=row.mode,  # type: ignore[arg-type]
        config=parse_policy_config(row.type, row.config_json),
        enabled=bool(row.enabled),
        priority=int(row.priority),
    )


async def create_policy(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    policy_type: str,
    mode: str,
    config: dict[str, Any],
    priority: int = 100,
    enabled: bool = True,
) -> Policy:
    # Validate through the typed union before anything is written.
    parsed = parse_policy_config(policy_type, config)
    stored = dump_model(parsed)
    stored.pop("type", None)
    row = models.Policy(
        tenant_id=tenant_id,
        name=name,
        type=policy_type,
        mode=mode,
        config_json=stored,
        priority=priority,
        enabled=enabled,
    )
    session.add(row)
    await session.flush()
    return to_entity(row)


async def list_enabled_policies(
    session: AsyncSession, tenant_id: str, mode: str | None = None
) -> list[Policy]:
    stmt = select(models.Policy).where(
        tenant_predicate(models.Policy, tenant_id),
        models.Policy.enabled.is_(True),
    )
    if mode:
        stmt = stmt.where(models.Policy.mode == mode)
    stmt = stmt.order_by(models.Policy.priority.asc(), models.Policy.created_at.asc(), models.Policy.id.asc())
    result = await session.execute(stmt)
    policies: list[Policy] = []
    for row in result.scalars().all():
        try:
            policies.append(to_entity(row))
        except ValidationError:
            # A malformed row is skipped rather than disabling every policy.
            logger.warning("policy_config_invalid policy_id=%s tenant_id=%s", row.id, tenant_id)
    return policies
