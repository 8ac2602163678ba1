from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.domain import models
from supportai.domain.types import Procedure, ProcedureTrigger, dump_model, parse_procedure_steps
from supportai.persistence.guards import tenant_predicate


logger = logging.getLogger(__name__)


def to_entity(row: models.Procedure) -> Procedure:
    created_at = row.created_at
    if created_at is not None and created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return Procedure(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        trigger=ProcedureTrigger.model_validate(row.trigger_json or {}),
        steps=parse_procedure_steps(row.steps_json),
        enabled=bool(row.enabled),
        priority=int(row.priority),
        version=int(row.version),
        created_at=created_at,
    )


async def create_procedure(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    trigger: dict[str, Any],
    steps: list[dict[str, Any]],
    priority: int = 100,
    enabled: bool = True,
    created_at: datetime | None = None,
) -> Procedure:
    parsed_trigger = ProcedureTrigger.model_validate(trigger)
    parsed_steps = parse_procedure_steps(steps)
    row = models.Procedure(
        tenant_id=tenant_id,
        name=name,
        trigger_json=dump_model(parsed_trigger),
        steps_json=[dump_model(step) for step in parsed_steps],
        priority=priority,
        enabled=enabled,
        version=1,
    )
    if created_at is not None:
        row.created_at = created_at
    session.add(row)
    await session.flush()
    return to_entity(row)


async def update_steps(
    session: AsyncSession, tenant_id: str, procedure_id: str, steps: list[dict[str, Any]]
) -> Procedure | None:
    result = await session.execute(
        select(models.Procedure).where(
            models.Procedure.id == procedure_id,
            tenant_predicate(models.Procedure, tenant_id),
        )
    )
    row = result.scalar_one_or_none()
    if row is None:
        return None
    parsed_steps = parse_procedure_steps(steps)
    row.steps_json = [dump_model(step) for step in parsed_steps]
    row.version = int(row.version or 1) + 1
    await session.flush()
    return to_entity(row)


async def list_enabled_procedures(session: AsyncSession, tenant_id: str) -> list[Procedure]:
    # Stable per-tenant order: priority, then creation time, then id.
    result = await session.execute(
        select(models.Procedure)
        .where(
            tenant_predicate(models.Procedure, tenant_id),
            models.Procedure.enabled.is_(True),
        )
        .order_by(
            models.Procedure.priority.asc(),
            models.Procedure.created_at.asc(),
            models.Procedure.id.asc(),
        )
    )
    procedures: list[Procedure] = []
    for row in result.scalars().all():
        try:
            procedures.append(to_entity(row))
        except ValidationError:
            logger.warning("procedure_invalid procedure_id=%s tenant_id=%s", row.id, tenant_id)
    return procedures
