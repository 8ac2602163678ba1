from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.domain import models
from supportai.domain.types import ScenarioExpectation, TestScenario, dump_model
from supportai.persistence.guards import tenant_predicate


def to_entity(row: models.TestScenario) -> TestScenario:
    last_run_at = row.last_run_at
    if last_run_at is not None and last_run_at.tzinfo is None:
        last_run_at = last_run_at.replace(tzinfo=timezone.utc)
    return TestScenario(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        messages=[str(item) for item in (row.messages_json or [])],
        expected=ScenarioExpectation.model_validate(row.expected_json or {"resolved": True}),
        last_run_at=last_run_at,
    )


async def create_scenario(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    messages: list[str],
    expected: ScenarioExpectation,
) -> TestScenario:
    row = models.TestScenario(
        tenant_id=tenant_id,
        name=name,
        messages_json=list(messages),
        expected_json=dump_model(expected),
    )
    session.add(row)
    await session.flush()
    return to_entity(row)


async def get_scenario(session: AsyncSession, tenant_id: str, scenario_id: str) -> TestScenario | None:
    result = await session.execute(
        select(models.TestScenario).where(
            models.TestScenario.id == scenario_id,
            tenant_predicate(models.TestScenario, tenant_id),
        )
    )
    row = result.scalar_one_or_none()
    return to_entity(row) if row else None


async def touch_last_run(
    session: AsyncSession, tenant_id: str, scenario_id: str, *, ran_at: datetime
) -> None:
    result = await session.execute(
        select(models.TestScenario).where(
            models.TestScenario.id == scenario_id,
            tenant_predicate(models.TestScenario, tenant_id),
        )
    )
    row = result.scalar_one_or_none()
    if row is not None:
        row.last_run_at = ran_at
        await session.flush()
