from __future__ import annotations

import pytest

from supportai.apps.api.deps import get_orchestrator_factory
from supportai.core.config import get_settings
from supportai.domain.types import ScenarioExpectation
from supportai.persistence.repos.scenarios import create_scenario
from supportai.tests.utils.api import bearer
from supportai.tests.utils.orchestrator import StaticVectorIndex, build_orchestrator, match


@pytest.fixture
def scripted_orchestrator(app, audit) -> None:
    app.dependency_overrides[get_orchestrator_factory] = lambda: (
        lambda session: build_orchestrator(session, audit=audit.logger, index=StaticVectorIndex([match(0.92)]))
    )


@pytest.mark.asyncio
async def test_simulate_returns_turns_and_metrics(client, tenant_with_key, scripted_orchestrator) -> None:
    response = await client.post(
        "/v1/simulate",
        json={"messages": ["How do refunds work?", "And for gift cards?"]},
        headers=bearer(tenant_with_key[1]),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert len(data["turns"]) == 2
    assert data["metrics"]["total_turns"] == 2
    assert data["metrics"]["resolution_rate"] == 1.0
    assert data["metrics"]["avg_confidence"] == pytest.approx(0.92)
    assert data["turns"][0]["citations"] == ["src-1"]


@pytest.mark.asyncio
async def test_simulate_rejects_bad_scripts(client, tenant_with_key, monkeypatch: pytest.MonkeyPatch) -> None:
    headers = bearer(tenant_with_key[1])

    empty = await client.post("/v1/simulate", json={"messages": []}, headers=headers)
    assert empty.status_code == 422
    assert empty.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"

    blank = await client.post("/v1/simulate", json={"messages": ["hi", "  "]}, headers=headers)
    assert blank.json()["error"]["code"] == "SIMULATION_EMPTY_MESSAGE"

    monkeypatch.setenv("SIMULATION_MAX_MESSAGES", "2")
    get_settings.cache_clear()
    too_long = await client.post("/v1/simulate", json={"messages": ["a", "b", "c"]}, headers=headers)
    assert too_long.status_code == 422
    assert too_long.json()["error"]["code"] == "SIMULATION_TOO_LONG"


@pytest.mark.asyncio
async def test_run_saved_scenario(client, session, tenant_with_key, audit, scripted_orchestrator) -> None:
    tenant, raw_key = tenant_with_key
    scenario = await create_scenario(
        session,
        tenant_id=tenant.id,
        name="Refund basics",
        messages=["How do refunds work?"],
        expected=ScenarioExpectation(resolved=True, min_confidence=0.8),
    )
    await session.commit()

    response = await client.post(f"/v1/scenarios/{scenario.id}/run", headers=bearer(raw_key))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["scenario_id"] == scenario.id
    assert data["passed"] is True
    assert data["actual_resolved"] is True
    assert "simulation.run" in await audit.event_types()


@pytest.mark.asyncio
async def test_unknown_scenario_is_404(client, tenant_with_key) -> None:
    response = await client.post("/v1/scenarios/nope/run", headers=bearer(tenant_with_key[1]))
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "SCENARIO_NOT_FOUND"
