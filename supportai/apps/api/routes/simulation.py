from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.apps.api.deps import OrchestratorFactory, get_current_tenant, get_db, get_orchestrator_factory
from supportai.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from supportai.apps.api.response import success_response
from supportai.core.config import get_settings
from supportai.domain.types import Tenant
from supportai.persistence.repos import scenarios as scenarios_repo
from supportai.services.simulation import run_scenario, run_simulation


router = APIRouter(tags=["simulation"], responses=DEFAULT_ERROR_RESPONSES)


class SimulateRequest(BaseModel):
    messages: list[str] = Field(min_length=1)
    test_procedures: bool = False


class ScenarioRunRequest(BaseModel):
    test_procedures: bool = False


@router.post("/simulate")
async def simulate(
    payload: SimulateRequest,
    request: Request,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
    orchestrator_factory: OrchestratorFactory = Depends(get_orchestrator_factory),
) -> dict:
    limit = get_settings().simulation_max_messages
    if len(payload.messages) > limit:
        raise HTTPException(
            status_code=422,
            detail={"code": "SIMULATION_TOO_LONG", "message": f"At most {limit} messages per simulation"},
        )
    if any(not message.strip() for message in payload.messages):
        raise HTTPException(
            status_code=422,
            detail={"code": "SIMULATION_EMPTY_MESSAGE", "message": "Messages must not be empty"},
        )
    result = await run_simulation(
        db,
        tenant.id,
        payload.messages,
        test_procedures=payload.test_procedures,
        orchestrator=orchestrator_factory(db),
    )
    return success_response(request=request, data=result.as_dict())


@router.post("/scenarios/{scenario_id}/run")
async def run_saved_scenario(
    scenario_id: str,
    request: Request,
    payload: ScenarioRunRequest | None = None,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
    orchestrator_factory: OrchestratorFactory = Depends(get_orchestrator_factory),
) -> dict:
    scenario = await scenarios_repo.get_scenario(db, tenant.id, scenario_id)
    if scenario is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "SCENARIO_NOT_FOUND", "message": "Scenario not found"},
        )
    result = await run_scenario(
        db,
        scenario,
        test_procedures=payload.test_procedures if payload else False,
        orchestrator=orchestrator_factory(db),
    )
    return success_response(request=request, data=result.as_dict())
