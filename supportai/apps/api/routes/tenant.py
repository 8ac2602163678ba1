from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.apps.api.deps import get_current_tenant, get_db
from supportai.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from supportai.apps.api.response import success_response
from supportai.domain.types import Tenant
from supportai.services.tenants import rotate_api_key, update_tenant_config


router = APIRouter(prefix="/tenant", tags=["tenant"], responses=DEFAULT_ERROR_RESPONSES)


class ConfigPatchRequest(BaseModel):
    config: dict[str, Any]


def _tenant_payload(tenant: Tenant) -> dict[str, Any]:
    return {
        "id": tenant.id,
        "name": tenant.name,
        "plan": tenant.plan,
        "config": tenant.config.model_dump(mode="json", exclude_none=True),
    }


@router.get("")
async def get_tenant(request: Request, tenant: Tenant = Depends(get_current_tenant)) -> dict:
    return success_response(request=request, data=_tenant_payload(tenant))


@router.patch("/config")
async def patch_config(
    payload: ConfigPatchRequest,
    request: Request,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        updated = await update_tenant_config(db, tenant.id, payload.config)
    except ValidationError as exc:
        raise HTTPException(
            status_code=422,
            detail={
                "code": "TENANT_CONFIG_INVALID",
                "message": "Invalid tenant configuration",
                "errors": exc.errors(include_url=False, include_context=False),
            },
        ) from exc
    await db.commit()
    return success_response(request=request, data=_tenant_payload(updated))


@router.post("/api-key/rotate")
async def rotate_key(
    request: Request,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    issued = await rotate_api_key(db, tenant.id)
    await db.commit()
    # The raw key is returned exactly once.
    return success_response(
        request=request,
        data={
            "api_key": issued.raw_key,
            "key_prefix": issued.key_prefix,
            "previous_valid_until": (
                issued.previous_valid_until.isoformat() if issued.previous_valid_until else None
            ),
        },
    )
