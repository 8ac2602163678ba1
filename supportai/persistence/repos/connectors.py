from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.domain import models
from supportai.domain.types import (
    DataConnector,
    connector_endpoints_adapter,
    dump_model,
    parse_connector_auth,
)
from supportai.persistence.guards import tenant_predicate
from supportai.services.crypto.credentials import decrypt_credentials, encrypt_credentials


def to_entity(row: models.DataConnector) -> DataConnector:
    # Credentials are decrypted only at this boundary.
    return DataConnector(
        id=row.id,
        tenant_id=row.tenant_id,
        name=row.name,
        provider=row.provider,
        base_url=row.base_url,
        auth=decrypt_credentials(parse_connector_auth(row.auth_json)),
        endpoints=connector_endpoints_adapter.validate_python(row.endpoints_json or []),
        enabled=bool(row.enabled),
    )


async def create_connector(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    base_url: str,
    auth: dict[str, Any] | None = None,
    endpoints: list[dict[str, Any]] | None = None,
    provider: str = "custom",
    enabled: bool = True,
) -> DataConnector:
    parsed_auth = parse_connector_auth(auth)
    parsed_endpoints = connector_endpoints_adapter.validate_python(endpoints or [])
    row = models.DataConnector(
        tenant_id=tenant_id,
        name=name,
        provider=provider,
        base_url=base_url,
        auth_json=dump_model(encrypt_credentials(parsed_auth)),
        endpoints_json=[dump_model(item) for item in parsed_endpoints],
        enabled=enabled,
    )
    session.add(row)
    await session.flush()
    return to_entity(row)


async def get_connector(session: AsyncSession, tenant_id: str, connector_id: str) -> DataConnector | None:
    result = await session.execute(
        select(models.DataConnector).where(
            models.DataConnector.id == connector_id,
            tenant_predicate(models.DataConnector, tenant_id),
        )
    )
    row = result.scalar_one_or_none()
    return to_entity(row) if row else None


async def list_enabled_connectors(session: AsyncSession, tenant_id: str) -> dict[str, DataConnector]:
    result = await session.execute(
        select(models.DataConnector).where(
            tenant_predicate(models.DataConnector, tenant_id),
            models.DataConnector.enabled.is_(True),
        )
    )
    return {row.id: to_entity(row) for row in result.scalars().all()}
