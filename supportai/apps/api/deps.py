from __future__ import annotations

from typing import AsyncGenerator, Callable

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.core.config import get_settings
from supportai.domain.types import Tenant
from supportai.persistence.db import get_session
from supportai.services.orchestrator import Orchestrator
from supportai.services.rate_limit import client_ip_from_headers
from supportai.services.tenants import authenticate_api_key


OrchestratorFactory = Callable[[AsyncSession], Orchestrator]


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_api_key(header_name: str, header_value: str | None) -> str:
    if not header_value:
        raise _auth_error("Missing API key")
    if header_name.lower() != "authorization":
        return header_value.strip()
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def get_current_tenant(request: Request, db: AsyncSession = Depends(get_db)) -> Tenant:
    """Resolve the calling tenant from its API key (current, or previous within the grace window)."""
    header_name = get_settings().auth_api_key_header
    raw_key = _parse_api_key(header_name, request.headers.get(header_name))
    tenant = await authenticate_api_key(db, raw_key)
    if tenant is None:
        raise _auth_error("Invalid or expired API key")
    request.state.tenant_id = tenant.id
    return tenant


def get_client_ip(request: Request) -> str:
    peer = request.client.host if request.client else None
    return client_ip_from_headers(request.headers, peer)


def _default_orchestrator(session: AsyncSession) -> Orchestrator:
    return Orchestrator(session)


def get_orchestrator_factory() -> OrchestratorFactory:
    # Overridden in tests to inject fake providers.
    return _default_orchestrator
