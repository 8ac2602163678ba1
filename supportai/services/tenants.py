from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import hashlib
import logging
import secrets
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from supportai.core.config import get_settings
from supportai.core.errors import TenantNotFoundError
from supportai.domain.types import Tenant, TenantConfig
from supportai.persistence.repos import tenants as tenants_repo
from supportai.services.audit import AuditLogger, get_audit_logger


logger = logging.getLogger(__name__)

API_KEY_PREFIX = "sk_live_"
_DISPLAY_PREFIX_LEN = 12


@dataclass(frozen=True)
class IssuedApiKey:
    # The raw key is only ever returned once, at issue time.
    raw_key: str
    key_prefix: str
    key_hash: str
    previous_valid_until: datetime | None = None


def hash_api_key(raw_key: str) -> str:
    # Use SHA-256 for deterministic, non-reversible key storage.
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key() -> IssuedApiKey:
    raw_key = f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"
    return IssuedApiKey(raw_key=raw_key, key_prefix=raw_key[:_DISPLAY_PREFIX_LEN], key_hash=hash_api_key(raw_key))


async def create_tenant(
    session: AsyncSession,
    *,
    name: str,
    plan: str = "trial",
    config: dict[str, Any] | None = None,
) -> tuple[Tenant, IssuedApiKey]:
    issued = generate_api_key()
    row = await tenants_repo.create_tenant(
        session,
        name=name,
        plan=plan,
        api_key_hash=issued.key_hash,
        api_key_prefix=issued.key_prefix,
        config=TenantConfig.model_validate(config or {}).model_dump(mode="json", exclude_none=True),
    )
    return tenants_repo.to_entity(row), issued


async def authenticate_api_key(
    session: AsyncSession, raw_key: str, *, now: datetime | None = None
) -> Tenant | None:
    if not raw_key:
        return None
    return await tenants_repo.find_by_api_key_hash(session, hash_api_key(raw_key.strip()), now=now)


async def rotate_api_key(
    session: AsyncSession,
    tenant_id: str,
    *,
    now: datetime | None = None,
    grace_hours: int | None = None,
    audit: AuditLogger | None = None,
    user_id: str | None = None,
) -> IssuedApiKey:
    """Issue a new key; the old one keeps working for the grace window."""
    hours = get_settings().api_key_grace_hours if grace_hours is None else grace_hours
    current = now or datetime.now(timezone.utc)
    previous_valid_until = current + timedelta(hours=hours) if hours > 0 else None
    issued = generate_api_key()
    row = await tenants_repo.set_api_key(
        session,
        tenant_id,
        key_hash=issued.key_hash,
        key_prefix=issued.key_prefix,
        previous_expires_at=previous_valid_until,
    )
    if row is None:
        raise TenantNotFoundError(tenant_id)
    (audit or get_audit_logger()).emit(
        tenant_id,
        "apikey.rotated",
        {
            "key_prefix": issued.key_prefix,
            "previous_valid_until": previous_valid_until.isoformat() if previous_valid_until else None,
        },
        user_id=user_id,
    )
    logger.info("apikey_rotated tenant_id=%s grace_hours=%s", tenant_id, hours)
    return IssuedApiKey(
        raw_key=issued.raw_key,
        key_prefix=issued.key_prefix,
        key_hash=issued.key_hash,
        previous_valid_until=previous_valid_until,
    )


def merge_config(current: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    # JSON merge patch: None deletes a key, nested objects merge recursively.
    merged = dict(current)
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        elif isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


async def update_tenant_config(
    session: AsyncSession,
    tenant_id: str,
    patch: dict[str, Any],
    *,
    audit: AuditLogger | None = None,
    user_id: str | None = None,
) -> Tenant:
    row = await tenants_repo.get_tenant_row(session, tenant_id)
    if row is None:
        raise TenantNotFoundError(tenant_id)
    merged = merge_config(dict(row.config_json or {}), patch)
    # Validate before writing so a bad patch never lands.
    validated = TenantConfig.model_validate(merged)
    tenant = await tenants_repo.update_config(
        session, tenant_id, validated.model_dump(mode="json", exclude_none=True)
    )
    assert tenant is not None
    (audit or get_audit_logger()).emit(
        tenant_id, "tenant.config_updated", {"keys": sorted(patch.keys())}, user_id=user_id
    )
    return tenant
