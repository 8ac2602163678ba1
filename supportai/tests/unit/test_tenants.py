from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from supportai.core.errors import TenantNotFoundError
from supportai.services.tenants import (
    API_KEY_PREFIX,
    authenticate_api_key,
    hash_api_key,
    merge_config,
    rotate_api_key,
    update_tenant_config,
)


def test_merge_config_semantics() -> None:
    current = {"top_k": 5, "branding": {"color": "blue", "logo": "a.png"}, "model": "gpt-4o"}
    patch = {"top_k": 8, "branding": {"color": None, "font": "Inter"}, "model": None}
    assert merge_config(current, patch) == {"top_k": 8, "branding": {"logo": "a.png", "font": "Inter"}}


@pytest.mark.asyncio
async def test_issued_key_authenticates_and_is_stored_hashed(session, tenant_with_key) -> None:
    tenant, raw_key = tenant_with_key
    assert raw_key.startswith(API_KEY_PREFIX)

    resolved = await authenticate_api_key(session, raw_key)
    assert resolved is not None
    assert resolved.id == tenant.id
    assert await authenticate_api_key(session, "sk_live_wrong") is None
    assert await authenticate_api_key(session, "") is None
    assert hash_api_key(raw_key) != raw_key


@pytest.mark.asyncio
async def test_rotation_keeps_previous_key_for_grace_window(session, tenant_with_key, audit) -> None:
    tenant, old_key = tenant_with_key
    now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    issued = await rotate_api_key(session, tenant.id, now=now, grace_hours=24, audit=audit.logger)
    await session.commit()

    assert issued.previous_valid_until == now + timedelta(hours=24)
    assert (await authenticate_api_key(session, issued.raw_key, now=now)).id == tenant.id
    assert (await authenticate_api_key(session, old_key, now=now + timedelta(hours=23))).id == tenant.id
    assert await authenticate_api_key(session, old_key, now=now + timedelta(hours=25)) is None
    assert [event.payload["key_prefix"] for event in await audit.events("apikey.rotated")] == [issued.key_prefix]


@pytest.mark.asyncio
async def test_rotation_without_grace_revokes_immediately(session, tenant_with_key, audit) -> None:
    tenant, old_key = tenant_with_key
    issued = await rotate_api_key(session, tenant.id, grace_hours=0, audit=audit.logger)
    await session.commit()

    assert issued.previous_valid_until is None
    assert await authenticate_api_key(session, old_key) is None


@pytest.mark.asyncio
async def test_rotation_for_unknown_tenant(session) -> None:
    with pytest.raises(TenantNotFoundError):
        await rotate_api_key(session, "missing")


@pytest.mark.asyncio
async def test_config_update_validates_and_audits(session, tenant, audit) -> None:
    updated = await update_tenant_config(session, tenant.id, {"confidence_threshold": 0.5, "top_k": 3}, audit=audit.logger)
    await session.commit()
    assert updated.config.confidence_threshold == 0.5
    assert updated.config.top_k == 3

    with pytest.raises(ValidationError):
        await update_tenant_config(session, tenant.id, {"confidence_threshold": 2.0}, audit=audit.logger)

    events = await audit.events("tenant.config_updated")
    assert [event.payload["keys"] for event in events] == [["confidence_threshold", "top_k"]]
