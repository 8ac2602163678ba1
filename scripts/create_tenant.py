from __future__ import annotations

import argparse
import asyncio
import json
import sys

from supportai.persistence.db import SessionLocal
from supportai.services.audit import get_audit_logger
from supportai.services.tenants import create_tenant


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create a tenant and issue its first API key")
    parser.add_argument("--name", required=True, help="Tenant display name")
    parser.add_argument("--plan", default="trial", help="Plan: trial|growth|enterprise")
    parser.add_argument("--config", default=None, help="Optional tenant config as a JSON object")
    return parser


async def _create(args: argparse.Namespace) -> int:
    config = json.loads(args.config) if args.config else None
    audit = get_audit_logger()
    async with SessionLocal() as session:
        tenant, issued = await create_tenant(session, name=args.name, plan=args.plan, config=config)
        await session.commit()
    audit.emit(tenant.id, "tenant.created", {"plan": tenant.plan, "key_prefix": issued.key_prefix})
    await audit.close()

    print("Tenant created:")
    print(f"  tenant_id: {tenant.id}")
    print(f"  key_prefix: {issued.key_prefix}")
    # Only the hash is stored; this is the one chance to copy the key.
    print("  api_key: ")
    print(f"    {issued.raw_key}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_tenant failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
