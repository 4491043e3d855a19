from __future__ import annotations

import argparse
import asyncio
import sys

from platformcore.persistence.db import SessionLocal
from platformcore.services.audit import record_event
from platformcore.services.auth.api_keys import ApiKeyService


def _build_parser() -> argparse.ArgumentParser:
    # Require the organization so a key id alone never revokes across organizations.
    parser = argparse.ArgumentParser(description="Revoke an API key by id")
    parser.add_argument("key_id", help="API key id to revoke")
    parser.add_argument("--organization-id", required=True, help="Organization owning the key")
    return parser


async def _revoke_key(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        revoked = await ApiKeyService(session).revoke(
            organization_id=args.organization_id, key_id=args.key_id
        )
        if not revoked:
            raise ValueError("API key not found")
        await record_event(
            session=session,
            organization_id=args.organization_id,
            actor_type="system",
            actor_id="revoke_api_key",
            event_type="auth.api_key.revoked",
            outcome="success",
            resource_type="api_key",
            resource_id=args.key_id,
        )
        await session.commit()
    print(f"Revoked API key {args.key_id}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_revoke_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"revoke_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
