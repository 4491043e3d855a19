from __future__ import annotations

import argparse
import asyncio
import sys

from platformcore.domain.models import Organization, User
from platformcore.persistence.db import SessionLocal
from platformcore.services.accounts import require_membership
from platformcore.services.audit import record_event
from platformcore.services.auth.api_keys import ApiKeyService, scopes_for_new_key


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid issuing keys to the wrong organization.
    parser = argparse.ArgumentParser(description="Issue an API key for an organization")
    parser.add_argument("--organization-id", required=True, help="Organization the key acts for")
    parser.add_argument("--user-id", required=True, help="Member recorded as the key creator")
    parser.add_argument("--name", required=True, help="Key label for auditing")
    parser.add_argument(
        "--scopes",
        default="",
        help=(
            "Comma-separated scopes, e.g. workflows:read,transactions:read "
            "(default: the creator's role scopes)"
        ),
    )
    return parser


async def _create_key(args: argparse.Namespace) -> int:
    scopes = [item for item in args.scopes.split(",") if item.strip()]
    async with SessionLocal() as session:
        if await session.get(Organization, args.organization_id) is None:
            raise ValueError("Organization not found")
        if await session.get(User, args.user_id) is None:
            raise ValueError("User not found")
        role = await require_membership(
            session, user_id=args.user_id, organization_id=args.organization_id
        )
        raw_key, row = await ApiKeyService(session).issue(
            organization_id=args.organization_id,
            created_by=args.user_id,
            name=args.name,
            scopes=scopes_for_new_key(role, scopes),
        )
        key_id, key_prefix, granted = row.id, row.key_prefix, list(row.scopes)
        await record_event(
            session=session,
            organization_id=args.organization_id,
            actor_type="system",
            actor_id="create_api_key",
            event_type="auth.api_key.created",
            outcome="success",
            resource_type="api_key",
            resource_id=key_id,
            metadata={"user_id": args.user_id, "key_prefix": key_prefix, "key_name": args.name},
        )
        await session.commit()

    print("API key created:")
    print(f"  key_id: {key_id}")
    print(f"  key_prefix: {key_prefix}")
    print(f"  scopes: {','.join(granted)}")
    print("  api_key: ")
    print(f"    {raw_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_key(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
