from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone

from platformcore.core.config import get_settings
from platformcore.persistence.db import SessionLocal
from platformcore.persistence.repos import login_states
from platformcore.services.auth.sessions import SessionService


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Delete expired sessions and login states")
    parser.add_argument(
        "--grace-days",
        type=int,
        default=None,
        help="Keep sessions this many days past expiry (default: SESSION_SWEEP_GRACE_DAYS)",
    )
    return parser


async def prune(grace_days: int) -> None:
    async with SessionLocal() as session:
        counts = await SessionService(session).sweep_expired(grace=timedelta(days=grace_days))
        states = await login_states.delete_expired(session, before=datetime.now(timezone.utc))
        await session.commit()
    print(
        f"pruned_cli_sessions={counts.get('cli_sessions', 0)} "
        f"pruned_platform_sessions={counts.get('platform_sessions', 0)} "
        f"pruned_login_states={states}"
    )


def main() -> int:
    args = _build_parser().parse_args()
    grace_days = args.grace_days if args.grace_days is not None else get_settings().session_sweep_grace_days
    asyncio.run(prune(max(0, grace_days)))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
