from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from platformcore.domain.models import LoginState


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def store_state(
    session: AsyncSession,
    *,
    flow: str,
    callback_url: str,
    ttl_seconds: int,
    session_type: str = "cli",
    provider: str | None = None,
    organization_name: str | None = None,
    pending_token: str | None = None,
) -> LoginState:
    now = _utc_now()
    row = LoginState(
        state=str(uuid4()),
        flow=flow,
        session_type=session_type,
        provider=provider,
        callback_url=callback_url,
        organization_name=organization_name,
        pending_token=pending_token,
        created_at=now,
        expires_at=now + timedelta(seconds=ttl_seconds),
    )
    session.add(row)
    await session.flush()
    return row


async def pop_state(session: AsyncSession, state: str, *, flow: str) -> LoginState | None:
    # Single use: the row is deleted on the first read, even when it turns out expired.
    if not state:
        return None
    row = await session.get(LoginState, state)
    if row is None:
        return None
    # Claim by conditional delete so concurrent exchanges of one state cannot both win.
    result = await session.execute(delete(LoginState).where(LoginState.state == state))
    session.expunge(row)
    if not result.rowcount:
        return None
    if row.flow != flow or row.expires_at <= _utc_now():
        return None
    return row


async def delete_expired(session: AsyncSession, *, before: datetime) -> int:
    result = await session.execute(delete(LoginState).where(LoginState.expires_at < before))
    return int(result.rowcount or 0)
