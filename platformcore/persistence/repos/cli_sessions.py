from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from platformcore.domain.credentials import (
    HashedCredential,
    LegacyPlaintextCredential,
    SessionIdentity,
)
from platformcore.domain.models import CliSession


def _identity(row: CliSession) -> SessionIdentity:
    return SessionIdentity(
        session_id=row.id,
        user_id=row.user_id,
        organization_id=row.organization_id,
        email=row.email,
        expires_at=row.expires_at,
    )


async def create(
    session: AsyncSession,
    *,
    user_id: str,
    organization_id: str,
    email: str,
    token_hash: str,
    token_prefix: str,
    created_at: datetime,
    expires_at: datetime,
) -> CliSession:
    # New sessions never carry the plaintext token.
    row = CliSession(
        id=uuid4().hex,
        user_id=user_id,
        organization_id=organization_id,
        email=email,
        token_hash=token_hash,
        token_prefix=token_prefix,
        cli_token=None,
        created_at=created_at,
        expires_at=expires_at,
        last_used_at=None,
    )
    session.add(row)
    await session.flush()
    return row


async def find_by_prefix(session: AsyncSession, token_prefix: str) -> list[HashedCredential]:
    rows = (
        await session.execute(
            select(CliSession)
            .where(CliSession.token_prefix == token_prefix, CliSession.token_hash.is_not(None))
            .order_by(CliSession.created_at.desc())
        )
    ).scalars().all()
    return [
        HashedCredential(identity=_identity(row), token_prefix=row.token_prefix, token_hash=row.token_hash)
        for row in rows
    ]


async def find_legacy_by_plaintext(session: AsyncSession, token: str) -> LegacyPlaintextCredential | None:
    row = (
        await session.execute(select(CliSession).where(CliSession.cli_token == token).limit(1))
    ).scalar_one_or_none()
    if row is None:
        return None
    return LegacyPlaintextCredential(identity=_identity(row), plaintext_token=token)


async def touch_last_used(session: AsyncSession, session_id: str, *, used_at: datetime) -> None:
    await session.execute(
        update(CliSession).where(CliSession.id == session_id).values(last_used_at=used_at)
    )


async def rotate(
    session: AsyncSession,
    session_id: str,
    *,
    token_hash: str,
    token_prefix: str,
    expires_at: datetime,
    used_at: datetime,
) -> bool:
    # Rotation migrates legacy rows forward permanently by clearing the plaintext column.
    result = await session.execute(
        update(CliSession)
        .where(CliSession.id == session_id)
        .values(
            token_hash=token_hash,
            token_prefix=token_prefix,
            cli_token=None,
            expires_at=expires_at,
            last_used_at=used_at,
        )
    )
    return bool(result.rowcount)


async def delete_session(session: AsyncSession, session_id: str) -> bool:
    result = await session.execute(delete(CliSession).where(CliSession.id == session_id))
    return bool(result.rowcount)


async def delete_expired(session: AsyncSession, *, before: datetime) -> int:
    result = await session.execute(delete(CliSession).where(CliSession.expires_at < before))
    return int(result.rowcount or 0)
