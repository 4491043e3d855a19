from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import delete, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from platformcore.core.config import get_settings
from platformcore.core.errors import InvalidCredential
from platformcore.domain.credentials import (
    HashedCredential,
    LegacyPlaintextCredential,
    SessionIdentity,
    StoredCredential,
)
from platformcore.domain.models import CliSession, PlatformSession
from platformcore.persistence.db import SessionLocal
from platformcore.persistence.repos import cli_sessions as cli_sessions_repo
from platformcore.services.auth.hasher import CredentialHasher, get_hasher
from platformcore.services.auth.tokens import (
    generate_cli_session_token,
    generate_platform_session_id,
    has_cli_session_tag,
    is_cli_session_token,
    is_platform_session_id,
    prefix_of,
)
from platformcore.services.background import spawn


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    # Keep session timestamps in UTC for consistent expiry checks.
    return datetime.now(timezone.utc)


def _is_live(identity: SessionIdentity, now: datetime) -> bool:
    return now < identity.expires_at


async def _touch_cli_session(session_id: str) -> None:
    # Update last_used_at without affecting the request transaction.
    async with SessionLocal() as session:
        try:
            await cli_sessions_repo.touch_last_used(session, session_id, used_at=_utc_now())
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.warning("cli_session_touch_failed session_id=%s", session_id)


async def _touch_platform_session(session_id: str) -> None:
    async with SessionLocal() as session:
        try:
            await session.execute(
                update(PlatformSession)
                .where(PlatformSession.id == session_id)
                .values(last_used_at=_utc_now())
            )
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.warning("platform_session_touch_failed session_id=%s", session_id)


class SessionService:
    """Issues, resolves, rotates and revokes CLI and platform sessions.

    CLI tokens are resolved in two phases: hashed candidates located by the
    20-character lookup prefix, then the read-only legacy plaintext column.
    Expired records are reported exactly like unknown tokens.
    """

    def __init__(self, session: AsyncSession, *, hasher: CredentialHasher | None = None) -> None:
        self.session = session
        self.hasher = hasher or get_hasher()
        self.settings = get_settings()

    def _cli_expiry(self, now: datetime) -> datetime:
        return now + timedelta(days=self.settings.cli_session_ttl_days)

    async def create_cli_session(
        self,
        *,
        user_id: str,
        organization_id: str,
        email: str,
        token: str | None = None,
    ) -> tuple[str, CliSession]:
        # Accept a pre-generated token so login states can hand it out on completion.
        raw_token = token or generate_cli_session_token()
        token_hash = await self.hasher.hash_async(raw_token)
        now = _utc_now()
        row = await cli_sessions_repo.create(
            self.session,
            user_id=user_id,
            organization_id=organization_id,
            email=email,
            token_hash=token_hash,
            token_prefix=prefix_of(raw_token),
            created_at=now,
            expires_at=self._cli_expiry(now),
        )
        return raw_token, row

    async def _match(self, token: str, *, include_expired: bool) -> StoredCredential | None:
        if not has_cli_session_tag(token):
            return None
        now = _utc_now()
        # Hashed records are only ever issued in the current 64-hex shape.
        if is_cli_session_token(token):
            for candidate in await cli_sessions_repo.find_by_prefix(self.session, prefix_of(token)):
                if not include_expired and not _is_live(candidate.identity, now):
                    continue
                if await self.hasher.verify_async(token, candidate.token_hash):
                    return candidate
        legacy = await cli_sessions_repo.find_legacy_by_plaintext(self.session, token)
        if legacy is None:
            return None
        if not include_expired and not _is_live(legacy.identity, now):
            return None
        return legacy

    async def resolve(self, token: str) -> SessionIdentity | None:
        credential = await self._match(token, include_expired=False)
        if credential is None:
            return None
        match credential:
            case HashedCredential(identity=identity):
                pass
            case LegacyPlaintextCredential(identity=identity):
                # Track remaining legacy hits so the plaintext path can be retired.
                logger.info("legacy_cli_session_hit session_id=%s", identity.session_id)
        spawn(_touch_cli_session(identity.session_id), name="touch_cli_session")
        return identity

    async def rotate(self, token: str) -> tuple[str, datetime]:
        credential = await self._match(token, include_expired=False)
        if credential is None:
            raise InvalidCredential("Invalid session token")
        new_token = generate_cli_session_token()
        new_hash = await self.hasher.hash_async(new_token)
        now = _utc_now()
        expires_at = self._cli_expiry(now)
        await cli_sessions_repo.rotate(
            self.session,
            credential.identity.session_id,
            token_hash=new_hash,
            token_prefix=prefix_of(new_token),
            expires_at=expires_at,
            used_at=now,
        )
        return new_token, expires_at

    async def revoke(self, token: str) -> bool:
        # Idempotent: an unknown or already revoked token still reports success.
        credential = await self._match(token, include_expired=True)
        if credential is None:
            logger.info("cli_session_revoke_noop prefix=%s", prefix_of(token))
            return True
        await cli_sessions_repo.delete_session(self.session, credential.identity.session_id)
        return True

    async def create_platform_session(
        self,
        *,
        user_id: str,
        organization_id: str,
        email: str,
    ) -> PlatformSession:
        now = _utc_now()
        row = PlatformSession(
            id=generate_platform_session_id(),
            user_id=user_id,
            organization_id=organization_id,
            email=email,
            created_at=now,
            expires_at=now + timedelta(hours=self.settings.platform_session_ttl_hours),
            last_used_at=None,
        )
        self.session.add(row)
        await self.session.flush()
        return row

    async def resolve_platform_session(self, session_id: str) -> SessionIdentity | None:
        if not is_platform_session_id(session_id):
            return None
        row = await self.session.get(PlatformSession, session_id)
        if row is None:
            return None
        identity = SessionIdentity(
            session_id=row.id,
            user_id=row.user_id,
            organization_id=row.organization_id,
            email=row.email,
            expires_at=row.expires_at,
        )
        if not _is_live(identity, _utc_now()):
            return None
        spawn(_touch_platform_session(row.id), name="touch_platform_session")
        return identity

    async def sweep_expired(self, *, grace: timedelta) -> dict[str, int]:
        # Bulk cleanup of inert expired sessions; validity never depends on this running.
        cutoff = _utc_now() - grace
        cli_deleted = await cli_sessions_repo.delete_expired(self.session, before=cutoff)
        result = await self.session.execute(
            delete(PlatformSession).where(PlatformSession.expires_at < cutoff)
        )
        return {"cli_sessions": cli_deleted, "platform_sessions": int(result.rowcount or 0)}
