from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from platformcore.core.errors import InsufficientScope
from platformcore.domain.models import ApiKey
from platformcore.persistence.db import SessionLocal
from platformcore.services.auth.hasher import CredentialHasher, get_hasher
from platformcore.services.auth.roles import Role, scopes_for_role
from platformcore.services.auth.tokens import generate_api_key_secret, is_api_key, prefix_of
from platformcore.services.background import spawn


logger = logging.getLogger(__name__)

WILDCARD_SCOPE = "*"


@dataclass(frozen=True)
class ApiKeyIdentity:
    key_id: str
    organization_id: str
    created_by: str
    scopes: list[str]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_scopes(scopes: list[str] | None) -> list[str]:
    # Default to full access, mirroring CLI-issued keys; dedupe while keeping order.
    if not scopes:
        return [WILDCARD_SCOPE]
    seen: list[str] = []
    for scope in scopes:
        cleaned = scope.strip()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen or [WILDCARD_SCOPE]


def scopes_for_new_key(role: Role, requested: list[str] | None) -> list[str]:
    """Scopes a member holding ``role`` may grant to a key they issue.

    A key never outranks its creator: omitted scopes default to the role's own
    set (the wildcard for owners) and scopes beyond the role are refused.
    """
    if not any(scope.strip() for scope in requested or []):
        return [WILDCARD_SCOPE] if role is Role.OWNER else scopes_for_role(role)
    scopes = normalize_scopes(requested)
    if role is Role.OWNER:
        return scopes
    allowed = set(scopes_for_role(role))
    extras = [scope for scope in scopes if scope not in allowed]
    if extras:
        raise InsufficientScope(extras)
    return scopes


async def _touch_last_used(key_id: str) -> None:
    # Update last_used_at asynchronously without affecting request transactions.
    async with SessionLocal() as session:
        try:
            await session.execute(
                update(ApiKey).where(ApiKey.id == key_id).values(last_used_at=_utc_now())
            )
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.warning("api_key_touch_failed key_id=%s", key_id)


class ApiKeyService:
    def __init__(self, session: AsyncSession, *, hasher: CredentialHasher | None = None) -> None:
        self.session = session
        self.hasher = hasher or get_hasher()

    async def issue(
        self,
        *,
        organization_id: str,
        created_by: str,
        name: str,
        scopes: list[str] | None = None,
    ) -> tuple[str, ApiKey]:
        # The raw key is returned once and never persisted.
        raw_key = generate_api_key_secret()
        row = ApiKey(
            id=uuid4().hex,
            organization_id=organization_id,
            created_by=created_by,
            name=name,
            key_hash=await self.hasher.hash_async(raw_key),
            key_prefix=prefix_of(raw_key),
            scopes=normalize_scopes(scopes),
            status="active",
            created_at=_utc_now(),
        )
        self.session.add(row)
        await self.session.flush()
        return raw_key, row

    async def resolve(self, raw_key: str) -> ApiKeyIdentity | None:
        if not is_api_key(raw_key):
            return None
        candidates = (
            await self.session.execute(
                select(ApiKey).where(
                    ApiKey.key_prefix == prefix_of(raw_key),
                    ApiKey.status == "active",
                )
            )
        ).scalars().all()
        for candidate in candidates:
            if await self.hasher.verify_async(raw_key, candidate.key_hash):
                spawn(_touch_last_used(candidate.id), name="touch_api_key")
                return ApiKeyIdentity(
                    key_id=candidate.id,
                    organization_id=candidate.organization_id,
                    created_by=candidate.created_by,
                    scopes=list(candidate.scopes or []),
                )
        return None

    async def list_for_organization(self, organization_id: str) -> list[ApiKey]:
        rows = (
            await self.session.execute(
                select(ApiKey)
                .where(ApiKey.organization_id == organization_id)
                .order_by(ApiKey.created_at.desc())
            )
        ).scalars().all()
        return list(rows)

    async def revoke(self, *, organization_id: str, key_id: str) -> bool:
        # Idempotent; keys of other organizations are treated as absent.
        row = await self.session.get(ApiKey, key_id)
        if row is None or row.organization_id != organization_id:
            return False
        if row.status != "revoked":
            row.status = "revoked"
            row.revoked_at = _utc_now()
            await self.session.flush()
        return True
