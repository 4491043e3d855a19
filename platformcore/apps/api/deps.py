from __future__ import annotations

import logging
from typing import AsyncGenerator, Awaitable, Callable, Iterable

from fastapi import Depends, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from platformcore.core.errors import (
    CredentialSystemUnavailable,
    InsufficientScope,
    InvalidCredential,
    MembershipRequired,
    PlatformError,
)
from platformcore.domain.credentials import SessionIdentity
from platformcore.persistence.db import get_session
from platformcore.services.accounts import get_membership_role
from platformcore.services.audit import record_event
from platformcore.services.auth.api_keys import WILDCARD_SCOPE, ApiKeyService
from platformcore.services.auth.login import ProviderFactory
from platformcore.services.auth.oauth import get_oauth_provider
from platformcore.services.auth.roles import scopes_for_role
from platformcore.services.auth.scopes import check_scopes
from platformcore.services.auth.sessions import SessionService
from platformcore.services.auth.tokens import has_cli_session_tag, is_api_key, is_platform_session_id
from platformcore.services.outbox import Outbox


logger = logging.getLogger(__name__)

# One message for every rejected credential so callers cannot tell which check failed.
INVALID_CREDENTIAL_MESSAGE = "Invalid or expired credential"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


async def get_outbox(db: AsyncSession = Depends(get_db)) -> Outbox:
    return Outbox(db)


def get_provider_factory() -> ProviderFactory:
    # Overridable so tests can swap in stub providers without network access.
    return get_oauth_provider


class AuthContext(BaseModel):
    user_id: str
    organization_id: str
    scopes: list[str]
    # api_key | cli_session | platform_session
    auth_method: str
    role: str | None = None
    credential_id: str
    email: str | None = None


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise InvalidCredential("Missing bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise InvalidCredential("Missing or invalid bearer token")
    return parts[1]


async def _context_for_api_key(db: AsyncSession, token: str) -> AuthContext:
    identity = await ApiKeyService(db).resolve(token)
    if identity is None:
        raise InvalidCredential(INVALID_CREDENTIAL_MESSAGE)
    return AuthContext(
        user_id=identity.created_by,
        organization_id=identity.organization_id,
        scopes=identity.scopes,
        auth_method="api_key",
        credential_id=identity.key_id,
    )


async def _context_for_session(
    db: AsyncSession, identity: SessionIdentity, *, auth_method: str
) -> AuthContext:
    role = await get_membership_role(
        db, user_id=identity.user_id, organization_id=identity.organization_id
    )
    if role is None:
        raise MembershipRequired("You do not have access to this organization")
    # Browser sessions act with full access inside their organization; CLI scopes follow the role.
    scopes = [WILDCARD_SCOPE] if auth_method == "platform_session" else scopes_for_role(role)
    return AuthContext(
        user_id=identity.user_id,
        organization_id=identity.organization_id,
        scopes=scopes,
        auth_method=auth_method,
        role=role.value,
        credential_id=identity.session_id,
        email=identity.email,
    )


async def resolve_auth_context(db: AsyncSession, token: str) -> AuthContext:
    # Dispatch on token shape; each scheme has its own store.
    if is_api_key(token):
        return await _context_for_api_key(db, token)
    if has_cli_session_tag(token):
        identity = await SessionService(db).resolve(token)
        if identity is None:
            raise InvalidCredential(INVALID_CREDENTIAL_MESSAGE)
        return await _context_for_session(db, identity, auth_method="cli_session")
    if is_platform_session_id(token):
        identity = await SessionService(db).resolve_platform_session(token)
        if identity is None:
            raise InvalidCredential(INVALID_CREDENTIAL_MESSAGE)
        return await _context_for_session(db, identity, auth_method="platform_session")
    raise InvalidCredential(INVALID_CREDENTIAL_MESSAGE)


async def _record_auth_failure(request: Request, db: AsyncSession, exc: PlatformError) -> None:
    await record_event(
        session=db,
        organization_id=None,
        actor_type="anonymous",
        actor_id=None,
        event_type="auth.access.failure",
        outcome="failure",
        resource_type="auth",
        request=request,
        metadata={"path": request.url.path, "method": request.method},
        error_code=exc.code,
        commit=True,
    )


async def get_auth_context(request: Request, db: AsyncSession = Depends(get_db)) -> AuthContext:
    try:
        token = _parse_bearer_token(request.headers.get("Authorization"))
        context = await resolve_auth_context(db, token)
    except (InvalidCredential, MembershipRequired) as exc:
        await _record_auth_failure(request, db, exc)
        raise
    except SQLAlchemyError as exc:
        # Store outages are never reported as a bad credential.
        logger.error("auth_store_unavailable path=%s", request.url.path, exc_info=exc)
        raise CredentialSystemUnavailable("Authentication unavailable") from exc
    request.state.auth_context = context
    return context


async def require_cli_session(request: Request, db: AsyncSession = Depends(get_db)) -> SessionIdentity:
    try:
        token = _parse_bearer_token(request.headers.get("Authorization"))
        identity = await SessionService(db).resolve(token)
    except SQLAlchemyError as exc:
        logger.error("auth_store_unavailable path=%s", request.url.path, exc_info=exc)
        raise CredentialSystemUnavailable("Authentication unavailable") from exc
    if identity is None:
        raise InvalidCredential(INVALID_CREDENTIAL_MESSAGE)
    return identity


def enforce_scopes(context: AuthContext, needed: Iterable[str]) -> AuthContext:
    result = check_scopes(context.scopes, needed)
    if not result.allowed:
        raise InsufficientScope(result.missing_scopes)
    return context


def require_scopes(*needed: str) -> Callable[..., Awaitable[AuthContext]]:
    # Authentication resolves first (dependency order), then scopes, then the handler body.
    async def _dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        return enforce_scopes(context, needed)

    return _dependency
