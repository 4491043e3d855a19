from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from platformcore.core.config import get_settings
from platformcore.core.errors import ConfigurationError, LoginStateInvalid, ValidationFailure
from platformcore.domain.models import OAuthConnection, Organization, User
from platformcore.persistence.db import SessionLocal
from platformcore.persistence.repos import login_states as login_states_repo
from platformcore.services.accounts import ensure_default_organization, find_or_create_user
from platformcore.services.audit import record_event
from platformcore.services.auth.oauth import OAuthProfile, OAuthProvider, get_oauth_provider
from platformcore.services.auth.sessions import SessionService
from platformcore.services.auth.tokens import generate_cli_session_token
from platformcore.services.outbox import Outbox
from platformcore.services.security.token_vault import encrypt_token


logger = logging.getLogger(__name__)

CLI_LOGIN_FLOW = "cli_login"
OAUTH_SIGNUP_FLOW = "oauth_signup"
SESSION_TYPES: tuple[str, ...] = ("cli", "platform")
LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})
_DEFAULT_SCOPES: dict[str, list[str]] = {"github": ["read:user", "user:email"]}
_FALLBACK_SCOPES = ["openid", "profile", "email"]

ProviderFactory = Callable[[str], OAuthProvider]


@dataclass(frozen=True)
class LoginStart:
    auth_url: str
    state: str
    provider: str | None


@dataclass(frozen=True)
class LoginCompletion:
    session_type: str
    # CLI session token or platform session id, depending on session_type.
    credential: str
    expires_at: datetime
    user: User
    organization: Organization
    is_new_user: bool
    callback_url: str
    provider: str
    profile: OAuthProfile


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def cli_redirect_uri() -> str:
    return f"{get_settings().api_base_url.rstrip('/')}/api/v1/auth/cli/callback"


def signup_redirect_uri() -> str:
    return f"{get_settings().api_base_url.rstrip('/')}/api/v1/auth/oauth/callback"


def append_query(url: str, **params: str) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((key, value) for key, value in params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def _require_callback_url(callback_url: str | None, *, loopback_only: bool = False) -> str:
    cleaned = (callback_url or "").strip()
    if not cleaned:
        raise ValidationFailure("callback_url is required", field_errors={"callback_url": "required"})
    if loopback_only:
        # The CLI listens locally; the session token is appended to this URL on redirect.
        try:
            parts = urlsplit(cleaned)
        except ValueError:
            parts = None
        if parts is None or parts.scheme not in {"http", "https"} or parts.hostname not in LOOPBACK_HOSTS:
            raise ValidationFailure(
                "callback_url must point to localhost",
                field_errors={"callback_url": "must be a loopback http(s) URL"},
            )
    return cleaned


async def initiate_cli_login(
    session: AsyncSession,
    *,
    callback_url: str,
    provider: str | None = None,
    provider_factory: ProviderFactory = get_oauth_provider,
) -> LoginStart:
    callback = _require_callback_url(callback_url, loopback_only=True)
    # Resolve the provider first so unsupported or unconfigured providers fail before any state is stored.
    oauth = provider_factory(provider) if provider else None
    row = await login_states_repo.store_state(
        session,
        flow=CLI_LOGIN_FLOW,
        callback_url=callback,
        ttl_seconds=get_settings().login_state_ttl_seconds,
        session_type="cli",
        provider=oauth.name if oauth else None,
        pending_token=generate_cli_session_token(),
    )
    if oauth is not None:
        auth_url = oauth.build_authorize_url(state=row.state, redirect_uri=cli_redirect_uri())
    else:
        base = get_settings().app_base_url.rstrip("/")
        auth_url = append_query(f"{base}/auth/cli-login", state=row.state, callback=callback)
    logger.info("cli_login_started provider=%s", row.provider or "select")
    return LoginStart(auth_url=auth_url, state=row.state, provider=row.provider)


async def start_oauth_signup(
    session: AsyncSession,
    *,
    provider: str,
    session_type: str,
    callback_url: str,
    organization_name: str | None = None,
    provider_factory: ProviderFactory = get_oauth_provider,
) -> LoginStart:
    if session_type not in SESSION_TYPES:
        raise ValidationFailure(
            "session_type must be 'cli' or 'platform'",
            field_errors={"session_type": "invalid"},
        )
    callback = _require_callback_url(callback_url, loopback_only=session_type == "cli")
    oauth = provider_factory(provider)
    row = await login_states_repo.store_state(
        session,
        flow=OAUTH_SIGNUP_FLOW,
        callback_url=callback,
        ttl_seconds=get_settings().login_state_ttl_seconds,
        session_type=session_type,
        provider=oauth.name,
        organization_name=(organization_name or "").strip() or None,
        pending_token=generate_cli_session_token() if session_type == "cli" else None,
    )
    auth_url = oauth.build_authorize_url(state=row.state, redirect_uri=signup_redirect_uri())
    logger.info("oauth_signup_started provider=%s session_type=%s", oauth.name, session_type)
    return LoginStart(auth_url=auth_url, state=row.state, provider=oauth.name)


async def _complete(
    session: AsyncSession,
    outbox: Outbox,
    *,
    flow: str,
    state: str,
    code: str,
    provider: str | None,
    redirect_uri: str,
    provider_factory: ProviderFactory,
) -> LoginCompletion:
    if not code:
        raise ValidationFailure("code is required", field_errors={"code": "required"})
    row = await login_states_repo.pop_state(session, state, flow=flow)
    if row is None:
        raise LoginStateInvalid("Invalid or expired state token")
    provider_name = row.provider or provider
    if not provider_name:
        raise ValidationFailure("provider is required", field_errors={"provider": "required"})
    oauth = provider_factory(provider_name)
    profile = await oauth.exchange_code(code=code, redirect_uri=redirect_uri)

    user, is_new_user = await find_or_create_user(
        session,
        email=profile.email,
        first_name=profile.first_name,
        last_name=profile.last_name,
    )
    organization = await ensure_default_organization(
        session, user, organization_name=row.organization_name
    )
    sessions = SessionService(session)
    if row.session_type == "platform":
        platform_session = await sessions.create_platform_session(
            user_id=user.id, organization_id=organization.id, email=user.email
        )
        credential, expires_at = platform_session.id, platform_session.expires_at
    else:
        credential, cli_session = await sessions.create_cli_session(
            user_id=user.id,
            organization_id=organization.id,
            email=user.email,
            token=row.pending_token,
        )
        expires_at = cli_session.expires_at

    if is_new_user:
        await outbox.enqueue(
            "user.welcome_email",
            {"user_id": user.id, "organization_id": organization.id, "provider": oauth.name},
            idempotency_key=f"welcome:{user.id}",
        )
    await record_event(
        session=session,
        organization_id=organization.id,
        actor_type="user",
        actor_id=user.id,
        event_type=f"auth.{flow}.completed",
        outcome="success",
        resource_type=f"{row.session_type}_session",
        metadata={"provider": oauth.name, "new_user": is_new_user},
    )
    logger.info(
        "login_completed flow=%s provider=%s user_id=%s new_user=%s",
        flow,
        oauth.name,
        user.id,
        is_new_user,
    )
    return LoginCompletion(
        session_type=row.session_type,
        credential=credential,
        expires_at=expires_at,
        user=user,
        organization=organization,
        is_new_user=is_new_user,
        callback_url=row.callback_url,
        provider=oauth.name,
        profile=profile,
    )


async def complete_cli_login(
    session: AsyncSession,
    outbox: Outbox,
    *,
    state: str,
    code: str,
    provider: str | None = None,
    provider_factory: ProviderFactory = get_oauth_provider,
) -> LoginCompletion:
    return await _complete(
        session,
        outbox,
        flow=CLI_LOGIN_FLOW,
        state=state,
        code=code,
        provider=provider,
        redirect_uri=cli_redirect_uri(),
        provider_factory=provider_factory,
    )


async def complete_oauth_signup(
    session: AsyncSession,
    outbox: Outbox,
    *,
    state: str,
    code: str,
    provider_factory: ProviderFactory = get_oauth_provider,
) -> LoginCompletion:
    return await _complete(
        session,
        outbox,
        flow=OAUTH_SIGNUP_FLOW,
        state=state,
        code=code,
        provider=None,
        redirect_uri=signup_redirect_uri(),
        provider_factory=provider_factory,
    )


async def save_oauth_connection(completion: LoginCompletion) -> bool:
    """Store the provider tokens of a completed signup, encrypted at rest.

    Runs in its own session after the signup committed. Failures are logged
    and reported as False; they never undo the signup.
    """
    profile = completion.profile
    if not profile.access_token:
        return False
    try:
        access_encrypted = encrypt_token(profile.access_token)
        # Providers without refresh tokens reuse the access token ciphertext.
        refresh_encrypted = (
            encrypt_token(profile.refresh_token) if profile.refresh_token else access_encrypted
        )
    except ConfigurationError:
        logger.warning(
            "oauth_connection_store_skipped provider=%s user_id=%s reason=encryption_unavailable",
            completion.provider,
            completion.user.id,
        )
        return False
    now = _utc_now()
    async with SessionLocal() as session:
        try:
            row = (
                await session.execute(
                    select(OAuthConnection).where(
                        OAuthConnection.user_id == completion.user.id,
                        OAuthConnection.provider == completion.provider,
                    )
                )
            ).scalar_one_or_none()
            if row is None:
                row = OAuthConnection(
                    id=uuid4().hex,
                    user_id=completion.user.id,
                    provider=completion.provider,
                    created_at=now,
                )
                session.add(row)
            row.organization_id = completion.organization.id
            row.provider_account_id = profile.provider_account_id or ""
            row.provider_email = profile.email
            row.access_token_encrypted = access_encrypted
            row.refresh_token_encrypted = refresh_encrypted
            row.token_expires_at = profile.token_expires_at or now + timedelta(hours=1)
            row.scopes = profile.scopes or _DEFAULT_SCOPES.get(completion.provider, _FALLBACK_SCOPES)
            row.updated_at = now
            await session.commit()
        except SQLAlchemyError:
            await session.rollback()
            logger.warning(
                "oauth_connection_store_failed provider=%s user_id=%s",
                completion.provider,
                completion.user.id,
                exc_info=True,
            )
            return False
    logger.info(
        "oauth_connection_stored provider=%s user_id=%s", completion.provider, completion.user.id
    )
    return True
