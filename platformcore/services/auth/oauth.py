from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Any, Protocol
from urllib.parse import urlencode

import httpx

from platformcore.core.config import Settings, get_settings
from platformcore.core.errors import ConfigurationError, UnsupportedProviderError, UpstreamFailure


logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS: tuple[str, ...] = ("github", "microsoft", "google")


@dataclass(frozen=True)
class OAuthProfile:
    email: str
    first_name: str
    last_name: str
    provider_account_id: str | None
    access_token: str | None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    scopes: list[str] = field(default_factory=list)


class OAuthProvider(Protocol):
    name: str

    def build_authorize_url(self, *, state: str, redirect_uri: str) -> str: ...

    async def exchange_code(self, *, code: str, redirect_uri: str) -> OAuthProfile: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def split_display_name(name: str | None) -> tuple[str, str]:
    # First-space heuristic; multi-part first names end up partly in last_name.
    cleaned = (name or "").strip()
    if not cleaned:
        return "", ""
    first, _, last = cleaned.partition(" ")
    return first, last.strip()


def _parse_scopes(raw: Any) -> list[str]:
    if not raw:
        return []
    if isinstance(raw, list):
        return [str(item) for item in raw if item]
    return [part for part in re.split(r"[\s,]+", str(raw)) if part]


def _expires_at(raw: Any) -> datetime | None:
    try:
        seconds = int(raw)
    except (TypeError, ValueError):
        return None
    return _utc_now() + timedelta(seconds=seconds)


class _HttpOAuthProvider(ABC):
    name = ""
    authorize_endpoint = ""
    token_endpoint = ""
    client_id_env = ""
    client_secret_env = ""

    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout_s = timeout_s
        self._transport = transport

    def _credentials(self) -> tuple[str, str]:
        # Fail fast before any network call; never proceed with empty credentials.
        if not self.client_id or not self.client_secret:
            raise ConfigurationError(
                f"{self.name} OAuth not configured: {self.client_id_env} or "
                f"{self.client_secret_env} environment variables are not set"
            )
        return self.client_id, self.client_secret

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_s, transport=self._transport)

    @abstractmethod
    def _authorize_params(self, *, client_id: str, state: str, redirect_uri: str) -> dict[str, str]:
        """Query parameters of the provider's authorize endpoint."""

    @abstractmethod
    async def exchange_code(self, *, code: str, redirect_uri: str) -> OAuthProfile:
        """Trade an authorization code for the signed-in user's profile."""

    def build_authorize_url(self, *, state: str, redirect_uri: str) -> str:
        client_id, _secret = self._credentials()
        params = self._authorize_params(client_id=client_id, state=state, redirect_uri=redirect_uri)
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    def _raise_upstream(self, step: str, response: httpx.Response) -> None:
        logger.warning(
            "oauth_upstream_failed provider=%s step=%s status=%s",
            self.name,
            step,
            response.status_code,
        )
        raise UpstreamFailure(
            f"{self.name} {step} failed: {response.text[:500]}",
            provider=self.name,
            upstream_status=response.status_code,
            upstream_text=response.text,
        )

    async def _exchange_form(
        self, client: httpx.AsyncClient, *, code: str, redirect_uri: str
    ) -> dict[str, Any]:
        client_id, client_secret = self._credentials()
        response = await client.post(
            self.token_endpoint,
            data={
                "client_id": client_id,
                "client_secret": client_secret,
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
            headers={"Accept": "application/json"},
        )
        if response.status_code >= 400:
            self._raise_upstream("token exchange", response)
        payload = response.json()
        if not payload.get("access_token"):
            raise UpstreamFailure(
                f"{self.name} token exchange returned no access token",
                provider=self.name,
                upstream_status=response.status_code,
            )
        return payload


class GitHubOAuthProvider(_HttpOAuthProvider):
    name = "github"
    authorize_endpoint = "https://github.com/login/oauth/authorize"
    token_endpoint = "https://github.com/login/oauth/access_token"
    profile_endpoint = "https://api.github.com/user"
    emails_endpoint = "https://api.github.com/user/emails"
    client_id_env = "GITHUB_OAUTH_CLIENT_ID"
    client_secret_env = "GITHUB_OAUTH_CLIENT_SECRET"

    def _authorize_params(self, *, client_id: str, state: str, redirect_uri: str) -> dict[str, str]:
        return {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": "read:user user:email",
            "state": state,
            "allow_signup": "false",
        }

    async def _primary_email(self, client: httpx.AsyncClient, headers: dict[str, str], login: str) -> str:
        # Prefer the flagged primary address, then any address, then a synthesized one.
        response = await client.get(self.emails_endpoint, headers=headers)
        if response.status_code < 400:
            emails = response.json() or []
            primary = next((item for item in emails if item.get("primary")), None)
            if primary and primary.get("email"):
                return primary["email"]
            if emails and emails[0].get("email"):
                return emails[0]["email"]
        else:
            logger.info("github_emails_unavailable status=%s", response.status_code)
        return f"{login}@github.com"

    async def exchange_code(self, *, code: str, redirect_uri: str) -> OAuthProfile:
        client_id, client_secret = self._credentials()
        async with self._client() as client:
            token_response = await client.post(
                self.token_endpoint,
                json={"client_id": client_id, "client_secret": client_secret, "code": code},
                headers={"Accept": "application/json"},
            )
            if token_response.status_code >= 400:
                self._raise_upstream("token exchange", token_response)
            token_data = token_response.json()
            if token_data.get("error"):
                message = token_data.get("error_description") or token_data["error"]
                raise UpstreamFailure(
                    f"GitHub OAuth error: {message}",
                    provider=self.name,
                    upstream_status=token_response.status_code,
                    upstream_text=str(message),
                )
            access_token = token_data.get("access_token")
            if not access_token:
                raise UpstreamFailure(
                    f"{self.name} token exchange returned no access token",
                    provider=self.name,
                    upstream_status=token_response.status_code,
                )
            headers = {
                "Authorization": f"Bearer {access_token}",
                "Accept": "application/vnd.github.v3+json",
            }
            profile_response = await client.get(self.profile_endpoint, headers=headers)
            if profile_response.status_code >= 400:
                self._raise_upstream("profile fetch", profile_response)
            profile = profile_response.json()
            login = str(profile.get("login") or "")
            email = profile.get("email") or await self._primary_email(client, headers, login)
        first_name, last_name = split_display_name(profile.get("name") or login)
        return OAuthProfile(
            email=email,
            first_name=first_name or login,
            last_name=last_name,
            provider_account_id=str(profile["id"]) if profile.get("id") is not None else None,
            access_token=access_token,
            refresh_token=token_data.get("refresh_token"),
            token_expires_at=_expires_at(token_data.get("expires_in")),
            scopes=_parse_scopes(token_data.get("scope")),
        )


class MicrosoftOAuthProvider(_HttpOAuthProvider):
    name = "microsoft"
    authorize_endpoint = "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
    token_endpoint = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    profile_endpoint = "https://graph.microsoft.com/v1.0/me"
    client_id_env = "MICROSOFT_CLIENT_ID"
    client_secret_env = "MICROSOFT_CLIENT_SECRET"

    def _authorize_params(self, *, client_id: str, state: str, redirect_uri: str) -> dict[str, str]:
        return {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "response_mode": "query",
            "scope": "openid profile email",
            "state": state,
        }

    async def exchange_code(self, *, code: str, redirect_uri: str) -> OAuthProfile:
        self._credentials()
        async with self._client() as client:
            token_data = await self._exchange_form(client, code=code, redirect_uri=redirect_uri)
            profile_response = await client.get(
                self.profile_endpoint,
                headers={"Authorization": f"Bearer {token_data['access_token']}"},
            )
            if profile_response.status_code >= 400:
                self._raise_upstream("profile fetch", profile_response)
            profile = profile_response.json()
        email = profile.get("mail") or profile.get("userPrincipalName")
        if not email:
            raise UpstreamFailure("Microsoft profile has no email address", provider=self.name)
        first_name, last_name = split_display_name(profile.get("displayName") or profile.get("userPrincipalName"))
        return OAuthProfile(
            email=email,
            first_name=first_name or profile.get("givenName") or "",
            last_name=last_name or profile.get("surname") or "",
            provider_account_id=profile.get("id"),
            access_token=token_data.get("access_token"),
            refresh_token=token_data.get("refresh_token"),
            token_expires_at=_expires_at(token_data.get("expires_in")),
            scopes=_parse_scopes(token_data.get("scope")),
        )


class GoogleOAuthProvider(_HttpOAuthProvider):
    name = "google"
    authorize_endpoint = "https://accounts.google.com/o/oauth2/v2/auth"
    token_endpoint = "https://oauth2.googleapis.com/token"
    profile_endpoint = "https://www.googleapis.com/oauth2/v2/userinfo"
    client_id_env = "GOOGLE_OAUTH_CLIENT_ID"
    client_secret_env = "GOOGLE_OAUTH_CLIENT_SECRET"

    def _authorize_params(self, *, client_id: str, state: str, redirect_uri: str) -> dict[str, str]:
        return {
            "client_id": client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": "openid email profile",
            "state": state,
            "access_type": "offline",
            "prompt": "select_account",
        }

    async def exchange_code(self, *, code: str, redirect_uri: str) -> OAuthProfile:
        self._credentials()
        async with self._client() as client:
            token_data = await self._exchange_form(client, code=code, redirect_uri=redirect_uri)
            profile_response = await client.get(
                self.profile_endpoint,
                headers={"Authorization": f"Bearer {token_data['access_token']}"},
            )
            if profile_response.status_code >= 400:
                self._raise_upstream("profile fetch", profile_response)
            profile = profile_response.json()
        email = profile.get("email")
        if not email:
            raise UpstreamFailure("Google profile has no email address", provider=self.name)
        first_name, last_name = split_display_name(profile.get("name") or email)
        return OAuthProfile(
            email=email,
            first_name=first_name or profile.get("given_name") or "",
            last_name=last_name or profile.get("family_name") or "",
            provider_account_id=profile.get("id"),
            access_token=token_data.get("access_token"),
            refresh_token=token_data.get("refresh_token"),
            token_expires_at=_expires_at(token_data.get("expires_in")),
            scopes=_parse_scopes(token_data.get("scope")),
        )


def get_oauth_provider(
    name: str,
    *,
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> OAuthProvider:
    resolved = settings or get_settings()
    timeout_s = resolved.oauth_http_timeout_s
    normalized = (name or "").strip().lower()
    if normalized == "github":
        return GitHubOAuthProvider(
            client_id=resolved.github_oauth_client_id,
            client_secret=resolved.github_oauth_client_secret,
            timeout_s=timeout_s,
            transport=transport,
        )
    if normalized == "microsoft":
        return MicrosoftOAuthProvider(
            client_id=resolved.microsoft_client_id,
            client_secret=resolved.microsoft_client_secret,
            timeout_s=timeout_s,
            transport=transport,
        )
    if normalized == "google":
        return GoogleOAuthProvider(
            client_id=resolved.google_oauth_client_id,
            client_secret=resolved.google_oauth_client_secret,
            timeout_s=timeout_s,
            transport=transport,
        )
    raise UnsupportedProviderError(f"Unsupported provider: {name}")
