from __future__ import annotations

import json
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from platformcore.core.config import Settings
from platformcore.core.errors import ConfigurationError, UnsupportedProviderError, UpstreamFailure
from platformcore.services.auth.oauth import _HttpOAuthProvider, get_oauth_provider, split_display_name


def _settings(**overrides) -> Settings:
    values = {
        "github_oauth_client_id": "gh-id",
        "github_oauth_client_secret": "gh-secret",
        "microsoft_client_id": "ms-id",
        "microsoft_client_secret": "ms-secret",
        "google_oauth_client_id": "g-id",
        "google_oauth_client_secret": "g-secret",
    }
    values.update(overrides)
    return Settings(**values)


def _github_transport(*, email: str | None, emails: list[dict] | None = None, token_error: str | None = None):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/login/oauth/access_token":
            if token_error:
                return httpx.Response(200, json={"error": token_error, "error_description": "The code is wrong"})
            return httpx.Response(200, json={"access_token": "gho_abc", "scope": "read:user,user:email"})
        if request.url.path == "/user":
            return httpx.Response(200, json={"id": 7, "login": "octo", "name": "Octo Cat", "email": email})
        if request.url.path == "/user/emails":
            if emails is None:
                return httpx.Response(403, json={"message": "forbidden"})
            return httpx.Response(200, json=emails)
        return httpx.Response(404)

    return httpx.MockTransport(handler), seen


def test_split_display_name_uses_first_space() -> None:
    assert split_display_name("Ada King Lovelace") == ("Ada", "King Lovelace")
    assert split_display_name("Prince") == ("Prince", "")
    assert split_display_name(None) == ("", "")


def test_unknown_provider_is_rejected() -> None:
    with pytest.raises(UnsupportedProviderError) as excinfo:
        get_oauth_provider("myspace", settings=_settings())
    assert str(excinfo.value.message) == "Unsupported provider: myspace"


def test_missing_credentials_fail_before_any_network_call() -> None:
    provider = get_oauth_provider("github", settings=_settings(github_oauth_client_id=None))
    with pytest.raises(ConfigurationError) as excinfo:
        provider.build_authorize_url(state="s", redirect_uri="http://api/cb")
    assert "GITHUB_OAUTH_CLIENT_ID" in excinfo.value.message


def test_google_authorize_url_requests_offline_access() -> None:
    provider = get_oauth_provider("google", settings=_settings())
    url = provider.build_authorize_url(state="abc", redirect_uri="http://api/cb")
    query = parse_qs(urlsplit(url).query)
    assert url.startswith("https://accounts.google.com/")
    assert query["state"] == ["abc"]
    assert query["access_type"] == ["offline"]
    assert query["client_id"] == ["g-id"]


@pytest.mark.asyncio
async def test_github_exchange_uses_public_profile_email() -> None:
    transport, seen = _github_transport(email="octo@example.com")
    provider = get_oauth_provider("github", settings=_settings(), transport=transport)

    profile = await provider.exchange_code(code="c0de", redirect_uri="http://api/cb")

    assert profile.email == "octo@example.com"
    assert (profile.first_name, profile.last_name) == ("Octo", "Cat")
    assert profile.provider_account_id == "7"
    assert profile.scopes == ["read:user", "user:email"]
    token_request = seen[0]
    assert json.loads(token_request.content) == {
        "client_id": "gh-id",
        "client_secret": "gh-secret",
        "code": "c0de",
    }
    assert all(request.url.path != "/user/emails" for request in seen)


@pytest.mark.asyncio
async def test_github_falls_back_to_primary_email() -> None:
    transport, _seen = _github_transport(
        email=None,
        emails=[
            {"email": "other@example.com", "primary": False},
            {"email": "main@example.com", "primary": True},
        ],
    )
    provider = get_oauth_provider("github", settings=_settings(), transport=transport)
    profile = await provider.exchange_code(code="c0de", redirect_uri="http://api/cb")
    assert profile.email == "main@example.com"


@pytest.mark.asyncio
async def test_github_synthesizes_email_when_none_is_visible() -> None:
    transport, _seen = _github_transport(email=None, emails=None)
    provider = get_oauth_provider("github", settings=_settings(), transport=transport)
    profile = await provider.exchange_code(code="c0de", redirect_uri="http://api/cb")
    assert profile.email == "octo@github.com"


@pytest.mark.asyncio
async def test_github_error_payload_is_an_upstream_failure() -> None:
    transport, _seen = _github_transport(email=None, token_error="bad_verification_code")
    provider = get_oauth_provider("github", settings=_settings(), transport=transport)
    with pytest.raises(UpstreamFailure) as excinfo:
        await provider.exchange_code(code="c0de", redirect_uri="http://api/cb")
    assert excinfo.value.message == "GitHub OAuth error: The code is wrong"
    assert excinfo.value.status_code == 502


@pytest.mark.asyncio
async def test_github_token_response_without_access_token_stops_the_exchange() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/login/oauth/access_token":
            return httpx.Response(200, json={"scope": "read:user"})
        return httpx.Response(200, json={"id": 7, "login": "octo"})

    provider = get_oauth_provider(
        "github", settings=_settings(), transport=httpx.MockTransport(handler)
    )
    with pytest.raises(UpstreamFailure) as excinfo:
        await provider.exchange_code(code="c0de", redirect_uri="http://api/cb")
    assert excinfo.value.message == "github token exchange returned no access token"
    assert [request.url.path for request in seen] == ["/login/oauth/access_token"]


def test_http_providers_must_supply_authorize_params() -> None:
    class Incomplete(_HttpOAuthProvider):
        name = "incomplete"

        async def exchange_code(self, *, code: str, redirect_uri: str):
            raise AssertionError("not reached")

    with pytest.raises(TypeError):
        Incomplete(client_id="id", client_secret="secret")


@pytest.mark.asyncio
async def test_microsoft_uses_form_exchange_and_graph_profile() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.host == "login.microsoftonline.com":
            return httpx.Response(
                200,
                json={"access_token": "ms-token", "refresh_token": "ms-refresh", "expires_in": 3600},
            )
        return httpx.Response(
            200,
            json={"id": "ms-1", "displayName": "Grace Hopper", "userPrincipalName": "grace@contoso.com"},
        )

    provider = get_oauth_provider("microsoft", settings=_settings(), transport=httpx.MockTransport(handler))
    profile = await provider.exchange_code(code="c0de", redirect_uri="http://api/cb")

    form = parse_qs(seen[0].content.decode("utf-8"))
    assert form["grant_type"] == ["authorization_code"]
    assert form["client_secret"] == ["ms-secret"]
    assert profile.email == "grace@contoso.com"
    assert profile.refresh_token == "ms-refresh"
    assert profile.token_expires_at is not None


@pytest.mark.asyncio
async def test_upstream_error_status_keeps_provider_details() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, text="invalid_grant")

    provider = get_oauth_provider("google", settings=_settings(), transport=httpx.MockTransport(handler))
    with pytest.raises(UpstreamFailure) as excinfo:
        await provider.exchange_code(code="expired", redirect_uri="http://api/cb")
    assert excinfo.value.details["provider"] == "google"
    assert excinfo.value.details["upstream_status"] == 400
