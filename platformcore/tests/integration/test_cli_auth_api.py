from __future__ import annotations

from urllib.parse import parse_qs, urlsplit

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from platformcore.apps.api.deps import get_provider_factory
from platformcore.apps.api.main import create_app
from platformcore.domain.models import OAuthConnection, PlatformSession
from platformcore.persistence.db import SessionLocal
from platformcore.tests.utils.auth import bearer
from platformcore.tests.utils.oauth import StubOAuthProvider, stub_factory


def _client(provider: StubOAuthProvider | None = None) -> AsyncClient:
    app = create_app()
    stub = provider or StubOAuthProvider()
    app.dependency_overrides[get_provider_factory] = lambda: stub_factory(stub)
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


async def _login(client: AsyncClient) -> dict:
    started = await client.post(
        "/api/v1/auth/cli/login",
        json={"callback_url": "http://localhost:9876/cb", "provider": "github"},
    )
    assert started.status_code == 200
    state = started.json()["data"]["state"]
    completed = await client.post("/api/v1/auth/cli/complete", json={"state": state, "code": "ok"})
    assert completed.status_code == 200
    return completed.json()["data"]


@pytest.mark.asyncio
async def test_login_points_at_provider_with_callback() -> None:
    async with _client() as client:
        response = await client.post(
            "/api/v1/auth/cli/login",
            json={"callback_url": "http://localhost:9876/cb", "provider": "github"},
        )
    data = response.json()["data"]
    assert data["provider"] == "github"
    query = parse_qs(urlsplit(data["auth_url"]).query)
    assert query["state"] == [data["state"]]
    assert query["redirect_uri"][0].endswith("/api/v1/auth/cli/callback")


@pytest.mark.asyncio
async def test_full_cli_session_lifecycle() -> None:
    async with _client() as client:
        completed = await _login(client)
        token = completed["token"]
        assert token.startswith("cli_session_")
        assert completed["is_new_user"] is True
        assert completed["user"]["email"] == "ada.lovelace@example.com"
        assert completed["organization"]["name"] == "Ada Lovelace's Organization"

        described = await client.get("/api/v1/auth/cli/session", headers=bearer(token))
        assert described.status_code == 200
        session_data = described.json()["data"]
        assert session_data["organization_id"] == completed["organization"]["id"]
        assert [org["role"] for org in session_data["organizations"]] == ["org_owner"]

        refreshed = await client.post("/api/v1/auth/cli/refresh", json={"token": token})
        assert refreshed.status_code == 200
        new_token = refreshed.json()["data"]["token"]
        assert new_token != token

        stale = await client.get("/api/v1/auth/cli/session", headers=bearer(token))
        assert stale.status_code == 401

        revoked = await client.post("/api/v1/auth/cli/revoke", json={"token": new_token})
        assert revoked.json()["data"] == {"revoked": True}
        again = await client.post("/api/v1/auth/cli/revoke", json={"token": new_token})
        assert again.json()["data"] == {"revoked": True}

        gone = await client.get("/api/v1/auth/cli/session", headers=bearer(new_token))
        assert gone.status_code == 401


@pytest.mark.asyncio
async def test_state_reuse_is_rejected() -> None:
    async with _client() as client:
        started = await client.post(
            "/api/v1/auth/cli/login",
            json={"callback_url": "http://localhost:9876/cb", "provider": "github"},
        )
        state = started.json()["data"]["state"]
        first = await client.post("/api/v1/auth/cli/complete", json={"state": state, "code": "ok"})
        second = await client.post("/api/v1/auth/cli/complete", json={"state": state, "code": "ok"})
    assert first.status_code == 200
    assert second.status_code == 400
    assert second.json()["error"]["code"] == "AUTH_STATE_INVALID"


@pytest.mark.asyncio
async def test_upstream_failure_is_reported_as_bad_gateway() -> None:
    async with _client() as client:
        started = await client.post(
            "/api/v1/auth/cli/login",
            json={"callback_url": "http://localhost:9876/cb", "provider": "github"},
        )
        state = started.json()["data"]["state"]
        response = await client.post("/api/v1/auth/cli/complete", json={"state": state, "code": "bad"})
    assert response.status_code == 502
    assert response.json()["error"]["code"] == "UPSTREAM_FAILURE"


@pytest.mark.asyncio
async def test_browser_callback_redirects_to_local_listener() -> None:
    async with _client() as client:
        started = await client.post(
            "/api/v1/auth/cli/login",
            json={"callback_url": "http://localhost:9876/cb", "provider": "github"},
        )
        state = started.json()["data"]["state"]
        response = await client.get(
            "/api/v1/auth/cli/callback", params={"state": state, "code": "ok"}
        )
        assert response.status_code == 302
        location = urlsplit(response.headers["location"])
        assert (location.netloc, location.path) == ("localhost:9876", "/cb")
        token = parse_qs(location.query)["token"][0]

        described = await client.get("/api/v1/auth/cli/session", headers=bearer(token))
    assert described.status_code == 200


@pytest.mark.asyncio
async def test_denied_authorization_is_a_validation_error() -> None:
    async with _client() as client:
        response = await client.get(
            "/api/v1/auth/cli/callback", params={"state": "s", "error": "access_denied"}
        )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_cli_callbacks_off_the_local_machine_are_refused() -> None:
    async with _client() as client:
        login = await client.post(
            "/api/v1/auth/cli/login",
            json={"callback_url": "https://attacker.example/cb", "provider": "github"},
        )
        signup = await client.post(
            "/api/v1/auth/oauth/signup",
            json={"provider": "github", "session_type": "cli", "callback_url": "https://attacker.example/cb"},
        )
    for response in (login, signup):
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert body["error"]["details"]["fields"] == {"callback_url": "must be a loopback http(s) URL"}


@pytest.mark.asyncio
async def test_platform_signup_redirects_with_session_id() -> None:
    async with _client() as client:
        started = await client.post(
            "/api/v1/auth/oauth/signup",
            json={
                "provider": "github",
                "session_type": "platform",
                "callback_url": "http://app.test/welcome",
                "organization_name": "Analytical Engines",
            },
        )
        assert started.status_code == 200
        state = started.json()["data"]["state"]
        response = await client.get(
            "/api/v1/auth/oauth/callback", params={"state": state, "code": "ok"}
        )

    assert response.status_code == 302
    query = parse_qs(urlsplit(response.headers["location"]).query)
    assert query["new_user"] == ["true"]
    session_id = query["session_id"][0]
    async with SessionLocal() as session:
        platform_session = await session.get(PlatformSession, session_id)
        connection = (await session.execute(select(OAuthConnection))).scalar_one()
    assert platform_session is not None
    assert connection.provider == "github"
    assert connection.access_token_encrypted != "gho_test_access"


@pytest.mark.asyncio
async def test_cli_signup_redirects_with_token() -> None:
    async with _client() as client:
        started = await client.post(
            "/api/v1/auth/oauth/signup",
            json={"provider": "github", "session_type": "cli", "callback_url": "http://localhost:9876/cb"},
        )
        state = started.json()["data"]["state"]
        response = await client.get(
            "/api/v1/auth/oauth/callback", params={"state": state, "code": "ok"}
        )
        query = parse_qs(urlsplit(response.headers["location"]).query)
        described = await client.get("/api/v1/auth/cli/session", headers=bearer(query["token"][0]))
    assert described.status_code == 200
