from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from platformcore.apps.api.main import create_app
from platformcore.domain.models import AuditEvent, CliSession
from platformcore.persistence.db import SessionLocal
from platformcore.services.auth.roles import Role
from platformcore.tests.utils.auth import (
    bearer,
    create_api_key,
    create_cli_token,
    create_member,
    create_platform_session_id,
)


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_health_is_enveloped_and_echoes_request_id() -> None:
    async with _client() as client:
        response = await client.get("/api/v1/health", headers={"X-Request-Id": "req-123"})
    assert response.status_code == 200
    assert response.headers["X-Request-Id"] == "req-123"
    assert response.json() == {
        "data": {"status": "ok"},
        "meta": {"request_id": "req-123", "api_version": "v1"},
    }


@pytest.mark.asyncio
async def test_missing_token_is_rejected_with_bearer_challenge() -> None:
    async with _client() as client:
        response = await client.get("/api/v1/workflows")
    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"
    body = response.json()
    assert body["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert body["meta"]["api_version"] == "v1"
    async with SessionLocal() as session:
        events = (await session.execute(select(AuditEvent))).scalars().all()
    assert [(event.event_type, event.error_code) for event in events] == [
        ("auth.access.failure", "AUTH_UNAUTHORIZED")
    ]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "token",
    ["sk_live_unknown", "cli_session_unknown", "ps_unknown", "not-a-known-shape"],
)
async def test_unknown_credentials_share_one_message(token: str) -> None:
    async with _client() as client:
        response = await client.get("/api/v1/workflows", headers=bearer(token))
    assert response.status_code == 401
    assert response.json()["error"]["message"] == "Invalid or expired credential"


@pytest.mark.asyncio
async def test_api_key_without_write_scope_is_forbidden() -> None:
    user, organization = await create_member()
    raw_key, _key_id = await create_api_key(
        organization=organization, user=user, scopes=["workflows:read"]
    )
    async with _client() as client:
        listed = await client.get("/api/v1/workflows", headers=bearer(raw_key))
        created = await client.post(
            "/api/v1/workflows",
            headers=bearer(raw_key),
            json={"name": "Checkout", "trigger_on": "order.created"},
        )
    assert listed.status_code == 200
    assert listed.json()["data"] == []
    assert created.status_code == 403
    error = created.json()["error"]
    assert error["code"] == "AUTH_INSUFFICIENT_SCOPE"
    assert error["details"] == {"missing_scopes": ["workflows:write"]}


@pytest.mark.asyncio
async def test_cli_session_scopes_follow_member_role() -> None:
    viewer, organization = await create_member(role=Role.VIEWER)
    token = await create_cli_token(user=viewer, organization=organization)
    async with _client() as client:
        listed = await client.get("/api/v1/workflows", headers=bearer(token))
        created = await client.post(
            "/api/v1/workflows",
            headers=bearer(token),
            json={"name": "Checkout", "trigger_on": "order.created"},
        )
    assert listed.status_code == 200
    assert created.status_code == 403


@pytest.mark.asyncio
async def test_platform_session_has_full_access_in_its_organization() -> None:
    viewer, organization = await create_member(role=Role.VIEWER)
    session_id = await create_platform_session_id(user=viewer, organization=organization)
    async with _client() as client:
        created = await client.post(
            "/api/v1/workflows",
            headers=bearer(session_id),
            json={"name": "Checkout", "trigger_on": "order.created"},
        )
    assert created.status_code == 201


@pytest.mark.asyncio
async def test_preflight_answers_without_auth() -> None:
    async with _client() as client:
        response = await client.options(
            "/api/v1/workflows",
            headers={"Origin": "http://localhost:3000", "Access-Control-Request-Method": "POST"},
        )
    assert response.status_code == 204
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert "POST" in response.headers["Access-Control-Allow-Methods"]
    assert "Authorization" in response.headers["Access-Control-Allow-Headers"]


@pytest.mark.asyncio
async def test_request_validation_uses_error_envelope() -> None:
    async with _client() as client:
        response = await client.post("/api/v1/auth/cli/login", json={})
    assert response.status_code == 400
    body = response.json()
    assert body["error"]["code"] == "VALIDATION_ERROR"
    assert "callback_url" in body["error"]["details"]["fields"]


@pytest.mark.asyncio
async def test_short_legacy_cli_token_authenticates_requests() -> None:
    user, organization = await create_member()
    legacy_token = f"cli_session_{uuid4().hex}"
    async with SessionLocal() as session:
        session.add(
            CliSession(
                id=uuid4().hex,
                user_id=user.id,
                organization_id=organization.id,
                email=user.email,
                cli_token=legacy_token,
                created_at=datetime.now(timezone.utc),
                expires_at=datetime.now(timezone.utc) + timedelta(days=1),
            )
        )
        await session.commit()

    async with _client() as client:
        listed = await client.get("/api/v1/workflows", headers=bearer(legacy_token))
        described = await client.get("/api/v1/auth/cli/session", headers=bearer(legacy_token))
    assert listed.status_code == 200
    assert described.status_code == 200
    assert described.json()["data"]["user_id"] == user.id
