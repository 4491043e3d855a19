from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from platformcore.apps.api.main import create_app
from platformcore.domain.models import AuditEvent
from platformcore.persistence.db import SessionLocal
from platformcore.services.auth.roles import Role, scopes_for_role
from platformcore.tests.utils.auth import bearer, create_cli_token, create_member


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_create_and_list_organizations() -> None:
    user, organization = await create_member()
    token = await create_cli_token(user=user, organization=organization)
    async with _client() as client:
        created = await client.post(
            "/api/v1/auth/cli/organizations", headers=bearer(token), json={"name": "Side Project"}
        )
        listed = await client.get("/api/v1/auth/cli/organizations", headers=bearer(token))

    assert created.status_code == 201
    assert created.json()["data"]["slug"] == "side-project"
    assert created.json()["data"]["role"] == "org_owner"
    assert [item["id"] for item in listed.json()["data"]] == [
        organization.id,
        created.json()["data"]["id"],
    ]


@pytest.mark.asyncio
async def test_api_key_lifecycle() -> None:
    user, organization = await create_member()
    token = await create_cli_token(user=user, organization=organization)
    async with _client() as client:
        created = await client.post(
            "/api/v1/auth/cli/api-keys",
            headers=bearer(token),
            json={"organization_id": organization.id, "name": "ci", "scopes": ["workflows:read"]},
        )
        assert created.status_code == 201
        key = created.json()["data"]
        assert key["api_key"].startswith("sk_live_")
        assert key["scopes"] == ["workflows:read"]

        usable = await client.get("/api/v1/workflows", headers=bearer(key["api_key"]))
        assert usable.status_code == 200

        listed = await client.get(
            "/api/v1/auth/cli/api-keys",
            headers=bearer(token),
            params={"organization_id": organization.id},
        )
        assert [item["id"] for item in listed.json()["data"]] == [key["id"]]
        assert "api_key" not in listed.json()["data"][0]

        revoked = await client.delete(
            f"/api/v1/auth/cli/api-keys/{key['id']}",
            headers=bearer(token),
            params={"organization_id": organization.id},
        )
        assert revoked.json()["data"] == {"id": key["id"], "revoked": True}

        rejected = await client.get("/api/v1/workflows", headers=bearer(key["api_key"]))
        assert rejected.status_code == 401

    async with SessionLocal() as session:
        event_types = (await session.execute(select(AuditEvent.event_type))).scalars().all()
    assert "auth.api_key.created" in event_types
    assert "auth.api_key.revoked" in event_types


@pytest.mark.asyncio
async def test_api_keys_of_other_organizations_are_not_found() -> None:
    owner, organization = await create_member()
    other_owner, other_organization = await create_member()
    owner_token = await create_cli_token(user=owner, organization=organization)
    other_token = await create_cli_token(user=other_owner, organization=other_organization)
    async with _client() as client:
        created = await client.post(
            "/api/v1/auth/cli/api-keys",
            headers=bearer(other_token),
            json={"organization_id": other_organization.id, "name": "theirs"},
        )
        key_id = created.json()["data"]["id"]

        cross = await client.delete(
            f"/api/v1/auth/cli/api-keys/{key_id}",
            headers=bearer(owner_token),
            params={"organization_id": organization.id},
        )
        foreign = await client.get(
            "/api/v1/auth/cli/api-keys",
            headers=bearer(owner_token),
            params={"organization_id": other_organization.id},
        )

    assert cross.status_code == 404
    assert cross.json()["error"]["code"] == "NOT_FOUND"
    assert foreign.status_code == 403
    assert foreign.json()["error"]["code"] == "AUTH_FORBIDDEN"


@pytest.mark.asyncio
async def test_user_sync_requires_user_management_scope() -> None:
    admin, organization = await create_member()
    viewer, _ = await create_member(role=Role.VIEWER, organization=organization)
    admin_token = await create_cli_token(user=admin, organization=organization)
    viewer_token = await create_cli_token(user=viewer, organization=organization)
    payload = {"organization_id": organization.id, "email": "Partner@Example.com", "first_name": "Pat"}
    async with _client() as client:
        denied = await client.post("/api/v1/auth/cli/users/sync", headers=bearer(viewer_token), json=payload)
        synced = await client.post("/api/v1/auth/cli/users/sync", headers=bearer(admin_token), json=payload)
        repeated = await client.post("/api/v1/auth/cli/users/sync", headers=bearer(admin_token), json=payload)

    assert denied.status_code == 403
    assert denied.json()["error"]["details"] == {"missing_scopes": ["users:write"]}
    assert synced.status_code == 200
    assert synced.json()["data"]["email"] == "partner@example.com"
    assert synced.json()["data"]["added"] is True
    assert repeated.json()["data"]["added"] is False


@pytest.mark.asyncio
async def test_members_without_integration_rights_cannot_manage_keys() -> None:
    owner, organization = await create_member()
    viewer, _ = await create_member(role=Role.VIEWER, organization=organization)
    owner_token = await create_cli_token(user=owner, organization=organization)
    viewer_token = await create_cli_token(user=viewer, organization=organization)
    async with _client() as client:
        minted = await client.post(
            "/api/v1/auth/cli/api-keys",
            headers=bearer(viewer_token),
            json={"organization_id": organization.id, "name": "sneaky"},
        )
        existing = await client.post(
            "/api/v1/auth/cli/api-keys",
            headers=bearer(owner_token),
            json={"organization_id": organization.id, "name": "ci"},
        )
        revoked = await client.delete(
            f"/api/v1/auth/cli/api-keys/{existing.json()['data']['id']}",
            headers=bearer(viewer_token),
            params={"organization_id": organization.id},
        )
        listed = await client.get(
            "/api/v1/auth/cli/api-keys",
            headers=bearer(owner_token),
            params={"organization_id": organization.id},
        )

    assert minted.status_code == 403
    assert minted.json()["error"]["details"] == {"missing_scopes": ["integrations:write"]}
    assert existing.json()["data"]["scopes"] == ["*"]
    assert revoked.status_code == 403
    assert [item["status"] for item in listed.json()["data"]] == ["active"]


@pytest.mark.asyncio
async def test_admin_keys_are_capped_to_the_admin_role() -> None:
    admin, organization = await create_member(role=Role.ADMIN)
    token = await create_cli_token(user=admin, organization=organization)
    async with _client() as client:
        defaulted = await client.post(
            "/api/v1/auth/cli/api-keys",
            headers=bearer(token),
            json={"organization_id": organization.id, "name": "ci"},
        )
        escalated = await client.post(
            "/api/v1/auth/cli/api-keys",
            headers=bearer(token),
            json={"organization_id": organization.id, "name": "root", "scopes": ["*"]},
        )

    assert defaulted.status_code == 201
    assert defaulted.json()["data"]["scopes"] == scopes_for_role(Role.ADMIN)
    assert escalated.status_code == 403
    assert escalated.json()["error"]["details"] == {"missing_scopes": ["*"]}
