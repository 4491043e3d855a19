from __future__ import annotations

from uuid import uuid4

from platformcore.domain.models import Organization, User
from platformcore.persistence.db import SessionLocal
from platformcore.services.accounts import add_member, create_organization, find_or_create_user
from platformcore.services.auth.api_keys import ApiKeyService
from platformcore.services.auth.roles import Role
from platformcore.services.auth.sessions import SessionService


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def create_member(
    *,
    role: Role = Role.OWNER,
    email: str | None = None,
    organization: Organization | None = None,
) -> tuple[User, Organization]:
    # Provision a user plus an organization they belong to with the requested role.
    email = email or f"user-{uuid4().hex[:8]}@example.com"
    async with SessionLocal() as session:
        user, _created = await find_or_create_user(
            session, email=email, first_name="Test", last_name="User"
        )
        if organization is None and role == Role.OWNER:
            organization = await create_organization(session, name=f"Org {uuid4().hex[:6]}", owner=user)
        else:
            if organization is None:
                owner, _ = await find_or_create_user(
                    session, email=f"owner-{uuid4().hex[:8]}@example.com"
                )
                organization = await create_organization(
                    session, name=f"Org {uuid4().hex[:6]}", owner=owner
                )
            await add_member(
                session,
                user_id=user.id,
                organization_id=organization.id,
                role=role,
                invited_by=None,
            )
        await session.commit()
    return user, organization


async def create_cli_token(*, user: User, organization: Organization) -> str:
    async with SessionLocal() as session:
        token, _row = await SessionService(session).create_cli_session(
            user_id=user.id, organization_id=organization.id, email=user.email
        )
        await session.commit()
    return token


async def create_platform_session_id(*, user: User, organization: Organization) -> str:
    async with SessionLocal() as session:
        row = await SessionService(session).create_platform_session(
            user_id=user.id, organization_id=organization.id, email=user.email
        )
        await session.commit()
    return row.id


async def create_api_key(
    *, organization: Organization, user: User, scopes: list[str] | None = None
) -> tuple[str, str]:
    async with SessionLocal() as session:
        raw_key, row = await ApiKeyService(session).issue(
            organization_id=organization.id,
            created_by=user.id,
            name="test-key",
            scopes=scopes,
        )
        await session.commit()
    return raw_key, row.id
