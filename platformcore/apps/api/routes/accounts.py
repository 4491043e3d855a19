from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from platformcore.apps.api.deps import get_db, require_cli_session
from platformcore.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from platformcore.apps.api.response import SuccessEnvelope, success_response
from platformcore.core.errors import InsufficientScope, NotFoundError
from platformcore.domain.credentials import SessionIdentity
from platformcore.domain.models import ApiKey, User
from platformcore.services.accounts import (
    create_organization,
    list_user_organizations,
    require_membership,
    sync_external_user,
)
from platformcore.services.audit import record_event
from platformcore.services.auth.api_keys import ApiKeyService, scopes_for_new_key
from platformcore.services.auth.roles import Role, scopes_for_role
from platformcore.services.auth.scopes import check_scopes


router = APIRouter(prefix="/auth/cli", tags=["accounts"], responses=DEFAULT_ERROR_RESPONSES)


class OrganizationResponse(BaseModel):
    id: str
    name: str
    slug: str
    role: str
    is_personal_workspace: bool


class OrganizationCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)


class ApiKeyCreateRequest(BaseModel):
    organization_id: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=200)
    scopes: list[str] | None = None


class ApiKeyResponse(BaseModel):
    id: str
    organization_id: str
    name: str
    key_prefix: str
    scopes: list[str]
    status: str
    created_at: datetime
    last_used_at: datetime | None
    revoked_at: datetime | None


class ApiKeyCreateResponse(ApiKeyResponse):
    # Only returned on creation.
    api_key: str


class ApiKeyRevokeResponse(BaseModel):
    id: str
    revoked: bool


class UserSyncRequest(BaseModel):
    organization_id: str = Field(min_length=1)
    email: str = Field(min_length=3, max_length=320)
    first_name: str | None = None
    last_name: str | None = None


class UserSyncResponse(BaseModel):
    user_id: str
    email: str
    organization_id: str
    added: bool


def _api_key_payload(row: ApiKey) -> ApiKeyResponse:
    return ApiKeyResponse(
        id=row.id,
        organization_id=row.organization_id,
        name=row.name,
        key_prefix=row.key_prefix,
        scopes=list(row.scopes or []),
        status=row.status,
        created_at=row.created_at,
        last_used_at=row.last_used_at,
        revoked_at=row.revoked_at,
    )


async def _require_role_scope(
    db: AsyncSession, identity: SessionIdentity, *, organization_id: str, scope: str
) -> Role:
    # CLI sessions act with the scopes of the member's role in the target organization.
    role = await require_membership(db, user_id=identity.user_id, organization_id=organization_id)
    check = check_scopes(scopes_for_role(role), [scope])
    if not check.allowed:
        raise InsufficientScope(check.missing_scopes)
    return role


@router.get("/organizations", response_model=SuccessEnvelope[list[OrganizationResponse]])
async def list_organizations(
    request: Request,
    identity: SessionIdentity = Depends(require_cli_session),
    db: AsyncSession = Depends(get_db),
) -> dict:
    memberships = await list_user_organizations(db, identity.user_id)
    data = [
        OrganizationResponse(
            id=item.organization.id,
            name=item.organization.name,
            slug=item.organization.slug,
            role=item.role.value,
            is_personal_workspace=item.organization.is_personal_workspace,
        )
        for item in memberships
    ]
    return success_response(request=request, data=data)


@router.post("/organizations", response_model=SuccessEnvelope[OrganizationResponse], status_code=201)
async def create_org(
    request: Request,
    payload: OrganizationCreateRequest,
    identity: SessionIdentity = Depends(require_cli_session),
    db: AsyncSession = Depends(get_db),
) -> dict:
    owner = await db.get(User, identity.user_id)
    if owner is None:
        raise NotFoundError("User not found")
    organization = await create_organization(db, name=payload.name, owner=owner)
    data = OrganizationResponse(
        id=organization.id,
        name=organization.name,
        slug=organization.slug,
        role="org_owner",
        is_personal_workspace=organization.is_personal_workspace,
    )
    await record_event(
        session=db,
        organization_id=organization.id,
        actor_type="user",
        actor_id=identity.user_id,
        event_type="organization.created",
        outcome="success",
        resource_type="organization",
        resource_id=organization.id,
        request=request,
    )
    await db.commit()
    return success_response(request=request, data=data)


@router.post("/api-keys", response_model=SuccessEnvelope[ApiKeyCreateResponse], status_code=201)
async def create_api_key(
    request: Request,
    payload: ApiKeyCreateRequest,
    identity: SessionIdentity = Depends(require_cli_session),
    db: AsyncSession = Depends(get_db),
) -> dict:
    role = await _require_role_scope(
        db, identity, organization_id=payload.organization_id, scope="integrations:write"
    )
    raw_key, row = await ApiKeyService(db).issue(
        organization_id=payload.organization_id,
        created_by=identity.user_id,
        name=payload.name,
        scopes=scopes_for_new_key(role, payload.scopes),
    )
    data = ApiKeyCreateResponse(**_api_key_payload(row).model_dump(), api_key=raw_key)
    await record_event(
        session=db,
        organization_id=payload.organization_id,
        actor_type="user",
        actor_id=identity.user_id,
        event_type="auth.api_key.created",
        outcome="success",
        resource_type="api_key",
        resource_id=row.id,
        request=request,
        metadata={"scopes": data.scopes},
    )
    await db.commit()
    return success_response(request=request, data=data)


@router.get("/api-keys", response_model=SuccessEnvelope[list[ApiKeyResponse]])
async def list_api_keys(
    request: Request,
    organization_id: str = Query(..., min_length=1),
    identity: SessionIdentity = Depends(require_cli_session),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _require_role_scope(db, identity, organization_id=organization_id, scope="integrations:read")
    rows = await ApiKeyService(db).list_for_organization(organization_id)
    return success_response(request=request, data=[_api_key_payload(row) for row in rows])


@router.delete("/api-keys/{key_id}", response_model=SuccessEnvelope[ApiKeyRevokeResponse])
async def revoke_api_key(
    request: Request,
    key_id: str,
    organization_id: str = Query(..., min_length=1),
    identity: SessionIdentity = Depends(require_cli_session),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _require_role_scope(db, identity, organization_id=organization_id, scope="integrations:write")
    revoked = await ApiKeyService(db).revoke(organization_id=organization_id, key_id=key_id)
    if not revoked:
        raise NotFoundError("API key not found")
    await record_event(
        session=db,
        organization_id=organization_id,
        actor_type="user",
        actor_id=identity.user_id,
        event_type="auth.api_key.revoked",
        outcome="success",
        resource_type="api_key",
        resource_id=key_id,
        request=request,
    )
    await db.commit()
    return success_response(request=request, data=ApiKeyRevokeResponse(id=key_id, revoked=True))


@router.post("/users/sync", response_model=SuccessEnvelope[UserSyncResponse])
async def sync_user(
    request: Request,
    payload: UserSyncRequest,
    identity: SessionIdentity = Depends(require_cli_session),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _require_role_scope(
        db, identity, organization_id=payload.organization_id, scope="users:write"
    )
    user, added = await sync_external_user(
        db,
        organization_id=payload.organization_id,
        email=payload.email,
        first_name=payload.first_name,
        last_name=payload.last_name,
        invited_by=identity.user_id,
    )
    data = UserSyncResponse(
        user_id=user.id,
        email=user.email,
        organization_id=payload.organization_id,
        added=added,
    )
    await db.commit()
    return success_response(request=request, data=data)
