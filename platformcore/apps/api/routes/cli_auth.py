from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from platformcore.apps.api.deps import get_db, get_outbox, get_provider_factory, require_cli_session
from platformcore.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from platformcore.apps.api.response import SuccessEnvelope, success_response
from platformcore.core.errors import ValidationFailure
from platformcore.domain.credentials import SessionIdentity
from platformcore.services.accounts import list_user_organizations
from platformcore.services.auth.login import (
    LoginCompletion,
    ProviderFactory,
    append_query,
    complete_cli_login,
    initiate_cli_login,
)
from platformcore.services.auth.sessions import SessionService
from platformcore.services.outbox import Outbox


router = APIRouter(prefix="/auth/cli", tags=["cli-auth"], responses=DEFAULT_ERROR_RESPONSES)


class CliLoginRequest(BaseModel):
    callback_url: str = Field(min_length=1)
    provider: str | None = None


class CliLoginResponse(BaseModel):
    auth_url: str
    state: str
    provider: str | None


class CliCompleteRequest(BaseModel):
    state: str = Field(min_length=1)
    code: str = Field(min_length=1)
    provider: str | None = None


class UserSummary(BaseModel):
    id: str
    email: str
    first_name: str | None
    last_name: str | None


class OrganizationSummary(BaseModel):
    id: str
    name: str
    slug: str
    role: str | None = None


class CliCompleteResponse(BaseModel):
    token: str
    expires_at: datetime
    user: UserSummary
    organization: OrganizationSummary
    is_new_user: bool


class CliSessionResponse(BaseModel):
    user_id: str
    email: str
    organization_id: str
    organizations: list[OrganizationSummary]
    expires_at: datetime


class TokenRequest(BaseModel):
    token: str = Field(min_length=1)


class RefreshResponse(BaseModel):
    token: str
    expires_at: datetime


class RevokeResponse(BaseModel):
    revoked: bool


def _completion_payload(completion: LoginCompletion) -> CliCompleteResponse:
    return CliCompleteResponse(
        token=completion.credential,
        expires_at=completion.expires_at,
        user=UserSummary(
            id=completion.user.id,
            email=completion.user.email,
            first_name=completion.user.first_name,
            last_name=completion.user.last_name,
        ),
        organization=OrganizationSummary(
            id=completion.organization.id,
            name=completion.organization.name,
            slug=completion.organization.slug,
        ),
        is_new_user=completion.is_new_user,
    )


@router.post("/login", response_model=SuccessEnvelope[CliLoginResponse])
async def start_login(
    request: Request,
    payload: CliLoginRequest,
    db: AsyncSession = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
) -> dict:
    start = await initiate_cli_login(
        db,
        callback_url=payload.callback_url,
        provider=payload.provider,
        provider_factory=provider_factory,
    )
    await db.commit()
    return success_response(
        request=request,
        data=CliLoginResponse(auth_url=start.auth_url, state=start.state, provider=start.provider),
    )


@router.get("/callback", include_in_schema=False)
async def login_callback(
    state: str = Query(default=""),
    code: str = Query(default=""),
    provider: str | None = Query(default=None),
    error: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    outbox: Outbox = Depends(get_outbox),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
) -> RedirectResponse:
    if error:
        raise ValidationFailure(f"Authorization was not granted: {error}", field_errors={"code": error})
    completion = await complete_cli_login(
        db,
        outbox,
        state=state,
        code=code,
        provider=provider,
        provider_factory=provider_factory,
    )
    await db.commit()
    await outbox.publish_pending()
    return RedirectResponse(
        url=append_query(completion.callback_url, token=completion.credential),
        status_code=302,
    )


@router.post("/complete", response_model=SuccessEnvelope[CliCompleteResponse])
async def complete_login(
    request: Request,
    payload: CliCompleteRequest,
    db: AsyncSession = Depends(get_db),
    outbox: Outbox = Depends(get_outbox),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
) -> dict:
    completion = await complete_cli_login(
        db,
        outbox,
        state=payload.state,
        code=payload.code,
        provider=payload.provider,
        provider_factory=provider_factory,
    )
    await db.commit()
    await outbox.publish_pending()
    return success_response(request=request, data=_completion_payload(completion))


@router.get("/session", response_model=SuccessEnvelope[CliSessionResponse])
async def describe_session(
    request: Request,
    identity: SessionIdentity = Depends(require_cli_session),
    db: AsyncSession = Depends(get_db),
) -> dict:
    memberships = await list_user_organizations(db, identity.user_id)
    data = CliSessionResponse(
        user_id=identity.user_id,
        email=identity.email,
        organization_id=identity.organization_id,
        organizations=[
            OrganizationSummary(
                id=item.organization.id,
                name=item.organization.name,
                slug=item.organization.slug,
                role=item.role.value,
            )
            for item in memberships
        ],
        expires_at=identity.expires_at,
    )
    return success_response(request=request, data=data)


@router.post("/refresh", response_model=SuccessEnvelope[RefreshResponse])
async def refresh_session(
    request: Request,
    payload: TokenRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    token, expires_at = await SessionService(db).rotate(payload.token)
    await db.commit()
    return success_response(request=request, data=RefreshResponse(token=token, expires_at=expires_at))


@router.post("/revoke", response_model=SuccessEnvelope[RevokeResponse])
async def revoke_session(
    request: Request,
    payload: TokenRequest,
    db: AsyncSession = Depends(get_db),
) -> dict:
    revoked = await SessionService(db).revoke(payload.token)
    await db.commit()
    return success_response(request=request, data=RevokeResponse(revoked=revoked))
