from __future__ import annotations

import logging
from typing import Literal

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from platformcore.apps.api.deps import get_db, get_outbox, get_provider_factory
from platformcore.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from platformcore.apps.api.response import SuccessEnvelope, success_response
from platformcore.core.errors import ValidationFailure
from platformcore.services.auth.login import (
    ProviderFactory,
    append_query,
    complete_oauth_signup,
    save_oauth_connection,
    start_oauth_signup,
)
from platformcore.services.outbox import Outbox


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth/oauth", tags=["oauth-signup"], responses=DEFAULT_ERROR_RESPONSES)


class SignupRequest(BaseModel):
    provider: str = Field(min_length=1)
    session_type: Literal["cli", "platform"] = "platform"
    callback_url: str = Field(min_length=1)
    organization_name: str | None = Field(default=None, max_length=200)


class SignupResponse(BaseModel):
    auth_url: str
    state: str
    provider: str | None


@router.post("/signup", response_model=SuccessEnvelope[SignupResponse])
async def signup(
    request: Request,
    payload: SignupRequest,
    db: AsyncSession = Depends(get_db),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
) -> dict:
    start = await start_oauth_signup(
        db,
        provider=payload.provider,
        session_type=payload.session_type,
        callback_url=payload.callback_url,
        organization_name=payload.organization_name,
        provider_factory=provider_factory,
    )
    await db.commit()
    return success_response(
        request=request,
        data=SignupResponse(auth_url=start.auth_url, state=start.state, provider=start.provider),
    )


@router.get("/callback", include_in_schema=False)
async def signup_callback(
    state: str = Query(default=""),
    code: str = Query(default=""),
    error: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    outbox: Outbox = Depends(get_outbox),
    provider_factory: ProviderFactory = Depends(get_provider_factory),
) -> RedirectResponse:
    if error:
        raise ValidationFailure(f"Authorization was not granted: {error}", field_errors={"code": error})
    completion = await complete_oauth_signup(
        db,
        outbox,
        state=state,
        code=code,
        provider_factory=provider_factory,
    )
    await db.commit()
    await outbox.publish_pending()

    if completion.session_type == "platform":
        await save_oauth_connection(completion)
        target = append_query(
            completion.callback_url,
            session_id=completion.credential,
            new_user=str(completion.is_new_user).lower(),
        )
    else:
        target = append_query(
            completion.callback_url,
            token=completion.credential,
            new_user=str(completion.is_new_user).lower(),
        )
    logger.info(
        "oauth_signup_redirect provider=%s session_type=%s new_user=%s",
        completion.provider,
        completion.session_type,
        completion.is_new_user,
    )
    return RedirectResponse(url=target, status_code=302)
