from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from platformcore.apps.api.deps import AuthContext, get_db, require_scopes
from platformcore.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from platformcore.apps.api.response import SuccessEnvelope, success_response
from platformcore.core.errors import NotFoundError
from platformcore.domain.models import Transaction


router = APIRouter(prefix="/transactions", tags=["transactions"], responses=DEFAULT_ERROR_RESPONSES)


class TransactionResponse(BaseModel):
    id: str
    organization_id: str
    workflow_id: str | None
    subtotal: int
    discount: int
    tax: int
    total: int
    currency: str
    line_items: list[dict[str, Any]]
    tax_breakdown: list[dict[str, Any]]
    created_at: datetime


@router.get("/{transaction_id}", response_model=SuccessEnvelope[TransactionResponse])
async def get_transaction(
    request: Request,
    transaction_id: str,
    auth: AuthContext = Depends(require_scopes("transactions:read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await db.get(Transaction, transaction_id)
    if row is None or row.organization_id != auth.organization_id:
        raise NotFoundError("Transaction not found")
    data = TransactionResponse(
        id=row.id,
        organization_id=row.organization_id,
        workflow_id=row.workflow_id,
        subtotal=row.subtotal,
        discount=row.discount,
        tax=row.tax,
        total=row.total,
        currency=row.currency,
        line_items=list(row.line_items or []),
        tax_breakdown=list(row.tax_breakdown or []),
        created_at=row.created_at,
    )
    return success_response(request=request, data=data)
