from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import select

from platformcore.domain.models import CrmContact
from platformcore.services.accounts import normalize_email
from platformcore.services.workflows.engine import (
    BehaviorContext,
    BehaviorResult,
    RuntimeContext,
    default_registry,
    is_dry_run,
)


logger = logging.getLogger(__name__)

BEHAVIOR_TYPE = "crm_sync"
_PROFILE_FIELDS = ("first_name", "last_name", "company")


@default_registry.behavior(BEHAVIOR_TYPE)
async def sync_contact(
    ctx: BehaviorContext,
    organization_id: str,
    config: dict[str, Any],
    runtime: RuntimeContext,
) -> BehaviorResult:
    customer = runtime.inputs.get("customer") or config.get("customer")
    if not isinstance(customer, dict) or not normalize_email(customer.get("email") or ""):
        return BehaviorResult(
            behavior_type=BEHAVIOR_TYPE,
            success=False,
            error="Customer email is required for CRM sync",
            data={"code": "missing_customer"},
        )
    email = normalize_email(customer["email"])
    contact = (
        await ctx.session.execute(
            select(CrmContact).where(
                CrmContact.organization_id == organization_id,
                CrmContact.email == email,
            )
        )
    ).scalar_one_or_none()
    action = "update" if contact is not None else "create"

    if is_dry_run(config, runtime):
        logger.info("crm_sync (dry run) organization_id=%s action=%s", organization_id, action)
        return BehaviorResult(
            behavior_type=BEHAVIOR_TYPE,
            success=True,
            message=f"Would {action} contact (dry run)",
            data={
                "action": action,
                "contact_id": contact.id if contact is not None else None,
                "dry_run": True,
            },
        )

    if contact is None:
        contact = CrmContact(
            id=uuid4().hex,
            organization_id=organization_id,
            email=email,
            source=str(config.get("source") or "workflow"),
        )
        ctx.session.add(contact)
    # Only non-empty inputs overwrite stored profile fields.
    for field_name in _PROFILE_FIELDS:
        value = customer.get(field_name)
        if value:
            setattr(contact, field_name, str(value).strip())
    await ctx.session.flush()

    if action == "create":
        await ctx.outbox.enqueue(
            "crm.contact_created",
            {
                "organization_id": organization_id,
                "contact_id": contact.id,
                "source": contact.source,
                "workflow_id": runtime.workflow_id,
            },
            idempotency_key=f"crm.contact_created:{contact.id}",
        )
    logger.info(
        "crm_contact_synced organization_id=%s contact_id=%s action=%s",
        organization_id,
        contact.id,
        action,
    )
    return BehaviorResult(
        behavior_type=BEHAVIOR_TYPE,
        success=True,
        message=f"Contact {action}d",
        data={"action": action, "contact_id": contact.id, "dry_run": False},
    )
