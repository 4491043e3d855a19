from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from platformcore.apps.api.deps import AuthContext, get_db, get_outbox, require_scopes
from platformcore.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from platformcore.apps.api.response import SuccessEnvelope, success_response
from platformcore.core.errors import NotFoundError, ValidationFailure
from platformcore.domain.models import Workflow
from platformcore.services.audit import record_event
from platformcore.services.outbox import Outbox
from platformcore.services.workflows import (
    BehaviorContext,
    BehaviorDefinition,
    BehaviorResult,
    RuntimeContext,
    WorkflowExecution,
    default_registry,
    execute_workflow,
)


router = APIRouter(prefix="/workflows", tags=["workflows"], responses=DEFAULT_ERROR_RESPONSES)


class WorkflowCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    trigger_on: str = Field(min_length=1, max_length=100)
    error_handling: Literal["rollback", "continue", "notify"] = "continue"
    status: Literal["active", "inactive"] = "active"
    behaviors: list[BehaviorDefinition] = Field(default_factory=list)


class WorkflowResponse(BaseModel):
    id: str
    organization_id: str
    name: str
    status: str
    trigger_on: str
    error_handling: str
    behaviors: list[dict[str, Any]]
    created_at: datetime
    updated_at: datetime


class WorkflowUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=200)
    trigger_on: str | None = Field(default=None, min_length=1, max_length=100)
    error_handling: Literal["rollback", "continue", "notify"] | None = None
    status: Literal["active", "inactive"] | None = None
    behaviors: list[BehaviorDefinition] | None = None


class BehaviorAddRequest(BaseModel):
    type: str = Field(min_length=1)
    enabled: bool = True
    priority: int = 0
    config: dict[str, Any] = Field(default_factory=dict)


class BehaviorAddResponse(BaseModel):
    workflow: WorkflowResponse
    behavior_id: str


class WorkflowDeleteResponse(BaseModel):
    id: str
    deleted: bool
    status: str | None


class ExecuteRequest(BaseModel):
    inputs: dict[str, Any] = Field(default_factory=dict)
    dry_run: bool = False


class TriggerRequest(ExecuteRequest):
    trigger_on: str = Field(min_length=1, max_length=100)


class ExecutionResponse(BaseModel):
    workflow_id: str
    success: bool
    status: str
    message: str
    results: list[BehaviorResult]
    executed_count: int
    total_count: int
    execution_id: str | None
    dry_run: bool


class TriggerResponse(BaseModel):
    trigger_on: str
    executions: list[ExecutionResponse]


def _workflow_payload(row: Workflow) -> WorkflowResponse:
    return WorkflowResponse(
        id=row.id,
        organization_id=row.organization_id,
        name=row.name,
        status=row.status,
        trigger_on=row.trigger_on,
        error_handling=row.error_handling,
        behaviors=list(row.behaviors or []),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _execution_payload(execution: WorkflowExecution) -> ExecutionResponse:
    return ExecutionResponse(
        workflow_id=execution.workflow_id,
        success=execution.success,
        status=execution.status,
        message=execution.message,
        results=execution.results,
        executed_count=execution.executed_count,
        total_count=execution.total_count,
        execution_id=execution.execution_id,
        dry_run=execution.dry_run,
    )


async def _load_workflow(db: AsyncSession, *, workflow_id: str, organization_id: str) -> Workflow:
    # Workflows of other organizations are reported exactly like missing ones.
    row = await db.get(Workflow, workflow_id)
    if row is None or row.organization_id != organization_id:
        raise NotFoundError("Workflow not found")
    return row


def _require_known_types(behaviors: list[BehaviorDefinition]) -> None:
    unknown = sorted({item.type for item in behaviors if default_registry.get(item.type) is None})
    if unknown:
        raise ValidationFailure(
            f"Unknown behavior types: {', '.join(unknown)}",
            field_errors={"behaviors": f"unknown types: {', '.join(unknown)}"},
        )


async def _audit_change(
    request: Request,
    db: AsyncSession,
    auth: AuthContext,
    *,
    workflow_id: str,
    event_type: str,
    metadata: dict[str, Any],
) -> None:
    await record_event(
        session=db,
        organization_id=auth.organization_id,
        actor_type="api_key" if auth.auth_method == "api_key" else "user",
        actor_id=auth.user_id,
        event_type=event_type,
        outcome="success",
        resource_type="workflow",
        resource_id=workflow_id,
        request=request,
        metadata=metadata,
    )


async def _set_status(
    request: Request,
    db: AsyncSession,
    auth: AuthContext,
    *,
    workflow_id: str,
    status: str,
    event_type: str,
) -> WorkflowResponse:
    row = await _load_workflow(db, workflow_id=workflow_id, organization_id=auth.organization_id)
    previous = row.status
    row.status = status
    row.updated_at = datetime.now(timezone.utc)
    await _audit_change(
        request,
        db,
        auth,
        workflow_id=row.id,
        event_type=event_type,
        metadata={"previous_status": previous},
    )
    await db.flush()
    data = _workflow_payload(row)
    await db.commit()
    return data


async def _run(
    request: Request,
    db: AsyncSession,
    outbox: Outbox,
    auth: AuthContext,
    workflow: Workflow,
    runtime: RuntimeContext,
) -> WorkflowExecution:
    ctx = BehaviorContext(
        session=db,
        outbox=outbox,
        actor_id=auth.user_id,
        actor_type="api_key" if auth.auth_method == "api_key" else "user",
    )
    execution = await execute_workflow(ctx, workflow, runtime, registry=default_registry)
    if not execution.dry_run:
        await record_event(
            session=db,
            organization_id=auth.organization_id,
            actor_type=ctx.actor_type,
            actor_id=auth.user_id,
            event_type="workflow.executed",
            outcome="success" if execution.success else "failure",
            resource_type="workflow",
            resource_id=execution.workflow_id,
            request=request,
            metadata={"status": execution.status, "execution_id": execution.execution_id},
        )
    await db.commit()
    await outbox.publish_pending()
    return execution


@router.get("", response_model=SuccessEnvelope[list[WorkflowResponse]])
async def list_workflows(
    request: Request,
    auth: AuthContext = Depends(require_scopes("workflows:read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = (
        await db.execute(
            select(Workflow)
            .where(Workflow.organization_id == auth.organization_id)
            .order_by(Workflow.created_at.desc())
        )
    ).scalars().all()
    return success_response(request=request, data=[_workflow_payload(row) for row in rows])


@router.post("", response_model=SuccessEnvelope[WorkflowResponse], status_code=201)
async def create_workflow(
    request: Request,
    payload: WorkflowCreateRequest,
    auth: AuthContext = Depends(require_scopes("workflows:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    _require_known_types(payload.behaviors)
    now = datetime.now(timezone.utc)
    row = Workflow(
        id=uuid4().hex,
        organization_id=auth.organization_id,
        name=payload.name.strip(),
        status=payload.status,
        trigger_on=payload.trigger_on.strip(),
        error_handling=payload.error_handling,
        behaviors=[item.model_dump() for item in payload.behaviors],
        created_by=auth.user_id,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    await db.flush()
    data = _workflow_payload(row)
    await db.commit()
    return success_response(request=request, data=data)


@router.post("/trigger", response_model=SuccessEnvelope[TriggerResponse])
async def trigger_workflows(
    request: Request,
    payload: TriggerRequest,
    auth: AuthContext = Depends(require_scopes("workflows:write")),
    db: AsyncSession = Depends(get_db),
    outbox: Outbox = Depends(get_outbox),
) -> dict:
    workflow_ids = (
        await db.execute(
            select(Workflow.id)
            .where(
                Workflow.organization_id == auth.organization_id,
                Workflow.trigger_on == payload.trigger_on,
                Workflow.status == "active",
            )
            .order_by(Workflow.created_at)
        )
    ).scalars().all()
    executions: list[ExecutionResponse] = []
    for workflow_id in workflow_ids:
        # Reload per run; an earlier rollback expires previously loaded rows.
        workflow = await db.get(Workflow, workflow_id)
        if workflow is None:
            continue
        runtime = RuntimeContext(
            inputs=dict(payload.inputs),
            trigger=payload.trigger_on,
            dry_run=payload.dry_run,
        )
        execution = await _run(request, db, outbox, auth, workflow, runtime)
        executions.append(_execution_payload(execution))
    return success_response(
        request=request,
        data=TriggerResponse(trigger_on=payload.trigger_on, executions=executions),
    )


@router.get("/{workflow_id}", response_model=SuccessEnvelope[WorkflowResponse])
async def get_workflow(
    request: Request,
    workflow_id: str,
    auth: AuthContext = Depends(require_scopes("workflows:read")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await _load_workflow(db, workflow_id=workflow_id, organization_id=auth.organization_id)
    return success_response(request=request, data=_workflow_payload(row))


@router.post("/{workflow_id}/execute", response_model=SuccessEnvelope[ExecutionResponse])
async def execute(
    request: Request,
    workflow_id: str,
    payload: ExecuteRequest,
    auth: AuthContext = Depends(require_scopes("workflows:write")),
    db: AsyncSession = Depends(get_db),
    outbox: Outbox = Depends(get_outbox),
) -> dict:
    workflow = await _load_workflow(db, workflow_id=workflow_id, organization_id=auth.organization_id)
    if workflow.status != "active":
        raise ValidationFailure("Workflow is not active", field_errors={"status": workflow.status})
    runtime = RuntimeContext(
        inputs=dict(payload.inputs),
        trigger="manual",
        dry_run=payload.dry_run,
    )
    execution = await _run(request, db, outbox, auth, workflow, runtime)
    return success_response(request=request, data=_execution_payload(execution))


@router.patch("/{workflow_id}", response_model=SuccessEnvelope[WorkflowResponse])
async def update_workflow(
    request: Request,
    workflow_id: str,
    payload: WorkflowUpdateRequest,
    auth: AuthContext = Depends(require_scopes("workflows:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await _load_workflow(db, workflow_id=workflow_id, organization_id=auth.organization_id)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    if payload.behaviors is not None:
        _require_known_types(payload.behaviors)
        row.behaviors = [item.model_dump() for item in payload.behaviors]
    if payload.name is not None:
        row.name = payload.name.strip()
    if payload.trigger_on is not None:
        row.trigger_on = payload.trigger_on.strip()
    if payload.error_handling is not None:
        row.error_handling = payload.error_handling
    if payload.status is not None:
        row.status = payload.status
    row.updated_at = datetime.now(timezone.utc)
    await _audit_change(
        request,
        db,
        auth,
        workflow_id=row.id,
        event_type="workflow.updated",
        metadata={"fields": sorted(changes)},
    )
    await db.flush()
    data = _workflow_payload(row)
    await db.commit()
    return success_response(request=request, data=data)


@router.delete("/{workflow_id}", response_model=SuccessEnvelope[WorkflowDeleteResponse])
async def delete_workflow(
    request: Request,
    workflow_id: str,
    hard: bool = Query(default=False),
    auth: AuthContext = Depends(require_scopes("workflows:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await _load_workflow(db, workflow_id=workflow_id, organization_id=auth.organization_id)
    # Execution logs and transactions keep the bare workflow id either way.
    if hard:
        await _audit_change(
            request,
            db,
            auth,
            workflow_id=row.id,
            event_type="workflow.deleted",
            metadata={"name": row.name},
        )
        await db.delete(row)
        data = WorkflowDeleteResponse(id=workflow_id, deleted=True, status=None)
    else:
        row.status = "archived"
        row.updated_at = datetime.now(timezone.utc)
        await _audit_change(
            request,
            db,
            auth,
            workflow_id=row.id,
            event_type="workflow.archived",
            metadata={"name": row.name},
        )
        data = WorkflowDeleteResponse(id=workflow_id, deleted=False, status=row.status)
    await db.commit()
    return success_response(request=request, data=data)


@router.post("/{workflow_id}/activate", response_model=SuccessEnvelope[WorkflowResponse])
async def activate_workflow(
    request: Request,
    workflow_id: str,
    auth: AuthContext = Depends(require_scopes("workflows:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    data = await _set_status(
        request, db, auth, workflow_id=workflow_id, status="active", event_type="workflow.activated"
    )
    return success_response(request=request, data=data)


@router.post("/{workflow_id}/deactivate", response_model=SuccessEnvelope[WorkflowResponse])
async def deactivate_workflow(
    request: Request,
    workflow_id: str,
    auth: AuthContext = Depends(require_scopes("workflows:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    data = await _set_status(
        request, db, auth, workflow_id=workflow_id, status="inactive", event_type="workflow.deactivated"
    )
    return success_response(request=request, data=data)


@router.post(
    "/{workflow_id}/behaviors",
    response_model=SuccessEnvelope[BehaviorAddResponse],
    status_code=201,
)
async def add_behavior(
    request: Request,
    workflow_id: str,
    payload: BehaviorAddRequest,
    auth: AuthContext = Depends(require_scopes("workflows:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await _load_workflow(db, workflow_id=workflow_id, organization_id=auth.organization_id)
    behavior = BehaviorDefinition(
        type=payload.type,
        enabled=payload.enabled,
        priority=payload.priority,
        config=payload.config,
    )
    _require_known_types([behavior])
    row.behaviors = [*(row.behaviors or []), behavior.model_dump()]
    row.updated_at = datetime.now(timezone.utc)
    await _audit_change(
        request,
        db,
        auth,
        workflow_id=row.id,
        event_type="workflow.behavior_added",
        metadata={"behavior_id": behavior.id, "behavior_type": behavior.type},
    )
    await db.flush()
    data = BehaviorAddResponse(workflow=_workflow_payload(row), behavior_id=behavior.id)
    await db.commit()
    return success_response(request=request, data=data)


@router.delete(
    "/{workflow_id}/behaviors/{behavior_id}",
    response_model=SuccessEnvelope[WorkflowResponse],
)
async def remove_behavior(
    request: Request,
    workflow_id: str,
    behavior_id: str,
    auth: AuthContext = Depends(require_scopes("workflows:write")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    row = await _load_workflow(db, workflow_id=workflow_id, organization_id=auth.organization_id)
    behaviors = list(row.behaviors or [])
    removed = next((item for item in behaviors if item.get("id") == behavior_id), None)
    if removed is None:
        raise NotFoundError("Behavior not found in workflow")
    row.behaviors = [item for item in behaviors if item.get("id") != behavior_id]
    row.updated_at = datetime.now(timezone.utc)
    await _audit_change(
        request,
        db,
        auth,
        workflow_id=row.id,
        event_type="workflow.behavior_removed",
        metadata={"behavior_id": behavior_id, "behavior_type": removed.get("type")},
    )
    await db.flush()
    data = _workflow_payload(row)
    await db.commit()
    return success_response(request=request, data=data)
