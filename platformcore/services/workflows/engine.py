from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from platformcore.domain.models import Workflow, WorkflowExecutionLog
from platformcore.services.outbox import Outbox


logger = logging.getLogger(__name__)

ERROR_HANDLING_POLICIES: tuple[str, ...] = ("rollback", "continue", "notify")


class BehaviorDefinition(BaseModel):
    id: str = Field(default_factory=lambda: f"bhv_{uuid4().hex[:12]}")
    type: str = Field(min_length=1)
    enabled: bool = True
    # Lower values run first; equal priorities keep their declaration order.
    priority: int = 0
    config: dict[str, Any] = Field(default_factory=dict)


class BehaviorResult(BaseModel):
    behavior_type: str
    behavior_id: str | None = None
    success: bool
    message: str | None = None
    error: str | None = None
    data: dict[str, Any] | None = None
    skipped: bool = False


@dataclass
class BehaviorContext:
    session: AsyncSession
    outbox: Outbox
    actor_id: str | None = None
    actor_type: str = "user"


@dataclass
class RuntimeContext:
    inputs: dict[str, Any] = field(default_factory=dict)
    # Outputs of earlier behaviors keyed by behavior type.
    behavior_data: dict[str, Any] = field(default_factory=dict)
    trigger: str | None = None
    workflow_id: str | None = None
    dry_run: bool = False


@dataclass(frozen=True)
class ChainOutcome:
    success: bool
    results: list[BehaviorResult]
    executed_count: int
    total_count: int


@dataclass(frozen=True)
class WorkflowExecution:
    workflow_id: str
    success: bool
    status: str
    message: str
    results: list[BehaviorResult]
    executed_count: int
    total_count: int
    execution_id: str | None
    dry_run: bool


BehaviorHandler = Callable[
    [BehaviorContext, str, dict[str, Any], RuntimeContext], Awaitable[BehaviorResult]
]


class BehaviorRegistry:
    def __init__(self) -> None:
        self._handlers: dict[str, BehaviorHandler] = {}

    def register(self, behavior_type: str, handler: BehaviorHandler) -> None:
        self._handlers[behavior_type] = handler

    def behavior(self, *behavior_types: str) -> Callable[[BehaviorHandler], BehaviorHandler]:
        def decorator(func: BehaviorHandler) -> BehaviorHandler:
            for behavior_type in behavior_types:
                self.register(behavior_type, func)
            return func

        return decorator

    def get(self, behavior_type: str) -> BehaviorHandler | None:
        return self._handlers.get(behavior_type)

    def types(self) -> list[str]:
        return sorted(self._handlers)


default_registry = BehaviorRegistry()


def is_dry_run(config: dict[str, Any], runtime: RuntimeContext) -> bool:
    return bool(runtime.dry_run or config.get("dry_run") or config.get("dryRun"))


def order_behaviors(behaviors: list[BehaviorDefinition]) -> list[BehaviorDefinition]:
    # Total, stable order: ascending priority, then declaration index.
    indexed = [(index, item) for index, item in enumerate(behaviors) if item.enabled]
    indexed.sort(key=lambda pair: (pair[1].priority, pair[0]))
    return [item for _index, item in indexed]


async def execute_behaviors(
    ctx: BehaviorContext,
    organization_id: str,
    behaviors: list[BehaviorDefinition],
    runtime: RuntimeContext,
    *,
    continue_on_error: bool,
    registry: BehaviorRegistry | None = None,
) -> ChainOutcome:
    resolved_registry = registry or default_registry
    ordered = order_behaviors(behaviors)
    results: list[BehaviorResult] = []
    executed = 0
    for definition in ordered:
        handler = resolved_registry.get(definition.type)
        if handler is None:
            result = BehaviorResult(
                behavior_type=definition.type,
                success=False,
                error=f"Unknown behavior type: {definition.type}",
            )
        else:
            try:
                result = await handler(ctx, organization_id, dict(definition.config), runtime)
            except Exception as exc:  # noqa: BLE001 - a raising behavior becomes its own failed result
                logger.exception(
                    "behavior_failed type=%s behavior_id=%s", definition.type, definition.id
                )
                result = BehaviorResult(behavior_type=definition.type, success=False, error=str(exc))
        result.behavior_id = definition.id
        results.append(result)
        if result.success:
            executed += 1
            if result.data is not None:
                runtime.behavior_data[definition.type] = result.data
        elif not continue_on_error:
            break
    return ChainOutcome(
        success=all(item.success for item in results),
        results=results,
        executed_count=executed,
        total_count=len(ordered),
    )


def parse_behaviors(raw: list[dict[str, Any]] | None) -> list[BehaviorDefinition]:
    return [BehaviorDefinition.model_validate(item) for item in raw or []]


async def execute_workflow(
    ctx: BehaviorContext,
    workflow: Workflow,
    runtime: RuntimeContext,
    *,
    registry: BehaviorRegistry | None = None,
) -> WorkflowExecution:
    """Run a workflow's behavior chain under its error-handling policy.

    ``rollback`` stops at the first failure and rolls back the session so no
    behavior write survives; ``notify`` runs everything and enqueues a failure
    notification. The caller commits and then publishes the outbox.
    """
    # Snapshot row fields up front; a rollback expires the ORM instance.
    workflow_id = workflow.id
    workflow_name = workflow.name
    organization_id = workflow.organization_id
    policy = workflow.error_handling if workflow.error_handling in ERROR_HANDLING_POLICIES else "continue"
    behaviors = parse_behaviors(workflow.behaviors)
    runtime.workflow_id = workflow_id

    outcome = await execute_behaviors(
        ctx,
        organization_id,
        behaviors,
        runtime,
        continue_on_error=policy != "rollback",
        registry=registry,
    )
    if outcome.success:
        status = "success"
        message = (
            f'Workflow "{workflow_name}" executed successfully. '
            f"{outcome.executed_count} of {outcome.total_count} behaviors completed."
        )
    else:
        status = "rolled_back" if policy == "rollback" else "completed_with_errors"
        message = (
            "Workflow execution completed with errors. "
            f"{outcome.executed_count} of {outcome.total_count} behaviors completed."
        )
        if policy == "rollback":
            await ctx.session.rollback()
            ctx.outbox.discard_pending()
            logger.info("workflow_rolled_back workflow_id=%s", workflow_id)

    execution_id: str | None = None
    if not runtime.dry_run:
        log_row = WorkflowExecutionLog(
            id=uuid4().hex,
            workflow_id=workflow_id,
            organization_id=organization_id,
            status=status,
            results=[item.model_dump() for item in outcome.results],
            executed_count=outcome.executed_count,
            total_count=outcome.total_count,
            triggered_by=ctx.actor_id,
            created_at=datetime.now(timezone.utc),
        )
        ctx.session.add(log_row)
        await ctx.session.flush()
        execution_id = log_row.id

    if not outcome.success and policy == "notify" and not runtime.dry_run:
        failed = [item.behavior_type for item in outcome.results if not item.success]
        await ctx.outbox.enqueue(
            "workflow.failure_notification",
            {
                "workflow_id": workflow_id,
                "organization_id": organization_id,
                "failed_behaviors": failed,
                "execution_log_id": execution_id,
            },
            idempotency_key=f"workflow.failure:{execution_id}",
        )

    logger.info(
        "workflow_executed workflow_id=%s status=%s executed=%s total=%s dry_run=%s",
        workflow_id,
        status,
        outcome.executed_count,
        outcome.total_count,
        runtime.dry_run,
    )
    return WorkflowExecution(
        workflow_id=workflow_id,
        success=outcome.success,
        status=status,
        message=message,
        results=outcome.results,
        executed_count=outcome.executed_count,
        total_count=outcome.total_count,
        execution_id=execution_id,
        dry_run=runtime.dry_run,
    )
