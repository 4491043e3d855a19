from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import select

from platformcore.domain.models import CrmContact, OutboxJob, Workflow, WorkflowExecutionLog
from platformcore.persistence.db import SessionLocal
from platformcore.services.outbox import Outbox
from platformcore.services.workflows import (
    BehaviorContext,
    BehaviorDefinition,
    BehaviorRegistry,
    BehaviorResult,
    RuntimeContext,
    default_registry,
    execute_behaviors,
    execute_workflow,
)
from platformcore.services.workflows.engine import order_behaviors


def _recording_registry(calls: list[str]) -> BehaviorRegistry:
    registry = BehaviorRegistry()

    @registry.behavior("record")
    async def _record(ctx, organization_id, config, runtime) -> BehaviorResult:
        calls.append(config["label"])
        return BehaviorResult(behavior_type="record", success=True, data={"label": config["label"]})

    @registry.behavior("fail")
    async def _fail(ctx, organization_id, config, runtime) -> BehaviorResult:
        calls.append("fail")
        return BehaviorResult(behavior_type="fail", success=False, error="boom")

    @registry.behavior("explode")
    async def _explode(ctx, organization_id, config, runtime) -> BehaviorResult:
        raise RuntimeError("handler crashed")

    @registry.behavior("write_contact")
    async def _write_contact(ctx, organization_id, config, runtime) -> BehaviorResult:
        ctx.session.add(
            CrmContact(id=uuid4().hex, organization_id=organization_id, email="rolled@back.test")
        )
        await ctx.session.flush()
        return BehaviorResult(behavior_type="write_contact", success=True)

    return registry


def test_order_is_ascending_priority_with_stable_ties() -> None:
    behaviors = [
        BehaviorDefinition(id="a", type="record", priority=5),
        BehaviorDefinition(id="b", type="record", priority=1),
        BehaviorDefinition(id="c", type="record", priority=5),
        BehaviorDefinition(id="d", type="record", priority=1, enabled=False),
        BehaviorDefinition(id="e", type="record", priority=0),
    ]
    assert [item.id for item in order_behaviors(behaviors)] == ["e", "b", "a", "c"]


def test_default_registry_knows_builtin_behaviors() -> None:
    assert {"calculate_pricing", "pricing", "crm_sync"} <= set(default_registry.types())


@pytest.mark.asyncio
async def test_continue_runs_every_behavior_and_reports_failures() -> None:
    calls: list[str] = []
    registry = _recording_registry(calls)
    behaviors = [
        BehaviorDefinition(type="record", priority=1, config={"label": "first"}),
        BehaviorDefinition(type="fail", priority=2),
        BehaviorDefinition(type="explode", priority=3),
        BehaviorDefinition(type="record", priority=4, config={"label": "last"}),
    ]
    async with SessionLocal() as session:
        ctx = BehaviorContext(session=session, outbox=Outbox(session))
        runtime = RuntimeContext()
        outcome = await execute_behaviors(
            ctx, "org-1", behaviors, runtime, continue_on_error=True, registry=registry
        )

    assert calls == ["first", "fail", "last"]
    assert not outcome.success
    assert outcome.executed_count == 2
    assert outcome.total_count == 4
    assert outcome.results[2].error == "handler crashed"
    assert runtime.behavior_data["record"] == {"label": "last"}


@pytest.mark.asyncio
async def test_stop_on_first_failure_when_not_continuing() -> None:
    calls: list[str] = []
    registry = _recording_registry(calls)
    behaviors = [
        BehaviorDefinition(type="fail", priority=1),
        BehaviorDefinition(type="record", priority=2, config={"label": "never"}),
    ]
    async with SessionLocal() as session:
        ctx = BehaviorContext(session=session, outbox=Outbox(session))
        outcome = await execute_behaviors(
            ctx, "org-1", behaviors, RuntimeContext(), continue_on_error=False, registry=registry
        )
    assert calls == ["fail"]
    assert len(outcome.results) == 1
    assert outcome.total_count == 2


@pytest.mark.asyncio
async def test_unknown_behavior_type_is_a_failed_result() -> None:
    async with SessionLocal() as session:
        ctx = BehaviorContext(session=session, outbox=Outbox(session))
        outcome = await execute_behaviors(
            ctx,
            "org-1",
            [BehaviorDefinition(type="teleport")],
            RuntimeContext(),
            continue_on_error=True,
            registry=BehaviorRegistry(),
        )
    assert outcome.results[0].error == "Unknown behavior type: teleport"


async def _store_workflow(*, error_handling: str, behaviors: list[dict]) -> str:
    workflow_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            Workflow(
                id=workflow_id,
                organization_id="org-1",
                name="Checkout",
                trigger_on="order.created",
                error_handling=error_handling,
                behaviors=behaviors,
            )
        )
        await session.commit()
    return workflow_id


@pytest.mark.asyncio
async def test_rollback_policy_discards_behavior_writes() -> None:
    registry = _recording_registry([])
    workflow_id = await _store_workflow(
        error_handling="rollback",
        behaviors=[
            {"type": "write_contact", "priority": 1},
            {"type": "fail", "priority": 2},
        ],
    )
    async with SessionLocal() as session:
        workflow = await session.get(Workflow, workflow_id)
        ctx = BehaviorContext(session=session, outbox=Outbox(session), actor_id="user-1")
        execution = await execute_workflow(ctx, workflow, RuntimeContext(), registry=registry)
        await session.commit()

    assert execution.status == "rolled_back"
    assert not execution.success
    assert execution.executed_count == 1
    async with SessionLocal() as session:
        contacts = (await session.execute(select(CrmContact))).scalars().all()
        logs = (await session.execute(select(WorkflowExecutionLog))).scalars().all()
    assert contacts == []
    assert len(logs) == 1
    assert logs[0].status == "rolled_back"
    assert logs[0].triggered_by == "user-1"


@pytest.mark.asyncio
async def test_success_message_counts_behaviors() -> None:
    registry = _recording_registry([])
    workflow_id = await _store_workflow(
        error_handling="continue",
        behaviors=[{"type": "record", "config": {"label": "x"}}],
    )
    async with SessionLocal() as session:
        workflow = await session.get(Workflow, workflow_id)
        ctx = BehaviorContext(session=session, outbox=Outbox(session))
        execution = await execute_workflow(ctx, workflow, RuntimeContext(), registry=registry)
        await session.commit()

    assert execution.status == "success"
    assert execution.message == 'Workflow "Checkout" executed successfully. 1 of 1 behaviors completed.'
    assert execution.execution_id is not None


@pytest.mark.asyncio
async def test_notify_policy_enqueues_failure_notification() -> None:
    registry = _recording_registry([])
    workflow_id = await _store_workflow(
        error_handling="notify",
        behaviors=[{"type": "fail"}, {"type": "record", "config": {"label": "after"}}],
    )
    async with SessionLocal() as session:
        workflow = await session.get(Workflow, workflow_id)
        outbox = Outbox(session)
        ctx = BehaviorContext(session=session, outbox=outbox)
        execution = await execute_workflow(ctx, workflow, RuntimeContext(), registry=registry)
        await session.commit()

    assert execution.status == "completed_with_errors"
    assert execution.executed_count == 1
    async with SessionLocal() as session:
        jobs = (await session.execute(select(OutboxJob))).scalars().all()
    assert [job.job_name for job in jobs] == ["workflow.failure_notification"]
    assert jobs[0].idempotency_key == f"workflow.failure:{execution.execution_id}"
    assert jobs[0].payload["failed_behaviors"] == ["fail"]


@pytest.mark.asyncio
async def test_dry_run_writes_no_execution_log() -> None:
    registry = _recording_registry([])
    workflow_id = await _store_workflow(
        error_handling="continue",
        behaviors=[{"type": "record", "config": {"label": "x"}}],
    )
    async with SessionLocal() as session:
        workflow = await session.get(Workflow, workflow_id)
        ctx = BehaviorContext(session=session, outbox=Outbox(session))
        execution = await execute_workflow(
            ctx, workflow, RuntimeContext(dry_run=True), registry=registry
        )
        await session.commit()
        logs = (await session.execute(select(WorkflowExecutionLog))).scalars().all()

    assert execution.dry_run
    assert execution.execution_id is None
    assert logs == []
