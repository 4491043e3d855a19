from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select, update

from platformcore.domain.models import AuditEvent, OutboxJob
from platformcore.persistence.db import SessionLocal
from platformcore.services.outbox import (
    Outbox,
    enqueue,
    outbox_handler,
    process_outbox_job,
    registered_job_names,
    retry_backoff_ms,
)


_flaky_calls: list[str] = []


@outbox_handler("tests.always_fails")
async def _always_fails(session, job) -> None:
    _flaky_calls.append(job.id)
    raise RuntimeError("downstream unavailable")


def test_builtin_handlers_are_registered() -> None:
    names = registered_job_names()
    assert {"user.welcome_email", "crm.contact_created", "workflow.failure_notification"} <= set(names)


def test_backoff_is_deterministic_and_capped() -> None:
    first = retry_backoff_ms(job_id="job-1", attempt_no=1)
    assert first == retry_backoff_ms(job_id="job-1", attempt_no=1)
    assert 1000 <= first <= 1250
    assert retry_backoff_ms(job_id="job-1", attempt_no=3) >= 4000
    assert retry_backoff_ms(job_id="job-1", attempt_no=50) <= 300000


@pytest.mark.asyncio
async def test_repeated_idempotency_key_yields_one_row() -> None:
    async with SessionLocal() as session:
        first = await enqueue(session, "user.welcome_email", {"user_id": "u1"}, idempotency_key="welcome:u1")
        second = await enqueue(session, "user.welcome_email", {"user_id": "other"}, idempotency_key="welcome:u1")
        await session.commit()

    assert first.id == second.id
    async with SessionLocal() as session:
        rows = (await session.execute(select(OutboxJob))).scalars().all()
    assert len(rows) == 1
    assert rows[0].payload == {"user_id": "u1"}


@pytest.mark.asyncio
async def test_publish_pending_runs_inline_after_commit() -> None:
    async with SessionLocal() as session:
        outbox = Outbox(session)
        row = await outbox.enqueue(
            "user.welcome_email",
            {"user_id": "u1", "organization_id": "org-1"},
            idempotency_key="welcome:u1",
        )
        await session.commit()
        published = await outbox.publish_pending()

    assert published == 1
    async with SessionLocal() as session:
        job = await session.get(OutboxJob, row.id)
        events = (
            await session.execute(
                select(AuditEvent).where(AuditEvent.event_type == "user.welcome_email.dispatched")
            )
        ).scalars().all()
    assert job.status == "succeeded"
    assert job.attempts == 1
    assert job.completed_at is not None
    assert len(events) == 1


@pytest.mark.asyncio
async def test_discarded_jobs_are_not_published() -> None:
    async with SessionLocal() as session:
        outbox = Outbox(session)
        await outbox.enqueue("user.welcome_email", {}, idempotency_key="welcome:u2")
        await session.rollback()
        outbox.discard_pending()
        assert await outbox.publish_pending() == 0
        assert (await session.execute(select(OutboxJob))).scalars().all() == []


@pytest.mark.asyncio
async def test_failures_reschedule_then_dead_letter() -> None:
    async with SessionLocal() as session:
        row = await enqueue(session, "tests.always_fails", {}, idempotency_key="flaky:1")
        job_id = row.id
        await session.execute(update(OutboxJob).where(OutboxJob.id == job_id).values(max_attempts=2))
        await session.commit()

    async with SessionLocal() as session:
        job = await process_outbox_job(session, job_id)
    assert job.status == "queued"
    assert job.attempts == 1
    assert job.last_error == "downstream unavailable"
    assert job.next_attempt_at > datetime.now(timezone.utc)

    async with SessionLocal() as session:
        # Not due yet, so nothing is claimed.
        assert await process_outbox_job(session, job_id) is None
        await session.execute(
            update(OutboxJob)
            .where(OutboxJob.id == job_id)
            .values(next_attempt_at=datetime.now(timezone.utc))
        )
        await session.commit()

    async with SessionLocal() as session:
        job = await process_outbox_job(session, job_id)
    assert job.status == "dead"
    assert job.attempts == 2
    assert _flaky_calls.count(job_id) == 2


@pytest.mark.asyncio
async def test_unknown_job_name_is_dead_lettered() -> None:
    async with SessionLocal() as session:
        row = await enqueue(session, "tests.nobody_handles_this", {}, idempotency_key="unknown:1")
        await session.commit()
    async with SessionLocal() as session:
        job = await process_outbox_job(session, row.id)
    assert job.status == "dead"
    assert "No handler registered" in job.last_error
