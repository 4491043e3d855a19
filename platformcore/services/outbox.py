from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import hashlib
import logging
from typing import Any, Awaitable, Callable
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from platformcore.core.config import get_settings
from platformcore.domain.models import OutboxJob
from platformcore.persistence.db import SessionLocal
from platformcore.services.audit import record_event


logger = logging.getLogger(__name__)

# arq function name the worker registers for outbox deliveries.
OUTBOX_TASK_NAME = "run_outbox_job"
# Running rows untouched this long are assumed orphaned by a crashed worker.
_STALE_RUNNING_AFTER = timedelta(minutes=15)

OutboxHandler = Callable[[AsyncSession, OutboxJob], Awaitable[None]]
_HANDLERS: dict[str, OutboxHandler] = {}

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def outbox_handler(job_name: str) -> Callable[[OutboxHandler], OutboxHandler]:
    def decorator(func: OutboxHandler) -> OutboxHandler:
        _HANDLERS[job_name] = func
        return func

    return decorator


def registered_job_names() -> list[str]:
    return sorted(_HANDLERS)


def _inline_mode() -> bool:
    return get_settings().outbox_execution_mode.lower() == "inline"


def retry_backoff_ms(*, job_id: str, attempt_no: int) -> int:
    # Exponential backoff with deterministic jitter so retries spread without randomness in tests.
    settings = get_settings()
    base = max(1, int(settings.outbox_backoff_ms))
    cap = max(base, int(settings.outbox_backoff_max_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    digest = hashlib.sha256(f"{job_id}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % 251
    return min(cap, backoff + jitter)


async def get_redis_pool():
    # Cache the pool per event loop; loop-bound pools break across test loops.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.outbox_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def publish_job(job_id: str, *, defer_ms: int = 0) -> bool:
    """Hand a committed outbox row to the worker; False means the sweep will pick it up."""
    if _inline_mode():
        async with SessionLocal() as session:
            await process_outbox_job(session, job_id)
        return True
    settings = get_settings()
    defer_delta = timedelta(milliseconds=max(0, int(defer_ms)))
    try:
        redis = await get_redis_pool()
        await redis.enqueue_job(
            OUTBOX_TASK_NAME,
            job_id,
            _queue_name=settings.outbox_queue_name,
            _defer_by=defer_delta if defer_delta.total_seconds() > 0 else None,
        )
        return True
    except Exception:  # noqa: BLE001 - publishing is best-effort; the due-job sweep re-publishes
        logger.warning("outbox_publish_failed job_id=%s", job_id, exc_info=True)
        return False


class Outbox:
    """Transactional outbox bound to one database session.

    ``enqueue`` writes rows inside the caller's transaction. After the caller
    commits, ``publish_pending`` hands the new rows to the worker.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self._pending: list[tuple[str, int]] = []

    async def enqueue(
        self,
        job_name: str,
        payload: dict[str, Any],
        *,
        idempotency_key: str,
        delay_s: float = 0,
    ) -> OutboxJob:
        row = await enqueue(
            self.session,
            job_name,
            payload,
            idempotency_key=idempotency_key,
            delay_s=delay_s,
        )
        if row.status == "queued" and row.attempts == 0:
            self._pending.append((row.id, int(max(0.0, delay_s) * 1000)))
        return row

    def discard_pending(self) -> None:
        self._pending.clear()

    async def publish_pending(self) -> int:
        pending, self._pending = self._pending, []
        published = 0
        for job_id, defer_ms in dict(pending).items():
            if await publish_job(job_id, defer_ms=defer_ms):
                published += 1
        return published


async def enqueue(
    session: AsyncSession,
    job_name: str,
    payload: dict[str, Any],
    *,
    idempotency_key: str,
    delay_s: float = 0,
) -> OutboxJob:
    # Repeated keys collapse onto the first row; conflicting inserts are ignored, not raised.
    existing = (
        await session.execute(select(OutboxJob).where(OutboxJob.idempotency_key == idempotency_key))
    ).scalar_one_or_none()
    if existing is not None:
        return existing
    now = _utc_now()
    values = {
        "id": uuid4().hex,
        "job_name": job_name,
        "payload": payload,
        "idempotency_key": idempotency_key,
        "status": "queued",
        "attempts": 0,
        "max_attempts": max(1, int(get_settings().outbox_max_attempts)),
        "next_attempt_at": now + timedelta(seconds=max(0.0, delay_s)),
        "created_at": now,
        "updated_at": now,
    }
    dialect = session.get_bind().dialect.name
    insert_factory = sqlite_insert if dialect == "sqlite" else pg_insert
    statement = insert_factory(OutboxJob).values(**values).on_conflict_do_nothing(
        index_elements=[OutboxJob.idempotency_key]
    )
    await session.execute(statement)
    row = (
        await session.execute(select(OutboxJob).where(OutboxJob.idempotency_key == idempotency_key))
    ).scalar_one()
    logger.info("outbox_job_enqueued job_id=%s job_name=%s", row.id, job_name)
    return row


async def _claim(session: AsyncSession, job_id: str) -> OutboxJob | None:
    # Row lock so only one worker moves a ready job into running.
    now = _utc_now()
    row = (
        await session.execute(
            select(OutboxJob)
            .where(
                OutboxJob.id == job_id,
                OutboxJob.status == "queued",
                OutboxJob.next_attempt_at <= now,
            )
            .with_for_update(skip_locked=True)
        )
    ).scalar_one_or_none()
    if row is None:
        await session.rollback()
        return None
    row.status = "running"
    row.attempts = int(row.attempts) + 1
    row.updated_at = now
    await session.commit()
    return row


async def process_outbox_job(session: AsyncSession, job_id: str) -> OutboxJob | None:
    """Run one attempt of a ready job and record its outcome.

    Handler errors never escape: the job is rescheduled with backoff or, once
    attempts are exhausted, marked dead.
    """
    job = await _claim(session, job_id)
    if job is None:
        return None
    handler = _HANDLERS.get(job.job_name)
    if handler is None:
        job.status = "dead"
        job.last_error = f"No handler registered for {job.job_name}"
        job.updated_at = _utc_now()
        await session.commit()
        logger.error("outbox_job_unknown job_id=%s job_name=%s", job.id, job.job_name)
        return job
    try:
        await handler(session, job)
    except Exception as exc:  # noqa: BLE001 - failures are isolated to job state updates
        await session.rollback()
        job = await session.get(OutboxJob, job_id)
        if job is None:
            return None
        now = _utc_now()
        job.last_error = str(exc)[:2000]
        job.updated_at = now
        if job.attempts >= job.max_attempts:
            job.status = "dead"
            logger.error(
                "outbox_job_dead job_id=%s job_name=%s attempts=%s",
                job.id,
                job.job_name,
                job.attempts,
                exc_info=exc,
            )
            await session.commit()
            return job
        delay_ms = retry_backoff_ms(job_id=job.id, attempt_no=job.attempts)
        job.status = "queued"
        job.next_attempt_at = now + timedelta(milliseconds=delay_ms)
        await session.commit()
        logger.warning(
            "outbox_job_retry_scheduled job_id=%s job_name=%s attempt=%s delay_ms=%s",
            job.id,
            job.job_name,
            job.attempts,
            delay_ms,
        )
        if not _inline_mode():
            await publish_job(job.id, defer_ms=delay_ms)
        return job

    now = _utc_now()
    job.status = "succeeded"
    job.last_error = None
    job.completed_at = now
    job.updated_at = now
    await session.commit()
    logger.info("outbox_job_succeeded job_id=%s job_name=%s", job.id, job.job_name)
    return job


async def enqueue_due_outbox_jobs(session: AsyncSession, *, limit: int = 100) -> int:
    # Re-publish overdue rows so a lost publish or crashed worker never strands a job.
    now = _utc_now()
    settings = get_settings()
    stale_cutoff = now - timedelta(seconds=max(1, int(settings.outbox_poll_interval_s)))
    await session.execute(
        update(OutboxJob)
        .where(OutboxJob.status == "running", OutboxJob.updated_at <= now - _STALE_RUNNING_AFTER)
        .values(status="queued", next_attempt_at=now, updated_at=stale_cutoff)
    )
    rows = (
        await session.execute(
            select(OutboxJob.id)
            .where(
                OutboxJob.status == "queued",
                OutboxJob.next_attempt_at <= now,
                OutboxJob.updated_at <= stale_cutoff,
            )
            .order_by(OutboxJob.next_attempt_at.asc(), OutboxJob.created_at.asc())
            .limit(max(1, limit))
            .with_for_update(skip_locked=True)
        )
    ).scalars().all()
    job_ids = [str(row) for row in rows]
    if not job_ids:
        await session.commit()
        return 0
    await session.execute(update(OutboxJob).where(OutboxJob.id.in_(job_ids)).values(updated_at=now))
    await session.commit()
    count = 0
    for job_id in job_ids:
        if await publish_job(job_id):
            count += 1
    return count


@outbox_handler("user.welcome_email")
async def _send_welcome_email(session: AsyncSession, job: OutboxJob) -> None:
    # No mail provider is wired in; delivery is recorded so the hand-off is observable.
    payload = job.payload or {}
    logger.info("welcome_email_dispatched user_id=%s", payload.get("user_id"))
    await record_event(
        session=session,
        organization_id=payload.get("organization_id"),
        actor_type="system",
        actor_id=None,
        event_type="user.welcome_email.dispatched",
        outcome="success",
        resource_type="user",
        resource_id=payload.get("user_id"),
        metadata={"provider": payload.get("provider"), "outbox_job_id": job.id},
    )


@outbox_handler("crm.contact_created")
async def _announce_contact_created(session: AsyncSession, job: OutboxJob) -> None:
    payload = job.payload or {}
    logger.info(
        "crm_contact_created organization_id=%s contact_id=%s",
        payload.get("organization_id"),
        payload.get("contact_id"),
    )
    await record_event(
        session=session,
        organization_id=payload.get("organization_id"),
        actor_type="system",
        actor_id=None,
        event_type="crm.contact.created",
        outcome="success",
        resource_type="crm_contact",
        resource_id=payload.get("contact_id"),
        metadata={"source": payload.get("source"), "outbox_job_id": job.id},
    )


@outbox_handler("workflow.failure_notification")
async def _notify_workflow_failure(session: AsyncSession, job: OutboxJob) -> None:
    payload = job.payload or {}
    logger.warning(
        "workflow_failure_notification workflow_id=%s organization_id=%s failed=%s",
        payload.get("workflow_id"),
        payload.get("organization_id"),
        ",".join(payload.get("failed_behaviors") or []),
    )
    await record_event(
        session=session,
        organization_id=payload.get("organization_id"),
        actor_type="system",
        actor_id=None,
        event_type="workflow.execution.failure_notified",
        outcome="failure",
        resource_type="workflow",
        resource_id=payload.get("workflow_id"),
        metadata={
            "failed_behaviors": payload.get("failed_behaviors") or [],
            "execution_log_id": payload.get("execution_log_id"),
            "outbox_job_id": job.id,
        },
    )
