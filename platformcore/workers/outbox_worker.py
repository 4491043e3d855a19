from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from platformcore.core.config import get_settings
from platformcore.core.logging import configure_logging
from platformcore.persistence.db import SessionLocal
from platformcore.services.outbox import (
    enqueue_due_outbox_jobs,
    process_outbox_job,
    registered_job_names,
)


logger = logging.getLogger(__name__)


async def run_outbox_job(ctx, job_id: str) -> str:
    # Queue messages only carry row ids; the row is the source of truth for status and retries.
    async with SessionLocal() as session:
        row = await process_outbox_job(session, job_id)
    return row.status if row is not None else "skipped"


async def _scheduler_loop() -> None:
    # Re-publish due jobs on a fixed cadence so lost publishes and crashed runs recover.
    settings = get_settings()
    interval_s = max(1, int(settings.outbox_poll_interval_s))
    batch = max(1, int(settings.outbox_requeue_batch_size))
    while True:
        try:
            async with SessionLocal() as session:
                await enqueue_due_outbox_jobs(session, limit=batch)
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("outbox due-job scheduler failed")
        await asyncio.sleep(interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    logger.info("outbox_worker_started handlers=%s", ",".join(registered_job_names()))
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop())


async def _shutdown(ctx) -> None:
    task = ctx.get("scheduler_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.outbox_queue_name
    # Retries are tracked on the outbox row, not by arq.
    max_tries = 1
    functions = [run_outbox_job]
    on_startup = _startup
    on_shutdown = _shutdown
