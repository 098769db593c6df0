from __future__ import annotations

import asyncio
import logging

from arq import Retry, cron
from arq.connections import RedisSettings

from esgflow.core.config import get_settings
from esgflow.core.errors import SyncInProgressError
from esgflow.core.hashing import utc_now
from esgflow.core.logging import configure_logging
from esgflow.persistence.db import SessionLocal
from esgflow.persistence.repos import connectors as connectors_repo
from esgflow.services.resilience import backoff_seconds, default_retry_policy
from esgflow.services.sync_jobs import (
    SyncJobPayload,
    due_connectors,
    process_sync_job,
    set_worker_heartbeat,
    start_sync_job,
)


logger = logging.getLogger(__name__)


async def sync_connector(ctx, payload: dict) -> dict:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = SyncJobPayload.model_validate(payload)
    settings = get_settings()
    attempt = ctx.get("job_try", 1)
    outcome = await process_sync_job(job_payload, attempt=attempt)
    if not outcome.success and outcome.retryable and attempt < settings.sync_max_retries:
        defer = backoff_seconds(default_retry_policy(), attempt)
        logger.info(
            "sync_job_retry_scheduled connector_id=%s attempt=%s defer_s=%.2f",
            job_payload.connector_id,
            attempt,
            defer,
        )
        raise Retry(defer=defer)
    return {
        "success": outcome.success,
        "sync_log_id": outcome.sync_log_id,
        "error": outcome.error,
    }


async def enqueue_due_syncs(ctx) -> int:
    # Enqueue every connector whose cadence has elapsed; running ones are skipped.
    started = 0
    async with SessionLocal() as session:
        connectors = await connectors_repo.list_all_connectors(session)
        for connector in due_connectors(connectors, now=utc_now()):
            try:
                await start_sync_job(session, connector.organization_id, connector.id, redis=ctx["redis"])
            except SyncInProgressError:
                logger.info("scheduled_sync_skipped connector_id=%s reason=in_progress", connector.id)
                continue
            started += 1
    logger.info("scheduled_syncs_enqueued count=%s", started)
    return started


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        await set_worker_heartbeat()
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat task to avoid dangling coroutines on exit.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.sync_queue_name
    max_tries = settings.sync_max_retries
    job_timeout = settings.sync_timeout_s + 60
    allow_abort_jobs = True
    functions = [sync_connector]
    cron_jobs = [cron(enqueue_due_syncs, minute=set(range(0, 60, settings.sync_schedule_interval_min)))]
    on_startup = _startup
    on_shutdown = _shutdown
