from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import time
from typing import Any, Iterable

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.jobs import Job
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from esgflow.core.config import get_settings
from esgflow.core.errors import NotFoundError
from esgflow.core.hashing import as_utc, utc_now
from esgflow.domain.models import Connector, ConnectorSyncLog
from esgflow.persistence.db import SessionLocal
from esgflow.persistence.repos import connectors as connectors_repo
from esgflow.services.resilience import backoff_seconds, default_retry_policy, get_sync_bulkhead
from esgflow.services.sync import SyncOutcome, open_sync_log, run_sync
from esgflow.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_redis_pool: ArqRedis | None = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Keep heartbeat key stable for health endpoint lookups.
WORKER_HEARTBEAT_KEY = "esgflow:worker:heartbeat"
SYNC_JOB_FUNCTION = "sync_connector"

CADENCE_INTERVALS: dict[str, timedelta] = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(weeks=1),
    "monthly": timedelta(days=30),
}


class SyncJobPayload(BaseModel):
    # Job schema shared by the API, the inline runner and the arq worker.
    organization_id: str
    connector_id: str
    sync_log_id: str
    actor_id: str | None = None


@dataclass(frozen=True)
class SyncJobHandle:
    sync_log_id: str
    job_id: str
    mode: str


@dataclass
class _InlineJob:
    task: asyncio.Task
    attempts: int = 0
    # Each retry attempt writes its own sync log.
    sync_log_ids: list[str] = field(default_factory=list)
    # Monotonic time the task finished; finished jobs are pruned after the retention window.
    finished_at: float | None = None


_inline_jobs: dict[str, _InlineJob] = {}


def _mark_inline_job_done(sync_log_id: str) -> None:
    job = _inline_jobs.get(sync_log_id)
    if job is not None:
        job.finished_at = time.monotonic()
    increment_counter("sync_jobs_finished_total")


def prune_inline_jobs(*, now: float | None = None) -> int:
    """Forget inline jobs that finished longer ago than the retention window.

    Their sync logs stay queryable; only the in-process attempt details go.
    """
    retention_s = get_settings().sync_inline_job_retention_s
    now = time.monotonic() if now is None else now
    expired = [
        sync_log_id
        for sync_log_id, job in _inline_jobs.items()
        if job.finished_at is not None and now - job.finished_at >= retention_s
    ]
    for sync_log_id in expired:
        del _inline_jobs[sync_log_id]
    return len(expired)


def job_id_for(sync_log_id: str) -> str:
    return f"sync:{sync_log_id}"


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


def _inline_mode() -> bool:
    return get_settings().sync_execution_mode.lower() == "inline"


async def get_redis_pool() -> ArqRedis:
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.sync_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to the health endpoint.
    settings = get_settings()
    if _inline_mode():
        return 0
    try:
        redis = await get_redis_pool()
        depth = await redis.llen(_queue_key(settings.sync_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - health reporting handles degraded Redis
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    if _inline_mode():
        # Inline mode does not run a worker, so skip heartbeat updates.
        return
    redis = await get_redis_pool()
    await redis.set(WORKER_HEARTBEAT_KEY, (timestamp or utc_now()).isoformat())


async def get_worker_heartbeat() -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    if _inline_mode():
        return None
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - health reporting handles degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


async def process_sync_job(payload: SyncJobPayload, *, attempt: int) -> SyncOutcome:
    # Shared by the inline runner and the arq worker; a retry opens a fresh sync log.
    bulkhead = get_sync_bulkhead()
    lease = await bulkhead.acquire()
    try:
        async with SessionLocal() as session:
            return await run_sync(
                session,
                payload.organization_id,
                payload.connector_id,
                payload.actor_id,
                sync_log_id=payload.sync_log_id if attempt == 1 else None,
                attempt=attempt,
            )
    finally:
        lease.release()


async def _close_if_running(sync_log_id: str, reason: str) -> None:
    # A job cancelled before run_sync picked up its log still ends terminal.
    async with SessionLocal() as session:
        await connectors_repo.finish_sync_log(
            session,
            sync_log_id,
            status="failed",
            completed_at=utc_now(),
            error_message=f"cancelled ({reason})",
        )
        await session.commit()


async def _run_inline_job(payload: SyncJobPayload) -> SyncOutcome | None:
    # Inline mode mimics worker retries without requiring Redis.
    settings = get_settings()
    policy = default_retry_policy()
    job = _inline_jobs[payload.sync_log_id]
    attempt = 1
    outcome: SyncOutcome | None = None
    try:
        while True:
            job.attempts = attempt
            outcome = await process_sync_job(payload, attempt=attempt)
            job.sync_log_ids.append(outcome.sync_log_id)
            if outcome.success or not outcome.retryable or attempt >= max(settings.sync_max_retries, 1):
                return outcome
            increment_counter("sync_retries_total")
            sleep_s = backoff_seconds(policy, attempt)
            logger.info(
                "sync_job_retry_scheduled connector_id=%s attempt=%s sleep_s=%.2f",
                payload.connector_id,
                attempt,
                sleep_s,
            )
            await asyncio.sleep(sleep_s)
            attempt += 1
    except asyncio.CancelledError as exc:
        await _close_if_running(payload.sync_log_id, str(exc) or "task cancelled")
        raise
    except NotFoundError:
        # Connector deleted while the job waited.
        await _close_if_running(payload.sync_log_id, "connector deleted")
        return outcome
    except Exception:  # noqa: BLE001 - keep the task from dying with an unretrieved error
        logger.exception("sync_job_crashed connector_id=%s sync_log_id=%s", payload.connector_id, payload.sync_log_id)
        return outcome


async def enqueue_sync_job(payload: SyncJobPayload, *, redis: ArqRedis | None = None) -> str:
    settings = get_settings()
    job_id = job_id_for(payload.sync_log_id)
    redis = redis or await get_redis_pool()
    job = await redis.enqueue_job(
        SYNC_JOB_FUNCTION,
        payload.model_dump(),
        _job_id=job_id,
        _queue_name=settings.sync_queue_name,
    )
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else job_id


async def start_sync_job(
    session: AsyncSession,
    organization_id: str,
    connector_id: str,
    actor_id: str | None = None,
    *,
    redis: ArqRedis | None = None,
) -> SyncJobHandle:
    """Reserve a running sync log and hand the sync off to the background.

    Returns immediately; callers poll the sync log or cancel the job.
    Raises ``SyncInProgressError`` while another sync for the connector runs.
    """
    sync_log_id = await open_sync_log(session, organization_id, connector_id)
    payload = SyncJobPayload(
        organization_id=organization_id,
        connector_id=connector_id,
        sync_log_id=sync_log_id,
        actor_id=actor_id,
    )
    if _inline_mode() and redis is None:
        prune_inline_jobs()
        task = asyncio.create_task(_run_inline_job(payload), name=job_id_for(sync_log_id))
        _inline_jobs[sync_log_id] = _InlineJob(task=task)
        task.add_done_callback(lambda _: _mark_inline_job_done(sync_log_id))
        logger.info("sync_job_started mode=inline connector_id=%s sync_log_id=%s", connector_id, sync_log_id)
        return SyncJobHandle(sync_log_id=sync_log_id, job_id=job_id_for(sync_log_id), mode="inline")
    job_id = await enqueue_sync_job(payload, redis=redis)
    logger.info("sync_job_enqueued connector_id=%s sync_log_id=%s job_id=%s", connector_id, sync_log_id, job_id)
    return SyncJobHandle(sync_log_id=sync_log_id, job_id=job_id, mode="queue")


async def get_sync_job(session: AsyncSession, organization_id: str, sync_log_id: str) -> dict[str, Any]:
    log = await connectors_repo.get_sync_log(session, organization_id, sync_log_id)
    if log is None:
        raise NotFoundError(f"Sync log not found: {sync_log_id}")
    view = sync_log_view(log)
    job = _inline_jobs.get(sync_log_id)
    if job is not None:
        view["job"] = {
            "done": job.task.done(),
            "attempts": job.attempts,
            "sync_log_ids": list(job.sync_log_ids),
        }
    return view


async def cancel_sync_job(
    session: AsyncSession,
    organization_id: str,
    sync_log_id: str,
    *,
    reason: str = "cancelled by request",
) -> dict[str, Any]:
    log = await connectors_repo.get_sync_log(session, organization_id, sync_log_id)
    if log is None:
        raise NotFoundError(f"Sync log not found: {sync_log_id}")
    job = _inline_jobs.get(sync_log_id)
    if job is not None and not job.task.done():
        job.task.cancel(reason)
        # Wait for the task to write its terminal log state.
        await asyncio.gather(job.task, return_exceptions=True)
    elif log.status == "running" and not _inline_mode():
        redis = await get_redis_pool()
        aborted = await Job(job_id_for(sync_log_id), redis, _queue_name=get_settings().sync_queue_name).abort(
            timeout=get_settings().sync_timeout_s
        )
        logger.info("sync_job_abort_requested sync_log_id=%s aborted=%s", sync_log_id, aborted)
    elif log.status == "running":
        # No task owns this log in this process; close it directly.
        await connectors_repo.finish_sync_log(
            session, sync_log_id, status="failed", completed_at=utc_now(), error_message=f"cancelled ({reason})"
        )
        await session.commit()
    increment_counter("sync_jobs_cancelled_total")
    # End the read transaction so the terminal state written by the task is visible.
    await session.commit()
    session.expire_all()
    return await get_sync_job(session, organization_id, sync_log_id)


async def wait_for_inline_jobs() -> None:
    # Used by tests and shutdown to drain in-process sync tasks.
    tasks = [job.task for job in _inline_jobs.values() if not job.task.done()]
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)


async def shutdown_inline_jobs() -> None:
    for job in _inline_jobs.values():
        if not job.task.done():
            job.task.cancel("shutdown")
    await wait_for_inline_jobs()
    _inline_jobs.clear()


def sync_log_view(log: ConnectorSyncLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "connector_id": log.connector_id,
        "status": log.status,
        "attempt": log.attempt,
        "records_processed": log.records_processed,
        "records_created": log.records_created,
        "records_updated": log.records_updated,
        "records_failed": log.records_failed,
        "metadata": log.metadata_json or {},
        "error_message": log.error_message,
        "started_at": log.started_at.isoformat() if log.started_at else None,
        "completed_at": log.completed_at.isoformat() if log.completed_at else None,
    }


def due_connectors(connectors: Iterable[Connector], *, now: datetime) -> list[Connector]:
    # A connector is due once its cadence interval has elapsed since the last sync.
    due: list[Connector] = []
    for connector in connectors:
        interval = CADENCE_INTERVALS.get(connector.sync_cadence)
        if interval is None:
            continue
        if connector.last_sync_at is None or as_utc(connector.last_sync_at) + interval <= now:
            due.append(connector)
    return due
