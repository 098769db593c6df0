from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from esgflow.core.config import get_settings
from esgflow.persistence.db import SessionLocal, pool_stats
from esgflow.services.sync_jobs import get_queue_depth, get_worker_heartbeat
from esgflow.services.telemetry import counters_snapshot, external_latency_by_integration


router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    # Database reachability decides overall status; queue/worker data is informational.
    settings = get_settings()
    database = "ok"
    try:
        async with SessionLocal() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        database = "unavailable"
    heartbeat = await get_worker_heartbeat()
    return {
        "status": "ok" if database == "ok" else "degraded",
        "database": database,
        "db_pool": pool_stats(),
        "sync": {
            "mode": settings.sync_execution_mode,
            "queue_depth": await get_queue_depth(),
            "worker_heartbeat": heartbeat.isoformat() if heartbeat else None,
        },
        "counters": counters_snapshot(),
        "external_calls": external_latency_by_integration(300),
    }
