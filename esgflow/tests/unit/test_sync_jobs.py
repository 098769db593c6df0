from __future__ import annotations

import asyncio
import time
from datetime import timedelta
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest
from sqlalchemy import create_engine, text

from esgflow.core.errors import NotFoundError, SyncInProgressError
from esgflow.core.hashing import utc_now
from esgflow.domain.models import Connector
from esgflow.persistence.db import SessionLocal
from esgflow.services import sync_jobs
from esgflow.tests.utils.factories import ORG_ID, OTHER_ORG_ID, create_connector, utc


def _source_database(path: Path) -> str:
    engine = create_engine(f"sqlite:///{path}")
    with engine.begin() as conn:
        conn.execute(text("CREATE TABLE energy_usage (id INTEGER PRIMARY KEY, kwh REAL, recorded_at TEXT)"))
        conn.execute(text("INSERT INTO energy_usage VALUES (1, 12.5, '2024-01-10'), (2, 7.5, '2024-02-10')"))
    engine.dispose()
    return str(path)


def test_due_connectors_follow_cadence() -> None:
    now = utc(2024, 3, 1)
    connectors = [
        Connector(id="never", sync_cadence="daily", last_sync_at=None),
        Connector(id="recent", sync_cadence="daily", last_sync_at=now - timedelta(hours=2)),
        Connector(id="overdue", sync_cadence="hourly", last_sync_at=now - timedelta(hours=1)),
        Connector(id="manual", sync_cadence="manual", last_sync_at=None),
        Connector(id="monthly", sync_cadence="monthly", last_sync_at=now - timedelta(days=29)),
    ]
    assert [connector.id for connector in sync_jobs.due_connectors(connectors, now=now)] == ["never", "overdue"]


@pytest.mark.asyncio
async def test_inline_job_runs_in_background(tmp_path: Path) -> None:
    database = _source_database(tmp_path / "source.db")
    async with SessionLocal() as session:
        connector = await create_connector(session, config={"database": database})
        handle = await sync_jobs.start_sync_job(session, ORG_ID, connector.id, actor_id="ops")
        assert handle.mode == "inline"
        assert handle.job_id == f"sync:{handle.sync_log_id}"
        await sync_jobs.wait_for_inline_jobs()
        session.expire_all()
        view = await sync_jobs.get_sync_job(session, ORG_ID, handle.sync_log_id)

    assert view["status"] == "completed"
    assert view["records_created"] == 2
    assert view["job"] == {"done": True, "attempts": 1, "sync_log_ids": [handle.sync_log_id]}


@pytest.mark.asyncio
async def test_finished_inline_jobs_are_pruned_after_retention(tmp_path: Path) -> None:
    database = _source_database(tmp_path / "source.db")
    async with SessionLocal() as session:
        connector = await create_connector(session, config={"database": database})
        handle = await sync_jobs.start_sync_job(session, ORG_ID, connector.id)
        await sync_jobs.wait_for_inline_jobs()
        kept = sync_jobs.prune_inline_jobs()
        retained = await sync_jobs.get_sync_job(session, ORG_ID, handle.sync_log_id)
        pruned = sync_jobs.prune_inline_jobs(now=time.monotonic() + 301)
        session.expire_all()
        view = await sync_jobs.get_sync_job(session, ORG_ID, handle.sync_log_id)

    assert kept == 0
    assert retained["job"]["done"] is True
    assert pruned == 1
    assert "job" not in view
    assert view["status"] == "completed"
    assert sync_jobs.prune_inline_jobs(now=time.monotonic() + 301) == 0


@pytest.mark.asyncio
async def test_transient_failures_retry_with_a_log_per_attempt(tmp_path: Path) -> None:
    unreachable = str(tmp_path / "missing-dir" / "source.db")
    async with SessionLocal() as session:
        connector = await create_connector(session, config={"database": unreachable})
        handle = await sync_jobs.start_sync_job(session, ORG_ID, connector.id)
        await sync_jobs.wait_for_inline_jobs()
        view = await sync_jobs.get_sync_job(session, ORG_ID, handle.sync_log_id)

    job = view["job"]
    assert job["attempts"] == 3
    assert len(set(job["sync_log_ids"])) == 3
    assert job["sync_log_ids"][0] == handle.sync_log_id
    async with SessionLocal() as session:
        statuses = [
            (await sync_jobs.get_sync_job(session, ORG_ID, log_id))["status"] for log_id in job["sync_log_ids"]
        ]
    assert statuses == ["failed", "failed", "failed"]


@pytest.mark.asyncio
async def test_second_start_while_running_is_rejected() -> None:
    async with SessionLocal() as session:
        connector = await create_connector(session)
        await sync_jobs.open_sync_log(session, ORG_ID, connector.id)
        with pytest.raises(SyncInProgressError):
            await sync_jobs.start_sync_job(session, ORG_ID, connector.id)


@pytest.mark.asyncio
async def test_cancel_inline_job_leaves_failed_log(monkeypatch: pytest.MonkeyPatch) -> None:
    started = asyncio.Event()

    async def never_finishes(payload, *, attempt):
        started.set()
        await asyncio.sleep(60)

    monkeypatch.setattr(sync_jobs, "process_sync_job", never_finishes)
    async with SessionLocal() as session:
        connector = await create_connector(session)
        handle = await sync_jobs.start_sync_job(session, ORG_ID, connector.id)
        await asyncio.wait_for(started.wait(), timeout=5)
        view = await sync_jobs.cancel_sync_job(session, ORG_ID, handle.sync_log_id, reason="operator")

    assert view["status"] == "failed"
    assert view["error_message"] == "cancelled (operator)"
    assert view["job"]["done"] is True


@pytest.mark.asyncio
async def test_cancel_orphaned_running_log_closes_it() -> None:
    async with SessionLocal() as session:
        connector = await create_connector(session)
        sync_log_id = await sync_jobs.open_sync_log(session, ORG_ID, connector.id)
        view = await sync_jobs.cancel_sync_job(session, ORG_ID, sync_log_id)

    assert view["status"] == "failed"
    assert view["error_message"] == "cancelled (cancelled by request)"
    assert "job" not in view


@pytest.mark.asyncio
async def test_sync_logs_are_scoped_to_the_organization() -> None:
    async with SessionLocal() as session:
        connector = await create_connector(session)
        sync_log_id = await sync_jobs.open_sync_log(session, ORG_ID, connector.id)
        with pytest.raises(NotFoundError):
            await sync_jobs.get_sync_job(session, OTHER_ORG_ID, sync_log_id)
        with pytest.raises(NotFoundError):
            await sync_jobs.start_sync_job(session, OTHER_ORG_ID, connector.id)


class _RecordingRedis:
    def __init__(self) -> None:
        self.jobs: list[tuple[str, Any, dict[str, Any]]] = []

    async def enqueue_job(self, function: str, *args: Any, **kwargs: Any):
        self.jobs.append((function, args, kwargs))
        return SimpleNamespace(job_id=kwargs["_job_id"])


@pytest.mark.asyncio
async def test_queue_mode_enqueues_arq_job() -> None:
    redis = _RecordingRedis()
    async with SessionLocal() as session:
        connector = await create_connector(session)
        handle = await sync_jobs.start_sync_job(session, ORG_ID, connector.id, actor_id="ops", redis=redis)

    assert handle.mode == "queue"
    function, args, kwargs = redis.jobs[0]
    assert function == "sync_connector"
    assert args[0] == {
        "organization_id": ORG_ID,
        "connector_id": connector.id,
        "sync_log_id": handle.sync_log_id,
        "actor_id": "ops",
    }
    assert kwargs["_job_id"] == handle.job_id


@pytest.mark.asyncio
async def test_inline_mode_reports_no_worker() -> None:
    assert await sync_jobs.get_queue_depth() == 0
    assert await sync_jobs.get_worker_heartbeat() is None
    await sync_jobs.set_worker_heartbeat(timestamp=utc_now())
