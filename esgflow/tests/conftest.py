from __future__ import annotations

import os
import tempfile

# Point settings at a throwaway SQLite file before any esgflow module reads them.
_TEST_DB_DIR = tempfile.mkdtemp(prefix="esgflow-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_TEST_DB_DIR}/esgflow.db")
os.environ.setdefault("SYNC_EXECUTION_MODE", "inline")
# SQLite connector sources in tests live under the system temp dir, pytest tmp_path included.
os.environ.setdefault("SQLITE_DATA_DIR", tempfile.gettempdir())
os.environ.setdefault("SYNC_RETRY_BACKOFF_MS", "1")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest_asyncio

from esgflow.domain.models import Base
from esgflow.persistence.db import engine
from esgflow.services import audit_chain, sync
from esgflow.services.resilience import reset_bulkheads
from esgflow.services.sync_jobs import shutdown_inline_jobs
from esgflow.services.telemetry import reset_telemetry


@pytest_asyncio.fixture(autouse=True)
async def fresh_database():
    # Every test starts from empty tables; the engine is disposed so no connection crosses event loops.
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await shutdown_inline_jobs()
    sync.reset_locks()
    audit_chain.reset_locks()
    reset_bulkheads()
    reset_telemetry()
    await engine.dispose()
