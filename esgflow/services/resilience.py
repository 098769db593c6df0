from __future__ import annotations

import asyncio
import random
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from esgflow.core.config import get_settings
from esgflow.services.telemetry import increment_counter


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_ms: int


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=settings.sync_max_retries,
        backoff_ms=settings.sync_retry_backoff_ms,
    )


def backoff_seconds(policy: RetryPolicy, attempt: int, *, jitter: bool = True) -> float:
    # Exponential backoff with optional jitter, shared by inline retries and arq.
    factor = random.uniform(0.5, 1.5) if jitter else 1.0
    return (policy.backoff_ms / 1000.0) * (2 ** max(attempt - 1, 0)) * factor


@dataclass
class BulkheadLease:
    # A lease frees its sync slot at most once.
    semaphore: asyncio.Semaphore
    name: str
    released: bool = False

    def release(self) -> None:
        if self.released:
            return
        self.semaphore.release()
        self.released = True
        increment_counter(f"bulkhead_released_total.{self.name}")


class Bulkhead:
    def __init__(self, name: str, limit: int) -> None:
        # Caps concurrent adapter fetches across all connectors.
        self._name = name
        self._limit = max(1, limit)
        self._sem = asyncio.Semaphore(self._limit)

    @property
    def name(self) -> str:
        return self._name

    @property
    def limit(self) -> int:
        return self._limit

    async def acquire(self) -> BulkheadLease:
        # Wait for a slot; sync jobs queue behind running ones rather than being rejected.
        await self._sem.acquire()
        increment_counter(f"bulkhead_acquired_total.{self._name}")
        return BulkheadLease(self._sem, self._name)


class KeyedLock:
    """Per-key asyncio locks (one per connector or organization).

    Locks are created lazily and live for the process; the key space is
    bounded by the number of connectors/organizations.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock.locked() if lock is not None else False

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        async with self._locks[key]:
            yield

    def reset(self) -> None:
        self._locks.clear()


_sync_bulkhead: Bulkhead | None = None


def get_sync_bulkhead() -> Bulkhead:
    # Initialize the connector sync bulkhead from settings.
    global _sync_bulkhead
    if _sync_bulkhead is None:
        _sync_bulkhead = Bulkhead("sync", get_settings().sync_max_concurrency)
    return _sync_bulkhead


def reset_bulkheads() -> None:
    # Next access rebuilds the bulkhead from current settings.
    global _sync_bulkhead
    _sync_bulkhead = None
