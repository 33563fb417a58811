"""Redis-backed state for multi-process deployments.

Provides:
  - Deferred jobs: a sorted set scored by ``run_after`` plus one JSON
    string per job.
  - Numbering locks: ``redis.asyncio`` distributed locks, one per tenant.

All keys are namespaced under a configurable prefix (default
``billing:``) so multiple environments can share a single Redis
instance.

Uses ``redis.asyncio`` for non-blocking I/O.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import redis.asyncio as aioredis
from redis.exceptions import LockError

from billing_backoffice.core.errors import LockTimeoutError
from billing_backoffice.domain.jobs import DeferredJob

logger = logging.getLogger(__name__)


def _deserialize(raw: str | bytes | None) -> dict[str, Any] | None:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return json.loads(raw)


# ---------------------------------------------------------------------------
# Key builders
# ---------------------------------------------------------------------------

def _due_key(prefix: str) -> str:
    return f"{prefix}jobs:due"


def _job_key(prefix: str, job_id: str) -> str:
    return f"{prefix}job:{job_id}"


def _lock_key(prefix: str, key: str) -> str:
    return f"{prefix}lock:numbering:{key}"


# ---------------------------------------------------------------------------
# RedisStateStore
# ---------------------------------------------------------------------------

class RedisStateStore:
    """Deferred-job store and numbering lock sharing one Redis connection.

    Args:
        redis_url: Redis connection URL (e.g. ``redis://localhost:6379/0``).
        prefix: Key namespace prefix.
        lock_timeout_seconds: Lock expiry and how long to wait for it.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        *,
        prefix: str = "billing:",
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self._url = redis_url
        self._prefix = prefix
        self._lock_timeout = lock_timeout_seconds
        self._redis: aioredis.Redis | None = None

    # -- lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        if self._redis is not None:
            return
        self._redis = aioredis.from_url(self._url, decode_responses=False, max_connections=20)
        await self._redis.ping()
        logger.info("Redis connected: %s", self._url.split("@")[-1])

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Redis connection closed.")

    @property
    def redis(self) -> aioredis.Redis:
        """Return the underlying client, raising if not connected."""
        if self._redis is None:
            raise RuntimeError("RedisStateStore not connected. Call connect() first.")
        return self._redis

    # -- deferred jobs -------------------------------------------------------

    async def create(self, job: DeferredJob) -> DeferredJob:
        pipe = self.redis.pipeline(transaction=True)
        pipe.set(_job_key(self._prefix, job.id), job.model_dump_json())
        pipe.zadd(_due_key(self._prefix), {job.id: job.run_after})
        await pipe.execute()
        logger.debug("Stored deferred job %s due at %d", job.id, job.run_after)
        return job

    async def get(self, job_id: str) -> DeferredJob | None:
        data = _deserialize(await self.redis.get(_job_key(self._prefix, job_id)))
        return DeferredJob.model_validate(data) if data is not None else None

    async def delete(self, job_id: str) -> None:
        pipe = self.redis.pipeline(transaction=True)
        pipe.zrem(_due_key(self._prefix), job_id)
        pipe.delete(_job_key(self._prefix, job_id))
        await pipe.execute()

    async def list_due(self, now_seconds: int, limit: int = 100) -> list[DeferredJob]:
        """Return up to *limit* jobs with ``run_after <= now_seconds``, oldest first."""
        ids = await self.redis.zrangebyscore(
            _due_key(self._prefix), "-inf", now_seconds, start=0, num=limit
        )
        if not ids:
            return []
        ids = [i.decode("utf-8") if isinstance(i, bytes) else i for i in ids]
        raws = await self.redis.mget([_job_key(self._prefix, i) for i in ids])
        jobs: list[DeferredJob] = []
        for job_id, raw in zip(ids, raws):
            data = _deserialize(raw)
            if data is None:
                # index entry without a body; drop it
                logger.warning("Deferred job %s has no body, removing index entry", job_id)
                await self.redis.zrem(_due_key(self._prefix), job_id)
                continue
            jobs.append(DeferredJob.model_validate(data))
        return jobs

    # -- numbering lock ------------------------------------------------------

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the distributed numbering lock for *key*.

        Raises:
            LockTimeoutError: The lock was not acquired within the timeout.
        """
        lock = self.redis.lock(
            _lock_key(self._prefix, key),
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise LockTimeoutError(f"Numbering lock {key!r} not acquired")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.warning("Numbering lock %r expired before release", key)
