"""
Pipeline concurrency controls backed by Redis.

ItemLock
--------
Per-content-item mutex (redis-py's Lock: SET NX PX + token-checked
release). Chunk-set replacement and embedding writes for one item run under
it, so two runs for the same item never interleave their delete/insert.
The lock expires after ITEM_LOCK_TIMEOUT_SECONDS if a worker dies.

OwnerLimiter
------------
Per-owner counting semaphore bounding how many paid stages (transcription,
embedding) run at once for one owner. Slots live in a sorted set scored by
acquire time; slots older than OWNER_SLOT_TTL_SECONDS are reclaimed, so a
crashed worker cannot leak capacity forever. Acquire is a single Lua script,
so check-and-add is atomic across workers.
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator
from uuid import uuid4

from redis.asyncio import Redis
from redis.exceptions import LockError, RedisError

from chronos.core.exceptions import RetryableStageError
from chronos.core.logging import get_logger

logger = get_logger(__name__)


ACQUIRE_SLOT_SCRIPT = """
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', tonumber(ARGV[1]) - tonumber(ARGV[2]))
if redis.call('ZCARD', KEYS[1]) < tonumber(ARGV[3]) then
    redis.call('ZADD', KEYS[1], ARGV[1], ARGV[4])
    redis.call('EXPIRE', KEYS[1], ARGV[2])
    return 1
end
return 0
"""


class ItemLock:
    """Per-item mutex."""

    def __init__(self, redis: Redis, timeout: int = 900, wait: float = 10.0):
        self.redis = redis
        self.timeout = timeout
        self.wait = wait

    @staticmethod
    def key(content_id: int) -> str:
        return f"pipeline:lock:content:{content_id}"

    @asynccontextmanager
    async def hold(self, content_id: int) -> AsyncIterator[bool]:
        """
        Hold the item's lock for the duration of the block.

        Yields:
            True if acquired, False if another run held it for the whole wait

        Raises:
            RetryableStageError: Redis unreachable
        """
        lock = self.redis.lock(self.key(content_id), timeout=self.timeout, blocking_timeout=self.wait)
        try:
            acquired = await lock.acquire()
        except RedisError as e:
            raise RetryableStageError(f"Lock backend unavailable: {e}") from e

        try:
            yield bool(acquired)
        finally:
            if acquired:
                try:
                    await lock.release()
                except LockError as e:
                    # Expired while held; the next holder already has it
                    logger.warning("item_lock_lost", content_id=content_id, error=str(e))
                except RedisError as e:
                    logger.warning("item_lock_release_failed", content_id=content_id, error=str(e))


class OwnerLimiter:
    """Per-owner concurrent-job limiter."""

    def __init__(self, redis: Redis, max_concurrent: int = 3, slot_ttl: int = 1800):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.redis = redis
        self.max_concurrent = max_concurrent
        self.slot_ttl = slot_ttl
        self._acquire_script = redis.register_script(ACQUIRE_SLOT_SCRIPT)

    @staticmethod
    def key(owner_id: str) -> str:
        return f"pipeline:owner_slots:{owner_id}"

    @asynccontextmanager
    async def slot(self, owner_id: str) -> AsyncIterator[bool]:
        """
        Take one of the owner's slots for the duration of the block.

        Yields:
            True if a slot was free, False if the owner is at its limit

        Raises:
            RetryableStageError: Redis unreachable
        """
        key = self.key(owner_id)
        token = uuid4().hex
        try:
            acquired = await self._acquire_script(
                keys=[key],
                args=[time.time(), self.slot_ttl, self.max_concurrent, token],
            )
        except RedisError as e:
            raise RetryableStageError(f"Limiter backend unavailable: {e}") from e

        if not acquired:
            logger.info("owner_at_concurrency_limit", owner_id=owner_id, max_concurrent=self.max_concurrent)

        try:
            yield bool(acquired)
        finally:
            if acquired:
                try:
                    await self.redis.zrem(key, token)
                except RedisError as e:
                    # Reclaimed after slot_ttl
                    logger.warning("owner_slot_release_failed", owner_id=owner_id, error=str(e))
