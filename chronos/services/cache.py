"""
Search result cache.

Key Layout:
-----------
rag:search:{scope}:e{epoch}:{digest}
    scope  = "owner:<owner id>" for owner-restricted searches, "all" otherwise
    digest = sha256 of the normalized query + every option that changes
             the result list
rag:epoch:{scope}
    bumped by every invalidation of the scope. A search that started before
    an invalidation writes under the old epoch, which no later reader looks
    up, so a slow search can never re-insert a stale result.
rag:metrics:cache_hits / rag:metrics:cache_misses
    plain counters

Invalidation:
-------------
- invalidate_owner(owner): bump the owner epoch and delete everything under
  rag:search:owner:{owner}:
- invalidate_content(content, owner): the owner scope plus the "all" scope,
  i.e. every entry whose result set could contain that content item. This
  is deliberately wider than the exact set of entries that did contain it.

Failure policy:
---------------
RedisCacheStore raises CacheUnavailableError for any Redis failure. The
retrieval engine treats a failed read as a miss and logs a failed write;
a cache outage never fails a search.
"""

import hashlib
import json
import re
from typing import List, Optional, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from chronos.core.exceptions import CacheUnavailableError
from chronos.core.logging import get_logger
from chronos.schemas.search import SearchOptions, SearchResult

logger = get_logger(__name__)


SEARCH_PREFIX = "rag:search"
EPOCH_PREFIX = "rag:epoch"
HITS_KEY = "rag:metrics:cache_hits"
MISSES_KEY = "rag:metrics:cache_misses"

# Owner ids are user-supplied; keep them literal inside SCAN MATCH patterns
GLOB_SPECIAL_RE = re.compile(r"[*?\[\]\\]")

# Options that select or order results; enable_cache and cache_ttl do not
RESULT_AFFECTING_OPTIONS = (
    "match_count",
    "similarity_threshold",
    "owner_id",
    "filter_ids",
    "boost_recent",
    "boost_popular",
    "boost_for_owner",
    "deduplicate",
    "dedup_threshold",
)


class CacheStore(Protocol):
    """get / set with TTL / delete by prefix, plus counters."""

    async def get(self, key: str) -> Optional[str]:
        ...

    async def set(self, key: str, value: str, ttl: int) -> None:
        ...

    async def delete_prefix(self, prefix: str) -> int:
        ...

    async def incr(self, key: str) -> int:
        ...

    async def get_int(self, key: str) -> int:
        ...


class RedisCacheStore:
    """CacheStore over redis.asyncio; every Redis failure becomes CacheUnavailableError."""

    def __init__(self, redis: Redis, scan_count: int = 500):
        self.redis = redis
        self.scan_count = scan_count

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.redis.get(key)
        except RedisError as e:
            raise CacheUnavailableError(f"cache get failed: {e}") from e

    async def set(self, key: str, value: str, ttl: int) -> None:
        try:
            await self.redis.set(key, value, ex=ttl)
        except RedisError as e:
            raise CacheUnavailableError(f"cache set failed: {e}") from e

    async def delete_prefix(self, prefix: str) -> int:
        """SCAN for ``prefix*`` and UNLINK in batches."""
        deleted = 0
        batch: List[str] = []
        pattern = GLOB_SPECIAL_RE.sub(r"\\\g<0>", prefix) + "*"
        try:
            async for key in self.redis.scan_iter(match=pattern, count=self.scan_count):
                batch.append(key)
                if len(batch) >= self.scan_count:
                    deleted += await self.redis.unlink(*batch)
                    batch = []
            if batch:
                deleted += await self.redis.unlink(*batch)
        except RedisError as e:
            raise CacheUnavailableError(f"cache prefix delete failed: {e}") from e
        return deleted

    async def incr(self, key: str) -> int:
        try:
            return await self.redis.incr(key)
        except RedisError as e:
            raise CacheUnavailableError(f"cache incr failed: {e}") from e

    async def get_int(self, key: str) -> int:
        value = await self.get(key)
        return int(value) if value else 0


def normalize_query(query: str) -> str:
    """Lowercase and collapse whitespace."""
    return " ".join(query.lower().split())


def owner_scope(owner_id: Optional[str]) -> str:
    return f"owner:{owner_id}" if owner_id else "all"


def make_search_key(query: str, options: SearchOptions, epoch: int = 0) -> str:
    """Deterministic cache key for a query and its result-affecting options."""
    signature = {
        "q": normalize_query(query),
        **{name: getattr(options, name) for name in RESULT_AFFECTING_OPTIONS},
    }
    digest = hashlib.sha256(
        json.dumps(signature, sort_keys=True, separators=(",", ":")).encode("utf-8")
    ).hexdigest()
    return f"{SEARCH_PREFIX}:{owner_scope(options.owner_id)}:e{epoch}:{digest}"


class SearchCache:
    """
    Typed search-result cache on top of a CacheStore.

    Reads and writes here still raise CacheUnavailableError; the retrieval
    engine decides how to degrade. Invalidation is what the orchestrator
    calls after a content mutation.
    """

    def __init__(self, store: CacheStore):
        self.store = store

    async def key_for(self, query: str, options: SearchOptions) -> str:
        """Cache key under the scope's current epoch."""
        epoch = await self.store.get_int(f"{EPOCH_PREFIX}:{owner_scope(options.owner_id)}")
        return make_search_key(query, options, epoch=epoch)

    async def _invalidate_scope(self, scope: str) -> int:
        await self.store.incr(f"{EPOCH_PREFIX}:{scope}")
        return await self.store.delete_prefix(f"{SEARCH_PREFIX}:{scope}:")

    async def get_results(self, key: str) -> Optional[List[SearchResult]]:
        raw = await self.store.get(key)
        if raw is None:
            return None
        try:
            return [SearchResult.model_validate(item) for item in json.loads(raw)]
        except (ValueError, TypeError) as e:
            # Unreadable entry (e.g. written by an older schema): treat as a miss
            logger.warning("search_cache_entry_discarded", key=key, error=str(e))
            return None

    async def set_results(self, key: str, results: List[SearchResult], ttl: int) -> None:
        payload = json.dumps([r.model_dump(mode="json") for r in results])
        await self.store.set(key, payload, ttl)

    async def invalidate_owner(self, owner_id: str) -> int:
        deleted = await self._invalidate_scope(owner_scope(owner_id))
        logger.info("search_cache_invalidated", owner_id=owner_id, deleted=deleted)
        return deleted

    async def invalidate_content(self, content_id: int, owner_id: str) -> int:
        deleted = await self._invalidate_scope(owner_scope(owner_id))
        deleted += await self._invalidate_scope(owner_scope(None))
        logger.info("search_cache_invalidated", content_id=content_id, owner_id=owner_id, deleted=deleted)
        return deleted

    async def record_hit(self) -> None:
        await self.store.incr(HITS_KEY)

    async def record_miss(self) -> None:
        await self.store.incr(MISSES_KEY)

    async def metrics(self) -> dict:
        hits = await self.store.get_int(HITS_KEY)
        misses = await self.store.get_int(MISSES_KEY)
        total = hits + misses
        return {
            "cache_hits": hits,
            "cache_misses": misses,
            "hit_rate": round(hits / total, 4) if total else 0.0,
        }
