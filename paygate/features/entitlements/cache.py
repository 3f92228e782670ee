"""
Per-user entitlement snapshot cache.

Entries have two horizons:
- fresh: younger than ENTITLEMENT_CACHE_TTL_SECONDS, served without reconciling
- usable: younger than ENTITLEMENT_STALE_MAX_AGE_SECONDS, served (marked stale)
  only while the billing oracle is unreachable

Backed by Redis when REDIS_URL is set, otherwise by an in-process dict.
Cache failures are logged and treated as misses.
"""

import json
import logging
import time
from typing import Callable, Dict, Optional, Tuple

import redis

from paygate.core.config import settings
from paygate.models.entitlement import EntitlementSnapshot

logger = logging.getLogger(__name__)

CACHE_KEY_PREFIX = "entitlements:v1:"


def _key(user_id: str) -> str:
    return f"{CACHE_KEY_PREFIX}{user_id}"


def _serialize(snapshot: EntitlementSnapshot, cached_at: float) -> str:
    return json.dumps({
        "cached_at": cached_at,
        "snapshot": snapshot.model_dump(mode="json"),
    })


def _deserialize(raw: str) -> Tuple[EntitlementSnapshot, float]:
    o = json.loads(raw)
    return EntitlementSnapshot.model_validate(o["snapshot"]), float(o["cached_at"])


def get_redis_client(url: Optional[str] = None):
    """Redis client for REDIS_URL, or None when not configured or unreachable."""
    url = url or settings.REDIS_URL
    if not url:
        return None
    try:
        client = redis.Redis.from_url(url, decode_responses=True)
        client.ping()
        return client
    except redis.RedisError as e:
        logger.warning("Redis unavailable, using in-process snapshot cache: %s", e)
        return None


class CachedSnapshot:
    __slots__ = ("snapshot", "cached_at", "age_seconds")

    def __init__(self, snapshot: EntitlementSnapshot, cached_at: float, age_seconds: float):
        self.snapshot = snapshot
        self.cached_at = cached_at
        self.age_seconds = age_seconds


class SnapshotCache:
    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        stale_max_age_seconds: Optional[int] = None,
        client=None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.ENTITLEMENT_CACHE_TTL_SECONDS
        self.stale_max_age_seconds = (
            stale_max_age_seconds if stale_max_age_seconds is not None else settings.ENTITLEMENT_STALE_MAX_AGE_SECONDS
        )
        self.client = client
        self.clock = clock
        self._memory: Dict[str, Tuple[EntitlementSnapshot, float]] = {}

    def _load(self, user_id: str) -> Optional[Tuple[EntitlementSnapshot, float]]:
        if self.client is None:
            return self._memory.get(user_id)
        try:
            raw = self.client.get(_key(user_id))
        except redis.RedisError as e:
            logger.warning("Snapshot cache get failed: %s", e)
            return None
        if not raw:
            return None
        return _deserialize(raw)

    def _lookup(self, user_id: str, max_age: float) -> Optional[CachedSnapshot]:
        entry = self._load(user_id)
        if entry is None:
            return None
        snapshot, cached_at = entry
        age = self.clock() - cached_at
        if age >= max_age:
            return None
        return CachedSnapshot(snapshot, cached_at, age)

    def get_fresh(self, user_id: str) -> Optional[CachedSnapshot]:
        """Entry still inside the TTL window."""
        return self._lookup(user_id, self.ttl_seconds)

    def get_usable(self, user_id: str) -> Optional[CachedSnapshot]:
        """Entry still inside the stale window (for oracle outages)."""
        return self._lookup(user_id, self.stale_max_age_seconds)

    def set(self, user_id: str, snapshot: EntitlementSnapshot) -> None:
        cached_at = self.clock()
        if self.client is None:
            self._memory[user_id] = (snapshot, cached_at)
            return
        try:
            self.client.setex(_key(user_id), int(self.stale_max_age_seconds), _serialize(snapshot, cached_at))
        except redis.RedisError as e:
            logger.warning("Snapshot cache set failed: %s", e)

    def invalidate(self, user_id: str) -> None:
        """Drop the user's entry so the next read reconciles."""
        if self.client is None:
            self._memory.pop(user_id, None)
            return
        try:
            self.client.delete(_key(user_id))
        except redis.RedisError as e:
            logger.warning("Snapshot cache delete failed: %s", e)

    def clear(self) -> None:
        if self.client is None:
            self._memory.clear()
            return
        try:
            for key in self.client.scan_iter(f"{CACHE_KEY_PREFIX}*"):
                self.client.delete(key)
        except redis.RedisError as e:
            logger.warning("Snapshot cache clear failed: %s", e)


_cache: Optional[SnapshotCache] = None


def get_snapshot_cache() -> SnapshotCache:
    """Process-wide cache, created on first use."""
    global _cache
    if _cache is None:
        _cache = SnapshotCache(client=get_redis_client())
    return _cache


def reset_snapshot_cache(cache: Optional[SnapshotCache] = None) -> None:
    """Replace (or drop) the process-wide cache. Used by tests."""
    global _cache
    _cache = cache
