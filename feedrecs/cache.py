"""Feed cache: key/value stores with TTL and a degrading feed wrapper."""
from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import quote

import orjson
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from .errors import CacheError

log = logging.getLogger(__name__)


class MemoryCacheStore:
    """Process-local store; ``clock`` returns seconds and is injectable for tests.

    Expired entries are swept on writes at most once per ``sweep_interval``.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic, sweep_interval: float = 60.0):
        self.clock = clock
        self.sweep_interval = sweep_interval
        self._data: Dict[str, Tuple[float, bytes]] = {}
        self._next_sweep = clock()

    def __len__(self) -> int:
        return len(self._data)

    def _sweep(self, now: float) -> None:
        expired = [k for k, (exp, _) in self._data.items() if exp <= now]
        for k in expired:
            del self._data[k]
        self._next_sweep = now + self.sweep_interval

    async def get(self, key: str) -> Optional[bytes]:
        hit = self._data.get(key)
        if hit is None:
            return None
        expires_at, value = hit
        if self.clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        now = self.clock()
        if now >= self._next_sweep:
            self._sweep(now)
        self._data[key] = (now + ttl, value)

    async def delete(self, *keys: str) -> int:
        return sum(1 for k in keys if self._data.pop(k, None) is not None)

    async def scan(self, pattern: str) -> List[str]:
        now = self.clock()
        return [k for k, (exp, _) in list(self._data.items()) if exp > now and fnmatch.fnmatchcase(k, pattern)]

    async def close(self) -> None:
        self._data.clear()


class RedisCacheStore:
    def __init__(self, url: str, connect_timeout: float = 10.0):
        self._redis = aioredis.from_url(
            url,
            socket_connect_timeout=connect_timeout,
            socket_timeout=connect_timeout,
        )

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await self._redis.get(key)
        except RedisError as e:
            raise CacheError(f"redis GET failed: {e}") from e

    async def set(self, key: str, value: bytes, ttl: float) -> None:
        try:
            await self._redis.set(key, value, ex=max(1, int(ttl)))
        except RedisError as e:
            raise CacheError(f"redis SET failed: {e}") from e

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return await self._redis.delete(*keys)
        except RedisError as e:
            raise CacheError(f"redis DEL failed: {e}") from e

    async def scan(self, pattern: str) -> List[str]:
        try:
            return [k.decode() if isinstance(k, bytes) else k async for k in self._redis.scan_iter(match=pattern)]
        except RedisError as e:
            raise CacheError(f"redis SCAN failed: {e}") from e

    async def close(self) -> None:
        await self._redis.aclose()


PERSONALIZED_MODES = frozenset({"personalized"})


def user_prefix(user_id: str) -> str:
    # percent-encoded so the segment holds no ":" and no glob characters
    return f"feed:{quote(user_id, safe='')}:"


def feed_key(user_id: str, mode: str, page: int, limit: int, salt: Optional[str] = None) -> str:
    key = f"{user_prefix(user_id)}{mode}:p{page}:l{limit}"
    return f"{key}:s{salt}" if salt else key


class FeedCache:
    """Cache-first feed storage; every store failure degrades to a miss."""

    def __init__(self, store, feed_ttl: int = 1800, global_ttl: int = 7200):
        self.store = store
        self.feed_ttl = feed_ttl
        self.global_ttl = global_ttl
        self.hits = 0
        self.misses = 0
        self.errors = 0
        self._inflight: Dict[str, asyncio.Future] = {}
        self._invalidated: Set[asyncio.Future] = set()

    def ttl_for(self, mode: str) -> int:
        return self.feed_ttl if mode in PERSONALIZED_MODES else self.global_ttl

    async def get(self, key: str) -> Optional[dict]:
        try:
            raw = await self.store.get(key)
        except CacheError as e:
            self.errors += 1
            log.warning(f"Cache read failed for {key}, computing directly: {e}")
            return None
        if raw is None:
            self.misses += 1
            return None
        try:
            payload = orjson.loads(raw)
        except orjson.JSONDecodeError:
            self.errors += 1
            log.warning(f"Dropping undecodable cache entry {key}")
            await self.delete(key)
            return None
        self.hits += 1
        return payload

    async def put(self, key: str, payload: dict, ttl: int) -> bool:
        try:
            await self.store.set(key, orjson.dumps(payload), ttl)
            return True
        except CacheError as e:
            self.errors += 1
            log.warning(f"Cache write failed for {key}: {e}")
            return False

    async def delete(self, *keys: str) -> int:
        try:
            return await self.store.delete(*keys)
        except CacheError as e:
            self.errors += 1
            log.warning(f"Cache delete failed: {e}")
            return 0

    async def invalidate_user(self, user_id: str) -> int:
        prefix = user_prefix(user_id)
        # builds already running for this user must not write their result
        for k in [k for k in self._inflight if k.startswith(prefix)]:
            self._invalidated.add(self._inflight.pop(k))
        try:
            keys = await self.store.scan(f"{prefix}*")
        except CacheError as e:
            self.errors += 1
            log.warning(f"Cache scan failed while invalidating {user_id}: {e}")
            return 0
        n = await self.delete(*keys) if keys else 0
        if n:
            log.info(f"Invalidated {n} cached feed pages for user {user_id}")
        return n

    async def get_or_compute(
        self,
        key: str,
        ttl: int,
        compute: Callable[[], Awaitable[dict]],
        refresh: bool = False,
    ) -> Tuple[dict, bool]:
        """Cache-first read; concurrent misses on one key share one computation.

        ``refresh`` skips the cache read but still joins a build already in
        flight. A result whose user was invalidated mid-build is returned to
        its callers but not stored. Returns ``(payload, from_cache)``.
        """
        if not refresh:
            cached = await self.get(key)
            if cached is not None:
                return cached, True
        pending = self._inflight.get(key)
        if pending is not None:
            return await asyncio.shield(pending), False
        fut = asyncio.get_running_loop().create_future()
        self._inflight[key] = fut
        try:
            payload = await compute()
            if payload.get("items") and fut not in self._invalidated:
                await self.put(key, payload, ttl)
            fut.set_result(payload)
            return payload, False
        except Exception as e:
            fut.set_exception(e)
            # mark retrieved; there may be no waiters
            fut.exception()
            raise
        except BaseException:
            fut.cancel()
            raise
        finally:
            self._invalidated.discard(fut)
            if self._inflight.get(key) is fut:
                del self._inflight[key]

    def stats(self) -> dict:
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "errors": self.errors,
            "hit_rate": (self.hits / total) if total else 0.0,
            "inflight": len(self._inflight),
        }


def make_cache_store(redis_url: Optional[str]):
    if redis_url:
        log.info("Using Redis feed cache")
        return RedisCacheStore(redis_url)
    log.info("Redis not configured, using in-process feed cache")
    return MemoryCacheStore()
