"""
Two-tier key/value cache.

A shared Redis instance is authoritative while it is reachable. When Redis is
not configured, cannot be reached, or starts failing, every operation falls
back to a bounded in-process map. Callers never see a cache error: failures
are logged (once per state transition) and the call degrades.

Values are JSON-serialisable objects (dicts, lists, strings, numbers).
``None`` is the miss marker, so ``None`` itself cannot be cached.
"""
import asyncio
import json
import logging
import math
import time
from enum import Enum
from fnmatch import fnmatchcase
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 3600
LOCAL_MAX_ENTRIES = 1000
SWEEP_INTERVAL_SECONDS = 60.0

# Errors that mean "the remote tier is unusable right now"
REMOTE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)

Clock = Callable[[], float]


class CacheState(str, Enum):
    """Whether the remote tier is serving requests."""
    AVAILABLE = "available"
    DEGRADED = "degraded"


class LocalCache:
    """
    Bounded in-process map with per-entry expiry.

    Entries are kept in insertion order; once more than ``max_entries`` are
    stored the oldest inserted entry is evicted, whatever its TTL. Re-setting
    a key counts as a fresh insertion.
    """

    def __init__(self, max_entries: int = LOCAL_MAX_ENTRIES, clock: Clock = time.time):
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, Optional[float]]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, expires_at: Optional[float], now: float) -> bool:
        return expires_at is not None and expires_at <= now

    def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._expired(expires_at, self._clock()):
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds > 0 else None
        self._entries.pop(key, None)
        self._entries[key] = (value, expires_at)
        while len(self._entries) > self.max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def keys(self, pattern: str = "*") -> List[str]:
        now = self._clock()
        return [
            key for key, (_, expires_at) in self._entries.items()
            if not self._expired(expires_at, now) and fnmatchcase(key, pattern)
        ]

    def ttl(self, key: str) -> int:
        """Remaining seconds; -1 when the key never expires, -2 when absent."""
        entry = self._entries.get(key)
        if entry is None:
            return -2
        _, expires_at = entry
        if expires_at is None:
            return -1
        remaining = math.ceil(expires_at - self._clock())
        return remaining if remaining > 0 else -2

    def clear(self) -> None:
        self._entries.clear()

    def sweep(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, (_, expires_at) in self._entries.items() if self._expired(expires_at, now)]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def estimated_size(self) -> str:
        size = 0
        for value, _ in self._entries.values():
            try:
                size += len(json.dumps(value))
            except (TypeError, ValueError):
                size += 100
        return f"{round(size / 1024)}KB"


class DualTierCache:
    """
    Redis-backed cache with an in-process fallback.

    Usage:
        cache = DualTierCache(redis_url=settings.REDIS_URL)
        await cache.connect()
        cache.start()          # background expiry sweep
        badge = await cache.wrap("badge:octocat:hello-world:flat", render, 3600)
        await cache.close()
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[redis.Redis] = None,
        local: Optional[LocalCache] = None,
        sweep_interval: float = SWEEP_INTERVAL_SECONDS,
        clock: Clock = time.time,
    ):
        self.redis_url = redis_url
        self._client = client
        self.local = local or LocalCache(clock=clock)
        self.sweep_interval = sweep_interval
        self.state = CacheState.DEGRADED
        self._ever_connected = False
        self._degraded_logged = False
        self._inflight: Dict[str, asyncio.Task] = {}
        self._sweeper: Optional[asyncio.Task] = None

    @property
    def remote_configured(self) -> bool:
        return self._client is not None or bool(self.redis_url)

    @property
    def connected(self) -> bool:
        return self.state is CacheState.AVAILABLE and self._client is not None

    # ------------------------------------------------------------------
    # Remote tier state
    # ------------------------------------------------------------------

    async def connect(self) -> CacheState:
        """Try to reach the remote tier. Never raises."""
        if not self.remote_configured:
            logger.info("No REDIS_URL provided, using in-process cache")
            return self.state

        try:
            if self._client is None:
                self._client = redis.from_url(
                    self.redis_url,
                    decode_responses=True,
                    socket_timeout=5.0,
                    socket_connect_timeout=5.0,
                )
            await self._client.ping()
        except (*REMOTE_ERRORS, ValueError) as e:
            self._mark_degraded(e)
        else:
            self._mark_available()
        return self.state

    def _mark_available(self) -> None:
        if self.state is CacheState.AVAILABLE:
            return
        if self._ever_connected:
            logger.info("Redis cache reconnected")
        else:
            logger.info("Connected to Redis cache server")
        self._ever_connected = True
        self._degraded_logged = False
        self.state = CacheState.AVAILABLE

    def _mark_degraded(self, error: BaseException) -> None:
        # one warning per transition, not per failed call
        if self.state is CacheState.DEGRADED and self._degraded_logged:
            return
        if self._ever_connected:
            logger.warning(f"Redis cache disconnected, falling back to in-process cache: {error}")
        else:
            logger.warning(f"Redis connection failed, using in-process cache: {error}")
        self._degraded_logged = True
        self.state = CacheState.DEGRADED

    async def probe(self) -> CacheState:
        """Ping the remote tier while degraded, to notice it coming back."""
        if self.state is CacheState.DEGRADED and self.remote_configured:
            await self.connect()
        return self.state

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any:
        if self.connected:
            try:
                raw = await self._client.get(key)
            except REMOTE_ERRORS as e:
                self._mark_degraded(e)
            else:
                if raw is None:
                    return None
                try:
                    return json.loads(raw)
                except ValueError:
                    logger.warning(f"Discarding undecodable cache value for {key}")
                    return None
        return self.local.get(key)

    async def set(self, key: str, value: Any, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> bool:
        """Store ``value``. Returns False when the value could not be stored."""
        try:
            payload = json.dumps(value)
        except (TypeError, ValueError) as e:
            logger.error(f"Cache set error for {key}: value is not JSON serialisable ({e})")
            return False

        if self.connected:
            try:
                if ttl_seconds > 0:
                    await self._client.setex(key, int(ttl_seconds), payload)
                else:
                    await self._client.set(key, payload)
                return True
            except REMOTE_ERRORS as e:
                self._mark_degraded(e)

        self.local.set(key, value, ttl_seconds)
        return True

    async def delete(self, key: str) -> bool:
        # Both tiers, so an entry written while degraded cannot resurface later
        removed = self.local.delete(key)
        if self.connected:
            try:
                removed = bool(await self._client.delete(key)) or removed
            except REMOTE_ERRORS as e:
                self._mark_degraded(e)
        return removed

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern. Returns how many went."""
        removed = 0
        for key in set(self.local.keys(pattern)):
            removed += int(self.local.delete(key))
        if self.connected:
            try:
                remote_keys = await self._client.keys(pattern)
                if remote_keys:
                    removed += await self._client.delete(*remote_keys)
            except REMOTE_ERRORS as e:
                self._mark_degraded(e)
        return removed

    async def exists(self, key: str) -> bool:
        if self.connected:
            try:
                return (await self._client.exists(key)) == 1
            except REMOTE_ERRORS as e:
                self._mark_degraded(e)
        return self.local.exists(key)

    async def keys(self, pattern: str = "*") -> List[str]:
        if self.connected:
            try:
                return sorted(await self._client.keys(pattern))
            except REMOTE_ERRORS as e:
                self._mark_degraded(e)
        return sorted(self.local.keys(pattern))

    async def ttl(self, key: str) -> int:
        if self.connected:
            try:
                return await self._client.ttl(key)
            except REMOTE_ERRORS as e:
                self._mark_degraded(e)
        return self.local.ttl(key)

    async def flush(self) -> bool:
        self.local.clear()
        if self.connected:
            try:
                await self._client.flushdb()
            except REMOTE_ERRORS as e:
                self._mark_degraded(e)
        logger.info("Cache flushed successfully")
        return True

    async def wrap(
        self,
        key: str,
        producer: Callable[[], Awaitable[Any]],
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> Any:
        """
        Return the cached value for ``key`` or compute it with ``producer``.

        Concurrent calls for the same missing key share one producer task;
        late arrivals await the same task. Cancelling any caller leaves the
        task running for the others. Producer errors propagate to every
        waiting caller and nothing is stored. A failed store does not lose
        the computed value.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._produce(key, producer, ttl_seconds))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    async def _produce(
        self,
        key: str,
        producer: Callable[[], Awaitable[Any]],
        ttl_seconds: int,
    ) -> Any:
        # another caller may have stored it between our miss and now
        result = await self.get(key)
        if result is not None:
            return result
        result = await producer()
        try:
            await self.set(key, result, ttl_seconds)
        except Exception as e:
            logger.error(f"Cache wrap store error for {key}: {e}")
        return result

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # every caller may have gone; retrieve it so asyncio stays quiet
        if not task.cancelled():
            task.exception()

    async def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "type": "redis" if self.connected else "memory",
            "connected": self.connected,
            "state": self.state.value,
        }
        if self.connected:
            try:
                stats["redis"] = {"keyCount": await self._client.dbsize()}
            except REMOTE_ERRORS as e:
                logger.warning(f"Failed to get Redis stats: {e}")
                stats["redis"] = {"error": "Unable to fetch Redis stats"}
        stats["memory"] = {
            "keyCount": len(self.local),
            "estimatedSize": self.local.estimated_size(),
        }
        return stats

    # ------------------------------------------------------------------
    # Background sweep
    # ------------------------------------------------------------------

    async def sweep_once(self) -> int:
        removed = self.local.sweep()
        if removed:
            logger.debug(f"Cleaned up {removed} expired cache entries")
        await self.probe()
        return removed

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Cache sweep failed: {e}", exc_info=True)

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        if self._client is not None:
            try:
                await self._client.aclose()
                logger.info("Cache connection closed")
            except REMOTE_ERRORS as e:
                logger.warning(f"Error closing cache connection: {e}")
            finally:
                self._client = None
                self.state = CacheState.DEGRADED
