"""
In-memory request rate limiting.

Every limiter is a FastAPI dependency:

    @router.post("", dependencies=[Depends(analysis_limiter)])

An admitted request gets ``X-RateLimit-*`` headers; a rejected one raises
``RateLimitError`` (429 with ``retryAfter`` seconds).

All counters live in a ``RateLimitStore``. It is process-local and volatile:
a restart resets every counter. Mutations happen on the event loop only,
so the store needs no locking; a threaded deployment would need a lock per
map.
"""
import asyncio
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from fastapi import Request, Response

from app.core.auth import get_optional_user
from app.core.errors import RateLimitError

logger = logging.getLogger(__name__)

GC_MAX_AGE_SECONDS = 24 * 60 * 60
GC_INTERVAL_SECONDS = 60 * 60

Clock = Callable[[], float]
KeyFunc = Callable[[Request], Awaitable[str]]


class RateLimitStore:
    """Ordered request timestamps per key."""

    def __init__(self) -> None:
        self._hits: Dict[str, List[float]] = {}

    def __len__(self) -> int:
        return len(self._hits)

    def get(self, key: str) -> List[float]:
        return self._hits.get(key, [])

    def set(self, key: str, timestamps: List[float]) -> None:
        if timestamps:
            self._hits[key] = timestamps
        else:
            self._hits.pop(key, None)

    def prune(self, key: str, cutoff: float) -> List[float]:
        """Keep only timestamps newer than ``cutoff`` and return them."""
        recent = [ts for ts in self._hits.get(key, []) if ts > cutoff]
        self.set(key, recent)
        return recent

    def collect_garbage(self, now: float, max_age: float = GC_MAX_AGE_SECONDS) -> int:
        """Drop timestamps older than ``max_age``; returns the number of keys left."""
        for key in list(self._hits):
            self.prune(key, now - max_age)
        return len(self._hits)

    def reset(self) -> None:
        self._hits.clear()


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0
    reset_at: Optional[float] = None
    window: Optional[int] = None
    current: int = 0
    message: Optional[str] = None


# ----------------------------------------------------------------------
# Caller identity
# ----------------------------------------------------------------------

def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def ip_identity(request: Request) -> str:
    return f"ip:{client_ip(request)}"


async def user_identity(request: Request) -> str:
    user = await get_optional_user(request)
    if user and user.sub:
        return f"user:{user.sub}"
    return await ip_identity(request)


async def resolve_identity(request: Request) -> str:
    """API key header first, then authenticated user id, then requester IP."""
    api_key = request.headers.get("X-API-Key")
    if api_key:
        return f"key:{api_key}"
    return await user_identity(request)


# ----------------------------------------------------------------------
# Limiters
# ----------------------------------------------------------------------

class BaseLimiter:
    """Shared plumbing: identity resolution, headers, rejection."""

    message = "Rate limit exceeded. Please try again later."

    def __init__(
        self,
        name: str,
        *,
        store: RateLimitStore,
        key_func: KeyFunc = resolve_identity,
        clock: Clock = time.time,
        message: Optional[str] = None,
        skip: Optional[Callable[[Request], Awaitable[bool]]] = None,
    ):
        self.name = name
        self.store = store
        self.key_func = key_func
        self.clock = clock
        self.skip = skip
        if message:
            self.message = message

    def _key(self, identity: str) -> str:
        # namespaced so independent policies never share counters
        return f"{self.name}:{identity}"

    def check(self, identity: str) -> RateLimitDecision:
        raise NotImplementedError

    def _reject(self, identity: str, decision: RateLimitDecision) -> RateLimitError:
        logger.warning(f"Rate limit '{self.name}' exceeded for: {identity}")
        extra = {"currentRequests": decision.current}
        if decision.window is not None:
            extra["window"] = f"{decision.window}s"
        return RateLimitError(
            decision.message or self.message,
            retry_after=decision.retry_after,
            limit=decision.limit,
            remaining=0,
            extra=extra,
        )

    async def __call__(self, request: Request, response: Response) -> None:
        if self.skip is not None and await self.skip(request):
            return
        identity = await self.key_func(request)
        decision = self.check(identity)
        if not decision.allowed:
            raise self._reject(identity, decision)
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        if decision.reset_at is not None:
            response.headers["X-RateLimit-Reset"] = datetime.fromtimestamp(
                decision.reset_at, tz=timezone.utc
            ).isoformat()

    async def admit(self, request: Request) -> bool:
        """
        Count one request for the caller without raising.

        For callers that degrade instead of answering 429, such as badges.
        """
        if self.skip is not None and await self.skip(request):
            return True
        identity = await self.key_func(request)
        decision = self.check(identity)
        if not decision.allowed:
            logger.warning(f"Rate limit '{self.name}' exceeded for: {identity}")
        return decision.allowed


class FixedWindowLimiter(BaseLimiter):
    """
    N requests per window. The window opens with the first request of a key
    and closes ``window_seconds`` later; a rejected caller is told how much
    of the window is left.
    """

    def __init__(self, name: str, limit: int, window_seconds: int, **kwargs):
        super().__init__(name, **kwargs)
        self.limit = limit
        self.window_seconds = window_seconds

    def check(self, identity: str) -> RateLimitDecision:
        key = self._key(identity)
        now = self.clock()
        hits = self.store.get(key)
        if hits and now - hits[0] >= self.window_seconds:
            hits = []
        window_end = (hits[0] if hits else now) + self.window_seconds

        if len(hits) >= self.limit:
            return RateLimitDecision(
                allowed=False,
                limit=self.limit,
                remaining=0,
                retry_after=max(math.ceil(window_end - now), 1),
                reset_at=window_end,
                window=self.window_seconds,
                current=len(hits),
            )

        hits = hits + [now]
        self.store.set(key, hits)
        return RateLimitDecision(
            allowed=True,
            limit=self.limit,
            remaining=max(self.limit - len(hits), 0),
            reset_at=window_end,
            window=self.window_seconds,
            current=len(hits),
        )


class SlidingWindowLimiter(BaseLimiter):
    """
    At most ``max_requests`` in any trailing ``window_seconds``. Retry-after is
    counted from the oldest request still inside the window.
    """

    def __init__(self, name: str, max_requests: int, window_seconds: float, **kwargs):
        super().__init__(name, **kwargs)
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        if not kwargs.get("message"):
            self.message = f"Too many requests. Limit: {max_requests} per {int(window_seconds)} seconds"

    def check(self, identity: str) -> RateLimitDecision:
        key = self._key(identity)
        now = self.clock()
        recent = self.store.prune(key, now - self.window_seconds)

        if len(recent) >= self.max_requests:
            oldest = min(recent)
            return RateLimitDecision(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                retry_after=max(math.ceil(oldest + self.window_seconds - now), 1),
                reset_at=oldest + self.window_seconds,
                window=int(self.window_seconds),
                current=len(recent),
            )

        recent.append(now)
        self.store.set(key, recent)
        return RateLimitDecision(
            allowed=True,
            limit=self.max_requests,
            remaining=max(self.max_requests - len(recent), 0),
            reset_at=now + self.window_seconds,
            window=int(self.window_seconds),
            current=len(recent),
        )


class ProgressiveLimiter(BaseLimiter):
    """
    Several (duration, limit) tiers checked from the shortest window up; the
    first tier at or over its limit rejects. An admitted request is recorded
    once and the history is pruned against the longest window.
    """

    DEFAULT_TIERS: Tuple[Tuple[int, int], ...] = ((60, 20), (5 * 60, 50), (15 * 60, 100))

    def __init__(self, name: str, tiers: Sequence[Tuple[int, int]] = DEFAULT_TIERS, **kwargs):
        super().__init__(name, **kwargs)
        if not tiers:
            raise ValueError("ProgressiveLimiter needs at least one tier")
        self.tiers = sorted(tiers)

    def check(self, identity: str) -> RateLimitDecision:
        key = self._key(identity)
        now = self.clock()
        hits = self.store.get(key)

        for duration, limit in self.tiers:
            in_window = sorted(ts for ts in hits if ts > now - duration)
            if len(in_window) >= limit:
                # wait until enough requests age out to get back under the limit
                release = in_window[len(in_window) - limit] + duration
                return RateLimitDecision(
                    allowed=False,
                    limit=limit,
                    remaining=0,
                    retry_after=max(math.ceil(release - now), 1),
                    reset_at=release,
                    window=duration,
                    current=len(in_window),
                    message=f"Progressive rate limit exceeded: {limit} requests per {duration} seconds",
                )

        longest = self.tiers[-1][0]
        kept = self.store.prune(key, now - longest)
        kept.append(now)
        self.store.set(key, kept)

        shortest_duration, shortest_limit = self.tiers[0]
        used = sum(1 for ts in kept if ts > now - shortest_duration)
        return RateLimitDecision(
            allowed=True,
            limit=shortest_limit,
            remaining=max(shortest_limit - used, 0),
            reset_at=now + shortest_duration,
            window=shortest_duration,
            current=used,
        )


# ----------------------------------------------------------------------
# Garbage collection
# ----------------------------------------------------------------------

async def run_garbage_collector(
    store: RateLimitStore,
    interval: float = GC_INTERVAL_SECONDS,
    max_age: float = GC_MAX_AGE_SECONDS,
    clock: Clock = time.time,
) -> None:
    """Periodically forget request history older than ``max_age``."""
    while True:
        await asyncio.sleep(interval)
        active = store.collect_garbage(clock(), max_age)
        logger.info(f"Rate limiter cleanup completed. Active keys: {active}")

