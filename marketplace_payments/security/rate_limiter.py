"""
Sliding-window rate limiting.

Each key maps to the ordered request timestamps inside the window. The
window state lives behind a `RateLimitStore` so a single process can use
the in-memory store and a fleet can share Redis.
"""
import asyncio
import json
import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError, WatchError

from marketplace_payments.core.exceptions import RateLimitError
from marketplace_payments.monitoring.metrics import metrics
from marketplace_payments.security.context import RequestContext

logger = structlog.get_logger(__name__)

RATE_LIMIT_MESSAGE = "Too many payment requests. Please try again later."

# Concurrent writers on one key retry the read-modify-write this many times.
MAX_CAS_ATTEMPTS = 5


class RateLimitStore(Protocol):
    """Versioned key/value store for window timestamps."""

    async def get(self, key: str) -> Tuple[List[float], Any]:
        """Return (timestamps, version) for a key; empty list when unset."""
        ...

    async def compare_and_set(
        self, key: str, version: Any, timestamps: List[float], ttl_seconds: int
    ) -> bool:
        """Replace the timestamps only if the key is still at `version`."""
        ...


class InMemoryRateLimitStore:
    """Process-local store guarded by a single asyncio.Lock."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._windows: Dict[str, Tuple[int, List[float]]] = {}

    async def get(self, key: str) -> Tuple[List[float], Any]:
        async with self._lock:
            version, timestamps = self._windows.get(key, (0, []))
            return list(timestamps), version

    async def compare_and_set(
        self, key: str, version: Any, timestamps: List[float], ttl_seconds: int
    ) -> bool:
        async with self._lock:
            current, _ = self._windows.get(key, (0, []))
            if current != version:
                return False
            self._windows[key] = (current + 1, list(timestamps))
            return True

    async def clear(self) -> None:
        async with self._lock:
            self._windows.clear()


class RedisRateLimitStore:
    """Shared store using WATCH/MULTI for the compare-and-set."""

    def __init__(self, redis_client: aioredis.Redis, namespace: str = "ratelimit"):
        self.redis = redis_client
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Tuple[List[float], Any]:
        raw = await self.redis.get(self._key(key))
        if raw is None:
            return [], None
        return [float(ts) for ts in json.loads(raw)], raw

    async def compare_and_set(
        self, key: str, version: Any, timestamps: List[float], ttl_seconds: int
    ) -> bool:
        redis_key = self._key(key)
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(redis_key)
                if await pipe.get(redis_key) != version:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.set(redis_key, json.dumps(timestamps), ex=max(int(ttl_seconds), 1))
                await pipe.execute()
                return True
            except WatchError:
                return False


@dataclass
class RateLimitDecision:
    """Outcome of one rate-limit check."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: Optional[float] = None
    retry_after: int = 0
    request_count: int = 0
    headers: Dict[str, str] = field(default_factory=dict)


def _iso(epoch_seconds: float) -> str:
    moment = datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RateLimiter:
    """
    Sliding-window limiter over a RateLimitStore.

    A request is rejected when the window already holds `max_requests`
    timestamps; accepted requests append the current time.
    """

    def __init__(
        self,
        name: str,
        window_seconds: int,
        max_requests: int,
        store: RateLimitStore,
        key_fn: Optional[Callable[[RequestContext], str]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize rate limiter.

        Args:
            name: Limiter name, also the default key prefix
            window_seconds: Window length
            max_requests: Requests allowed per window
            store: Window state store
            key_fn: Builds the limiter key from a request context
            clock: Wall-clock time source in seconds
        """
        self.name = name
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self.store = store
        self.key_fn = key_fn or (lambda ctx: f"{name}_{ctx.caller_key}")
        self.clock = clock

    async def hit(self, key: str) -> RateLimitDecision:
        """
        Record a request against `key` if the window has room.

        Store failures fail open: the request is allowed and the error logged.
        """
        try:
            for _ in range(MAX_CAS_ATTEMPTS):
                timestamps, version = await self.store.get(key)
                now = self.clock()
                window_start = now - self.window_seconds
                recent = [ts for ts in timestamps if ts > window_start]

                if len(recent) >= self.max_requests:
                    retry_after = max(0, math.ceil(recent[0] + self.window_seconds - now))
                    return RateLimitDecision(
                        allowed=False,
                        limit=self.max_requests,
                        remaining=0,
                        reset_at=recent[0] + self.window_seconds,
                        retry_after=retry_after,
                        request_count=len(recent),
                    )

                recent.append(now)
                if await self.store.compare_and_set(key, version, recent, self.window_seconds):
                    reset_at = recent[0] + self.window_seconds
                    return RateLimitDecision(
                        allowed=True,
                        limit=self.max_requests,
                        remaining=max(0, self.max_requests - len(recent)),
                        reset_at=reset_at,
                        request_count=len(recent),
                        headers={
                            "X-RateLimit-Limit": str(self.max_requests),
                            "X-RateLimit-Remaining": str(max(0, self.max_requests - len(recent))),
                            "X-RateLimit-Reset": _iso(reset_at),
                        },
                    )
            logger.warning("rate_limit_contention", limiter=self.name, key=key)
        except (RedisError, ValueError, TypeError) as e:
            logger.error("rate_limit_store_error", limiter=self.name, key=key, error=str(e))

        return RateLimitDecision(
            allowed=True, limit=self.max_requests, remaining=self.max_requests
        )

    async def check(self, ctx: RequestContext) -> RateLimitDecision:
        """
        Apply the limiter to a request.

        Raises:
            RateLimitError: If the caller's window is full
        """
        key = self.key_fn(ctx)
        decision = await self.hit(key)
        if not decision.allowed:
            metrics.record_rate_limit_rejection(self.name)
            raise RateLimitError(
                RATE_LIMIT_MESSAGE,
                retry_after=decision.retry_after,
                key=key,
                request_count=decision.request_count,
                max_requests=self.max_requests,
                window_seconds=self.window_seconds,
            )
        return decision
