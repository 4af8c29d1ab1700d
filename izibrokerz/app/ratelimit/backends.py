"""Bucket store backends for the rate limit gate.

Both backends implement the same sliding-window-with-cooldown contract, so
the gate can swap the process-local store for the shared Redis one without
changing what callers see.
"""

import asyncio
import math
import time
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Callable, Optional

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from izibrokerz.app.core.logging import get_logger
from izibrokerz.app.ratelimit.models import BucketState, ConsumeResult
from izibrokerz.app.ratelimit.policies import RateLimitPolicy
from izibrokerz.app.ratelimit.redis_lua import CONSUME_SCRIPT, PEEK_SCRIPT

logger = get_logger(__name__)

Clock = Callable[[], float]


class BucketBackend(ABC):
    """Abstract base class for bucket stores.

    Buckets are addressed by (policy name, identity key); implementations
    derive their storage keys from ``key_prefix``.
    """

    name: str = "abstract"

    def __init__(self, key_prefix: str = "izibrokerz:ratelimit"):
        self.key_prefix = key_prefix

    def bucket_key(self, identity_key: str, policy: RateLimitPolicy) -> str:
        return f"{self.key_prefix}:{policy.name}:{identity_key}"

    @abstractmethod
    async def try_consume(
        self, identity_key: str, policy: RateLimitPolicy, points: int = 1
    ) -> ConsumeResult:
        """Consume points from the bucket, or report why it cannot.

        Args:
            identity_key: Actor the bucket belongs to
            policy: Limiter configuration for the bucket
            points: Points to consume

        Returns:
            ConsumeResult; ``allowed`` is False when the bucket is exhausted
            or cooling down
        """

    @abstractmethod
    async def peek(
        self, identity_key: str, policy: RateLimitPolicy
    ) -> Optional[ConsumeResult]:
        """Return the bucket state without consuming, or None if no live bucket."""

    @abstractmethod
    async def delete(self, identity_key: str, policy: RateLimitPolicy) -> None:
        """Forget one bucket."""

    @abstractmethod
    async def clear(self) -> None:
        """Forget every bucket owned by this backend."""

    @abstractmethod
    async def cleanup(self) -> int:
        """Purge aged-out buckets.

        Returns:
            Number of buckets removed
        """

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryBucketBackend(BucketBackend):
    """Process-local bucket store.

    Suitable for single-instance deployments: each instance keeps its own
    buckets, so N instances admit up to N times a policy's capacity.

    Memory is bounded: buckets live in an OrderedDict used as an LRU and the
    oldest 20% are dropped once ``max_entries`` is reached, sparing buckets
    that are still cooling down where possible.
    """

    name = "memory"
    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        key_prefix: str = "izibrokerz:ratelimit",
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Clock = time.monotonic,
    ):
        """Initialize the store.

        Args:
            key_prefix: Prefix for bucket keys
            max_entries: Maximum number of buckets to keep (LRU eviction)
            clock: Seconds source; injectable so tests can move time
        """
        super().__init__(key_prefix)
        self._max_entries = max_entries
        self._clock = clock
        self._buckets: OrderedDict[str, BucketState] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._buckets)

    def _enforce_lru_limit(self, now: float) -> None:
        """Evict the least recently used buckets once the store is full.

        Buckets still cooling down are evicted last, so a flood of fresh keys
        cannot end another key's cooldown early.
        """
        if len(self._buckets) < self._max_entries:
            return
        remove_count = min(max(1, int(self._max_entries * 0.2)), len(self._buckets))

        victims = [
            key for key, bucket in self._buckets.items() if not bucket.is_blocked(now)
        ][:remove_count]
        if len(victims) < remove_count:
            chosen = set(victims)
            blocked = [key for key in self._buckets if key not in chosen]
            victims.extend(blocked[: remove_count - len(victims)])

        for key in victims:
            del self._buckets[key]

    def _live_bucket(self, key: str, now: float) -> Optional[BucketState]:
        """Return the bucket for key, dropping it if its cooldown has ended."""
        bucket = self._buckets.get(key)
        if bucket is None:
            return None
        if bucket.blocked_until is not None and not bucket.is_blocked(now):
            # Cooldown over: the window starts afresh
            del self._buckets[key]
            return None
        return bucket

    async def try_consume(
        self, identity_key: str, policy: RateLimitPolicy, points: int = 1
    ) -> ConsumeResult:
        key = self.bucket_key(identity_key, policy)
        async with self._lock:
            now = self._clock()
            bucket = self._live_bucket(key, now)

            if bucket is None:
                self._enforce_lru_limit(now)
                bucket = BucketState(window_seconds=policy.window_seconds)
                self._buckets[key] = bucket
            else:
                self._buckets.move_to_end(key)

            if bucket.is_blocked(now):
                return ConsumeResult(
                    allowed=False,
                    capacity=policy.capacity,
                    remaining=0,
                    ms_before_next=math.ceil((bucket.blocked_until - now) * 1000),
                    blocked=True,
                )

            bucket.prune(now)
            used = len(bucket.hits)

            if used + points <= policy.capacity:
                bucket.hits.extend([now] * points)
                return ConsumeResult(
                    allowed=True,
                    capacity=policy.capacity,
                    remaining=policy.capacity - used - points,
                    ms_before_next=bucket.ms_until_oldest_expires(now),
                )

            if policy.cooldown_seconds > 0:
                bucket.hits.clear()
                bucket.blocked_until = now + policy.cooldown_seconds
                return ConsumeResult(
                    allowed=False,
                    capacity=policy.capacity,
                    remaining=0,
                    ms_before_next=policy.cooldown_seconds * 1000,
                    blocked=True,
                )

            return ConsumeResult(
                allowed=False,
                capacity=policy.capacity,
                remaining=0,
                ms_before_next=bucket.ms_until_oldest_expires(now)
                or policy.window_seconds * 1000,
            )

    async def peek(
        self, identity_key: str, policy: RateLimitPolicy
    ) -> Optional[ConsumeResult]:
        key = self.bucket_key(identity_key, policy)
        async with self._lock:
            now = self._clock()
            bucket = self._live_bucket(key, now)
            if bucket is None:
                return None

            if bucket.is_blocked(now):
                return ConsumeResult(
                    allowed=False,
                    capacity=policy.capacity,
                    remaining=0,
                    ms_before_next=math.ceil((bucket.blocked_until - now) * 1000),
                    blocked=True,
                )

            bucket.prune(now)
            if not bucket.hits:
                return None
            used = len(bucket.hits)
            return ConsumeResult(
                allowed=used < policy.capacity,
                capacity=policy.capacity,
                remaining=max(0, policy.capacity - used),
                ms_before_next=bucket.ms_until_oldest_expires(now),
            )

    async def delete(self, identity_key: str, policy: RateLimitPolicy) -> None:
        async with self._lock:
            self._buckets.pop(self.bucket_key(identity_key, policy), None)

    async def clear(self) -> None:
        async with self._lock:
            self._buckets.clear()

    async def cleanup(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [
                key for key, bucket in self._buckets.items() if bucket.is_idle(now)
            ]
            for key in expired:
                del self._buckets[key]
            return len(expired)


class RedisBucketBackend(BucketBackend):
    """Redis-based shared bucket store.

    Every consumption is one Lua script call, so concurrent instances see
    a single bucket per key. Redis failures are resolved by the
    fail-open/fail-closed policy and never reach the gate.
    """

    name = "redis"

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: str = "redis://localhost:6379/0",
        key_prefix: str = "izibrokerz:ratelimit",
        fail_closed: bool = False,
        clock: Clock = time.time,
    ):
        """Initialize Redis bucket store.

        Args:
            redis_client: Optional Redis client instance
            redis_url: Redis connection URL, used when no client is given
            key_prefix: Prefix for bucket keys
            fail_closed: Deny instead of allow when Redis is unavailable
            clock: Wall-clock seconds source for hit timestamps
        """
        super().__init__(key_prefix)
        self._redis_url = redis_url
        self._redis = redis_client
        self._fail_closed = fail_closed
        self._clock = clock

    def _get_redis(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url)
        return self._redis

    def _keys(self, identity_key: str, policy: RateLimitPolicy) -> tuple[str, str]:
        base = self.bucket_key(identity_key, policy)
        return f"{base}:hits", f"{base}:block"

    @staticmethod
    def _to_result(raw: Any, policy: RateLimitPolicy) -> ConsumeResult:
        allowed, remaining, ms_before_next, blocked = (int(v) for v in raw)
        return ConsumeResult(
            allowed=allowed == 1,
            capacity=policy.capacity,
            remaining=max(0, remaining),
            ms_before_next=max(0, ms_before_next),
            blocked=blocked == 1,
        )

    async def try_consume(
        self, identity_key: str, policy: RateLimitPolicy, points: int = 1
    ) -> ConsumeResult:
        hits_key, block_key = self._keys(identity_key, policy)
        try:
            raw = await self._get_redis().eval(
                CONSUME_SCRIPT,
                2,  # Number of keys
                hits_key,  # KEYS[1]
                block_key,  # KEYS[2]
                policy.capacity,  # ARGV[1]
                policy.window_seconds * 1000,  # ARGV[2]
                policy.cooldown_seconds * 1000,  # ARGV[3]
                int(self._clock() * 1000),  # ARGV[4]
                points,  # ARGV[5]
                uuid.uuid4().hex,  # ARGV[6]
            )
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning(f"Redis unavailable for rate limiting: {e}")
            return self._handle_redis_failure(policy, "connection_error")
        except RedisError as e:
            logger.error(f"Redis error during rate limiting: {e}")
            return self._handle_redis_failure(policy, "redis_error")
        except Exception as e:
            logger.exception(f"Unexpected rate limit backend error: {e}")
            return self._handle_redis_failure(policy, "unexpected")
        return self._to_result(raw, policy)

    def _handle_redis_failure(self, policy: RateLimitPolicy, error_type: str) -> ConsumeResult:
        """Resolve a Redis failure with the configured fail-open/fail-closed policy."""
        if self._fail_closed:
            logger.warning(
                f"Rate limiting fail-closed triggered due to {error_type}. "
                "Request denied.",
                extra={"policy": policy.name},
            )
            return ConsumeResult(
                allowed=False,
                capacity=policy.capacity,
                remaining=0,
                ms_before_next=policy.window_seconds * 1000,
            )

        logger.warning(
            f"Rate limiting fail-open triggered due to {error_type}. "
            "Request allowed without rate limit check.",
            extra={"policy": policy.name},
        )
        return ConsumeResult(
            allowed=True,
            capacity=policy.capacity,
            remaining=policy.capacity,
            ms_before_next=0,
        )

    def _log_redis_error(self, operation: str, e: Exception) -> None:
        if isinstance(e, (RedisConnectionError, RedisTimeoutError)):
            logger.warning(f"Redis unavailable for rate limit {operation}: {e}")
        elif isinstance(e, RedisError):
            logger.error(f"Redis error during rate limit {operation}: {e}")
        else:
            logger.exception(f"Unexpected rate limit backend error during {operation}: {e}")

    async def peek(
        self, identity_key: str, policy: RateLimitPolicy
    ) -> Optional[ConsumeResult]:
        """Read the bucket without consuming.

        On Redis failure returns None (no known state), or a denial for the
        full window when failing closed.
        """
        hits_key, block_key = self._keys(identity_key, policy)
        try:
            raw = await self._get_redis().eval(
                PEEK_SCRIPT,
                2,
                hits_key,
                block_key,
                policy.capacity,
                policy.window_seconds * 1000,
                int(self._clock() * 1000),
            )
        except Exception as e:
            self._log_redis_error("peek", e)
            if self._fail_closed:
                return ConsumeResult(
                    allowed=False,
                    capacity=policy.capacity,
                    remaining=0,
                    ms_before_next=policy.window_seconds * 1000,
                )
            return None
        if int(raw[0]) == -1:
            return None
        return self._to_result(raw, policy)

    async def delete(self, identity_key: str, policy: RateLimitPolicy) -> None:
        try:
            await self._get_redis().delete(*self._keys(identity_key, policy))
        except Exception as e:
            self._log_redis_error("delete", e)

    async def clear(self) -> None:
        """Delete every key under this backend's prefix.

        Uses SCAN rather than FLUSHDB so a shared Redis database is safe.
        """
        client = self._get_redis()
        batch: list = []
        try:
            async for key in client.scan_iter(match=f"{self.key_prefix}:*"):
                batch.append(key)
                if len(batch) >= 500:
                    await client.delete(*batch)
                    batch = []
            if batch:
                await client.delete(*batch)
        except Exception as e:
            self._log_redis_error("clear", e)

    async def cleanup(self) -> int:
        """No-op for Redis (keys expire automatically)."""
        return 0

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
