"""Sliding-window admission control keyed by ``scope:actor``.

Two interchangeable backends share the same policy semantics:

- ``InMemoryRateLimiter`` keeps per-key timestamp lists in process memory,
  guarded by a lock. Keys are never evicted; the key space is bounded by the
  number of active users.
- ``RedisRateLimiter`` keeps one sorted set per key so several processes can
  share counters. Each hit is one Lua script, so Redis serializes hits per
  key. Keys expire one window after their last hit.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import uuid4

from marketplace.core.config import Settings
from marketplace.core.errors import InternalError, RateLimitedError
from marketplace.core.logging import get_logger

logger = get_logger(__name__)

TASK_CREATE_SCOPE = "tasks.create"
PROPOSAL_CREATE_SCOPE = "proposals.create"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Limit of ``max_requests`` per ``window_ms`` for one named scope."""

    scope: str
    window_ms: int
    max_requests: int
    message: str

    def __post_init__(self) -> None:
        if self.window_ms <= 0:
            raise ValueError(f'Invalid rate limit window for scope "{self.scope}"')
        if self.max_requests <= 0:
            raise ValueError(f'Invalid rate limit max_requests for scope "{self.scope}"')


def default_policies(settings: Settings) -> dict[str, RateLimitPolicy]:
    """Policies for the rate-limited write endpoints."""
    return {
        TASK_CREATE_SCOPE: RateLimitPolicy(
            scope=TASK_CREATE_SCOPE,
            window_ms=settings.rate_limit_window_ms,
            max_requests=settings.task_create_rate_limit_per_window,
            message="Too many task creations. Please wait before creating a new task.",
        ),
        PROPOSAL_CREATE_SCOPE: RateLimitPolicy(
            scope=PROPOSAL_CREATE_SCOPE,
            window_ms=settings.rate_limit_window_ms,
            max_requests=settings.proposal_create_rate_limit_per_window,
            message="Too many proposal creations. Please wait before creating a new proposal.",
        ),
    }


def _bucket_key(policy: RateLimitPolicy, actor_key: str) -> str:
    normalized = actor_key.strip()
    if not normalized:
        raise InternalError(f'Rate limit key is empty for scope "{policy.scope}"')
    return f"{policy.scope}:{normalized}"


def _retry_after_seconds(oldest_ms: float, now_ms: float, window_ms: int) -> int:
    return max(1, math.ceil((oldest_ms + window_ms - now_ms) / 1000))


def _rejection(policy: RateLimitPolicy, retry_after: int) -> RateLimitedError:
    return RateLimitedError(
        policy.message,
        retry_after_seconds=retry_after,
        details={
            "scope": policy.scope,
            "max_requests": policy.max_requests,
            "window_ms": policy.window_ms,
        },
    )


def _now_ms() -> float:
    return time.time() * 1000


class RateLimiter(Protocol):
    async def hit(self, policy: RateLimitPolicy, actor_key: str) -> None:
        """Record one request or raise ``RateLimitedError``."""


@dataclass
class InMemoryRateLimiter:
    """Process-local sliding-window limiter."""

    clock: Callable[[], float] = _now_ms
    _buckets: dict[str, list[float]] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    async def hit(self, policy: RateLimitPolicy, actor_key: str) -> None:
        key = _bucket_key(policy, actor_key)
        with self._lock:
            now = self.clock()
            timestamps = [
                stamp for stamp in self._buckets.get(key, []) if now - stamp < policy.window_ms
            ]
            if len(timestamps) >= policy.max_requests:
                self._buckets[key] = timestamps
                retry_after = _retry_after_seconds(timestamps[0], now, policy.window_ms)
                logger.info(
                    "rate_limit.rejected",
                    extra={"scope": policy.scope, "retry_after_seconds": retry_after},
                )
                raise _rejection(policy, retry_after)
            timestamps.append(now)
            self._buckets[key] = timestamps

    def bucket_size(self, policy: RateLimitPolicy, actor_key: str) -> int:
        with self._lock:
            return len(self._buckets.get(_bucket_key(policy, actor_key), []))


# Prune, count and conditional add run as one script so concurrent hits on a
# key are serialized by Redis. Returns {admitted, oldest_score}.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
if redis.call('ZCARD', key) >= limit then
    local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
    return {0, oldest[2] or ARGV[1]}
end
redis.call('ZADD', key, now, ARGV[4])
redis.call('PEXPIRE', key, window)
return {1, ARGV[1]}
"""


@dataclass
class RedisRateLimiter:
    """Sorted-set sliding-window limiter shared across processes."""

    client: Any
    key_prefix: str = "rate-limit"
    clock: Callable[[], float] = _now_ms
    _script: Any = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._script = self.client.register_script(SLIDING_WINDOW_SCRIPT)

    async def hit(self, policy: RateLimitPolicy, actor_key: str) -> None:
        key = f"{self.key_prefix}:{_bucket_key(policy, actor_key)}"
        now = self.clock()
        # Score range is inclusive, so a hit exactly one window old is expired.
        admitted, oldest = await self._script(
            keys=[key],
            args=[repr(now), policy.window_ms, policy.max_requests, f"{now}:{uuid4().hex}"],
        )
        if not int(admitted):
            retry_after = _retry_after_seconds(float(oldest), now, policy.window_ms)
            logger.info(
                "rate_limit.rejected",
                extra={
                    "scope": policy.scope,
                    "retry_after_seconds": retry_after,
                    "backend": "redis",
                },
            )
            raise _rejection(policy, retry_after)


def build_rate_limiter(settings: Settings) -> RateLimiter:
    """Construct the limiter selected by ``RATE_LIMIT_BACKEND``."""
    if settings.rate_limit_backend == "redis":
        from redis.asyncio import Redis

        logger.info("rate_limit.backend.redis")
        return RedisRateLimiter(client=Redis.from_url(settings.redis_url))
    return InMemoryRateLimiter()
