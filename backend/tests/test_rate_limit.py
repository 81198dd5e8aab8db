# ruff: noqa: INP001
"""Sliding-window rate limiter tests for the memory and Redis backends."""

from __future__ import annotations

import asyncio

import pytest

from marketplace.core.config import Settings
from marketplace.core.errors import InternalError, RateLimitedError
from marketplace.services.rate_limit import (
    PROPOSAL_CREATE_SCOPE,
    TASK_CREATE_SCOPE,
    InMemoryRateLimiter,
    RateLimitPolicy,
    RedisRateLimiter,
    build_rate_limiter,
    default_policies,
)


class _Clock:
    def __init__(self, now_ms: float = 1_000_000.0) -> None:
        self.now_ms = now_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> None:
        self.now_ms += ms


class _FakeRedis:
    """Runs the limiter script in Python, one call at a time like Redis does."""

    def __init__(self) -> None:
        self.sets: dict[str, dict[str, float]] = {}
        self.expiries: dict[str, int] = {}
        self.scripts: list[str] = []

    def register_script(self, source: str) -> _FakeScript:
        self.scripts.append(source)
        return _FakeScript(self)


class _FakeScript:
    def __init__(self, redis: _FakeRedis) -> None:
        self.redis = redis

    async def __call__(self, *, keys: list[str], args: list[object]) -> list[object]:
        # Yield first so concurrent callers interleave between calls, never inside one.
        await asyncio.sleep(0)
        (key,) = keys
        now, window, limit, member = float(str(args[0])), int(args[1]), int(args[2]), args[3]
        members = self.redis.sets.setdefault(key, {})
        for name in [name for name, score in members.items() if score <= now - window]:
            del members[name]
        if len(members) >= limit:
            oldest = min(members.values())
            return [0, str(oldest).encode()]
        members[str(member)] = now
        self.redis.expiries[key] = window
        return [1, str(now).encode()]


def _policy(*, max_requests: int = 3, window_ms: int = 1000) -> RateLimitPolicy:
    return RateLimitPolicy(
        scope="tasks.create",
        window_ms=window_ms,
        max_requests=max_requests,
        message="Too many task creations.",
    )


@pytest.mark.asyncio
async def test_memory_limiter_admits_up_to_max_then_rejects_until_window_passes() -> None:
    clock = _Clock()
    limiter = InMemoryRateLimiter(clock=clock)
    policy = _policy()

    for _ in range(3):
        await limiter.hit(policy, "user-1")
        clock.advance(100)

    with pytest.raises(RateLimitedError) as exc:
        await limiter.hit(policy, "user-1")
    assert exc.value.status_code == 429
    assert exc.value.retry_after_seconds >= 1
    assert exc.value.details == {
        "scope": "tasks.create",
        "max_requests": 3,
        "window_ms": 1000,
        "retry_after_seconds": exc.value.retry_after_seconds,
    }

    clock.advance(1000)
    await limiter.hit(policy, "user-1")
    assert limiter.bucket_size(policy, "user-1") == 1


@pytest.mark.asyncio
async def test_memory_limiter_rejection_does_not_consume_a_slot() -> None:
    clock = _Clock()
    limiter = InMemoryRateLimiter(clock=clock)
    policy = _policy(max_requests=1)

    await limiter.hit(policy, "user-1")
    for _ in range(3):
        with pytest.raises(RateLimitedError):
            await limiter.hit(policy, "user-1")
    assert limiter.bucket_size(policy, "user-1") == 1


@pytest.mark.asyncio
async def test_memory_limiter_buckets_are_per_actor_and_scope() -> None:
    limiter = InMemoryRateLimiter(clock=_Clock())
    tasks_policy = _policy(max_requests=1)
    proposals_policy = RateLimitPolicy(
        scope="proposals.create",
        window_ms=1000,
        max_requests=1,
        message="Too many proposals.",
    )

    await limiter.hit(tasks_policy, "user-1")
    await limiter.hit(tasks_policy, "user-2")
    await limiter.hit(proposals_policy, "user-1")
    with pytest.raises(RateLimitedError):
        await limiter.hit(tasks_policy, "user-1")


@pytest.mark.asyncio
async def test_retry_after_rounds_up_remaining_window() -> None:
    clock = _Clock()
    limiter = InMemoryRateLimiter(clock=clock)
    policy = _policy(max_requests=1, window_ms=10_000)

    await limiter.hit(policy, "user-1")
    clock.advance(2_500)
    with pytest.raises(RateLimitedError) as exc:
        await limiter.hit(policy, "user-1")
    assert exc.value.retry_after_seconds == 8


@pytest.mark.asyncio
async def test_empty_actor_key_is_an_internal_error() -> None:
    limiter = InMemoryRateLimiter(clock=_Clock())
    with pytest.raises(InternalError):
        await limiter.hit(_policy(), "   ")


@pytest.mark.parametrize(("window_ms", "max_requests"), [(0, 1), (1000, 0), (-5, 3)])
def test_invalid_policy_fails_at_construction(window_ms: int, max_requests: int) -> None:
    with pytest.raises(ValueError, match="Invalid rate limit"):
        _policy(window_ms=window_ms, max_requests=max_requests)


@pytest.mark.asyncio
async def test_redis_limiter_shares_semantics_with_memory_backend() -> None:
    clock = _Clock()
    redis = _FakeRedis()
    limiter = RedisRateLimiter(client=redis, clock=clock)
    policy = _policy()

    for _ in range(3):
        await limiter.hit(policy, "user-1")
        clock.advance(100)

    with pytest.raises(RateLimitedError) as exc:
        await limiter.hit(policy, "user-1")
    assert exc.value.retry_after_seconds == 1
    assert redis.expiries["rate-limit:tasks.create:user-1"] == 1000

    clock.advance(1000)
    await limiter.hit(policy, "user-1")
    assert len(redis.sets["rate-limit:tasks.create:user-1"]) == 1


@pytest.mark.asyncio
async def test_redis_limiter_admits_only_max_under_concurrent_hits() -> None:
    redis = _FakeRedis()
    clock = _Clock()
    limiters = [RedisRateLimiter(client=redis, clock=clock) for _ in range(10)]
    policy = _policy(max_requests=3, window_ms=60_000)

    results = await asyncio.gather(
        *(limiter.hit(policy, "user-1") for limiter in limiters),
        return_exceptions=True,
    )

    admitted = [result for result in results if result is None]
    rejected = [result for result in results if isinstance(result, RateLimitedError)]
    assert len(admitted) == 3
    assert len(rejected) == 7
    assert len(redis.sets["rate-limit:tasks.create:user-1"]) == 3


def test_default_policies_follow_settings() -> None:
    settings = Settings(
        task_create_rate_limit_per_window=2,
        proposal_create_rate_limit_per_window=7,
        rate_limit_window_ms=5000,
    )
    policies = default_policies(settings)

    assert policies[TASK_CREATE_SCOPE].max_requests == 2
    assert policies[PROPOSAL_CREATE_SCOPE].max_requests == 7
    assert {policy.window_ms for policy in policies.values()} == {5000}


def test_build_rate_limiter_defaults_to_memory_backend() -> None:
    limiter = build_rate_limiter(Settings(rate_limit_backend="memory"))
    assert isinstance(limiter, InMemoryRateLimiter)
