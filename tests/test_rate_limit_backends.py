"""Tests for the bucket store backends."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from izibrokerz.app.ratelimit.backends import InMemoryBucketBackend, RedisBucketBackend
from izibrokerz.app.ratelimit.gate import RateLimitGate
from izibrokerz.app.ratelimit.policies import LOGIN_POLICY, RateLimitPolicy

SMALL = RateLimitPolicy("small", capacity=3, window_seconds=10, cooldown_seconds=5)
NO_COOLDOWN = RateLimitPolicy("sliding", capacity=2, window_seconds=10)


class TestInMemoryBucketBackend:
    """Tests for the process-local bucket store."""

    @pytest.mark.asyncio
    async def test_allows_up_to_capacity(self, memory_backend):
        for expected_remaining in (2, 1, 0):
            result = await memory_backend.try_consume("user", SMALL)
            assert result.allowed is True
            assert result.remaining == expected_remaining
            assert result.capacity == 3

    @pytest.mark.asyncio
    async def test_denial_starts_cooldown(self, memory_backend):
        for _ in range(3):
            await memory_backend.try_consume("user", SMALL)

        result = await memory_backend.try_consume("user", SMALL)
        assert result.allowed is False
        assert result.blocked is True
        assert result.remaining == 0
        assert result.ms_before_next == 5000

    @pytest.mark.asyncio
    async def test_cooldown_counts_down_then_restores_capacity(self, memory_backend, clock):
        for _ in range(4):
            await memory_backend.try_consume("user", SMALL)

        clock.advance(2)
        result = await memory_backend.try_consume("user", SMALL)
        assert result.allowed is False
        assert result.ms_before_next == 3000

        clock.advance(3)
        result = await memory_backend.try_consume("user", SMALL)
        assert result.allowed is True
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_denials_during_cooldown_do_not_extend_it(self, memory_backend, clock):
        for _ in range(4):
            await memory_backend.try_consume("user", SMALL)
        for _ in range(4):
            clock.advance(1)
            await memory_backend.try_consume("user", SMALL)

        clock.advance(1)
        result = await memory_backend.try_consume("user", SMALL)
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_window_slides_without_cooldown(self, memory_backend, clock):
        await memory_backend.try_consume("user", NO_COOLDOWN)
        clock.advance(4)
        await memory_backend.try_consume("user", NO_COOLDOWN)

        result = await memory_backend.try_consume("user", NO_COOLDOWN)
        assert result.allowed is False
        assert result.blocked is False
        assert result.ms_before_next == 6000

        # First hit leaves the window; exactly one point frees up
        clock.advance(6)
        assert (await memory_backend.try_consume("user", NO_COOLDOWN)).allowed is True
        assert (await memory_backend.try_consume("user", NO_COOLDOWN)).allowed is False

    @pytest.mark.asyncio
    async def test_rolling_window_never_exceeds_capacity(self, memory_backend, clock):
        allowed_at = []
        for _ in range(60):
            result = await memory_backend.try_consume("user", NO_COOLDOWN)
            if result.allowed:
                allowed_at.append(clock.now)
            clock.advance(1)

        for start in allowed_at:
            in_window = [t for t in allowed_at if start <= t < start + NO_COOLDOWN.window_seconds]
            assert len(in_window) <= NO_COOLDOWN.capacity

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, memory_backend):
        for _ in range(4):
            await memory_backend.try_consume("a@example.com", SMALL)

        result = await memory_backend.try_consume("b@example.com", SMALL)
        assert result.allowed is True
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_policies_are_independent(self, memory_backend):
        for _ in range(4):
            await memory_backend.try_consume("user", SMALL)

        result = await memory_backend.try_consume("user", LOGIN_POLICY)
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_points_larger_than_capacity_denied(self, memory_backend):
        result = await memory_backend.try_consume("user", NO_COOLDOWN, points=5)
        assert result.allowed is False
        assert result.ms_before_next == 10000

    @pytest.mark.asyncio
    async def test_concurrent_consumption_never_over_admits(self, memory_backend):
        results = await asyncio.gather(
            *(memory_backend.try_consume("user", LOGIN_POLICY) for _ in range(25))
        )
        assert sum(r.allowed for r in results) == LOGIN_POLICY.capacity

    @pytest.mark.asyncio
    async def test_peek_does_not_consume(self, memory_backend):
        assert await memory_backend.peek("user", SMALL) is None

        await memory_backend.try_consume("user", SMALL)
        state = await memory_backend.peek("user", SMALL)
        assert state.allowed is True
        assert state.remaining == 2

        state = await memory_backend.peek("user", SMALL)
        assert state.remaining == 2

    @pytest.mark.asyncio
    async def test_peek_reports_cooldown(self, memory_backend, clock):
        for _ in range(4):
            await memory_backend.try_consume("user", SMALL)
        clock.advance(1)

        state = await memory_backend.peek("user", SMALL)
        assert state.allowed is False
        assert state.blocked is True
        assert state.ms_before_next == 4000

    @pytest.mark.asyncio
    async def test_peek_forgets_expired_bucket(self, memory_backend, clock):
        await memory_backend.try_consume("user", SMALL)
        clock.advance(SMALL.window_seconds)
        assert await memory_backend.peek("user", SMALL) is None

    @pytest.mark.asyncio
    async def test_delete_restores_capacity(self, memory_backend):
        for _ in range(4):
            await memory_backend.try_consume("user", SMALL)

        await memory_backend.delete("user", SMALL)
        result = await memory_backend.try_consume("user", SMALL)
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_clear_drops_everything(self, memory_backend):
        await memory_backend.try_consume("a", SMALL)
        await memory_backend.try_consume("b", SMALL)
        await memory_backend.clear()
        assert len(memory_backend) == 0

    @pytest.mark.asyncio
    async def test_cleanup_removes_idle_buckets(self, memory_backend, clock):
        await memory_backend.try_consume("idle", SMALL)
        for _ in range(4):
            await memory_backend.try_consume("blocked", SMALL)
        clock.advance(SMALL.window_seconds)
        await memory_backend.try_consume("active", SMALL)

        removed = await memory_backend.cleanup()
        assert removed == 2  # "idle" aged out, "blocked" cooldown over
        assert len(memory_backend) == 1

    @pytest.mark.asyncio
    async def test_lru_eviction_bounds_memory(self, clock):
        backend = InMemoryBucketBackend(max_entries=10, clock=clock)
        for i in range(25):
            await backend.try_consume(f"user-{i}", SMALL)
        assert len(backend) <= 10

        # Most recent key survives eviction
        state = await backend.peek("user-24", SMALL)
        assert state is not None

    @pytest.mark.asyncio
    async def test_lru_eviction_keeps_cooling_down_buckets(self, clock):
        backend = InMemoryBucketBackend(max_entries=10, clock=clock)
        for _ in range(4):
            await backend.try_consume("victim", SMALL)

        # Flood with throwaway keys; the victim is the least recently used
        for i in range(50):
            await backend.try_consume(f"junk-{i}", SMALL)

        assert len(backend) <= 10
        result = await backend.try_consume("victim", SMALL)
        assert result.allowed is False
        assert result.blocked is True

    @pytest.mark.asyncio
    async def test_lru_eviction_still_bounded_when_all_blocked(self, clock):
        backend = InMemoryBucketBackend(max_entries=5, clock=clock)
        for i in range(12):
            for _ in range(4):
                await backend.try_consume(f"user-{i}", SMALL)

        assert len(backend) <= 5

    def test_bucket_key_layout(self):
        backend = InMemoryBucketBackend(key_prefix="test")
        assert backend.bucket_key("user@example.com", LOGIN_POLICY) == "test:login:user@example.com"


class TestRedisBucketBackend:
    """Tests for the Redis bucket store."""

    @pytest.fixture
    def redis_client(self):
        return AsyncMock()

    @pytest.fixture
    def backend(self, redis_client):
        return RedisBucketBackend(redis_client=redis_client, key_prefix="t", clock=lambda: 1700000000.0)

    @pytest.mark.asyncio
    async def test_allowed_result_from_script(self, backend, redis_client):
        redis_client.eval.return_value = [1, 9, 300000, 0]

        result = await backend.try_consume("user@example.com", LOGIN_POLICY)

        assert result.allowed is True
        assert result.remaining == 9
        assert result.capacity == 10
        assert result.blocked is False

    @pytest.mark.asyncio
    async def test_script_arguments(self, backend, redis_client):
        redis_client.eval.return_value = [1, 9, 300000, 0]

        await backend.try_consume("user@example.com", LOGIN_POLICY)

        args = redis_client.eval.call_args.args
        assert args[1] == 2
        assert args[2] == "t:login:user@example.com:hits"
        assert args[3] == "t:login:user@example.com:block"
        assert args[4:9] == (10, 300000, 60000, 1700000000000, 1)

    @pytest.mark.asyncio
    async def test_denied_result_from_script(self, backend, redis_client):
        redis_client.eval.return_value = [0, 0, 60000, 1]

        result = await backend.try_consume("user@example.com", LOGIN_POLICY)

        assert result.allowed is False
        assert result.blocked is True
        assert result.ms_before_next == 60000

    @pytest.mark.asyncio
    async def test_fail_open_on_connection_error(self, backend, redis_client):
        redis_client.eval.side_effect = RedisConnectionError("down")

        result = await backend.try_consume("user@example.com", LOGIN_POLICY)

        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_fail_open_on_unexpected_error(self, backend, redis_client):
        redis_client.eval.side_effect = Exception("Redis error")

        result = await backend.try_consume("user@example.com", LOGIN_POLICY)

        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_fail_closed_when_configured(self, redis_client):
        backend = RedisBucketBackend(redis_client=redis_client, fail_closed=True)
        redis_client.eval.side_effect = RedisConnectionError("down")

        result = await backend.try_consume("user@example.com", LOGIN_POLICY)

        assert result.allowed is False
        assert result.ms_before_next == LOGIN_POLICY.window_seconds * 1000

    @pytest.mark.asyncio
    async def test_peek_without_bucket(self, backend, redis_client):
        redis_client.eval.return_value = [-1, 10, 0, 0]
        assert await backend.peek("user@example.com", LOGIN_POLICY) is None

    @pytest.mark.asyncio
    async def test_peek_with_bucket(self, backend, redis_client):
        redis_client.eval.return_value = [1, 7, 120000, 0]

        state = await backend.peek("user@example.com", LOGIN_POLICY)

        assert state.allowed is True
        assert state.remaining == 7

    @pytest.mark.asyncio
    async def test_delete_removes_both_keys(self, backend, redis_client):
        await backend.delete("user@example.com", LOGIN_POLICY)
        redis_client.delete.assert_awaited_once_with(
            "t:login:user@example.com:hits", "t:login:user@example.com:block"
        )

    @pytest.mark.asyncio
    async def test_cleanup_is_noop(self, backend):
        assert await backend.cleanup() == 0

    @pytest.mark.asyncio
    async def test_close_releases_client(self, backend, redis_client):
        await backend.close()
        redis_client.aclose.assert_awaited_once()
        assert backend._redis is None

    @pytest.mark.asyncio
    async def test_peek_fails_open_on_connection_error(self, backend, redis_client):
        redis_client.eval.side_effect = RedisConnectionError("down")

        assert await backend.peek("user@example.com", LOGIN_POLICY) is None

    @pytest.mark.asyncio
    async def test_peek_fails_closed_when_configured(self, redis_client):
        backend = RedisBucketBackend(redis_client=redis_client, fail_closed=True)
        redis_client.eval.side_effect = RedisConnectionError("down")

        state = await backend.peek("user@example.com", LOGIN_POLICY)

        assert state.allowed is False
        assert state.ms_before_next == LOGIN_POLICY.window_seconds * 1000

    @pytest.mark.asyncio
    async def test_delete_survives_redis_outage(self, backend, redis_client):
        redis_client.delete.side_effect = RedisConnectionError("down")

        await backend.delete("user@example.com", LOGIN_POLICY)

        redis_client.delete.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_clear_survives_redis_outage(self, backend, redis_client):
        redis_client.scan_iter = MagicMock(side_effect=RedisConnectionError("down"))

        await backend.clear()

        redis_client.delete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gate_maintenance_during_outage(self, backend, redis_client):
        redis_client.eval.side_effect = RedisConnectionError("down")
        redis_client.delete.side_effect = RedisConnectionError("down")
        gate = RateLimitGate(backend=backend)

        assert (await gate.check_rate_limit(LOGIN_POLICY, "user@example.com")).allowed
        assert await gate.seconds_until_reset(LOGIN_POLICY, "user@example.com") == 0
        assert await gate.peek(LOGIN_POLICY, "user@example.com") is None
        await gate.reset_key(LOGIN_POLICY, "user@example.com")


class TestRedisBucketScripts:
    """Runs the Lua scripts against an in-process Redis."""

    @pytest.fixture
    def redis_client(self):
        return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())

    @pytest.fixture
    def backend(self, redis_client, clock):
        return RedisBucketBackend(redis_client=redis_client, key_prefix="t", clock=clock)

    @pytest.mark.asyncio
    async def test_capacity_then_denial(self, backend):
        for expected_remaining in (2, 1, 0):
            result = await backend.try_consume("user", SMALL)
            assert result.allowed is True
            assert result.remaining == expected_remaining

        result = await backend.try_consume("user", SMALL)
        assert result.allowed is False
        assert result.blocked is True
        assert result.ms_before_next == 5000

    @pytest.mark.asyncio
    async def test_denial_sets_block_marker_and_drops_window(self, backend, redis_client):
        for _ in range(4):
            await backend.try_consume("user", SMALL)

        assert 0 < await redis_client.pttl("t:small:user:block") <= 5000
        assert await redis_client.exists("t:small:user:hits") == 0

        result = await backend.try_consume("user", SMALL)
        assert result.allowed is False
        assert result.blocked is True
        assert 0 < result.ms_before_next <= 5000

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, backend):
        for _ in range(4):
            await backend.try_consume("a@example.com", SMALL)

        result = await backend.try_consume("b@example.com", SMALL)
        assert result.allowed is True
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_full_capacity_once_block_expires(self, backend, redis_client):
        for _ in range(4):
            await backend.try_consume("user", SMALL)

        await redis_client.delete("t:small:user:block")

        result = await backend.try_consume("user", SMALL)
        assert result.allowed is True
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_window_slides_without_cooldown(self, backend, clock):
        await backend.try_consume("user", NO_COOLDOWN)
        clock.advance(4)
        await backend.try_consume("user", NO_COOLDOWN)

        result = await backend.try_consume("user", NO_COOLDOWN)
        assert result.allowed is False
        assert result.blocked is False
        assert result.ms_before_next == 6000

        clock.advance(6)
        assert (await backend.try_consume("user", NO_COOLDOWN)).allowed is True
        assert (await backend.try_consume("user", NO_COOLDOWN)).allowed is False

    @pytest.mark.asyncio
    async def test_peek_reads_without_consuming(self, backend):
        assert await backend.peek("user", SMALL) is None

        await backend.try_consume("user", SMALL)
        state = await backend.peek("user", SMALL)
        assert state.allowed is True
        assert state.remaining == 2

        state = await backend.peek("user", SMALL)
        assert state.remaining == 2

    @pytest.mark.asyncio
    async def test_peek_reports_cooldown(self, backend):
        for _ in range(4):
            await backend.try_consume("user", SMALL)

        state = await backend.peek("user", SMALL)
        assert state.allowed is False
        assert state.blocked is True

    @pytest.mark.asyncio
    async def test_delete_and_clear(self, backend, redis_client):
        for _ in range(4):
            await backend.try_consume("a", SMALL)
        await backend.try_consume("b", SMALL)
        await redis_client.set("other:key", "1")

        await backend.delete("a", SMALL)
        assert (await backend.try_consume("a", SMALL)).allowed is True

        await backend.clear()
        assert await redis_client.keys("t:*") == []
        assert await redis_client.exists("other:key") == 1
