"""Tests for the scoring gateway.

Covers:
  - Key-value stores (TTL, NX, counters, expiry sweep, Redis)
  - Circuit breaker
  - Retry policy
  - Tenant rate limiter
  - Result cache
  - Aggregator
  - Parallel invoker
  - Container wiring
"""

from __future__ import annotations

import asyncio

import pytest

from orchestrator.container import build_container
from orchestrator.core.exceptions import (
    AllProvidersFailed,
    InsufficientProviders,
    ProviderAuthError,
    ProviderError,
    ProviderServerError,
    RateLimitExceeded,
    ValidationError,
)
from orchestrator.gateway import kv_store as kv_store_module
from orchestrator.gateway.aggregator import aggregate, round_half_up
from orchestrator.gateway.cache import ResultCache, cache_key, normalize_input
from orchestrator.gateway.circuit_breaker import CircuitBreaker, CircuitState
from orchestrator.gateway.kv_store import InMemoryKeyValueStore, RedisKeyValueStore
from orchestrator.gateway.rate_limiter import TenantRateLimiter
from orchestrator.gateway.retry import RetryPolicy
from orchestrator.gateway.types import AggregatedResult, ProviderResult, ProviderTier
from orchestrator.jobs.queue import InMemoryJobQueue, RedisJobQueue
from orchestrator.jobs.store import InMemoryJobStore, KeyValueJobStore
from tests.conftest import FakeProvider, make_settings


def _ok(provider: str, score: int) -> ProviderResult:
    return ProviderResult.success(provider, score)


def _failed(provider: str, error: ProviderError | None = None) -> ProviderResult:
    return ProviderResult.failure(provider, error or ProviderServerError("HTTP 500", provider=provider))


class _BrokenCircuitStore(InMemoryKeyValueStore):
    """Store whose circuit keys of one provider are unreachable."""

    def __init__(self, prefix: str, clock):
        super().__init__(clock=clock)
        self.prefix = prefix

    def _check(self, key: str) -> None:
        if key.startswith(self.prefix):
            raise ConnectionError(f"store unreachable for {key}")

    async def get(self, key):
        self._check(key)
        return await super().get(key)

    async def set(self, key, value, ttl=None, nx=False):
        self._check(key)
        return await super().set(key, value, ttl=ttl, nx=nx)

    async def incr(self, key, ttl=None, amount=1):
        self._check(key)
        return await super().incr(key, ttl=ttl, amount=amount)


# ==========================================================================
# Test: Key-value store
# ==========================================================================


class TestKeyValueStore:
    @pytest.mark.asyncio
    async def test_set_get_delete(self, clock):
        store = InMemoryKeyValueStore(clock=clock)
        assert await store.get("k") is None
        assert await store.set("k", {"a": 1}) is True
        assert await store.get("k") == {"a": 1}
        assert await store.delete("k", "missing") == 1
        assert await store.get("k") is None

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, clock):
        store = InMemoryKeyValueStore(clock=clock)
        await store.set("k", "v", ttl=10)
        assert await store.ttl("k") == pytest.approx(10)
        clock.advance(5)
        assert await store.get("k") == "v"
        clock.advance(5)
        assert await store.get("k") is None
        assert await store.ttl("k") is None

    @pytest.mark.asyncio
    async def test_set_nx(self, clock):
        store = InMemoryKeyValueStore(clock=clock)
        assert await store.set("slot", "1", ttl=5, nx=True) is True
        assert await store.set("slot", "2", ttl=5, nx=True) is False
        assert await store.get("slot") == "1"
        clock.advance(5)
        assert await store.set("slot", "3", ttl=5, nx=True) is True

    @pytest.mark.asyncio
    async def test_incr_ttl_applied_on_create_only(self, clock):
        store = InMemoryKeyValueStore(clock=clock)
        assert await store.incr("c", ttl=60) == 1
        clock.advance(30)
        assert await store.incr("c", ttl=60) == 2
        assert await store.ttl("c") == pytest.approx(30)
        clock.advance(30)
        assert await store.incr("c", ttl=60) == 1

    @pytest.mark.asyncio
    async def test_incr_amount(self, clock):
        store = InMemoryKeyValueStore(clock=clock)
        assert await store.incr("c", amount=5) == 5
        assert await store.incr("c", amount=-2) == 3

    @pytest.mark.asyncio
    async def test_writes_sweep_expired_keys(self, clock):
        store = InMemoryKeyValueStore(clock=clock)
        for i in range(1000):
            await store.set(f"cache:free:{i}", {"score": i}, ttl=3600)
            await store.incr(f"rl:tenant:t{i}", ttl=60)
        assert len(store) == 2000

        clock.advance(3600)
        await store.set("cache:free:new", {"score": 1}, ttl=3600)
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_sweep_keeps_rewritten_key(self, clock):
        store = InMemoryKeyValueStore(clock=clock)
        await store.set("k", "old", ttl=10)
        await store.set("k", "new", ttl=100)
        clock.advance(20)
        await store.set("other", "v")
        assert await store.get("k") == "new"
        assert len(store) == 2


class TestRedisKeyValueStore:
    @pytest.fixture
    def store(self, fake_redis):
        return RedisKeyValueStore(fake_redis, namespace="orch")

    @pytest.mark.asyncio
    async def test_values_are_json_under_namespace(self, store, fake_redis):
        assert await store.set("cache:free:abc", {"score": 64, "policy": "lenient"}) is True
        assert fake_redis.values["orch:cache:free:abc"] == '{"score": 64, "policy": "lenient"}'
        assert await store.get("cache:free:abc") == {"score": 64, "policy": "lenient"}
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_set_nx_and_ttl(self, store, clock):
        assert await store.set("slot", "1", ttl=5, nx=True) is True
        assert await store.set("slot", "2", ttl=5, nx=True) is False
        assert await store.ttl("slot") == pytest.approx(5)
        clock.advance(5)
        assert await store.get("slot") is None
        assert await store.set("slot", "3", ttl=5, nx=True) is True

    @pytest.mark.asyncio
    async def test_incr_ttl_applied_on_create_only(self, store, clock):
        assert await store.incr("c", ttl=60) == 1
        clock.advance(30)
        assert await store.incr("c", ttl=60) == 2
        assert await store.ttl("c") == pytest.approx(30)
        assert await store.get("c") == 2
        clock.advance(30)
        assert await store.incr("c", ttl=60) == 1

    @pytest.mark.asyncio
    async def test_ttl_none_without_expiry(self, store):
        await store.set("k", "v")
        assert await store.ttl("k") is None
        assert await store.ttl("missing") is None

    @pytest.mark.asyncio
    async def test_delete_and_close(self, store, fake_redis):
        await store.set("a", 1)
        await store.set("b", 2)
        assert await store.delete("a", "b", "c") == 2
        assert await store.delete() == 0
        await store.close()
        assert fake_redis.closed

    @pytest.mark.asyncio
    async def test_quota_shared_between_processes(self, fake_redis):
        # two API processes, one Redis server
        first = TenantRateLimiter(RedisKeyValueStore(fake_redis), window_seconds=60)
        second = TenantRateLimiter(RedisKeyValueStore(fake_redis), window_seconds=60)
        await first.check("acme", 2)
        await second.check("acme", 2)
        with pytest.raises(RateLimitExceeded):
            await first.check("acme", 2)

    @pytest.mark.asyncio
    async def test_circuit_shared_between_processes(self, fake_redis, clock):
        first = CircuitBreaker(RedisKeyValueStore(fake_redis), failure_threshold=3, clock=clock)
        second = CircuitBreaker(RedisKeyValueStore(fake_redis), failure_threshold=3, clock=clock)
        for _ in range(3):
            await first.record_failure("alpha")
        assert not await second.allow("alpha")


# ==========================================================================
# Test: Circuit Breaker
# ==========================================================================


class TestCircuitBreaker:
    @pytest.fixture
    def cb(self, clock):
        return CircuitBreaker(
            InMemoryKeyValueStore(clock=clock),
            failure_threshold=5,
            window_seconds=60,
            half_open_delay=60,
            clock=clock,
        )

    async def _open(self, cb: CircuitBreaker, provider: str = "alpha") -> None:
        for _ in range(cb.failure_threshold):
            await cb.record_failure(provider)

    @pytest.mark.asyncio
    async def test_initial_state_closed(self, cb):
        assert await cb.allow("alpha") is True
        state = await cb.get_state("alpha")
        assert state["state"] == CircuitState.CLOSED.value
        assert state["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_opens_exactly_at_threshold(self, cb):
        for _ in range(4):
            await cb.record_failure("alpha")
        assert await cb.allow("alpha") is True
        assert (await cb.get_state("alpha"))["failure_count"] == 4

        await cb.record_failure("alpha")
        assert await cb.allow("alpha") is False
        assert (await cb.get_state("alpha"))["state"] == "open"

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, cb):
        for _ in range(4):
            await cb.record_failure("alpha")
        await cb.record_success("alpha")
        for _ in range(4):
            await cb.record_failure("alpha")
        assert await cb.allow("alpha") is True

    @pytest.mark.asyncio
    async def test_failures_outside_window_do_not_count(self, cb, clock):
        for _ in range(4):
            await cb.record_failure("alpha")
        clock.advance(61)
        await cb.record_failure("alpha")
        assert await cb.allow("alpha") is True
        assert (await cb.get_state("alpha"))["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_providers_are_independent(self, cb):
        await self._open(cb, "alpha")
        assert await cb.allow("alpha") is False
        assert await cb.allow("beta") is True

    @pytest.mark.asyncio
    async def test_half_open_after_delay(self, cb, clock):
        await self._open(cb)
        clock.advance(60)
        assert await cb.allow("alpha") is False
        clock.advance(0.1)
        assert await cb.allow("alpha") is True
        assert (await cb.get_state("alpha"))["state"] == "half_open"
        # probe in flight, everyone else is short-circuited
        assert await cb.allow("alpha") is False

    @pytest.mark.asyncio
    async def test_single_probe_under_concurrent_load(self, cb, clock):
        await self._open(cb)
        clock.advance(61)
        admitted = await asyncio.gather(*(cb.allow("alpha") for _ in range(20)))
        assert sum(admitted) == 1

    @pytest.mark.asyncio
    async def test_probe_success_closes(self, cb, clock):
        await self._open(cb)
        clock.advance(61)
        assert await cb.allow("alpha") is True
        await cb.record_success("alpha")

        state = await cb.get_state("alpha")
        assert state["state"] == "closed"
        assert state["failure_count"] == 0
        assert await cb.allow("alpha") is True

    @pytest.mark.asyncio
    async def test_probe_failure_reopens_with_fresh_cooldown(self, cb, clock):
        await self._open(cb)
        clock.advance(61)
        assert await cb.allow("alpha") is True
        await cb.record_failure("alpha")

        assert (await cb.get_state("alpha"))["state"] == "open"
        clock.advance(30)
        assert await cb.allow("alpha") is False
        clock.advance(31)
        assert await cb.allow("alpha") is True

    @pytest.mark.asyncio
    async def test_lost_probe_is_replaced_after_delay(self, cb, clock):
        await self._open(cb)
        clock.advance(61)
        assert await cb.allow("alpha") is True
        # probe never reports back
        clock.advance(30)
        assert await cb.allow("alpha") is False
        clock.advance(31)
        assert await cb.allow("alpha") is True

    @pytest.mark.asyncio
    async def test_failure_while_open_does_not_extend_cooldown(self, cb, clock):
        await self._open(cb)
        clock.advance(50)
        await cb.record_failure("alpha")
        clock.advance(11)
        assert await cb.allow("alpha") is True

    @pytest.mark.asyncio
    async def test_straggler_success_while_open_is_ignored(self, cb):
        await self._open(cb)
        await cb.record_success("alpha")
        assert await cb.allow("alpha") is False

    @pytest.mark.asyncio
    async def test_retry_in_reported_when_open(self, cb, clock):
        await self._open(cb)
        clock.advance(20)
        state = await cb.get_state("alpha")
        assert state["retry_in"] == pytest.approx(40)

    @pytest.mark.asyncio
    async def test_reset(self, cb):
        await self._open(cb)
        await cb.reset("alpha")
        assert await cb.allow("alpha") is True
        assert (await cb.get_state("alpha"))["state"] == "closed"

    @pytest.mark.asyncio
    async def test_get_all_states(self, cb):
        await self._open(cb, "beta")
        states = await cb.get_all_states(["alpha", "beta"])
        assert [s["provider"] for s in states] == ["alpha", "beta"]
        assert [s["state"] for s in states] == ["closed", "open"]


# ==========================================================================
# Test: Retry Policy
# ==========================================================================


class _ScriptedCall:
    """Callable for RetryPolicy.run returning/raising scripted outcomes."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self, deadline: float) -> ProviderResult:
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class TestRetryPolicy:
    @pytest.fixture
    def policy(self, clock, fake_sleep):
        return RetryPolicy(max_attempts=3, min_backoff=0.5, max_backoff=8.0, sleep=fake_sleep, clock=clock)

    def test_backoff_without_jitter(self):
        policy = RetryPolicy(min_backoff=0.5, max_backoff=8.0, jitter=0.0)
        assert policy.backoff(0) == 0.5
        assert policy.backoff(1) == 1.0
        assert policy.backoff(3) == 4.0
        assert policy.backoff(10) == 8.0

    def test_backoff_jitter_bounded(self):
        policy = RetryPolicy(min_backoff=1.0, max_backoff=8.0, jitter=0.2)
        for _ in range(50):
            assert 2.0 <= policy.backoff(1) <= 2.4

    @pytest.mark.asyncio
    async def test_success_first_attempt(self, policy, clock, sleeps):
        call = _ScriptedCall(_ok("alpha", 70))
        result = await policy.run(call, provider="alpha", deadline=clock() + 30, timeout=5)
        assert result.succeeded
        assert result.attempts == 1
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_retries_retryable_until_max_attempts(self, policy, clock, sleeps):
        call = _ScriptedCall(ProviderServerError("HTTP 503", provider="alpha"))
        result = await policy.run(call, provider="alpha", deadline=clock() + 30, timeout=5)

        assert call.calls == 3
        assert result.attempts == 3
        assert result.error_code == "provider_server_error"
        assert len(sleeps) == 2
        assert 0.5 <= sleeps[0] <= 0.6
        assert 1.0 <= sleeps[1] <= 1.2

    @pytest.mark.asyncio
    async def test_recovers_on_second_attempt(self, policy, clock):
        call = _ScriptedCall(ProviderServerError("HTTP 502", provider="alpha"), _ok("alpha", 40))
        result = await policy.run(call, provider="alpha", deadline=clock() + 30, timeout=5)
        assert result.succeeded
        assert result.score == 40
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_non_retryable_single_attempt(self, policy, clock, sleeps):
        call = _ScriptedCall(ProviderAuthError("HTTP 401", provider="alpha"))
        result = await policy.run(call, provider="alpha", deadline=clock() + 30, timeout=5)
        assert call.calls == 1
        assert result.attempts == 1
        assert result.error_code == "provider_auth_error"
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_backoff_crossing_deadline_stops_retrying(self, policy, clock):
        call = _ScriptedCall(ProviderServerError("HTTP 500", provider="alpha"))
        result = await policy.run(call, provider="alpha", deadline=clock() + 0.7, timeout=5)
        assert call.calls == 2
        assert result.attempts == 2

    @pytest.mark.asyncio
    async def test_attempt_timeout_is_classified(self, clock, fake_sleep):
        policy = RetryPolicy(max_attempts=1, sleep=fake_sleep, clock=clock)

        async def slow(deadline):
            await asyncio.sleep(1)
            return _ok("alpha", 10)

        result = await policy.run(slow, provider="alpha", deadline=clock() + 30, timeout=0.05)
        assert not result.succeeded
        assert result.error_code == "provider_timeout"

    @pytest.mark.asyncio
    async def test_validation_error_propagates(self, policy, clock):
        call = _ScriptedCall(ValidationError("bad input"))
        with pytest.raises(ValidationError):
            await policy.run(call, provider="alpha", deadline=clock() + 30, timeout=5)

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_provider_error(self, policy, clock):
        call = _ScriptedCall(KeyError("choices"))
        result = await policy.run(call, provider="alpha", deadline=clock() + 30, timeout=5)
        assert call.calls == 1
        assert result.error_code == "provider_error"

    @pytest.mark.asyncio
    async def test_deadline_already_passed(self, policy, clock):
        call = _ScriptedCall(_ok("alpha", 10))
        result = await policy.run(call, provider="alpha", deadline=clock() - 1, timeout=5)
        assert call.calls == 0
        assert result.attempts == 0
        assert result.error_code == "provider_timeout"


# ==========================================================================
# Test: Tenant Rate Limiter
# ==========================================================================


class TestTenantRateLimiter:
    @pytest.fixture
    def limiter(self, clock):
        return TenantRateLimiter(InMemoryKeyValueStore(clock=clock), window_seconds=60)

    @pytest.mark.asyncio
    async def test_quota_th_allowed_next_rejected(self, limiter):
        for i in range(1, 4):
            assert await limiter.check("acme", quota=3) == i

        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.check("acme", quota=3)
        assert exc_info.value.limit == 3
        assert exc_info.value.retry_after == pytest.approx(60)
        assert exc_info.value.http_status == 429

    @pytest.mark.asyncio
    async def test_new_window_resets(self, limiter, clock):
        for _ in range(3):
            await limiter.check("acme", quota=3)
        clock.advance(60)
        assert await limiter.check("acme", quota=3) == 1

    @pytest.mark.asyncio
    async def test_tenants_are_independent(self, limiter):
        for _ in range(3):
            await limiter.check("acme", quota=3)
        assert await limiter.check("globex", quota=3) == 1

    @pytest.mark.asyncio
    async def test_get_info(self, limiter, clock):
        await limiter.check("acme", quota=10)
        await limiter.check("acme", quota=10)
        clock.advance(15)
        info = await limiter.get_info("acme", quota=10)
        assert info["used"] == 2
        assert info["limit"] == 10
        assert info["remaining"] == 8
        assert info["reset_in"] == pytest.approx(45)

    @pytest.mark.asyncio
    async def test_get_info_unknown_tenant(self, limiter):
        info = await limiter.get_info("nobody", quota=10)
        assert info["used"] == 0
        assert info["remaining"] == 10
        assert info["reset_in"] is None


# ==========================================================================
# Test: Result Cache
# ==========================================================================


class TestResultCache:
    @pytest.fixture
    def cache(self, clock):
        return ResultCache(InMemoryKeyValueStore(clock=clock), ttl_seconds=3600)

    @staticmethod
    def _result(score: int = 42, low_confidence: bool = False) -> AggregatedResult:
        return AggregatedResult(
            score=score,
            contributing_providers=[_ok("alpha", score)],
            failed_providers=[_failed("beta")],
            low_confidence=low_confidence,
        )

    def test_normalize_input(self):
        assert normalize_input("  Example.COM \n") == "example.com"
        assert cache_key("Acme", ProviderTier.PRO) == "analysis:pro:acme"

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, cache):
        assert await cache.get("acme", ProviderTier.FREE) is None
        assert await cache.set("acme", ProviderTier.FREE, self._result()) is True

        cached = await cache.get("  ACME ", ProviderTier.FREE)
        assert cached == self._result()
        assert cached.failed_providers[0].error_code == "provider_server_error"

    @pytest.mark.asyncio
    async def test_tiers_are_separate(self, cache):
        await cache.set("acme", ProviderTier.FREE, self._result())
        assert await cache.get("acme", ProviderTier.PRO) is None

    @pytest.mark.asyncio
    async def test_expires_after_ttl(self, cache, clock):
        await cache.set("acme", ProviderTier.FREE, self._result())
        clock.advance(3600)
        assert await cache.get("acme", ProviderTier.FREE) is None

    @pytest.mark.asyncio
    async def test_low_confidence_not_cached_by_default(self, cache):
        assert await cache.set("acme", ProviderTier.FREE, self._result(low_confidence=True)) is False
        assert await cache.get("acme", ProviderTier.FREE) is None

    @pytest.mark.asyncio
    async def test_low_confidence_cached_when_enabled(self, clock):
        cache = ResultCache(InMemoryKeyValueStore(clock=clock), cache_low_confidence=True)
        assert await cache.set("acme", ProviderTier.FREE, self._result(low_confidence=True)) is True

    @pytest.mark.asyncio
    async def test_invalidate(self, cache):
        await cache.set("acme", ProviderTier.FREE, self._result())
        assert await cache.invalidate("ACME", ProviderTier.FREE) is True
        assert await cache.get("acme", ProviderTier.FREE) is None
        assert await cache.invalidate("acme", ProviderTier.FREE) is False


# ==========================================================================
# Test: Aggregator
# ==========================================================================


class TestAggregator:
    def test_round_half_up(self):
        assert round_half_up(20.0) == 20
        assert round_half_up(10.5) == 11
        assert round_half_up(12.5) == 13
        assert round_half_up(12.49) == 12

    def test_mean_of_successes(self):
        result = aggregate([_ok("a", 10), _ok("b", 20), _ok("c", 30)])
        assert result.score == 20
        assert result.succeeded_count == 3
        assert result.failed_count == 0
        assert result.low_confidence is False

    def test_failures_do_not_contribute(self):
        results = [_ok("a", 18), _ok("b", 22), _ok("c", 20), _failed("d"), _failed("e")]
        result = aggregate(results)
        assert result.score == 20
        assert result.succeeded_count == 3
        assert result.failed_count == 2
        assert [r.provider for r in result.failed_providers] == ["d", "e"]

    def test_all_failed(self):
        with pytest.raises(AllProvidersFailed):
            aggregate([_failed("a"), _failed("b")])

    def test_nothing_attempted(self):
        with pytest.raises(AllProvidersFailed):
            aggregate([])

    def test_lenient_flags_low_confidence(self):
        results = [_ok("a", 60), _ok("b", 70), _failed("c"), _failed("d"), _failed("e")]
        result = aggregate(results, policy="lenient", min_success_ratio=0.5)
        assert result.score == 65
        assert result.low_confidence is True
        assert result.policy == "lenient"

    def test_strict_requires_min_successes(self):
        results = [_ok("a", 60), _ok("b", 70), _failed("c")]
        with pytest.raises(InsufficientProviders) as exc_info:
            aggregate(results, policy="strict", min_successes=3)
        assert exc_info.value.code == "insufficient_providers"
        assert isinstance(exc_info.value, AllProvidersFailed)

    def test_strict_passes_with_enough_successes(self):
        results = [_ok("a", 60), _ok("b", 70), _ok("c", 80), _failed("d")]
        result = aggregate(results, policy="strict", min_successes=3)
        assert result.score == 70
        assert result.policy == "strict"


# ==========================================================================
# Test: Parallel Invoker
# ==========================================================================


class TestParallelInvoker:
    def _build(self, test_settings, providers, clock, fake_sleep):
        return build_container(test_settings, providers=providers, clock=clock, sleep=fake_sleep)

    @pytest.mark.asyncio
    async def test_results_in_provider_order(self, test_settings, clock, fake_sleep):
        providers = [FakeProvider("alpha", [10]), FakeProvider("beta", [20]), FakeProvider("gamma", [30])]
        container = self._build(test_settings, providers, clock, fake_sleep)

        results = await container.invoker.invoke("acme", providers, timeout=5)
        assert [r.provider for r in results] == ["alpha", "beta", "gamma"]
        assert [r.score for r in results] == [10, 20, 30]

    @pytest.mark.asyncio
    async def test_exhausted_retries_count_one_circuit_failure(self, test_settings, clock, fake_sleep):
        flaky = FakeProvider("alpha", [ProviderServerError("HTTP 500", provider="alpha")])
        container = self._build(test_settings, [flaky], clock, fake_sleep)

        results = await container.invoker.invoke("acme", [flaky], timeout=30)
        assert flaky.calls == 3
        assert results[0].attempts == 3
        assert (await container.circuit_breaker.get_state("alpha"))["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_open_circuit_skips_provider(self, test_settings, clock, fake_sleep):
        alpha = FakeProvider("alpha", [50])
        container = self._build(test_settings, [alpha], clock, fake_sleep)
        for _ in range(test_settings.cb_fail_threshold):
            await container.circuit_breaker.record_failure("alpha")

        results = await container.invoker.invoke("acme", [alpha], timeout=5)
        assert alpha.calls == 0
        assert results[0].error_code == "circuit_open"
        assert results[0].attempts == 0

    @pytest.mark.asyncio
    async def test_success_resets_circuit_failures(self, test_settings, clock, fake_sleep):
        alpha = FakeProvider("alpha", [50])
        container = self._build(test_settings, [alpha], clock, fake_sleep)
        await container.circuit_breaker.record_failure("alpha")

        await container.invoker.invoke("acme", [alpha], timeout=5)
        assert (await container.circuit_breaker.get_state("alpha"))["failure_count"] == 0

    @pytest.mark.asyncio
    async def test_slow_provider_times_out_others_complete(self, test_settings, clock, fake_sleep):
        fast = FakeProvider("alpha", [30])
        slow = FakeProvider("beta", [90], delay=2.0)
        container = self._build(test_settings, [fast, slow], clock, fake_sleep)

        results = await container.invoker.invoke("acme", [fast, slow], timeout=0.1)
        assert results[0].succeeded
        assert results[1].error_code == "provider_timeout"
        assert (await container.circuit_breaker.get_state("beta"))["failure_count"] == 1

    @pytest.mark.asyncio
    async def test_validation_error_propagates(self, test_settings, clock, fake_sleep):
        picky = FakeProvider("alpha", [ValidationError("input rejected")])
        other = FakeProvider("beta", [50], delay=0.5)
        container = self._build(test_settings, [picky, other], clock, fake_sleep)

        with pytest.raises(ValidationError):
            await container.invoker.invoke("acme", [picky, other], timeout=5)

    @pytest.mark.asyncio
    async def test_no_providers(self, test_settings, clock, fake_sleep):
        container = self._build(test_settings, [], clock, fake_sleep)
        assert await container.invoker.invoke("acme", [], timeout=5) == []

    @pytest.mark.asyncio
    async def test_state_store_error_does_not_cancel_other_providers(self, test_settings, clock, fake_sleep):
        healthy = FakeProvider("alpha", [40], delay=0.2)
        broken = FakeProvider("beta", [60])
        container = build_container(
            test_settings,
            providers=[healthy, broken],
            kv_store=_BrokenCircuitStore("cb:beta:", clock=clock),
            clock=clock,
            sleep=fake_sleep,
        )

        results = await container.invoker.invoke("acme", [healthy, broken], timeout=5)
        assert results[0].succeeded
        assert results[0].score == 40
        assert results[1].error_code == "provider_error"
        assert "ConnectionError" in results[1].error
        assert broken.calls == 0


# ==========================================================================
# Test: Container wiring
# ==========================================================================


class TestBuildContainer:
    def test_injected_empty_stores_are_kept(self, test_settings, providers, clock):
        kv_store = InMemoryKeyValueStore(clock=clock)
        job_store = InMemoryJobStore()
        assert len(kv_store) == 0 and len(job_store) == 0

        container = build_container(test_settings, providers=providers, kv_store=kv_store, job_store=job_store)
        assert container.kv_store is kv_store
        assert container.job_store is job_store
        assert container.rate_limiter.store is kv_store

    def test_memory_backend_by_default(self, test_settings, providers):
        container = build_container(test_settings, providers=providers)
        assert isinstance(container.kv_store, InMemoryKeyValueStore)
        assert isinstance(container.job_store, InMemoryJobStore)
        assert isinstance(container.job_queue, InMemoryJobQueue)

    def test_redis_backend(self, monkeypatch, providers, fake_redis):
        urls = []

        def from_url(url, **kwargs):
            urls.append(url)
            return fake_redis

        monkeypatch.setattr(kv_store_module.aioredis.Redis, "from_url", from_url)
        settings = make_settings(state_backend="redis", redis_url="redis://cache:6379/2", redis_namespace="scoring")
        container = build_container(settings, providers=providers)

        assert urls == ["redis://cache:6379/2"]
        assert isinstance(container.kv_store, RedisKeyValueStore)
        assert isinstance(container.job_store, KeyValueJobStore)
        assert isinstance(container.job_queue, RedisJobQueue)
        assert container.job_queue.key == "scoring:queue:analysis"
