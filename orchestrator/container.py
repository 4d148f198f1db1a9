"""Wiring of the orchestrator components.

Everything stateful (key-value store, job store, job queue) is created here
once and injected; nothing keeps module-level state.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable
from dataclasses import dataclass

from orchestrator.core.config import Settings
from orchestrator.gateway.cache import ResultCache
from orchestrator.gateway.circuit_breaker import CircuitBreaker
from orchestrator.gateway.invoker import ParallelInvoker
from orchestrator.gateway.kv_store import Clock, InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from orchestrator.gateway.rate_limiter import TenantRateLimiter
from orchestrator.gateway.retry import RetryPolicy, Sleep
from orchestrator.jobs.queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from orchestrator.jobs.service import AnalysisService
from orchestrator.jobs.store import InMemoryJobStore, JobStore, KeyValueJobStore
from orchestrator.jobs.worker import WorkerPool
from orchestrator.providers.base import BaseProvider
from orchestrator.providers.registry import ProviderRegistry, default_catalog


@dataclass
class Container:
    settings: Settings
    kv_store: KeyValueStore
    job_store: JobStore
    job_queue: JobQueue
    registry: ProviderRegistry
    circuit_breaker: CircuitBreaker
    rate_limiter: TenantRateLimiter
    cache: ResultCache
    invoker: ParallelInvoker
    workers: WorkerPool
    service: AnalysisService

    async def close(self) -> None:
        await self.kv_store.close()


def build_container(
    settings: Settings,
    providers: Iterable[BaseProvider] | None = None,
    kv_store: KeyValueStore | None = None,
    job_store: JobStore | None = None,
    job_queue: JobQueue | None = None,
    clock: Clock = time.monotonic,
    sleep: Sleep = asyncio.sleep,
    wall_clock: Clock | None = None,
) -> Container:
    """Build the full object graph. Tests pass fake providers, stores, clock and sleep.

    STATE_BACKEND=redis puts gateway state, jobs and the job queue on one Redis
    server; otherwise everything lives in this process. Explicitly passed
    stores always win.
    """
    if kv_store is None:
        if settings.state_backend == "redis":
            kv_store = RedisKeyValueStore.from_url(settings.redis_url, namespace=settings.redis_namespace)
        else:
            kv_store = InMemoryKeyValueStore(clock=clock)
    shared = isinstance(kv_store, RedisKeyValueStore)
    if job_store is None:
        if shared:
            job_store = KeyValueJobStore(kv_store, ttl_seconds=settings.job_ttl_seconds)
        else:
            job_store = InMemoryJobStore(retention=settings.job_retention)
    if job_queue is None:
        if shared:
            job_queue = RedisJobQueue(kv_store.client, key=kv_store.key("queue:analysis"))
        else:
            job_queue = InMemoryJobQueue()
    # Circuit timestamps are compared across processes, so they use wall time
    if wall_clock is None:
        wall_clock = time.time if clock is time.monotonic else clock

    registry = ProviderRegistry(default_catalog(settings) if providers is None else providers, settings)

    circuit_breaker = CircuitBreaker(
        kv_store,
        failure_threshold=settings.cb_fail_threshold,
        window_seconds=settings.cb_window_seconds,
        half_open_delay=settings.cb_half_open_seconds,
        clock=wall_clock,
    )
    retry_policy = RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        min_backoff=settings.retry_min_backoff_seconds,
        max_backoff=settings.retry_max_backoff_seconds,
        sleep=sleep,
        clock=clock,
    )
    rate_limiter = TenantRateLimiter(kv_store, window_seconds=settings.rate_window_seconds)
    cache = ResultCache(
        kv_store,
        ttl_seconds=settings.cache_ttl_seconds,
        cache_low_confidence=settings.cache_low_confidence,
    )
    invoker = ParallelInvoker(
        circuit_breaker,
        retry_policy,
        provider_timeout=settings.provider_timeout_seconds,
        clock=clock,
    )
    workers = WorkerPool(job_store, registry, invoker, cache, settings, queue=job_queue)
    service = AnalysisService(job_store, registry, rate_limiter, cache, workers, settings)

    return Container(
        settings=settings,
        kv_store=kv_store,
        job_store=job_store,
        job_queue=job_queue,
        registry=registry,
        circuit_breaker=circuit_breaker,
        rate_limiter=rate_limiter,
        cache=cache,
        invoker=invoker,
        workers=workers,
        service=service,
    )
