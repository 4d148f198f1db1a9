"""Background worker pool that turns pending jobs into results.

Workers are plain asyncio tasks owned by the pool (started and stopped with
the application lifespan), consuming job ids from a JobQueue:

  claim -> fan out to providers -> aggregate -> persist -> cache

Whatever goes wrong inside one job ends as a ``failed`` job; the worker keeps
running. A job interrupted by shutdown goes back to the queue when the queue
is durable, and is failed with ``cancelled`` otherwise, so no job is left in
``processing``.
"""

from __future__ import annotations

import asyncio
import logging
import time

from orchestrator.core.config import Settings
from orchestrator.core.exceptions import AllProvidersFailed, ValidationError
from orchestrator.core.metrics import JOB_DURATION, QUEUE_JOBS
from orchestrator.core.sentry import capture_job_crash
from orchestrator.gateway.aggregator import aggregate
from orchestrator.gateway.cache import ResultCache
from orchestrator.gateway.invoker import ParallelInvoker
from orchestrator.gateway.types import Job, JobStatus
from orchestrator.jobs.queue import InMemoryJobQueue, JobQueue
from orchestrator.jobs.store import JobStore
from orchestrator.providers.base import BaseProvider
from orchestrator.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class WorkerPool:
    """Bounded pool of job workers.

    Usage:
        pool = WorkerPool(store, registry, invoker, cache, settings, queue)
        await pool.start()
        await pool.enqueue(job.id)
        ...
        await pool.stop()
    """

    def __init__(
        self,
        store: JobStore,
        registry: ProviderRegistry,
        invoker: ParallelInvoker,
        cache: ResultCache,
        settings: Settings,
        queue: JobQueue | None = None,
    ):
        self.store = store
        self.registry = registry
        self.invoker = invoker
        self.cache = cache
        self.settings = settings
        self.queue = queue if queue is not None else InMemoryJobQueue()
        self.concurrency = max(1, settings.worker_concurrency)
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def queue_depth(self) -> int:
        return await self.queue.size()

    async def enqueue(self, job_id: str) -> None:
        await self.queue.put(job_id)
        QUEUE_JOBS.labels("queued").inc()

    async def start(self) -> None:
        if self.running:
            return
        self._tasks = [asyncio.create_task(self._run(i), name=f"job-worker-{i}") for i in range(self.concurrency)]
        logger.info("Started %d job workers", self.concurrency)

    async def stop(self) -> None:
        """Let taken jobs finish for the grace period, then cancel the workers."""
        if not self._tasks:
            return
        grace = self.settings.worker_shutdown_grace_seconds
        try:
            await asyncio.wait_for(self.queue.join(), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("Shutdown grace of %.0fs elapsed with jobs still running", grace)

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Job workers stopped")

    async def _run(self, index: int) -> None:
        while True:
            job_id = await self.queue.get()
            try:
                await self.process(job_id)
            except Exception:
                # Keep the worker alive; process() already failed the job where it could
                logger.exception("Worker %d crashed on job %s", index, job_id)
            finally:
                self.queue.task_done()

    def _providers_for(self, job: Job) -> list[BaseProvider]:
        """Providers planned at submission that are still enabled and allowed for the tier."""
        available = {p.name: p for p in self.registry.for_tier(job.tier)}
        dropped = [name for name in job.providers if name not in available]
        if dropped:
            logger.info("Job %s skips providers no longer available: %s", job.id, ", ".join(dropped))
        return [available[name] for name in job.providers if name in available]

    async def _interrupted(self, job: Job) -> None:
        if self.queue.durable and await self.store.release(job.id) is not None:
            await self.queue.put(job.id)
            QUEUE_JOBS.labels("requeued").inc()
            logger.warning("Job %s interrupted by shutdown, returned to the queue", job.id, extra={"job_id": job.id})
            return
        await self.store.fail(job.id, "cancelled", "Worker stopped before the job finished")
        QUEUE_JOBS.labels("cancelled").inc()
        logger.warning("Job %s interrupted by shutdown, marked failed", job.id, extra={"job_id": job.id})

    async def process(self, job_id: str) -> Job | None:
        """Run one job end to end. Returns the terminal job, or None if not claimable."""
        job = await self.store.claim(job_id)
        if job is None:
            logger.debug("Job %s not claimable, skipping", job_id)
            return None

        start = time.monotonic()
        log_extra = {"job_id": job.id}

        try:
            results = await self.invoker.invoke(
                job.input,
                self._providers_for(job),
                timeout=self.settings.job_timeout_seconds,
            )
            aggregated = aggregate(
                results,
                policy=self.settings.aggregation_policy,
                min_success_ratio=self.settings.min_success_ratio,
                min_successes=self.settings.min_successes,
            )
        except asyncio.CancelledError:
            await self._interrupted(job)
            raise
        except (AllProvidersFailed, ValidationError) as e:
            logger.warning("Job %s failed: %s", job.id, e.message, extra=log_extra)
            job = await self.store.fail(job.id, e.code, e.message)
        except Exception as e:
            logger.exception("Job %s crashed", job.id, extra=log_extra)
            capture_job_crash(job.id, job.tier.value, e)
            job = await self.store.fail(job.id, "internal_error", f"{type(e).__name__}: {e}")
        else:
            job = await self.store.complete(job.id, aggregated)
            try:
                await self.cache.set(job.input, job.tier, aggregated)
            except Exception:
                logger.exception("Could not cache result of job %s", job.id, extra=log_extra)
            logger.info(
                "Job %s completed: score=%d (%d ok, %d failed)",
                job.id,
                aggregated.score,
                aggregated.succeeded_count,
                aggregated.failed_count,
                extra=log_extra,
            )

        outcome = job.status.value if job.status.is_terminal else JobStatus.FAILED.value
        QUEUE_JOBS.labels(outcome).inc()
        JOB_DURATION.labels(outcome).observe(time.monotonic() - start)
        return job
