"""Submission and lookup of analysis jobs."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Protocol

from orchestrator.core.config import Settings
from orchestrator.core.exceptions import JobNotFoundError, ValidationError
from orchestrator.core.metrics import QUEUE_JOBS
from orchestrator.gateway.cache import ResultCache
from orchestrator.gateway.rate_limiter import TenantRateLimiter
from orchestrator.gateway.types import Job, JobStatus, Plan
from orchestrator.jobs.store import JobStore
from orchestrator.providers.registry import ProviderRegistry, determine_tier

logger = logging.getLogger(__name__)

INPUT_MIN_LENGTH = 2
INPUT_MAX_LENGTH = 2000


class Enqueuer(Protocol):
    async def enqueue(self, job_id: str) -> None: ...


def resolve_plan(plan: Plan | str | None, default: str = "free") -> Plan:
    try:
        return Plan(str(getattr(plan, "value", plan) or default).lower())
    except ValueError:
        raise ValidationError(f"Unknown plan {plan!r}")


class AnalysisService:
    """Entry point for submissions: validate, throttle, answer from cache or queue."""

    def __init__(
        self,
        store: JobStore,
        registry: ProviderRegistry,
        rate_limiter: TenantRateLimiter,
        cache: ResultCache,
        queue: Enqueuer,
        settings: Settings,
    ):
        self.store = store
        self.registry = registry
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.queue = queue
        self.settings = settings

    async def submit(self, text: str, plan: Plan | str | None = None, tenant_id: str = "public") -> Job:
        """Create a job for ``text``.

        Order: input validation, tenant quota, cache lookup, create, enqueue.
        A rejected submission never creates a job; cache hits still count
        against the quota.

        Raises:
            ValidationError: input too short/long or unknown plan
            RateLimitExceeded: tenant quota for the window is used up
        """
        text = (text or "").strip()
        if len(text) < INPUT_MIN_LENGTH:
            raise ValidationError(f"Input must be at least {INPUT_MIN_LENGTH} characters")
        if len(text) > INPUT_MAX_LENGTH:
            raise ValidationError(f"Input must be at most {INPUT_MAX_LENGTH} characters")

        resolved = resolve_plan(plan, self.settings.default_plan)
        await self.rate_limiter.check(tenant_id, self.settings.rate_quota(resolved.value))

        tier = determine_tier(resolved)
        provider_names = [p.name for p in self.registry.for_tier(tier)]

        cached = await self.cache.get(text, tier)
        if cached is not None:
            now = datetime.now(timezone.utc)
            job = await self.store.create(
                Job(
                    input=text,
                    tier=tier,
                    tenant_id=tenant_id,
                    status=JobStatus.COMPLETED,
                    providers=provider_names,
                    started_at=now,
                    completed_at=now,
                    result=cached,
                    cached=True,
                )
            )
            QUEUE_JOBS.labels("cached").inc()
            logger.info("Job %s answered from cache", job.id, extra={"job_id": job.id})
            return job

        job = await self.store.create(Job(input=text, tier=tier, tenant_id=tenant_id, providers=provider_names))
        await self.queue.enqueue(job.id)
        logger.info(
            "Job %s queued for %d providers (tier=%s, tenant=%s)",
            job.id,
            len(provider_names),
            tier.value,
            tenant_id,
            extra={"job_id": job.id},
        )
        return job

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    async def rate_limit_info(self, tenant_id: str, plan: Plan | str | None = None) -> dict:
        resolved = resolve_plan(plan, self.settings.default_plan)
        info = await self.rate_limiter.get_info(tenant_id, self.settings.rate_quota(resolved.value))
        info["plan"] = resolved.value
        return info
