"""Job store: the record of every submitted analysis.

Lifecycle: pending -> processing -> completed | failed. A cache hit creates
the job directly in ``completed``. Transitions go through the store only, and
``claim`` is the single place a job leaves ``pending``, so at most one worker
processes a job at a time. ``release`` hands a claimed job back to
``pending`` when its worker is stopped mid-job.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timezone

from orchestrator.gateway.kv_store import KeyValueStore
from orchestrator.gateway.types import AggregatedResult, Job, JobStatus

logger = logging.getLogger(__name__)


class JobStore(ABC):
    """Interface for job persistence."""

    @abstractmethod
    async def create(self, job: Job) -> Job: ...

    @abstractmethod
    async def get(self, job_id: str) -> Job | None: ...

    @abstractmethod
    async def claim(self, job_id: str) -> Job | None:
        """Atomically move a pending job to processing. None if not claimable."""

    @abstractmethod
    async def release(self, job_id: str) -> Job | None:
        """Return a processing job to pending so it can be claimed again. None if not processing."""

    @abstractmethod
    async def complete(self, job_id: str, result: AggregatedResult) -> Job: ...

    @abstractmethod
    async def fail(self, job_id: str, error_code: str, error: str) -> Job: ...

    @abstractmethod
    async def counts(self) -> dict[str, int]: ...


class InMemoryJobStore(JobStore):
    """Process-local job store.

    Keeps every non-terminal job and the ``retention`` most recent terminal
    ones; older terminal jobs are dropped as new ones finish.
    Returned jobs are copies, callers cannot mutate stored state.
    """

    def __init__(self, retention: int = 1000):
        self.retention = retention
        self._jobs: dict[str, Job] = {}
        self._terminal: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.RLock()

    def _finish(self, job: Job) -> None:
        self._terminal[job.id] = None
        self._terminal.move_to_end(job.id)
        while len(self._terminal) > self.retention:
            old_id, _ = self._terminal.popitem(last=False)
            self._jobs.pop(old_id, None)

    def _require(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        return job

    async def create(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            stored = replace(job, providers=list(job.providers))
            self._jobs[job.id] = stored
            if stored.status.is_terminal:
                self._finish(stored)
            return replace(stored)

    async def get(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job) if job else None

    async def claim(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PENDING:
                return None
            job.status = JobStatus.PROCESSING
            job.started_at = datetime.now(timezone.utc)
            return replace(job)

    async def release(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.PROCESSING:
                return None
            job.status = JobStatus.PENDING
            job.started_at = None
            return replace(job)

    async def complete(self, job_id: str, result: AggregatedResult) -> Job:
        with self._lock:
            job = self._require(job_id)
            if job.status.is_terminal:
                logger.warning("Job %s already %s, ignoring completion", job_id, job.status.value)
                return replace(job)
            job.status = JobStatus.COMPLETED
            job.result = result
            job.completed_at = datetime.now(timezone.utc)
            self._finish(job)
            return replace(job)

    async def fail(self, job_id: str, error_code: str, error: str) -> Job:
        with self._lock:
            job = self._require(job_id)
            if job.status.is_terminal:
                logger.warning("Job %s already %s, ignoring failure", job_id, job.status.value)
                return replace(job)
            job.status = JobStatus.FAILED
            job.error_code = error_code
            job.error = error
            job.completed_at = datetime.now(timezone.utc)
            self._finish(job)
            return replace(job)

    async def counts(self) -> dict[str, int]:
        with self._lock:
            counts = {status.value: 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status.value] += 1
            return counts

    def __len__(self) -> int:
        return len(self._jobs)


def _job_key(job_id: str) -> str:
    return f"job:{job_id}"


def _claim_key(job_id: str) -> str:
    return f"job:{job_id}:claim"


def _count_key(status: JobStatus) -> str:
    return f"jobs:count:{status.value}"


class KeyValueJobStore(JobStore):
    """Job store on a shared key-value store (Redis in production).

    Jobs are JSON documents under ``job:{id}``. A claim takes the
    ``job:{id}:claim`` slot with set-if-absent, so across every process
    sharing the store exactly one worker moves a job out of ``pending``; only
    the claim holder writes the job afterwards. Terminal jobs expire after
    ``ttl_seconds``.

    ``counts`` is exact for pending/processing; completed/failed are totals
    since the store was created.
    """

    def __init__(self, store: KeyValueStore, ttl_seconds: float = 86400, claim_ttl_seconds: float = 3600):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.claim_ttl_seconds = claim_ttl_seconds

    async def _write(self, job: Job, previous: JobStatus | None) -> None:
        ttl = self.ttl_seconds if job.status.is_terminal else None
        await self.store.set(_job_key(job.id), job.to_dict(), ttl=ttl)
        if previous is not None:
            await self.store.incr(_count_key(previous), amount=-1)
        await self.store.incr(_count_key(job.status))

    async def _require(self, job_id: str) -> Job:
        job = await self.get(job_id)
        if job is None:
            raise KeyError(job_id)
        return job

    async def create(self, job: Job) -> Job:
        ttl = self.ttl_seconds if job.status.is_terminal else None
        if not await self.store.set(_job_key(job.id), job.to_dict(), ttl=ttl, nx=True):
            raise ValueError(f"Job {job.id} already exists")
        await self.store.incr(_count_key(job.status))
        return replace(job, providers=list(job.providers))

    async def get(self, job_id: str) -> Job | None:
        data = await self.store.get(_job_key(job_id))
        return Job.from_dict(data) if data else None

    async def claim(self, job_id: str) -> Job | None:
        job = await self.get(job_id)
        if job is None or job.status != JobStatus.PENDING:
            return None
        if not await self.store.set(_claim_key(job_id), "1", ttl=self.claim_ttl_seconds, nx=True):
            return None
        job.status = JobStatus.PROCESSING
        job.started_at = datetime.now(timezone.utc)
        await self._write(job, JobStatus.PENDING)
        return job

    async def release(self, job_id: str) -> Job | None:
        job = await self.get(job_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return None
        job.status = JobStatus.PENDING
        job.started_at = None
        await self._write(job, JobStatus.PROCESSING)
        await self.store.delete(_claim_key(job_id))
        return job

    async def complete(self, job_id: str, result: AggregatedResult) -> Job:
        job = await self._require(job_id)
        if job.status.is_terminal:
            logger.warning("Job %s already %s, ignoring completion", job_id, job.status.value)
            return job
        previous = job.status
        job.status = JobStatus.COMPLETED
        job.result = result
        job.completed_at = datetime.now(timezone.utc)
        await self._write(job, previous)
        await self.store.delete(_claim_key(job_id))
        return job

    async def fail(self, job_id: str, error_code: str, error: str) -> Job:
        job = await self._require(job_id)
        if job.status.is_terminal:
            logger.warning("Job %s already %s, ignoring failure", job_id, job.status.value)
            return job
        previous = job.status
        job.status = JobStatus.FAILED
        job.error_code = error_code
        job.error = error
        job.completed_at = datetime.now(timezone.utc)
        await self._write(job, previous)
        await self.store.delete(_claim_key(job_id))
        return job

    async def counts(self) -> dict[str, int]:
        return {status.value: max(0, int(await self.store.get(_count_key(status)) or 0)) for status in JobStatus}
