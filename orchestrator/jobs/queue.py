"""Queues of job ids between the submission service and the worker pool.

  - InMemoryJobQueue: asyncio.Queue, lost on restart
  - RedisJobQueue: a Redis list (LPUSH / BRPOP) shared by every process;
    pending jobs survive a restart

``join`` waits for the jobs this process has taken off the queue, which is
what a graceful shutdown needs; a durable queue keeps the rest for the next
worker.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

from redis import asyncio as aioredis


class JobQueue(ABC):
    """FIFO of job ids."""

    # Whether queued ids outlive this process
    durable = False

    @abstractmethod
    async def put(self, job_id: str) -> None: ...

    @abstractmethod
    async def get(self) -> str:
        """Wait for the next job id."""

    @abstractmethod
    def task_done(self) -> None: ...

    @abstractmethod
    async def join(self) -> None: ...

    @abstractmethod
    async def size(self) -> int: ...


class InMemoryJobQueue(JobQueue):
    def __init__(self):
        self._queue: asyncio.Queue[str] = asyncio.Queue()

    async def put(self, job_id: str) -> None:
        await self._queue.put(job_id)

    async def get(self) -> str:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    async def size(self) -> int:
        return self._queue.qsize()


class RedisJobQueue(JobQueue):
    """Job ids in a Redis list: producers LPUSH, workers BRPOP (FIFO).

    Usage:
        queue = RedisJobQueue(client, key="orch:queue:analysis")
        await queue.put(job.id)
        job_id = await queue.get()
        ...
        queue.task_done()
    """

    durable = True

    def __init__(self, client: aioredis.Redis, key: str = "queue:analysis", poll_timeout: float = 1):
        self.client = client
        self.key = key
        self.poll_timeout = poll_timeout
        self._in_flight = 0
        self._idle = asyncio.Event()
        self._idle.set()

    async def put(self, job_id: str) -> None:
        await self.client.lpush(self.key, job_id)

    async def get(self) -> str:
        while True:
            item = await self.client.brpop([self.key], timeout=self.poll_timeout)
            if item is not None:
                self._in_flight += 1
                self._idle.clear()
                return item[1]

    def task_done(self) -> None:
        self._in_flight = max(0, self._in_flight - 1)
        if self._in_flight == 0:
            self._idle.set()

    async def join(self) -> None:
        await self._idle.wait()

    async def size(self) -> int:
        return int(await self.client.llen(self.key))
