"""Key-value store with the atomic primitives the gateway state needs.

Circuit breaker, tenant rate limiter and result cache share one store and
never keep their own module-level maps. The store exposes the small set of
operations a Redis server offers natively:

  - get / set with optional TTL and set-if-absent (NX)
  - incr with expire-on-create (fixed windows)
  - delete / ttl

Two implementations:
  - InMemoryKeyValueStore: one process, tests and single-worker deployments
  - RedisKeyValueStore: shared by every API process and worker (redis.asyncio)
"""

from __future__ import annotations

import heapq
import json
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from redis import asyncio as aioredis

Clock = Callable[[], float]


class KeyValueStore(ABC):
    """Interface for the shared gateway state."""

    @abstractmethod
    async def get(self, key: str) -> Any | None: ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float | None = None, nx: bool = False) -> bool:
        """Store a value. With nx=True only succeeds if the key is absent."""

    @abstractmethod
    async def incr(self, key: str, ttl: float | None = None, amount: int = 1) -> int:
        """Add ``amount`` to a counter; ttl is applied only when the counter is created."""

    @abstractmethod
    async def delete(self, *keys: str) -> int: ...

    @abstractmethod
    async def ttl(self, key: str) -> float | None:
        """Seconds until expiry, or None for a missing / non-expiring key."""

    async def close(self) -> None:
        """Release connections. Nothing to do for process-local stores."""


@dataclass
class _Entry:
    value: Any
    expires_at: float | None = None


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store.

    Expired keys disappear on access, and every write also sweeps the keys
    whose expiry has passed, so cache entries and rate windows of inputs and
    tenants never seen again do not accumulate. The store never awaits while
    holding its lock, so every operation is indivisible.
    """

    def __init__(self, clock: Clock = time.monotonic):
        self._clock = clock
        self._data: dict[str, _Entry] = {}
        self._expiry: list[tuple[float, str]] = []  # heap of (expires_at, key)
        self._lock = threading.Lock()

    def _live(self, key: str, now: float) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= now:
            del self._data[key]
            return None
        return entry

    def _sweep(self, now: float) -> None:
        while self._expiry and self._expiry[0][0] <= now:
            expires_at, key = heapq.heappop(self._expiry)
            entry = self._data.get(key)
            # Heap items of overwritten keys are stale
            if entry is not None and entry.expires_at == expires_at:
                del self._data[key]

    def _store(self, key: str, entry: _Entry) -> None:
        self._data[key] = entry
        if entry.expires_at is not None:
            heapq.heappush(self._expiry, (entry.expires_at, key))

    async def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live(key, self._clock())
            return entry.value if entry else None

    async def set(self, key: str, value: Any, ttl: float | None = None, nx: bool = False) -> bool:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            if nx and self._live(key, now) is not None:
                return False
            expires_at = now + ttl if ttl is not None else None
            self._store(key, _Entry(value=value, expires_at=expires_at))
            return True

    async def incr(self, key: str, ttl: float | None = None, amount: int = 1) -> int:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            entry = self._live(key, now)
            if entry is None:
                expires_at = now + ttl if ttl is not None else None
                entry = _Entry(value=0, expires_at=expires_at)
                self._store(key, entry)
            entry.value = int(entry.value) + amount
            return entry.value

    async def delete(self, *keys: str) -> int:
        with self._lock:
            now = self._clock()
            removed = 0
            for key in keys:
                if self._live(key, now) is not None:
                    del self._data[key]
                    removed += 1
            return removed

    async def ttl(self, key: str) -> float | None:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None or entry.expires_at is None:
                return None
            return entry.expires_at - now

    def __len__(self) -> int:
        return len(self._data)


def _ms(seconds: float) -> int:
    return max(1, int(seconds * 1000))


class RedisKeyValueStore(KeyValueStore):
    """Store on a Redis server, shared by every process of a deployment.

    Values are JSON-encoded; counters are native Redis integers. Keys are
    prefixed with ``namespace`` so several deployments can share one server.

    Usage:
        store = RedisKeyValueStore.from_url("redis://localhost:6379/0")
        await store.incr("rl:tenant:acme", ttl=60)
        await store.close()
    """

    def __init__(self, client: aioredis.Redis, namespace: str = "orch"):
        self.client = client
        self.namespace = namespace

    @classmethod
    def from_url(cls, url: str, namespace: str = "orch") -> RedisKeyValueStore:
        return cls(aioredis.Redis.from_url(url, decode_responses=True), namespace=namespace)

    def key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    async def get(self, key: str) -> Any | None:
        raw = await self.client.get(self.key(key))
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: float | None = None, nx: bool = False) -> bool:
        px = _ms(ttl) if ttl is not None else None
        return bool(await self.client.set(self.key(key), json.dumps(value), px=px, nx=nx))

    async def incr(self, key: str, ttl: float | None = None, amount: int = 1) -> int:
        name = self.key(key)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.incrby(name, amount)
            if ttl is not None:
                pipe.pexpire(name, _ms(ttl), nx=True)
            results = await pipe.execute()
        return int(results[0])

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self.client.delete(*(self.key(k) for k in keys)))

    async def ttl(self, key: str) -> float | None:
        remaining = await self.client.pttl(self.key(key))
        # -2: missing key, -1: no expiry
        return remaining / 1000 if remaining >= 0 else None

    async def close(self) -> None:
        await self.client.aclose()
