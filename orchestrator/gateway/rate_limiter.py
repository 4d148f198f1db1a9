"""Tenant rate limiter: fixed-window submission counter per tenant.

Each submission attempt increments ``rl:tenant:<id>``; the counter is created
with the window as its TTL, so the window resets by expiry rather than by a
sweep. Increment-and-check is a single store operation, which keeps the quota
exact under concurrent submissions from the same tenant.
"""

from __future__ import annotations

import logging

from orchestrator.core.exceptions import RateLimitExceeded
from orchestrator.gateway.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


def _key(tenant_id: str) -> str:
    return f"rl:tenant:{tenant_id}"


class TenantRateLimiter:
    """Per-tenant fixed-window rate limiter.

    Usage:
        limiter = TenantRateLimiter(store, window_seconds=60)
        await limiter.check(tenant_id, quota=10)  # raises RateLimitExceeded
    """

    def __init__(self, store: KeyValueStore, window_seconds: int = 60):
        self.store = store
        self.window_seconds = window_seconds

    async def check(self, tenant_id: str, quota: int) -> int:
        """Count one submission attempt. Returns the count in the current window."""
        count = await self.store.incr(_key(tenant_id), ttl=self.window_seconds)
        if count > quota:
            retry_after = await self.store.ttl(_key(tenant_id)) or float(self.window_seconds)
            logger.info("Tenant %s over quota (%d/%d)", tenant_id, count, quota)
            raise RateLimitExceeded(
                f"Rate limit exceeded. Max {quota} submissions per {self.window_seconds}s for your plan.",
                limit=quota,
                retry_after=retry_after,
            )
        return count

    async def get_info(self, tenant_id: str, quota: int) -> dict:
        """Current window usage for a tenant."""
        used = int(await self.store.get(_key(tenant_id)) or 0)
        reset_in = await self.store.ttl(_key(tenant_id))
        return {
            "tenant_id": tenant_id,
            "used": used,
            "limit": quota,
            "remaining": max(0, quota - used),
            "reset_in": reset_in,
        }
