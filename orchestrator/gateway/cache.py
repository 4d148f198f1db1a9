"""Result cache: aggregated results keyed by normalized input.

Advisory only: a miss always falls through to full processing and staleness
is bounded by the TTL.
"""

from __future__ import annotations

import logging

from orchestrator.core.metrics import CACHE_HITS, CACHE_MISSES
from orchestrator.gateway.kv_store import KeyValueStore
from orchestrator.gateway.types import AggregatedResult, ProviderTier

logger = logging.getLogger(__name__)


def normalize_input(text: str) -> str:
    """Case-fold and trim."""
    return text.strip().casefold()


def cache_key(text: str, tier: ProviderTier) -> str:
    return f"analysis:{tier.value}:{normalize_input(text)}"


class ResultCache:
    def __init__(self, store: KeyValueStore, ttl_seconds: int = 3600, cache_low_confidence: bool = False):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.cache_low_confidence = cache_low_confidence

    async def get(self, text: str, tier: ProviderTier) -> AggregatedResult | None:
        raw = await self.store.get(cache_key(text, tier))
        if raw is None:
            CACHE_MISSES.labels("analysis").inc()
            return None
        CACHE_HITS.labels("analysis").inc()
        logger.debug("Using cached result for %r (%s)", text, tier.value)
        return AggregatedResult.from_dict(raw)

    async def set(self, text: str, tier: ProviderTier, result: AggregatedResult) -> bool:
        """Cache a completed result. Low-confidence results are skipped unless configured."""
        if result.low_confidence and not self.cache_low_confidence:
            return False
        await self.store.set(cache_key(text, tier), result.to_dict(), ttl=self.ttl_seconds)
        return True

    async def invalidate(self, text: str, tier: ProviderTier) -> bool:
        return await self.store.delete(cache_key(text, tier)) > 0
