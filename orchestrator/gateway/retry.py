"""Retry policy with exponential backoff and jitter for one provider call.

Backoff strategy:
  delay = min(min_backoff * 2^attempt, max_backoff)
  jitter = random(0, delay * 0.2)

Only classified-retryable failures (rate limited, server error, timeout,
network) are retried. Exhausting the attempts hands the last classified
failure back to the caller, which the circuit breaker then counts once.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace

from orchestrator.core.exceptions import (
    RETRYABLE_CODES,
    ProviderError,
    ProviderTimeout,
    ValidationError,
)
from orchestrator.gateway.kv_store import Clock
from orchestrator.gateway.types import ProviderResult

logger = logging.getLogger(__name__)

ProviderCall = Callable[[float], Awaitable[ProviderResult]]
Sleep = Callable[[float], Awaitable[None]]


def is_retryable(result: ProviderResult) -> bool:
    return not result.succeeded and result.error_code in RETRYABLE_CODES


class RetryPolicy:
    """Bounded retries around a single provider call.

    Usage:
        policy = RetryPolicy(max_attempts=3, min_backoff=0.5, max_backoff=8.0)
        result = await policy.run(
            lambda deadline: provider.analyze(text, deadline),
            provider=provider.name,
            deadline=job_deadline,
            timeout=25.0,
        )
    """

    def __init__(
        self,
        max_attempts: int = 3,
        min_backoff: float = 0.5,
        max_backoff: float = 8.0,
        jitter: float = 0.2,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ):
        self.max_attempts = max(1, max_attempts)
        self.min_backoff = min_backoff
        self.max_backoff = max_backoff
        self.jitter = jitter
        self._sleep = sleep
        self._clock = clock

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt is 0-based)."""
        base = min(self.max_backoff, self.min_backoff * (2**attempt))
        return base + random.uniform(0, base * self.jitter)

    async def _attempt(self, call: ProviderCall, provider: str, call_deadline: float) -> ProviderResult:
        start = self._clock()
        try:
            return await asyncio.wait_for(call(call_deadline), timeout=max(0.0, call_deadline - start))
        except asyncio.TimeoutError:
            elapsed = self._clock() - start
            return ProviderResult.failure(
                provider,
                ProviderTimeout(f"{provider} did not answer within {elapsed:.1f}s", provider=provider),
                latency_ms=int(elapsed * 1000),
            )
        except ValidationError:
            raise
        except ProviderError as e:
            return ProviderResult.failure(provider, e)
        except Exception as e:
            # Contract violation: providers report remote failures as results
            logger.exception("Provider %s raised unexpectedly", provider)
            return ProviderResult.failure(provider, ProviderError(f"{type(e).__name__}: {e}", provider=provider))

    async def run(self, call: ProviderCall, provider: str, deadline: float, timeout: float) -> ProviderResult:
        """Run ``call`` until it succeeds, fails permanently, or attempts/deadline run out.

        Args:
            call: coroutine factory taking the absolute deadline of one attempt
            provider: provider name (for results and logs)
            deadline: absolute clock value no attempt or backoff may cross
            timeout: per-attempt budget in seconds
        """
        result: ProviderResult | None = None

        for attempt in range(self.max_attempts):
            now = self._clock()
            if now >= deadline:
                break

            result = await self._attempt(call, provider, min(deadline, now + timeout))
            if result.attempts != attempt + 1:
                result = replace(result, attempts=attempt + 1)

            if result.succeeded or not is_retryable(result):
                return result

            if attempt + 1 >= self.max_attempts:
                break

            delay = self.backoff(attempt)
            if self._clock() + delay >= deadline:
                logger.info("Not retrying %s: backoff %.1fs would cross the job deadline", provider, delay)
                break

            logger.info(
                "Retry %d/%d for %s in %.1fs (%s)",
                attempt + 1,
                self.max_attempts - 1,
                provider,
                delay,
                result.error_code,
            )
            await self._sleep(delay)

        if result is None:
            return ProviderResult.failure(
                provider,
                ProviderTimeout("job deadline reached before the call started", provider=provider),
                attempts=0,
            )
        return result
