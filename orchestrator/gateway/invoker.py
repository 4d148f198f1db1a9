"""Parallel fan-out of one input to every provider of a tier.

Each provider runs in its own task:

  circuit check -> retry policy (per-attempt timeout) -> circuit outcome

The whole fan-out is bounded by the job deadline. Tasks still running when it
passes are cancelled and recorded as timeouts.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Sequence
from dataclasses import replace

from orchestrator.core.exceptions import (
    CIRCUIT_FAILURE_CODES,
    CircuitOpenError,
    ProviderError,
    ProviderTimeout,
    ValidationError,
)
from orchestrator.core.metrics import PROVIDER_CALLS
from orchestrator.gateway.circuit_breaker import CircuitBreaker
from orchestrator.gateway.kv_store import Clock
from orchestrator.gateway.retry import RetryPolicy
from orchestrator.gateway.types import ProviderResult
from orchestrator.providers.base import BaseProvider

logger = logging.getLogger(__name__)


class ParallelInvoker:
    """Invoke providers concurrently through circuit breaker and retry policy.

    Usage:
        invoker = ParallelInvoker(circuit_breaker, retry_policy, provider_timeout=25.0)
        results = await invoker.invoke("example.com", providers, timeout=30.0)
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        retry_policy: RetryPolicy,
        provider_timeout: float = 25.0,
        clock: Clock = time.monotonic,
    ):
        self.circuit_breaker = circuit_breaker
        self.retry_policy = retry_policy
        self.provider_timeout = provider_timeout
        self._clock = clock

    async def _call(self, provider: BaseProvider, text: str, deadline: float) -> ProviderResult:
        """One provider's outcome. Only a ValidationError escapes; anything else is a failed result."""
        try:
            return await self._guarded_call(provider, text, deadline)
        except ValidationError:
            raise
        except Exception as e:
            name = provider.name
            logger.exception("Provider task %s crashed", name, extra={"provider": name})
            PROVIDER_CALLS.labels(name, ProviderError.code).inc()
            return ProviderResult.failure(name, ProviderError(f"{type(e).__name__}: {e}", provider=name))

    async def _guarded_call(self, provider: BaseProvider, text: str, deadline: float) -> ProviderResult:
        name = provider.name

        if not await self.circuit_breaker.allow(name):
            PROVIDER_CALLS.labels(name, CircuitOpenError.code).inc()
            return ProviderResult.failure(
                name,
                CircuitOpenError(f"Circuit breaker open for {name}", provider=name),
                attempts=0,
            )

        start = self._clock()
        result = await self.retry_policy.run(
            lambda call_deadline: provider.analyze(text, call_deadline),
            provider=name,
            deadline=deadline,
            timeout=self.provider_timeout,
        )
        if not result.latency_ms:
            result = replace(result, latency_ms=int((self._clock() - start) * 1000))

        if result.succeeded:
            await self.circuit_breaker.record_success(name)
            PROVIDER_CALLS.labels(name, "success").inc()
        else:
            if result.error_code in CIRCUIT_FAILURE_CODES:
                await self.circuit_breaker.record_failure(name)
            PROVIDER_CALLS.labels(name, result.error_code).inc()
            logger.warning(
                "Provider %s failed after %d attempt(s): %s",
                name,
                result.attempts,
                result.error,
                extra={"provider": name},
            )
        return result

    async def _timed_out(self, name: str, timeout: float) -> ProviderResult:
        await self.circuit_breaker.record_failure(name)
        PROVIDER_CALLS.labels(name, ProviderTimeout.code).inc()
        logger.warning("Provider %s cancelled at the %.0fs job deadline", name, timeout, extra={"provider": name})
        return ProviderResult.failure(
            name,
            ProviderTimeout(f"{name} still running at the job deadline", provider=name),
            latency_ms=int(timeout * 1000),
        )

    async def invoke(self, text: str, providers: Sequence[BaseProvider], timeout: float) -> list[ProviderResult]:
        """Fan ``text`` out to ``providers``; one result per provider, in order.

        Raises:
            ValidationError: a provider rejected the input itself
        """
        if not providers:
            return []

        deadline = self._clock() + timeout
        tasks = [asyncio.create_task(self._call(p, text, deadline), name=f"provider:{p.name}") for p in providers]

        # Only a ValidationError can end the wait early
        try:
            done, pending = await asyncio.wait(tasks, timeout=timeout, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        validation_error = next(
            (t.exception() for t in done if not t.cancelled() and isinstance(t.exception(), ValidationError)),
            None,
        )
        if validation_error is not None:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise validation_error

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        results: list[ProviderResult] = []
        for provider, task in zip(providers, tasks):
            if task.cancelled():
                results.append(await self._timed_out(provider.name, timeout))
            else:
                results.append(task.result())

        return results
