"""Per-provider circuit breaker backed by the shared key-value store.

Implements the circuit breaker pattern per provider:
  - CLOSED: normal operation, failures counted in a fixed window
  - OPEN: threshold reached, calls are short-circuited (not attempted)
  - HALF_OPEN: after the cooldown exactly one probe call is admitted

The probe slot is taken with set-if-absent, so under concurrent load only one
caller gets through; the slot expires after the cooldown so a probe that never
reports back cannot keep the circuit wedged.

State per provider lives under four keys:
  cb:<provider>:state   closed | open | half_open
  cb:<provider>:fails   failure counter (expires with the window)
  cb:<provider>:openAt  clock value when the circuit last opened
  cb:<provider>:probe   probe slot
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from enum import Enum

from orchestrator.core.metrics import CIRCUIT_EVENTS
from orchestrator.gateway.kv_store import Clock, KeyValueStore

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Rejecting requests
    HALF_OPEN = "half_open"  # Single probe in flight


# Defaults for opening the circuit
FAILURE_THRESHOLD = 5  # Failures within the window to open the circuit
FAILURE_WINDOW = 60.0  # Seconds
HALF_OPEN_DELAY = 60.0  # Seconds before a probe is allowed


def _key_state(provider: str) -> str:
    return f"cb:{provider}:state"


def _key_fails(provider: str) -> str:
    return f"cb:{provider}:fails"


def _key_open_at(provider: str) -> str:
    return f"cb:{provider}:openAt"


def _key_probe(provider: str) -> str:
    return f"cb:{provider}:probe"


class CircuitBreaker:
    """Per-provider circuit breaker.

    Usage:
        cb = CircuitBreaker(store)

        if not await cb.allow(provider.name):
            # Circuit is open, record CircuitOpenError and skip the call
            ...

        # After the (retried) call:
        await cb.record_success(provider.name)   # or
        await cb.record_failure(provider.name)
    """

    def __init__(
        self,
        store: KeyValueStore,
        failure_threshold: int = FAILURE_THRESHOLD,
        window_seconds: float = FAILURE_WINDOW,
        half_open_delay: float = HALF_OPEN_DELAY,
        clock: Clock = time.monotonic,
    ):
        self.store = store
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.half_open_delay = half_open_delay
        self._clock = clock

    async def _state(self, provider: str) -> CircuitState:
        raw = await self.store.get(_key_state(provider))
        return CircuitState(raw) if raw else CircuitState.CLOSED

    async def _take_probe_slot(self, provider: str) -> bool:
        return await self.store.set(_key_probe(provider), "1", ttl=self.half_open_delay, nx=True)

    async def allow(self, provider: str) -> bool:
        """Return True if a call to the provider may be attempted now."""
        state = await self._state(provider)

        if state == CircuitState.CLOSED:
            return True

        if state == CircuitState.OPEN:
            opened_at = float(await self.store.get(_key_open_at(provider)) or 0.0)
            if self._clock() - opened_at > self.half_open_delay and await self._take_probe_slot(provider):
                await self.store.set(_key_state(provider), CircuitState.HALF_OPEN.value)
                CIRCUIT_EVENTS.labels(provider, "half_open").inc()
                logger.info("Circuit for %s transitioning to HALF_OPEN (probe admitted)", provider)
                return True
        elif await self._take_probe_slot(provider):
            # HALF_OPEN whose probe slot expired without an outcome
            CIRCUIT_EVENTS.labels(provider, "half_open").inc()
            logger.info("Circuit for %s: previous probe lost, admitting a new probe", provider)
            return True

        CIRCUIT_EVENTS.labels(provider, "short_circuit").inc()
        return False

    async def record_success(self, provider: str) -> None:
        """Record a successful call: closes a probing circuit and resets the failure window."""
        state = await self._state(provider)

        if state == CircuitState.HALF_OPEN:
            await self.store.set(_key_state(provider), CircuitState.CLOSED.value)
            await self.store.delete(_key_fails(provider), _key_open_at(provider), _key_probe(provider))
            CIRCUIT_EVENTS.labels(provider, "closed").inc()
            logger.info("Circuit for %s CLOSED (recovered)", provider)
        elif state == CircuitState.CLOSED:
            await self.store.delete(_key_fails(provider))
        # OPEN: a straggler that started before the circuit opened; keep the cooldown

    async def record_failure(self, provider: str) -> None:
        """Record one failed (post-retry) call."""
        state = await self._state(provider)

        if state == CircuitState.OPEN:
            return

        if state == CircuitState.HALF_OPEN:
            await self._open(provider)
            await self.store.delete(_key_probe(provider))
            CIRCUIT_EVENTS.labels(provider, "reopened").inc()
            logger.warning("Circuit for %s probe failed, back to OPEN", provider)
            return

        failures = await self.store.incr(_key_fails(provider), ttl=self.window_seconds)
        if failures >= self.failure_threshold:
            await self._open(provider)
            CIRCUIT_EVENTS.labels(provider, "opened").inc()
            logger.warning(
                "Circuit for %s OPENED after %d failures within %.0fs",
                provider,
                failures,
                self.window_seconds,
            )

    async def _open(self, provider: str) -> None:
        await self.store.set(_key_state(provider), CircuitState.OPEN.value)
        await self.store.set(_key_open_at(provider), self._clock())
        await self.store.delete(_key_fails(provider))

    async def get_state(self, provider: str) -> dict:
        """Get the current state of a provider's circuit."""
        state = await self._state(provider)
        failures = int(await self.store.get(_key_fails(provider)) or 0)
        window_left = await self.store.ttl(_key_fails(provider))
        opened_at = await self.store.get(_key_open_at(provider))

        window_started_at = None
        if window_left is not None:
            window_started_at = self._clock() - (self.window_seconds - window_left)

        retry_in = None
        if state == CircuitState.OPEN and opened_at is not None:
            retry_in = max(0.0, float(opened_at) + self.half_open_delay - self._clock())

        return {
            "provider": provider,
            "state": state.value,
            "failure_count": failures,
            "window_started_at": window_started_at,
            "opened_at": opened_at,
            "retry_in": retry_in,
        }

    async def get_all_states(self, providers: Iterable[str]) -> list[dict]:
        """Get circuit states for the given providers."""
        return [await self.get_state(p) for p in providers]

    async def reset(self, provider: str) -> None:
        """Manually reset a provider's circuit to CLOSED."""
        await self.store.delete(
            _key_state(provider),
            _key_fails(provider),
            _key_open_at(provider),
            _key_probe(provider),
        )
        logger.info("Circuit for %s manually RESET", provider)
