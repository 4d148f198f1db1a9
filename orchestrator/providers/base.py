"""Provider contract shared by every scoring backend."""

from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod

from orchestrator.core.exceptions import ProviderResponseError
from orchestrator.gateway.types import ProviderResult

_SCORE_PATTERNS = (
    re.compile(r"(?:TOTAL_)?SCORE[:\s]+(\d{1,3})(?:\s*/\s*100)?", re.IGNORECASE),
    re.compile(r"(\d{1,3})\s*/\s*100"),
    re.compile(r"^\s*(\d{1,3})\s*\.?\s*$"),
)


def parse_score(text: str, provider: str = "") -> int:
    """Extract a 0..100 score from a free-text model reply.

    Accepts ``SCORE: 72/100``, ``TOTAL_SCORE: 72``, ``72/100`` or a bare number.
    Raises ProviderResponseError when nothing matches.
    """
    for pattern in _SCORE_PATTERNS:
        match = pattern.search(text or "")
        if match:
            return max(0, min(100, int(match.group(1))))
    snippet = (text or "").strip()[:80]
    raise ProviderResponseError(f"No score found in reply: {snippet!r}", provider=provider)


class BaseProvider(ABC):
    """Base class for all scoring providers.

    A provider makes exactly one remote call per ``analyze``; retries, circuit
    breaking and deadlines of the whole job are handled by the gateway.
    Ordinary remote failures come back as a failed ``ProviderResult`` carrying
    the classified error code. Only input the provider can never score raises
    (``ValidationError``).
    """

    name: str

    def __init__(self, api_key: str = "", enabled: bool = True, timeout: float = 25.0):
        self.api_key = api_key
        self.enabled = enabled
        self.timeout = timeout

    def is_enabled(self) -> bool:
        return self.enabled and bool(self.api_key)

    def _remaining(self, deadline: float) -> float:
        """Seconds left for one HTTP call, never more than the provider timeout."""
        return max(0.1, min(self.timeout, deadline - time.monotonic()))

    @abstractmethod
    async def analyze(self, text: str, deadline: float) -> ProviderResult:
        """Score ``text``; must finish before the absolute ``deadline`` (monotonic clock)."""
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} enabled={self.is_enabled()}>"
