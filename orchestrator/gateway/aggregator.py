"""Combine per-provider results into one score.

Only successful providers contribute. The score is the arithmetic mean of
their scores rounded half up, so ``[10, 20, 30] -> 20`` and ``[10, 11] -> 11``.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence

from orchestrator.core.exceptions import AllProvidersFailed, InsufficientProviders
from orchestrator.gateway.types import AggregatedResult, AggregationPolicy, ProviderResult

logger = logging.getLogger(__name__)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def aggregate(
    results: Sequence[ProviderResult],
    policy: AggregationPolicy | str = AggregationPolicy.LENIENT,
    min_success_ratio: float = 0.5,
    min_successes: int = 3,
) -> AggregatedResult:
    """Aggregate provider results of one job.

    Raises:
        AllProvidersFailed: no provider succeeded
        InsufficientProviders: strict policy and fewer than ``min_successes``
    """
    policy = AggregationPolicy(policy)
    succeeded = [r for r in results if r.succeeded and r.score is not None]
    failed = [r for r in results if not r.succeeded]

    if not succeeded:
        codes = sorted({r.error_code for r in failed})
        raise AllProvidersFailed(f"All {len(results)} providers failed ({', '.join(codes) or 'none attempted'})")

    if policy == AggregationPolicy.STRICT and len(succeeded) < min_successes:
        raise InsufficientProviders(
            f"Only {len(succeeded)} of {len(results)} providers succeeded, {min_successes} required"
        )

    score = round_half_up(sum(r.score for r in succeeded) / len(succeeded))
    low_confidence = len(succeeded) / len(results) < min_success_ratio

    if low_confidence:
        logger.info("Low-confidence score %d from %d/%d providers", score, len(succeeded), len(results))

    return AggregatedResult(
        score=score,
        contributing_providers=succeeded,
        failed_providers=failed,
        low_confidence=low_confidence,
        policy=policy.value,
    )
