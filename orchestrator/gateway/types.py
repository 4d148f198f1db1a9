"""Core types and DTOs for the scoring gateway and the job layer."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from orchestrator.core.exceptions import ProviderError

SCORE_MIN = 0
SCORE_MAX = 100


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class Plan(str, Enum):
    """Customer plan. Selects the tenant quota and the provider tier."""

    FREE = "free"
    STARTER = "starter"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class ProviderTier(str, Enum):
    """Provider set a job fans out to."""

    FREE = "free"
    PRO = "pro"


class JobStatus(str, Enum):
    """Status of an analysis job through its lifecycle."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class AggregationPolicy(str, Enum):
    LENIENT = "lenient"  # partial success is valid, flag low confidence
    STRICT = "strict"  # fail below a minimum number of successes


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Provider result, one per provider per job
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of one provider for one job. Never mutated after creation."""

    provider: str
    succeeded: bool
    score: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error_code: str = ""
    error: str = ""
    attempts: int = 1
    latency_ms: int = 0

    @classmethod
    def success(
        cls,
        provider: str,
        score: int,
        metadata: dict[str, Any] | None = None,
        latency_ms: int = 0,
    ) -> ProviderResult:
        bounded = max(SCORE_MIN, min(SCORE_MAX, int(score)))
        return cls(
            provider=provider,
            succeeded=True,
            score=bounded,
            metadata=metadata or {},
            latency_ms=latency_ms,
        )

    @classmethod
    def failure(
        cls,
        provider: str,
        error: ProviderError,
        attempts: int = 1,
        latency_ms: int = 0,
    ) -> ProviderResult:
        return cls(
            provider=provider,
            succeeded=False,
            error_code=error.code,
            error=error.message,
            attempts=attempts,
            latency_ms=latency_ms,
        )

    def to_dict(self) -> dict:
        return {
            "provider": self.provider,
            "succeeded": self.succeeded,
            "score": self.score,
            "metadata": self.metadata,
            "error_code": self.error_code,
            "error": self.error,
            "attempts": self.attempts,
            "latency_ms": self.latency_ms,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ProviderResult:
        return cls(
            provider=data["provider"],
            succeeded=data["succeeded"],
            score=data.get("score"),
            metadata=dict(data.get("metadata") or {}),
            error_code=data.get("error_code", ""),
            error=data.get("error", ""),
            attempts=data.get("attempts", 1),
            latency_ms=data.get("latency_ms", 0),
        )


# ---------------------------------------------------------------------------
# Aggregated result, one per completed job
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AggregatedResult:
    """Combined score of all successful providers of a job."""

    score: int
    contributing_providers: list[ProviderResult]
    failed_providers: list[ProviderResult] = field(default_factory=list)
    low_confidence: bool = False
    policy: str = AggregationPolicy.LENIENT.value

    @property
    def succeeded_count(self) -> int:
        return len(self.contributing_providers)

    @property
    def failed_count(self) -> int:
        return len(self.failed_providers)

    def to_dict(self) -> dict:
        return {
            "score": self.score,
            "succeeded_count": self.succeeded_count,
            "failed_count": self.failed_count,
            "low_confidence": self.low_confidence,
            "policy": self.policy,
            "contributing_providers": [r.to_dict() for r in self.contributing_providers],
            "failed_providers": [r.to_dict() for r in self.failed_providers],
        }

    @classmethod
    def from_dict(cls, data: dict) -> AggregatedResult:
        return cls(
            score=data["score"],
            contributing_providers=[ProviderResult.from_dict(r) for r in data["contributing_providers"]],
            failed_providers=[ProviderResult.from_dict(r) for r in data.get("failed_providers", [])],
            low_confidence=data.get("low_confidence", False),
            policy=data.get("policy", AggregationPolicy.LENIENT.value),
        )


# ---------------------------------------------------------------------------
# Job
# ---------------------------------------------------------------------------


@dataclass
class Job:
    """One submitted analysis, tracked from pending to a terminal status."""

    input: str
    tier: ProviderTier = ProviderTier.FREE
    tenant_id: str = "public"
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: JobStatus = JobStatus.PENDING
    providers: list[str] = field(default_factory=list)  # names planned at submission
    created_at: datetime = field(default_factory=_utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: AggregatedResult | None = None
    error_code: str = ""
    error: str = ""
    cached: bool = False

    def to_dict(self) -> dict:
        return {
            "job_id": self.id,
            "input": self.input,
            "tier": self.tier.value,
            "tenant_id": self.tenant_id,
            "status": self.status.value,
            "providers": list(self.providers),
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "result": self.result.to_dict() if self.result else None,
            "error_code": self.error_code,
            "error": self.error,
            "cached": self.cached,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Job:
        return cls(
            id=data["job_id"],
            input=data["input"],
            tier=ProviderTier(data["tier"]),
            tenant_id=data["tenant_id"],
            status=JobStatus(data["status"]),
            providers=list(data.get("providers") or []),
            created_at=_parse_iso(data["created_at"]),
            started_at=_parse_iso(data.get("started_at")),
            completed_at=_parse_iso(data.get("completed_at")),
            result=AggregatedResult.from_dict(data["result"]) if data.get("result") else None,
            error_code=data.get("error_code", ""),
            error=data.get("error", ""),
            cached=data.get("cached", False),
        )
