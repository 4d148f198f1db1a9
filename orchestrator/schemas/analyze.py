from datetime import datetime

from pydantic import BaseModel

from orchestrator.gateway.types import Plan


class AnalyzeRequest(BaseModel):
    input: str  # length checked by AnalysisService.submit
    tier: Plan | None = None


class AnalyzeResponse(BaseModel):
    job_id: str
    status: str  # "pending" or "accepted" (answered from cache)
    providers: list[str]
    cached: bool = False


class ProviderResultResponse(BaseModel):
    provider: str
    succeeded: bool
    score: int | None = None
    error_code: str = ""
    error: str = ""
    attempts: int = 1
    latency_ms: int = 0
    metadata: dict = {}


class AggregatedResultResponse(BaseModel):
    score: int
    succeeded_count: int
    failed_count: int
    low_confidence: bool = False
    policy: str = "lenient"
    contributing_providers: list[ProviderResultResponse]
    failed_providers: list[ProviderResultResponse] = []


class JobResultResponse(BaseModel):
    job_id: str
    status: str
    tier: str
    providers: list[str]
    cached: bool = False
    result: AggregatedResultResponse | None = None
    error_code: str | None = None
    error: str | None = None
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None


class RateLimitInfoResponse(BaseModel):
    tenant_id: str
    plan: str
    used: int
    limit: int
    remaining: int
    reset_in: float | None = None


class CircuitStateResponse(BaseModel):
    provider: str
    state: str
    failure_count: int
    window_started_at: float | None = None
    opened_at: float | None = None
    retry_in: float | None = None
