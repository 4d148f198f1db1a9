"""Analysis API: submit inputs, poll results, inspect tenant quota."""

from fastapi import APIRouter, Depends, Request, Response

from orchestrator.core.dependencies import get_service, get_tenant_id
from orchestrator.core.exceptions import JobNotFoundError
from orchestrator.core.rate_limit import limiter, submission_limit
from orchestrator.gateway.types import Job, Plan
from orchestrator.jobs.service import AnalysisService
from orchestrator.schemas.analyze import (
    AnalyzeRequest,
    AnalyzeResponse,
    JobResultResponse,
    RateLimitInfoResponse,
)

router = APIRouter(tags=["analysis"])


def _job_response(job: Job) -> JobResultResponse:
    data = job.to_dict()
    return JobResultResponse(
        job_id=data["job_id"],
        status=data["status"],
        tier=data["tier"],
        providers=data["providers"],
        cached=data["cached"],
        result=data["result"],
        error_code=data["error_code"] or None,
        error=data["error"] or None,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


@router.post("/analyze", response_model=AnalyzeResponse, status_code=202)
@limiter.limit(submission_limit)
async def submit_analysis(
    request: Request,
    response: Response,
    body: AnalyzeRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: AnalysisService = Depends(get_service),
):
    job = await service.submit(body.input, plan=body.tier, tenant_id=tenant_id)

    info = await service.rate_limit_info(tenant_id, body.tier)
    response.headers["X-RateLimit-Limit"] = str(info["limit"])
    response.headers["X-RateLimit-Remaining"] = str(info["remaining"])

    return AnalyzeResponse(
        job_id=job.id,
        status="accepted" if job.cached else "pending",
        providers=job.providers,
        cached=job.cached,
    )


@router.get("/results/{job_id}", response_model=JobResultResponse)
async def get_result(
    job_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: AnalysisService = Depends(get_service),
):
    job = await service.get_job(job_id)
    # Jobs of other tenants look exactly like unknown ones
    if job.tenant_id != tenant_id:
        raise JobNotFoundError(f"Job {job_id} not found")
    return _job_response(job)


@router.get("/rate-limit", response_model=RateLimitInfoResponse)
async def get_rate_limit(
    tier: Plan | None = None,
    tenant_id: str = Depends(get_tenant_id),
    service: AnalysisService = Depends(get_service),
):
    return await service.rate_limit_info(tenant_id, tier)
