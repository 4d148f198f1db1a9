"""Health endpoints for load balancers and orchestration probes."""

import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from orchestrator.container import Container
from orchestrator.core.dependencies import get_container

router = APIRouter(tags=["health"])

_STARTED = time.monotonic()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/healthz")
async def healthz():
    return {"status": "ok", "timestamp": _now()}


@router.get("/health/detailed")
async def health_detailed(container: Container = Depends(get_container)):
    """Component checks. 200 healthy, 206 degraded, 503 unhealthy."""
    checks: list[dict] = []

    checks.append(
        {
            "service": "workers",
            "status": "healthy" if container.workers.running else "unhealthy",
            "queue_depth": await container.workers.queue_depth(),
        }
    )

    start = time.perf_counter()
    try:
        await container.kv_store.get("health:ping")
        checks.append(
            {"service": "kv_store", "status": "healthy", "latency": int((time.perf_counter() - start) * 1000)}
        )
    except Exception as e:
        checks.append({"service": "kv_store", "status": "unhealthy", "error": str(e)})

    enabled = [p.name for p in container.registry.enabled()]
    circuits = await container.circuit_breaker.get_all_states(enabled)
    open_circuits = [c["provider"] for c in circuits if c["state"] != "closed"]
    if not enabled:
        provider_status = "unhealthy"
    elif open_circuits:
        provider_status = "degraded"
    else:
        provider_status = "healthy"
    checks.append({"service": "providers", "status": provider_status, "open_circuits": open_circuits})

    if all(c["status"] == "healthy" for c in checks):
        overall, code = "healthy", 200
    elif any(c["status"] == "unhealthy" for c in checks):
        overall, code = "unhealthy", 503
    else:
        overall, code = "degraded", 206

    return JSONResponse(
        status_code=code,
        content={
            "status": overall,
            "timestamp": _now(),
            "checks": checks,
            "jobs": await container.job_store.counts(),
            "features": {"enabled_providers": enabled},
        },
    )


@router.get("/ready")
async def ready(container: Container = Depends(get_container)):
    if container.workers.running:
        return {"ready": True}
    return JSONResponse(status_code=503, content={"ready": False})


@router.get("/alive")
async def alive():
    return {"alive": True, "uptime": round(time.monotonic() - _STARTED, 1)}
