import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded as IPRateLimitExceeded

from orchestrator.api.health import router as health_router
from orchestrator.api.v1.router import api_v1_router
from orchestrator.container import Container, build_container
from orchestrator.core.config import settings, validate_settings_for_production
from orchestrator.core.exceptions import OrchestratorError, RateLimitExceeded
from orchestrator.core.logging import setup_logging
from orchestrator.core.metrics import PrometheusMiddleware, metrics_response
from orchestrator.core.rate_limit import limiter
from orchestrator.core.sentry import init_sentry

# Configure logging before anything else
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    init_sentry()
    logger.info("Starting scoring orchestrator (state backend: %s)...", settings.state_backend)

    container: Container = app.state.container
    await container.workers.start()
    logger.info("Providers enabled: %s", ", ".join(p.name for p in container.registry.enabled()) or "none")

    yield

    # Shutdown
    await container.workers.stop()
    await container.close()
    logger.info("Scoring orchestrator shut down")


def create_app(container: Container | None = None) -> FastAPI:
    app = FastAPI(
        title="Scoring Orchestrator",
        description="Fan-out visibility scoring across multiple AI providers",
        version=settings.app_version,
        lifespan=lifespan,
        docs_url="/api/docs" if settings.app_debug else None,
        redoc_url="/api/redoc" if settings.app_debug else None,
    )
    app.state.container = container or build_container(settings)

    @app.exception_handler(OrchestratorError)
    async def _orchestrator_error_handler(request: Request, exc: OrchestratorError):
        headers = None
        if isinstance(exc, RateLimitExceeded):
            headers = {
                "Retry-After": str(max(1, int(exc.retry_after + 0.999))),
                "X-RateLimit-Limit": str(exc.limit),
                "X-RateLimit-Remaining": "0",
            }
        return JSONResponse(
            status_code=exc.http_status,
            content={"detail": exc.message, "code": exc.code},
            headers=headers,
        )

    # Log unhandled exceptions with the full traceback
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
        logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
        return JSONResponse(status_code=500, content={"detail": f"{type(exc).__name__}: {exc}", "code": "internal_error"})

    # Per-IP throttling
    app.state.limiter = limiter
    app.add_exception_handler(IPRateLimitExceeded, _rate_limit_exceeded_handler)

    app.add_middleware(PrometheusMiddleware)

    # CORS: parse allowed_origins from settings (comma-separated)
    _origins = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_v1_router)
    app.include_router(health_router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return metrics_response()

    return app


app = create_app()
