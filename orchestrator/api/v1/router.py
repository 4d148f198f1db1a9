from fastapi import APIRouter

from orchestrator.api.v1.analyze import router as analyze_router
from orchestrator.api.v1.circuits import router as circuits_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(analyze_router)
api_v1_router.include_router(circuits_router)
