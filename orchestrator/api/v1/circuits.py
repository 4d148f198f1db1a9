from fastapi import APIRouter, Depends

from orchestrator.container import Container
from orchestrator.core.dependencies import get_container
from orchestrator.schemas.analyze import CircuitStateResponse

router = APIRouter(prefix="/circuits", tags=["circuits"])


@router.get("", response_model=list[CircuitStateResponse])
async def list_circuits(container: Container = Depends(get_container)):
    """Circuit state of every registered provider."""
    return await container.circuit_breaker.get_all_states(container.registry.names)
