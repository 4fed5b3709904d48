from fastapi import APIRouter, Depends

from genai_gateway.core.dependencies import get_orchestrator
from genai_gateway.gateway.orchestrator import GenerationOrchestrator
from genai_gateway.schemas.health import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health(orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    return orchestrator.health()
