"""POST /image — single image generation (OpenAI or Azure DALL·E 3)."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from genai_gateway.core.dependencies import (
    disconnect_event,
    get_client_key,
    get_orchestrator,
    get_request_id,
    read_json_body,
)
from genai_gateway.gateway.orchestrator import GenerationOrchestrator
from genai_gateway.schemas.image import ImageResponse

router = APIRouter(tags=["image"])


@router.post("/image", responses={200: {"model": ImageResponse}})
async def generate_image(
    request: Request,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    client_key: str = Depends(get_client_key),
    request_id: str = Depends(get_request_id),
):
    payload = await read_json_body(request)
    async with disconnect_event(request) as cancel_event:
        outcome = await orchestrator.image(payload, client_key, cancel_event=cancel_event, request_id=request_id)
    return JSONResponse(outcome.body, headers=outcome.rate_limit.headers())
