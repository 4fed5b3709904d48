"""POST /chat — buffered or streamed chat completion through any configured vendor."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse

from genai_gateway.core.dependencies import (
    disconnect_event,
    get_client_key,
    get_orchestrator,
    get_request_id,
    read_json_body,
)
from genai_gateway.gateway.orchestrator import GenerationOrchestrator
from genai_gateway.schemas.chat import ChatResponse

router = APIRouter(tags=["chat"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # disable proxy buffering
}


@router.post(
    "/chat",
    responses={200: {"model": ChatResponse, "description": "Buffered reply, or an SSE stream when stream=true"}},
)
async def chat(
    request: Request,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
    client_key: str = Depends(get_client_key),
    request_id: str = Depends(get_request_id),
):
    payload = await read_json_body(request)
    async with disconnect_event(request) as cancel_event:
        outcome = await orchestrator.chat(payload, client_key, cancel_event=cancel_event, request_id=request_id)

    headers = outcome.rate_limit.headers()
    if outcome.streaming:
        return StreamingResponse(
            outcome.frames,
            media_type="text/event-stream",
            headers={**headers, **SSE_HEADERS},
        )
    return JSONResponse(outcome.body, headers=headers)
