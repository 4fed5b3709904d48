from fastapi import APIRouter

from genai_gateway.api.chat import router as chat_router
from genai_gateway.api.health import router as health_router
from genai_gateway.api.image import router as image_router

api_router = APIRouter()
api_router.include_router(chat_router)
api_router.include_router(image_router)
api_router.include_router(health_router)
