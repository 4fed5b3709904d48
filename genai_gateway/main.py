import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from genai_gateway.api.router import api_router
from genai_gateway.core.config import settings, validate_settings_for_production
from genai_gateway.core.dependencies import build_orchestrator
from genai_gateway.core.logging import setup_logging
from genai_gateway.core.metrics import PrometheusMiddleware, metrics_response
from genai_gateway.core.middleware import REQUEST_ID_HEADER, RequestLoggingMiddleware
from genai_gateway.core.sentry import init_sentry
from genai_gateway.gateway.errors import GatewayError

# Configure logging before anything else
setup_logging()
init_sentry()

logger = logging.getLogger(__name__)

# Any localhost port is accepted during development
_DEV_ORIGIN_REGEX = r"https?://(localhost|127\.0\.0\.1)(:\d+)?"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    validate_settings_for_production()
    configured = [name for name, ok in settings.provider_status().items() if ok]
    logger.info(
        "Starting GenAI gateway %s (env=%s, providers=%s)",
        settings.app_version,
        settings.app_env,
        ", ".join(configured) or "none",
    )

    yield

    # Shutdown
    logger.info("GenAI gateway shut down")


app = FastAPI(
    title="GenAI Gateway",
    description="Multi-vendor chat and image generation behind one API",
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs" if settings.app_debug else None,
    redoc_url="/redoc" if settings.app_debug else None,
)

# Limiter stores live as long as the app
app.state.orchestrator = build_orchestrator(settings)


@app.exception_handler(GatewayError)
async def _gateway_error_handler(request: Request, exc: GatewayError):
    headers = exc.rate_limit.headers() if exc.rate_limit is not None else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# Log unhandled exceptions with full traceback
@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exception(type(exc), exc, exc.__traceback__)
    logger.error("Unhandled %s on %s %s:\n%s", type(exc).__name__, request.method, request.url.path, "".join(tb))
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "Internal server error", "type": "internal_error"},
    )


# Request logging + metrics middleware
app.add_middleware(PrometheusMiddleware)
app.add_middleware(RequestLoggingMiddleware)

# CORS: allowed_origins is comma-separated
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.origins,
    allow_origin_regex=_DEV_ORIGIN_REGEX if settings.app_env == "development" else None,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=[
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
        REQUEST_ID_HEADER,
    ],
)

# API routes
app.include_router(api_router)


@app.get("/metrics", include_in_schema=False)
async def metrics():
    return metrics_response()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("genai_gateway.main:app", host=settings.app_host, port=settings.app_port, reload=settings.app_debug)
