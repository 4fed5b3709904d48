"""Request logging middleware."""

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from genai_gateway.core.logging import request_id_var

logger = logging.getLogger("genai_gateway.requests")

REQUEST_ID_HEADER = "X-Request-ID"


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tag every request with an id and log method, path, status and duration.

    An inbound X-Request-ID is reused so ids line up with the caller's logs.
    For streaming responses the duration covers time-to-headers only.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        token = request_id_var.set(request_id)

        start = time.perf_counter()
        try:
            response = await call_next(request)
            duration_ms = int((time.perf_counter() - start) * 1000)
            response.headers[REQUEST_ID_HEADER] = request_id
            logger.info("%s %s -> %d (%dms)", request.method, request.url.path, response.status_code, duration_ms)
            return response
        finally:
            request_id_var.reset(token)
