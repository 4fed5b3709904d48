"""Centralized logging configuration.

Every record passes through RequestContextFilter, so log lines emitted while a
request is being handled carry its request id without callers passing it.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone

from genai_gateway.core.config import settings

request_id_var: ContextVar[str] = ContextVar("request_id", default="-")

# Extra record attributes copied into JSON output when a caller sets them
_CONTEXT_FIELDS = ("provider", "stage", "client")

_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(request_id)s | %(name)s | %(message)s"


class RequestContextFilter(logging.Filter):
    """Attach the current request id unless the caller passed one explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_var.get()
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line, for log shippers in production."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", "-"),
            "message": record.getMessage(),
        }
        entry.update({name: getattr(record, name) for name in _CONTEXT_FIELDS if hasattr(record, name)})
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging() -> None:
    """Configure the root logger once, before the app is created."""
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(RequestContextFilter())
    handler.setFormatter(JSONFormatter() if settings.log_json else logging.Formatter(_TEXT_FORMAT, "%Y-%m-%d %H:%M:%S"))

    root = logging.getLogger()
    root.setLevel(level)
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)

    # Vendor calls would otherwise log every request line, including API keys in Gemini URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(level if settings.app_debug else logging.WARNING)
