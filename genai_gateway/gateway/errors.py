"""Gateway error taxonomy.

Each error knows the HTTP status it maps to, so the transport layer renders
every failure the same way regardless of which stage raised it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from genai_gateway.gateway.rate_limiter import RateLimitDecision


class GatewayError(Exception):
    """Base class for all failures surfaced to API callers."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str, details: list[str] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or []
        self.stage: str = ""  # filled in by the orchestrator
        self.rate_limit: RateLimitDecision | None = None
        self.provider: str = ""

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "error": self.message, "type": self.error_type}
        if self.details:
            body["details"] = self.details
        if self.provider:
            body["provider"] = self.provider
        return body


class ValidationError(GatewayError):
    """Malformed or out-of-range input. Never reaches a vendor."""

    status_code = 400
    error_type = "validation_error"

    def __init__(self, errors: list[str]):
        super().__init__("Invalid request data", details=errors)
        self.errors = errors


class RateLimitError(GatewayError):
    status_code = 429
    error_type = "rate_limit_exceeded"

    def __init__(self, decision: RateLimitDecision, message: str = "Too many requests, try again later"):
        super().__init__(message)
        self.rate_limit = decision
        self.retry_after = decision.retry_after

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["limit"] = self.rate_limit.limit
        body["retryAfter"] = self.retry_after
        return body


class ConfigurationError(GatewayError):
    """Vendor selected but its credentials or endpoint are missing."""

    status_code = 503
    error_type = "provider_not_configured"


class UnsupportedVendorError(GatewayError):
    status_code = 400
    error_type = "unsupported_provider"


class UnsupportedCapabilityError(UnsupportedVendorError):
    """The vendor exists but cannot perform the requested operation."""

    error_type = "unsupported_capability"


# Substring → (status, category message). Order matters: first match wins.
_VENDOR_ERROR_CATEGORIES: tuple[tuple[tuple[str, ...], int, str], ...] = (
    (("quota", "billing"), 402, "Quota or billing exhausted for this provider"),
    (("content policy", "content_policy", "safety"), 400, "The prompt violates the provider's content policy"),
    (("rate limit", "rate_limit"), 429, "Provider rate limit reached"),
    (
        ("unauthorized", "authentication", "api key", "api_key", "permission"),
        401,
        "Authentication with the provider failed",
    ),
)


class VendorError(GatewayError):
    """The vendor's HTTP call failed. Always carries the vendor name."""

    error_type = "provider_error"

    def __init__(self, message: str, vendor: str, vendor_status: int = 0):
        super().__init__(message, details=[message])
        self.vendor = vendor
        self.vendor_status = vendor_status
        self.provider = vendor
        self.status_code, self.category = classify_vendor_error(message, vendor_status)

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["error"] = self.category
        body["vendorStatus"] = self.vendor_status
        return body


def classify_vendor_error(message: str, vendor_status: int = 0) -> tuple[int, str]:
    """Map a vendor failure to (transport status, category message)."""
    lowered = message.lower()
    for needles, status, category in _VENDOR_ERROR_CATEGORIES:
        if any(n in lowered for n in needles):
            return status, category
    if vendor_status in (401, 403):
        return 401, "Authentication with the provider failed"
    if vendor_status == 429:
        return 429, "Provider rate limit reached"
    return 500, "Provider request failed"


class StreamDecodeError(Exception):
    """A single stream line could not be parsed. Skipped, never fatal."""


class RequestAbortedError(GatewayError):
    """The vendor call was aborted by timeout or caller cancellation."""

    error_type = "request_aborted"

    def __init__(self, reason: str, vendor: str = "", timeout: float | None = None):
        if reason == "timeout":
            message = f"Request to {vendor or 'provider'} timed out"
            if timeout is not None:
                message += f" after {timeout:g}s"
            self.status_code = 504
        else:
            message = f"Request to {vendor or 'provider'} was cancelled"
            self.status_code = 500
        super().__init__(message)
        self.reason = reason
        self.provider = vendor
