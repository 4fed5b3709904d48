"""Pydantic response model for the health endpoint."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel


class ProviderStatus(BaseModel):
    openai: bool
    gemini: bool
    anthropic: bool
    azure: bool


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    providers: ProviderStatus
    timestamp: str
    uptime: int
    version: str
    environment: str
    endpoints: dict[str, str]
