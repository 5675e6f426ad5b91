"""Pydantic schemas for health check responses."""

from typing import Literal

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response body for GET /health/."""

    status: Literal["ok"] = Field(default="ok", description="Service status")
    environment: str = Field(description="APP_ENV of this deployment (dev or prod)")
    database: Literal["connected", "disconnected"] | None = Field(
        default=None,
        description="Whether the unified catalog database answered a trivial query",
    )
    title_ai_enabled: bool = Field(
        default=False,
        description="Whether the AI title tier (Ollama) is configured for this process",
    )
